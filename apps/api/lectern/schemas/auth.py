"""Authentication schemas."""

from pydantic import BaseModel, Field


class AuthPrincipal(BaseModel):
    """Normalized authenticated principal; ``account_id`` keys the quota ledger."""

    account_id: str = Field(min_length=1)
    role: str = Field(default="member", min_length=1)
