"""Quota API schemas."""

from pydantic import BaseModel, Field


class QuotaBalance(BaseModel):
    remaining_units: int
    reserved_units: int = 0
    available_units: int
    unlimited: bool


class OpenAccountRequest(BaseModel):
    account_id: str = Field(min_length=1)
    remaining_units: int = Field(default=0, ge=0)
    unlimited: bool = False


class UpdateQuotaRequest(BaseModel):
    """Subscription collaborator input; unset fields are left alone."""

    unlimited: bool | None = None
    grant_units: int | None = Field(default=None, ge=1)
