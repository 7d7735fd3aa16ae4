"""Route modules."""

from .internal import router as internal_router
from .jobs import router as jobs_router
from .quota import router as quota_router

__all__ = ["internal_router", "jobs_router", "quota_router"]
