"""API route handlers."""

from .health import router as health_router
from .rate_limits import router as rate_limits_router
from .circuits import router as circuits_router
