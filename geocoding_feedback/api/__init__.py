"""HTTP API routers."""

from . import feedback
from . import health

__all__ = [
    "feedback",
    "health",
]
