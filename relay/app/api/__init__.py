"""API endpoints package for the relay."""

from relay.app.api.metrics import router as metrics_router
from relay.app.api.relay import router as relay_router

__all__ = [
    "metrics_router",
    "relay_router",
]
