"""Middleware package for the relay."""

from relay.app.middleware.cors import CORSHeaderMiddleware

__all__ = [
    "CORSHeaderMiddleware",
]
