"""HTTP API for the region capture engine."""

from .server import create_app

__all__ = ["create_app"]
