"""HTTP service for the playground gateway."""

from .app import create_app

__all__ = ["create_app"]
