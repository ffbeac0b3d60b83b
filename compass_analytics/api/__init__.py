"""HTTP surface for cache management."""

from .cache import create_app, router

__all__ = ["create_app", "router"]
