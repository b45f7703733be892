"""Authentication and session service of the online testing platform."""

from .app import create_app

__all__ = ["create_app"]
