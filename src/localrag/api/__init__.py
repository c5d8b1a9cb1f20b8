"""HTTP API for localrag."""

from .app import AppDependencies, create_app

__all__ = ["AppDependencies", "create_app"]
