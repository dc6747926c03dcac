"""API package for Sellibra."""

from sellibra.api.app import create_app
from sellibra.api.routes import router

__all__ = ["create_app", "router"]
