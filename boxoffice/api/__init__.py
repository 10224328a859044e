"""HTTP API for box office payments."""
from .main import create_app

__all__ = ["create_app"]
