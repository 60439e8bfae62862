"""HTTP API for the settlement service."""
from .main import create_app

__all__ = ["create_app"]
