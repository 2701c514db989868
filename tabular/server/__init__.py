"""HTTP API for the shared list.

Serves the list and accepts add/delete/move requests using FastAPI.
"""

from .app import create_app

__all__ = ["create_app"]
