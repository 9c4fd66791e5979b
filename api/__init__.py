"""API Package.

FastAPI server for the storefront sync engine.
"""

from api.server import create_app, app

__all__ = [
    "create_app",
    "app",
]
