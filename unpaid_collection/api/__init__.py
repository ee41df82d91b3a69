# api/__init__.py
from unpaid_collection.api.server import app, create_app

__all__ = ["app", "create_app"]
