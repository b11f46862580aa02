"""
asgi.py -- Application assembly for the DealFlow auth service.

The CRM front end is served separately; this module only exposes the API app
so process managers have one stable import path.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
