"""
asgi.py -- ASGI entry point for VPNWarden.

Kept separate from api/main.py so process managers have one stable import
path regardless of how the API package is organised.

Run with:  uvicorn asgi:app
"""

from api.main import app

__all__ = ["app"]
