"""
asgi.py -- Application assembly for smer-auth.

The ASGI entry point for servers. api/main.py builds the app; this file is
the stable import path deployment configs point at.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
