"""
asgi.py -- ASGI entry point for DashGate.

api/main.py builds the complete application (JSON API only; the HTML
frontend is served separately). This module exists so process managers have
one stable import path.

Run with:  uvicorn asgi:app
           python main.py serve
"""

from api.main import app

__all__ = ["app"]
