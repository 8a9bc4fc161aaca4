"""
asgi.py -- ASGI entry point for SessionKit.

Run with:  uvicorn asgi:app --reload

Kept separate from api/main.py so deployment config (uvicorn/gunicorn
targets) does not change if the app is ever assembled from more routers.
"""

from api.main import app

__all__ = ["app"]
