"""
CardStream Deployment

HTTP API for embedding the widget.
"""

from .api import create_fastapi_app

__all__ = ["create_fastapi_app"]
