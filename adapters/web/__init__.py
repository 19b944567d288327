"""
FastAPI surface: status, server-sent event streams and the push socket.
"""

from .app import create_app

__all__ = ["create_app"]
