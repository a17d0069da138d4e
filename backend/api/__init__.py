# api/__init__.py
"""
HTTP surface: chat ingress, Midtrans webhook, operator endpoints.
"""

from api.server import create_app, main

__all__ = ["create_app", "main"]
