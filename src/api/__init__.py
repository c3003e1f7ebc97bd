"""
Credits API Module

FastAPI server exposing:
- Anonymous sessions
- Balances and metered spends
- Lightning top-ups and the gateway webhook
- Reconciliation trigger for an external scheduler
"""

from .server import app, create_app, get_service

__all__ = ["app", "create_app", "get_service"]
