"""ASGI middleware and request guards."""
