"""ASGI application, admission pipeline and process bootstrap."""
