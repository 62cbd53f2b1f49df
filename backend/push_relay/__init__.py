# backend/push_relay/__init__.py
"""
GCM push relay backend package.

This package contains:
- main: FastAPI application entrypoint
- gcm: multicast delivery to the GCM HTTP endpoint with retry/backoff
- utils: shared helpers (environment variables)
"""
