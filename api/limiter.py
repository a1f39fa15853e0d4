"""
api/limiter.py -- Shared slowapi rate limiter for form login.

POST /login is where passwords get guessed, so it is the rate-limited route:
web/routes.py applies LOGIN_RATE_LIMIT to it with @limiter.limit(), and
api/main.py attaches the limiter to app.state and mounts SlowAPIMiddleware.

Counters are keyed by client address and kept in process memory. With
several workers each one enforces the limit on its own.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
