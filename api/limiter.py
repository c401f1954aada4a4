"""
api/limiter.py -- The one slowapi Limiter for the Gruff API.

api/main.py mounts it as app.state.limiter for SlowAPIMiddleware, and
api/routes/v1/auth.py decorates the login route with @limiter.limit().
Both must hold this same object: a second Limiter would keep its own
counters and the login limit would never trip.

Keyed by client IP. Counters live in process memory, so each worker
enforces its own limit.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
