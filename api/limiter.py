"""
api/limiter.py -- The process-wide slowapi Limiter.

api/main.py mounts it (SlowAPIMiddleware + app.state.limiter); the signup and
login routes in api/routes/v1/auth.py decorate themselves with it. Counters are
keyed by client IP and held in memory, so every route must share this one
instance. Tests call limiter.reset() between modules.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
