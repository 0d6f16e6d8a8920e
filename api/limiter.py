"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and
api/routes/v1/auth.py (to apply per-route limits with @limiter.limit()).

Using a single shared instance ensures all routes share the same in-memory
counter store. If this were instantiated in each module separately, each
module would get its own isolated counter and rate limits would never trigger.

default_limits applies API_RATE_LIMIT to every route; credential endpoints
add the stricter AUTH_RATE_LIMIT on top. RATE_LIMIT_ENABLED=false turns the
whole thing off (the test-suite does this).
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

_settings = get_settings()

limiter = Limiter(
    key_func=get_remote_address,
    storage_uri="memory://",
    default_limits=[_settings.api_rate_limit],
    enabled=_settings.rate_limit_enabled,
)

AUTH_RATE_LIMIT = _settings.auth_rate_limit
