"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in api/main.py (to mount as middleware) and in route modules that
need a tighter per-route limit (@limiter.limit()).

Using a single shared instance ensures all routes share the same in-memory
counter store. The limiting algorithm itself is slowapi's; Tokenward only
supplies the limits (LIMITER_RATE / LIMITER_BURST_RATE) and the on/off switch
(LIMITER_ENABLED).
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

_settings = get_settings()

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[_settings.limiter_rate, _settings.limiter_burst_rate],
    enabled=_settings.limiter_enabled,
    storage_uri="memory://",
)
