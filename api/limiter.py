"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in api/main.py (to mount as middleware) and in the route modules
(to apply per-route limits with @limiter.limit()).

Using a single shared instance ensures all routes share the same in-memory
counter store. If this were instantiated in each module separately, each
module would get its own isolated counter and rate limits would never trigger.

Limits are keyed by client IP. The per-route limit strings come from
core.config.Settings so deployments can tune them without code changes.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

_settings = get_settings()

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")

REGISTER_LIMIT = _settings.register_rate_limit
LOGIN_LIMIT = _settings.login_rate_limit
FORGOT_PASSWORD_LIMIT = _settings.forgot_password_rate_limit
RESET_PASSWORD_LIMIT = _settings.reset_password_rate_limit
CONTACT_LIMIT = _settings.contact_rate_limit
