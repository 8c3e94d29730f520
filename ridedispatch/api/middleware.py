"""Rate limiting shared by every router."""

from slowapi import Limiter
from slowapi.util import get_remote_address

from ridedispatch.config import settings

RATE_LIMIT = settings.rate_limit

limiter = Limiter(key_func=get_remote_address)
