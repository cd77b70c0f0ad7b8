# watercan/ratelimit.py
"""
Shared slowapi limiter.

Routes decorate with ``@limiter.limit(...)`` and must accept a
``request: Request`` parameter. Limits are keyed by client address.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address)
