"""
Shared rate limiter.

Set ENV=TEST or DISABLE_RATE_LIMITS=1 to disable limits, so tests run
without tripping them.
"""

import os
import uuid

from slowapi import Limiter
from slowapi.util import get_remote_address


def get_limiter() -> Limiter:
    disable_limits = (
        os.environ.get("ENV") == "TEST" or os.environ.get("DISABLE_RATE_LIMITS") == "1"
    )
    if disable_limits:
        return Limiter(key_func=lambda: str(uuid.uuid4()), enabled=False)
    return Limiter(key_func=get_remote_address)


limiter = get_limiter()
