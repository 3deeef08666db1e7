"""
exam_engine/limiter.py
Shared slowapi limiter for mutating routes.
"""
from slowapi import Limiter
from slowapi.util import get_remote_address

from exam_engine.config.settings import settings

limiter = Limiter(
    key_func=get_remote_address,
    enabled=settings.FEATURE_RATE_LIMIT,
)
