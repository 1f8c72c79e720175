"""
Netyora Chat - Middleware Package
"""
from .rate_limit import (
    limiter,
    RateLimits,
    rate_limit_exceeded_handler,
    get_user_identifier,
)

__all__ = [
    'limiter',
    'RateLimits',
    'rate_limit_exceeded_handler',
    'get_user_identifier',
]
