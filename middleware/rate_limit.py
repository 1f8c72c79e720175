"""
Netyora Chat - Rate Limiting Middleware
Protects chat endpoints from abuse using per-user rate limits
"""
from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from fastapi import Request, Response
from fastapi.responses import JSONResponse
import jwt
from core.config import settings
from core.logging import get_logger

logger = get_logger("netyora.chat.rate_limit")


def get_user_identifier(request: Request) -> str:
    """
    Get unique identifier for rate limiting.
    Uses the user id from the bearer token if present, otherwise IP address.
    """
    auth_header = request.headers.get('Authorization', '')
    if auth_header.startswith('Bearer '):
        token = auth_header[7:]
        try:
            # Signature is checked by the route, only the subject matters here
            payload = jwt.decode(token, options={"verify_signature": False})
            user_id = payload.get('sub') or payload.get('user_id') or payload.get('id')
            if user_id:
                return f"user:{user_id}"
        except jwt.PyJWTError:
            pass

    return f"ip:{get_remote_address(request)}"


limiter = Limiter(
    key_func=get_user_identifier,
    storage_uri=settings.REDIS_URL or "memory://",
    strategy="fixed-window",
    default_limits=[],
)
logger.info(
    "Rate limiter initialized with Redis backend" if settings.REDIS_URL
    else "Rate limiter initialized in memory",
    action="rate_limit_init",
)


# ===========================================
# Rate Limit Configurations
# ===========================================

class RateLimits:
    """Rate limit configurations for the chat endpoints."""

    CHAT_SEND = "60/minute"
    FILE_UPLOAD = "20/minute"
    FILE_DOWNLOAD = "30/minute"
    CHAT_CREATE = "20/minute"

    # General API
    DEFAULT = "120/minute"


# ===========================================
# Rate Limit Error Handler
# ===========================================

async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> Response:
    """Handle rate limit exceeded errors."""
    identifier = get_user_identifier(request)
    logger.warning(
        f"Rate limit exceeded for {identifier} on {request.url.path}",
        action="rate_limit_exceeded",
        path=request.url.path,
        identifier=identifier,
        limit=str(exc.detail),
    )

    retry_after = getattr(exc, 'retry_after', 60)

    return JSONResponse(
        status_code=429,
        content={
            "error": "rate_limit_exceeded",
            "message": f"Too many requests. Please try again in {retry_after} seconds.",
            "retry_after": retry_after,
            "detail": str(exc.detail),
        },
        headers={
            "Retry-After": str(retry_after),
            "X-RateLimit-Limit": str(exc.detail),
        },
    )

