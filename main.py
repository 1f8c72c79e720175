"""
Netyora Chat - Realtime Chat & Ephemeral Attachments
Chats | Messages | Attachments | Presence | Video invitations
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import os
import time
from dotenv import load_dotenv
from slowapi.errors import RateLimitExceeded

load_dotenv()

# Setup structured logging
from core.logging import setup_logging, get_logger, log_request

setup_logging(
    level=os.getenv("LOG_LEVEL", "INFO"),
    json_format=os.getenv("LOG_FORMAT", "json") == "json"
)

logger = get_logger("netyora.chat.main")

from core.config import settings
from core.errors import ChatError, InvalidArgumentError
from core.sentry import init_sentry, capture_exception
from middleware.rate_limit import limiter, rate_limit_exceeded_handler
from services.chat_service import chat_service
from services.presence_service import presence_registry
from services.realtime_gateway import realtime_gateway
from services.attachment_scheduler import attachment_scheduler
from api import chat_router, swap_router, chat_realtime_router, health_router

init_sentry()

# Persisted chat changes and presence transitions fan out through the gateway
chat_service.add_listener(realtime_gateway.handle_chat_event)
presence_registry.add_listener(realtime_gateway.handle_presence_event)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Netyora Chat starting...", action="app_startup")
    await realtime_gateway.start_bus()
    if not settings.TESTING:
        attachment_scheduler.initialize()
    yield
    attachment_scheduler.shutdown()
    await realtime_gateway.stop_bus()
    logger.info("Netyora Chat shutting down...", action="app_shutdown")

app = FastAPI(
    title="Netyora Chat",
    description="Realtime chat with ephemeral attachments, presence and video invitations",
    version="1.0.0",
    lifespan=lifespan
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    if exc.status_code >= 500:
        logger.error(
            f"{exc.code}: {exc.message}",
            action="request_failed",
            path=request.url.path,
            status_code=exc.status_code,
        )
        capture_exception(exc)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Malformed requests answer 400 invalid_argument, like every other bad input"""
    problems = [
        f"{'.'.join(str(part) for part in err.get('loc', ())[1:]) or 'body'}: {err.get('msg')}"
        for err in exc.errors()
    ]
    error = InvalidArgumentError("; ".join(problems) or None)
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


# Request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()

    if request.url.path == "/health":
        return await call_next(request)

    response = await call_next(request)

    duration_ms = (time.time() - start_time) * 1000

    # Log API requests
    if request.url.path.startswith("/api/"):
        await log_request(
            request=request,
            response_status=response.status_code,
            duration_ms=duration_ms
        )

    return response


@app.get("/health")
async def health():
    return {"status": "healthy", "service": "netyora-chat"}


@app.get("/api/v1")
async def api_info():
    return {
        "version": "v1",
        "endpoints": {
            "chat": "/api/v1/chat",
            "swap": "/api/v1/swap",
            "realtime": "/api/v1/chat/ws",
            "health": "/api/v1/health"
        }
    }


app.include_router(health_router, prefix="/api/v1")
app.include_router(chat_realtime_router, prefix="/api/v1")
app.include_router(chat_router, prefix="/api/v1")
app.include_router(swap_router, prefix="/api/v1")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
