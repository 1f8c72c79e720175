"""
Netyora Chat - Structured Logging Configuration
"""
import logging
import sys
import json
from datetime import datetime
from fastapi import Request
import traceback

# Record attributes lifted to the top level of a JSON log line
LIFTED_FIELDS = ("user_id", "chat_id", "request_id", "action", "duration_ms", "status_code")


class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging"""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for key in LIFTED_FIELDS:
            if hasattr(record, key):
                log_data[key] = getattr(record, key)
        if hasattr(record, "extra_data"):
            log_data["extra"] = record.extra_data

        if record.exc_info:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info)
            }

        return json.dumps(log_data, default=str)


class ChatLogger:
    """Logger wrapper that turns keyword arguments into structured fields"""

    def __init__(self, name: str = "netyora.chat"):
        self.logger = logging.getLogger(name)

    def _log(self, level: int, message: str, exc_info: bool = False, **kwargs):
        extra = {}
        for key in LIFTED_FIELDS:
            if key in kwargs:
                extra[key] = kwargs.pop(key)
        if kwargs:
            extra["extra_data"] = kwargs

        self.logger.log(level, message, extra=extra, exc_info=exc_info)

    def debug(self, message: str, **kwargs):
        self._log(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs):
        self._log(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        self._log(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs):
        self._log(logging.ERROR, message, **kwargs)

    def critical(self, message: str, **kwargs):
        self._log(logging.CRITICAL, message, **kwargs)

    def exception(self, message: str, **kwargs):
        """Log exception with traceback"""
        self._log(logging.ERROR, message, exc_info=True, **kwargs)


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: str = None
):
    """
    Configure logging for the application

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON format for structured logging
        log_file: Optional file path to write logs
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    root_logger.handlers = []

    if json_format:
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, level.upper()))
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(getattr(logging, level.upper()))
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    # Third-party noise
    logging.getLogger("uvicorn").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    logging.getLogger("botocore").setLevel(logging.WARNING)


def get_logger(name: str = "netyora.chat") -> ChatLogger:
    """Get a chat logger instance"""
    return ChatLogger(name)


async def log_request(request: Request, response_status: int, duration_ms: float, user_id: str = None):
    """Log API request"""
    logger = get_logger("netyora.chat.api")
    logger.info(
        f"{request.method} {request.url.path}",
        user_id=user_id,
        status_code=response_status,
        duration_ms=round(duration_ms, 2),
        request_id=request.headers.get("X-Request-ID"),
        action=f"api_{request.method.lower()}",
        client_ip=request.client.host if request.client else None,
        user_agent=request.headers.get("User-Agent", "")[:100]
    )


def log_security_event(
    event: str,
    user_id: str = None,
    ip_address: str = None,
    success: bool = True,
    **extra
):
    """Log authentication related events"""
    logger = get_logger("netyora.chat.security")
    log_func = logger.info if success else logger.warning
    log_func(
        f"Security event: {event}",
        user_id=user_id,
        action=f"security_{event}",
        ip_address=ip_address,
        success=success,
        **extra
    )
