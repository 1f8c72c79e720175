"""
Netyora Chat API Routers
"""
from .chat import router as chat_router, swap_router
from .chat_realtime import router as chat_realtime_router
from .health import router as health_router

__all__ = [
    "chat_router",
    "swap_router",
    "chat_realtime_router",
    "health_router",
]
