"""
Netyora Chat - Video Token Issuer
Issues per-user, per-room, time-bounded tokens for video sessions
"""
import time
from typing import Any, Dict

import httpx
import jwt

from core.config import settings
from core.errors import UpstreamError
from core.logging import get_logger

logger = get_logger("netyora.chat.video_token")


class VideoTokenService:
    """
    Signs tokens locally with VIDEO_SERVER_SECRET, or asks the remote
    issuer at VIDEO_TOKEN_URL when one is configured.
    """

    def __init__(self):
        self.app_id = settings.VIDEO_APP_ID
        self.server_secret = settings.VIDEO_SERVER_SECRET
        self.remote_url = settings.VIDEO_TOKEN_URL

    def create_token(self, user_id: str, room_id: str, ttl_seconds: int) -> str:
        """Create a signed room token for a participant"""
        if not self.server_secret:
            raise UpstreamError("Video token issuer is not configured", service="video_token")

        now = int(time.time())
        payload = {
            "iss": self.app_id,
            "sub": user_id,
            "nbf": now,
            "exp": now + ttl_seconds,
            "video": {
                "room": room_id,
                "roomJoin": True,
                "canPublish": True,
                "canSubscribe": True,
            },
        }
        return jwt.encode(payload, self.server_secret, algorithm="HS256")

    async def _request_remote(self, user_id: str, room_id: str, ttl_seconds: int) -> str:
        try:
            async with httpx.AsyncClient(timeout=settings.VIDEO_TOKEN_TIMEOUT_SECONDS) as client:
                response = await client.post(
                    self.remote_url,
                    json={"userID": user_id, "roomID": room_id, "ttl": ttl_seconds},
                )
        except httpx.HTTPError as e:
            raise UpstreamError("Video token request failed", service="video_token") from e

        if response.status_code >= 400:
            raise UpstreamError(
                f"Video token issuer returned {response.status_code}",
                service="video_token",
            )
        token = response.json().get("token")
        if not token:
            raise UpstreamError("Video token issuer returned no token", service="video_token")
        return token

    async def issue(self, user_id: str, room_id: str, ttl_seconds: int = None) -> Dict[str, Any]:
        """
        Issue a token for (user, room).

        Returns:
            {"token", "appID", "userID", "roomID", "expiresIn"}
        """
        ttl_seconds = ttl_seconds or settings.VIDEO_TOKEN_TTL_SECONDS
        if self.remote_url:
            token = await self._request_remote(user_id, room_id, ttl_seconds)
        else:
            token = self.create_token(user_id, room_id, ttl_seconds)

        logger.info(
            f"Issued video token for room {room_id}",
            action="video_token_issued",
            user_id=user_id,
            room_id=room_id,
        )
        return {
            "token": token,
            "appID": self.app_id,
            "userID": user_id,
            "roomID": room_id,
            "expiresIn": ttl_seconds,
        }

    def get_join_url(self, room_id: str) -> str:
        """Frontend url of a video room"""
        return f"{settings.FRONTEND_URL.rstrip('/')}/video-session/{room_id}"


# Singleton instance
video_token_service = VideoTokenService()
