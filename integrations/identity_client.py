"""
Netyora Chat - Identity Directory Client
Looks up user profiles on the identity service (existence, display name, avatar)
"""

import time
from collections import OrderedDict
from typing import Any, Dict, Optional, Tuple

import httpx

from core.config import settings
from core.errors import UpstreamError
from core.logging import get_logger

logger = get_logger("netyora.chat.identity")


class IdentityClient:
    """
    Read-only user directory.

    Profiles are cached in memory for a short time; chat creation looks up
    the same peers repeatedly.
    """

    CACHE_TTL_SECONDS = 60.0
    CACHE_MAX_ENTRIES = 10000

    def __init__(self):
        self.base_url = settings.IDENTITY_SERVICE_URL.rstrip("/")
        self.timeout = 5.0
        # user_id -> (profile or None, expiry timestamp)
        self._cache: "OrderedDict[str, Tuple[Optional[Dict[str, Any]], float]]" = OrderedDict()

    def clear_cache(self):
        self._cache.clear()

    def _remember(self, user_id: str, profile: Optional[Dict[str, Any]]):
        now = time.monotonic()
        self._cache[user_id] = (profile, now + self.CACHE_TTL_SECONDS)
        self._cache.move_to_end(user_id)
        if len(self._cache) <= self.CACHE_MAX_ENTRIES:
            return
        # Entries are kept in insertion order, so expired ones sit at the front
        while self._cache:
            oldest_id, (_, expires_at) = next(iter(self._cache.items()))
            if expires_at > now and len(self._cache) <= self.CACHE_MAX_ENTRIES:
                break
            del self._cache[oldest_id]

    @staticmethod
    def _normalize(user_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        display_name = (
            data.get("displayName")
            or " ".join(p for p in (data.get("firstName"), data.get("lastName")) if p)
            or data.get("username")
            or "User"
        )
        return {
            "id": str(data.get("id") or data.get("_id") or user_id),
            "displayName": display_name,
            "avatarUrl": data.get("avatarUrl") or data.get("avatar"),
        }

    async def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        """
        Fetch a user profile.

        Returns:
            {id, displayName, avatarUrl} or None when the user does not exist

        Raises:
            UpstreamError: the identity service could not be reached
        """
        user_id = str(user_id)
        cached = self._cache.get(user_id)
        if cached and cached[1] > time.monotonic():
            return cached[0]

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(f"{self.base_url}/api/users/{user_id}/profile")
        except httpx.HTTPError as e:
            logger.error(f"Identity lookup failed for {user_id}: {e}", action="identity_lookup_failed")
            raise UpstreamError("Identity service unavailable", service="identity") from e

        if response.status_code == 404:
            profile = None
        elif response.status_code >= 400:
            raise UpstreamError(
                f"Identity service returned {response.status_code}",
                service="identity",
            )
        else:
            profile = self._normalize(user_id, response.json())

        self._remember(user_id, profile)
        return profile


# Singleton instance
identity_client = IdentityClient()
