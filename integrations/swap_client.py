"""
Netyora Chat - Swap Directory Client
Read-only lookup of the two users taking part in a skill swap
"""

from typing import Tuple

import httpx

from core.config import settings
from core.errors import NotFoundError, UpstreamError
from core.logging import get_logger

logger = get_logger("netyora.chat.swap")


class SwapClient:
    def __init__(self):
        self.base_url = settings.SWAP_SERVICE_URL.rstrip("/")
        self.timeout = 5.0

    async def get_parties(self, swap_id: str) -> Tuple[str, str]:
        """
        Resolve a swap to its (requester, provider) user ids.

        Raises:
            NotFoundError: unknown swap
            UpstreamError: swap service failed
        """
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(f"{self.base_url}/api/swaps/{swap_id}")
        except httpx.HTTPError as e:
            logger.error(f"Swap lookup failed for {swap_id}: {e}", action="swap_lookup_failed")
            raise UpstreamError("Swap service unavailable", service="swap") from e

        if response.status_code == 404:
            raise NotFoundError("Swap not found")
        if response.status_code >= 400:
            raise UpstreamError(f"Swap service returned {response.status_code}", service="swap")

        data = response.json()
        requester = data.get("requester") or data.get("requesterId")
        provider = data.get("provider") or data.get("providerId")
        if not requester or not provider:
            raise UpstreamError("Swap record is missing its parties", service="swap")
        return str(requester), str(provider)


# Singleton instance
swap_client = SwapClient()
