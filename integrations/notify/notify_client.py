"""
Netyora Notify Client
=====================

Notification Sink for the chat subsystem. Accepts bulk notification
records ({user, type, sender, context, action, metadata}) and forwards
them to the platform notification service.

Failures are logged and reported in the returned dict; they never raise,
so a notification problem can not fail the chat command that caused it.
"""

import httpx
from typing import Dict, Any, List, Optional

from core.config import settings
from core.logging import get_logger

logger = get_logger("netyora.chat.notify")


class NotifyClient:
    """
    Client for the notification service.

    Used for:
    - File / image shared notifications
    - File / image deleted notifications (manual delete and expiry sweep)
    - Video invitation lifecycle notifications
    """

    def __init__(self):
        self.notify_url = settings.NOTIFY_SERVICE_URL.rstrip("/")
        self.api_key = settings.NOTIFY_API_KEY
        self.timeout = settings.NOTIFY_TIMEOUT

    def _headers(self) -> Dict[str, str]:
        """Get request headers with X-API-Key authentication"""
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        return headers

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        json_data: Optional[Dict] = None
    ) -> Dict[str, Any]:
        """Make HTTP request to Notify service"""
        full_url = f"{self.notify_url}{endpoint}"

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                if method == "POST":
                    response = await client.post(full_url, json=json_data, headers=self._headers())
                elif method == "GET":
                    response = await client.get(full_url, headers=self._headers())
                else:
                    raise ValueError(f"Unsupported method: {method}")

                if response.status_code >= 400:
                    logger.error(
                        f"Notify request failed: {response.status_code}",
                        action="notify_failed",
                        status_code=response.status_code,
                        endpoint=endpoint,
                    )
                    return {"error": response.text, "status_code": response.status_code}

                return response.json()

        except httpx.TimeoutException:
            logger.error(f"Notify request timeout: {endpoint}", action="notify_timeout")
            return {"error": "Request timeout"}
        except httpx.ConnectError as e:
            logger.error(f"Notify service unavailable: {self.notify_url} - {e}", action="notify_unavailable")
            return {"error": "Service unavailable"}
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Notify request error: {e}", action="notify_failed")
            return {"error": str(e)}

    async def send_bulk(self, records: List[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Deliver a batch of notification records.

        Args:
            records: Notification records, one per recipient

        Returns:
            Service response, or a dict with an "error" key
        """
        if not records:
            return {"created": 0}

        result = await self._make_request(
            "POST",
            "/api/v1/notifications/bulk",
            {"notifications": records},
        )
        if "error" not in result:
            logger.info(
                f"Delivered {len(records)} notifications",
                action="notify_bulk",
                count=len(records),
                types=sorted({r.get("type") for r in records}),
            )
        return result


# Singleton instance
notify_client = NotifyClient()
