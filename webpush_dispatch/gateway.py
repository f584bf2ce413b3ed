"""HTTP client for the push gateway that speaks the web push protocol."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp

from .logger import get_logger
from .models import PushTask, SendMessageResponse

JsonDict = Dict[str, Any]

SEND_WEB_PUSH_PATH = "webpush"


class GatewayError(RuntimeError):
    """Raised when the gateway call fails before a usable response is obtained."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


def build_send_request(task: PushTask, action_event_endpoints: Optional[Dict[str, Optional[str]]] = None) -> JsonDict:
    """Build the gateway request body for the single recipient of ``task``."""
    keys = task.subscription.keys
    return {
        "subscriptions": [
            {
                "endpoint": task.subscription.endpoint,
                "p256DH": keys.p256dh if keys else None,
                "auth": keys.auth if keys else None,
                "subscriptionExtraData": {
                    "clickedEventEndpoint": task.clicked_event_endpoint,
                    "receivedEventEndpoint": task.received_event_endpoint,
                    "actionEventEndpoints": action_event_endpoints or {},
                },
            }
        ],
        "notificationTitle": task.title,
        "notificationBody": task.body,
        "notificationOnClickLink": task.on_click_link,
        "imageUrl": task.image_url,
        "iconUrl": task.icon_url,
        "actions": [
            {"action": a.action, "title": a.title, "icon": a.icon, "link": a.link}
            for a in task.actions
        ],
    }


class PushGatewayClient:
    """POST notification requests to ``{push_api_url}/webpush``."""

    def __init__(self, push_api_url: str, timeout: float = 30.0, logger: logging.Logger | None = None):
        self.push_api_url = push_api_url
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.logger = logger or get_logger("PushGateway")

    def _endpoint(self, suffix: str) -> str:
        base = self.push_api_url.rstrip("/")
        return f"{base}/{suffix.lstrip('/')}"

    async def send(self, payload: JsonDict) -> Optional[SendMessageResponse]:
        """Send one request and parse the gateway answer.

        Returns ``None`` when the gateway answers without a body. Transport
        errors, timeouts, non-2xx statuses and malformed bodies raise
        :class:`GatewayError`.
        """
        endpoint = self._endpoint(SEND_WEB_PUSH_PATH)
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(endpoint, json=payload) as resp:
                    if resp.status >= 400:
                        raise GatewayError(f"Push gateway answered HTTP {resp.status}", status=resp.status)
                    data = await resp.json(content_type=None)
        except GatewayError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise GatewayError(f"Push gateway request failed: {exc!r}") from exc
        except ValueError as exc:
            raise GatewayError("Push gateway returned a malformed body") from exc

        if data is None:
            return None
        try:
            return SendMessageResponse.model_validate(data)
        except ValueError as exc:
            raise GatewayError("Push gateway returned an unexpected body") from exc
