"""
Outbound calls to the WhatsApp gateway's REST API.

Retries on transient HTTP errors (408, 429, 500, 502, 503, 504) and
transport errors through the shared RetryPolicy. Anything still failing
surfaces as GatewayError.
"""

import logging
from typing import Any, Optional

import httpx

from crm_bridge.errors import GatewayError
from crm_bridge.retry import RetryPolicy, retry_async

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}


def _is_transient(error: BaseException) -> bool:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in RETRYABLE_STATUS_CODES
    return isinstance(error, httpx.TransportError)


class GatewayClient:
    """Thin async client; one instance per process, closed on shutdown."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        retry_policy: Optional[RetryPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["apikey"] = api_key
        self.retry_policy = retry_policy or RetryPolicy()
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, json: Optional[dict] = None) -> Any:
        async def call() -> Any:
            response = await self._client.request(method, path, json=json)
            response.raise_for_status()
            return response.json() if response.content else None

        try:
            return await retry_async(call, self.retry_policy, _is_transient, label=f"{method} {path}")
        except httpx.HTTPStatusError as e:
            logger.error(f"Gateway {method} {path} failed: HTTP {e.response.status_code}")
            raise GatewayError(
                f"gateway returned HTTP {e.response.status_code} for {method} {path}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            logger.error(f"Gateway {method} {path} failed: {type(e).__name__}")
            raise GatewayError(f"gateway unreachable for {method} {path}: {type(e).__name__}") from e

    async def create_instance(
        self,
        name: str,
        webhook_url: Optional[str] = None,
        events: Optional[list[str]] = None,
    ) -> Any:
        body: dict[str, Any] = {"instanceName": name, "qrcode": True, "integration": "WHATSAPP-BAILEYS"}
        if webhook_url:
            body["webhook"] = {"url": webhook_url, "events": events or [], "byEvents": False}
        return await self._request("POST", "/instance/create", body)

    async def set_webhook(self, name: str, url: str, events: Optional[list[str]] = None) -> Any:
        body = {"webhook": {"enabled": True, "url": url, "events": events or [], "byEvents": False}}
        return await self._request("POST", f"/webhook/set/{name}", body)

    async def connection_state(self, name: str) -> Optional[str]:
        result = await self._request("GET", f"/instance/connectionState/{name}")
        if isinstance(result, dict):
            return (result.get("instance") or result).get("state")
        return None

    async def send_text(self, name: str, number: str, text: str) -> Any:
        return await self._request("POST", f"/message/sendText/{name}", {"number": number, "text": text})
