"""Shared HTTP plumbing for adapters that talk to the host application."""
from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

import httpx

from inboxguard.adapters.base import ChannelAdapter
from inboxguard.services.errors import ChannelError

logger = logging.getLogger(__name__)

DEFAULT_HOST_URL = "http://localhost:3000"
DEFAULT_TIMEOUT_SEC = 20.0


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not str(raw).strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Ignoring non-numeric {name}={raw!r}, using {default}")
        return default


class HostHTTPAdapter(ChannelAdapter):
    """
    Base for the email and calls adapters.

    Args:
        tenant_id: Organization the adapter acts for (sent as X-Org-Id).
        base_url: Host application root. Defaults to INBOXGUARD_HOST_URL.
        token: Bearer token. Defaults to INBOXGUARD_HOST_TOKEN.
        timeout: Request timeout in seconds. Defaults to INBOXGUARD_HTTP_TIMEOUT_SEC.
        transport: Optional httpx transport (tests pass httpx.MockTransport).
    """

    def __init__(
        self,
        tenant_id: str,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(tenant_id)
        self.base_url = (base_url or os.getenv("INBOXGUARD_HOST_URL") or DEFAULT_HOST_URL).rstrip("/")
        self.token = token if token is not None else os.getenv("INBOXGUARD_HOST_TOKEN", "")
        self.timeout = timeout if timeout is not None else _env_float("INBOXGUARD_HTTP_TIMEOUT_SEC", DEFAULT_TIMEOUT_SEC)
        self._transport = transport

        self.headers = {
            "Content-Type": "application/json",
            "X-Org-Id": tenant_id,
        }
        if self.token:
            self.headers["Authorization"] = f"Bearer {self.token}"

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Send one request; non-2xx and `ok: false` bodies raise ChannelError."""
        channel = self.channel.value
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.request(
                    method,
                    f"{self.base_url}{path}",
                    headers=self.headers,
                    params=params,
                    json=json,
                )
        except httpx.TimeoutException as exc:
            raise ChannelError(channel, "The host did not respond in time") from exc
        except httpx.HTTPError as exc:
            raise ChannelError(channel, "Could not reach the host application") from exc

        try:
            data = response.json()
        except ValueError:
            data = None

        if response.status_code >= 400:
            error = data.get("error") if isinstance(data, dict) else None
            logger.warning(f"{channel} {method} {path} -> {response.status_code}: {error}")
            raise ChannelError(channel, str(error or f"HTTP {response.status_code}"), status_code=response.status_code)
        if not isinstance(data, dict):
            raise ChannelError(channel, "Unexpected response from the host", status_code=response.status_code)
        if data.get("ok") is False:
            raise ChannelError(channel, str(data.get("error") or "Request failed"), status_code=response.status_code)
        return data


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def _snake(name: str) -> str:
    return "".join(f"_{c.lower()}" if c.isupper() else c for c in name).lstrip("_")


def to_camel_keys(data: Dict[str, Any]) -> Dict[str, Any]:
    return {_camel(key): value for key, value in data.items()}


def to_snake_keys(data: Dict[str, Any]) -> Dict[str, Any]:
    return {_snake(key): value for key, value in data.items()}
