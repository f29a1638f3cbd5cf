"""Client for the notification endpoint that sends alert emails/SMS."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Mapping

import httpx
import requests

from .models.alerts import AlertRule

logger = logging.getLogger(__name__)

PROCESS_ALERTS_PATH = "/process-alerts"
SECURE_TOKEN_URL = "https://securetoken.googleapis.com/v1/token"
_TOKEN_REFRESH_MARGIN_S = 5 * 60


class TokenProvider:
    async def get_token(self) -> str:
        raise NotImplementedError


class StaticTokenProvider(TokenProvider):
    def __init__(self, token: str) -> None:
        self._token = token

    async def get_token(self) -> str:
        if not self._token:
            raise RuntimeError("No API token configured")
        return self._token


class FirebaseTokenProvider(TokenProvider):
    """Exchange a Firebase refresh token for short-lived ID tokens."""

    def __init__(self, api_key: str, refresh_token: str, timeout_s: float = 10.0) -> None:
        self.api_key = api_key
        self.refresh_token = refresh_token
        self.timeout_s = timeout_s
        self._lock = threading.Lock()
        self._id_token: str | None = None
        self._expires_at = 0.0

    def _exchange(self) -> str:
        with self._lock:
            if self._id_token and time.time() < self._expires_at:
                return self._id_token
            resp = requests.post(
                SECURE_TOKEN_URL,
                params={"key": self.api_key},
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": self.refresh_token,
                },
                timeout=self.timeout_s,
            )
            if not resp.ok:
                snippet = resp.text[:300].replace("\n", " ")
                raise RuntimeError(f"Token refresh HTTP {resp.status_code}: {snippet}")
            payload = resp.json()
            token = payload.get("id_token")
            if not token:
                raise RuntimeError("Token refresh response has no id_token")
            try:
                expires_in = float(payload.get("expires_in") or 3600)
            except (TypeError, ValueError):
                expires_in = 3600.0
            # Refresh tokens may be rotated by the server.
            self.refresh_token = payload.get("refresh_token") or self.refresh_token
            self._id_token = token
            self._expires_at = time.time() + max(0.0, expires_in - _TOKEN_REFRESH_MARGIN_S)
            return token

    async def get_token(self) -> str:
        return await asyncio.to_thread(self._exchange)


@dataclass
class DispatchResult:
    ok: bool
    status_code: int | None = None
    error: str | None = None


def build_payload(
    rule: AlertRule,
    current_value: float,
    device_id: str,
    sensor_data: Mapping[str, Any] | None,
) -> dict[str, Any]:
    data = dict(sensor_data or {})
    data[rule.parameter] = current_value
    return {
        "sensorData": data,
        "deviceId": device_id,
        "alert": rule.to_wire(),
    }


class NotificationDispatcher:
    """POST accepted triggers to ``{base_url}/process-alerts``.

    Failures are logged and reported through ``DispatchResult``; nothing is
    raised to the caller and nothing is retried.
    """

    def __init__(
        self,
        base_url: str,
        token_provider: TokenProvider,
        timeout_s: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = f"{base_url.rstrip('/')}{PROCESS_ALERTS_PATH}"
        self.token_provider = token_provider
        self.timeout_s = timeout_s
        self._transport = transport

    async def dispatch(
        self,
        rule: AlertRule,
        current_value: float,
        device_id: str,
        sensor_data: Mapping[str, Any] | None = None,
    ) -> DispatchResult:
        try:
            token = await self.token_provider.get_token()
        except Exception as exc:
            logger.error("Could not obtain API token for alert %s: %s", rule.id, exc)
            return DispatchResult(ok=False, error=f"token error: {exc}")

        payload = build_payload(rule, current_value, device_id, sensor_data)
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {token}",
        }
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_s, transport=self._transport
            ) as client:
                response = await client.post(self.url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            logger.error("Alert dispatch for %s failed: %s", rule.id, exc)
            return DispatchResult(ok=False, error=str(exc) or exc.__class__.__name__)

        if not response.is_success:
            snippet = response.text[:300].replace("\n", " ")
            logger.error(
                "Alert dispatch for %s rejected: HTTP %s %s",
                rule.id,
                response.status_code,
                snippet,
            )
            return DispatchResult(
                ok=False,
                status_code=response.status_code,
                error=f"HTTP {response.status_code}",
            )

        logger.info(
            "Alert %s dispatched via %s to %s",
            rule.id,
            rule.contact.type,
            rule.contact.value,
        )
        return DispatchResult(ok=True, status_code=response.status_code)
