from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from ..core.logger import get_logger
from ..core.store import Notification

log = get_logger(__name__)


class PushGatewayError(Exception):
    pass


class GatewayInitError(PushGatewayError):
    """Credentials could not be loaded, so nothing was sent."""


@dataclass
class DeliveryReport:
    success_count: int = 0
    failure_count: int = 0
    failed_tokens: List[str] = field(default_factory=list)

    @classmethod
    def all_failed(cls, tokens: List[str]) -> "DeliveryReport":
        return cls(success_count=0, failure_count=len(tokens), failed_tokens=list(tokens))


class PushGateway(ABC):
    """Anything able to deliver one notification to a batch of device tokens."""

    @abstractmethod
    async def send(self, notification: Notification) -> DeliveryReport:
        ...

    async def aclose(self) -> None:
        return None


class LoggingPushGateway(PushGateway):
    """Used when no push credentials are configured: logs and reports every token as failed."""

    def __init__(self, logger=None):
        self.logger = logger or log

    async def send(self, notification: Notification) -> DeliveryReport:
        self.logger.info(
            "[push disabled] notification %s title=%r to %d device(s)",
            notification.id,
            notification.title,
            len(notification.device_tokens),
        )
        return DeliveryReport.all_failed(notification.device_tokens)


def build_message(notification: Notification, token: str) -> Dict[str, Any]:
    """One gateway message per device token, with Android and APNs overrides."""
    data = dict(notification.data)
    return {
        "token": token,
        "notification": {
            "title": notification.title,
            "body": notification.body,
            "image": notification.image_url,
        },
        "android": {
            "priority": "high",
            "notification": {
                "title": notification.title,
                "body": notification.body,
                "image": notification.image_url,
            },
            "data": data,
        },
        "apns": {
            "headers": {"apns-priority": "10"},
            "payload": {
                "aps": {
                    "alert": {
                        "title": notification.title,
                        "body": notification.body,
                        "launch-image": notification.image_url,
                    },
                    "sound": "default",
                },
                "image-url": notification.image_url,
                "data": data,
            },
        },
        "fcm_options": {"analytics_label": notification.analytics_label},
        "data": data,
    }


class HttpPushGateway(PushGateway):
    """
    Posts one message per token to an HTTP push endpoint.

    The credential file is JSON: {"api_key": "...", "endpoint": "..."}.
    "endpoint" is optional and falls back to the configured gateway URL.
    Loading the file is the initialization step; any problem there raises
    GatewayInitError and the whole batch is abandoned by the caller.
    """

    def __init__(
        self,
        credentials_file: str,
        default_endpoint: str,
        timeout_seconds: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
        logger=None,
    ):
        self.credentials_file = credentials_file
        self.default_endpoint = default_endpoint
        self.timeout_seconds = timeout_seconds
        self.logger = logger or log
        self._client = client
        self._credentials: Optional[Dict[str, str]] = None

    def _load_credentials(self) -> Dict[str, str]:
        if self._credentials is not None:
            return self._credentials
        try:
            with open(self.credentials_file, encoding="utf-8") as fh:
                raw = json.load(fh)
        except (OSError, ValueError) as exc:
            raise GatewayInitError(
                f"cannot read push credentials {self.credentials_file!r}: {exc}"
            ) from exc
        if not isinstance(raw, dict) or not raw.get("api_key"):
            raise GatewayInitError(f"push credentials {self.credentials_file!r} have no api_key")
        self._credentials = raw
        return raw

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._client

    async def _send_one(
        self,
        client: httpx.AsyncClient,
        endpoint: str,
        headers: Dict[str, str],
        message: Dict[str, Any],
    ) -> bool:
        try:
            resp = await client.post(endpoint, json={"message": message}, headers=headers)
        except httpx.HTTPError as exc:
            self.logger.warning("Push to token %s… failed: %s", message["token"][:8], exc)
            return False
        except Exception:
            self.logger.exception("Unexpected error pushing to token %s…", message["token"][:8])
            return False
        if not resp.is_success:
            self.logger.warning(
                "Push to token %s… rejected: %s %s",
                message["token"][:8],
                resp.status_code,
                resp.text[:200],
            )
        return resp.is_success

    async def send(self, notification: Notification) -> DeliveryReport:
        creds = self._load_credentials()
        endpoint = creds.get("endpoint") or self.default_endpoint
        headers = {"Authorization": f"Bearer {creds['api_key']}"}
        client = self._get_client()

        tokens = notification.device_tokens
        results = await asyncio.gather(
            *(
                self._send_one(client, endpoint, headers, build_message(notification, t))
                for t in tokens
            )
        )

        report = DeliveryReport()
        for token, ok in zip(tokens, results):
            if ok:
                report.success_count += 1
            else:
                report.failure_count += 1
                report.failed_tokens.append(token)
        return report

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
