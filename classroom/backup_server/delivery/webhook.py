"""
Webhook delivery channel.

Uploads the snapshot as multipart/form-data (single field "file") to
BACKUP_WEBHOOK_URL, with an optional bearer token.

Invariants:
    - Missing URL means SKIPPED, even when the channel was requested
    - Only a 2xx response counts as success
    - Every request carries an explicit timeout
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

import httpx

from ..config import WebhookConfig
from ..errors import DeliveryChannelError
from ..snapshot import Snapshot
from .base import Channel, ChannelResult, DeliveryChannel

logger = logging.getLogger(__name__)


class WebhookChannel(DeliveryChannel):
    """POSTs snapshot files to an HTTP endpoint.

    Args:
        config: Webhook configuration
        transport: Optional httpx transport (used by tests)
    """

    channel = Channel.WEBHOOK

    def __init__(
        self,
        config: WebhookConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self._transport = transport

    @property
    def configured(self) -> bool:
        return self.config.configured

    async def send(
        self,
        snapshot: Snapshot,
        system_stats: dict[str, Any] | None = None,
        requested: bool = False,
    ) -> ChannelResult:
        if not self.configured:
            return ChannelResult.skipped(self.channel, "BACKUP_WEBHOOK_URL not set")

        headers = {}
        if self.config.token:
            headers["Authorization"] = f"Bearer {self.config.token}"

        content = await asyncio.get_event_loop().run_in_executor(
            None, Path(snapshot.path).read_bytes
        )
        files = {"file": (snapshot.filename, content, "application/octet-stream")}

        try:
            async with httpx.AsyncClient(
                transport=self._transport,
                timeout=self.config.timeout_seconds,
            ) as client:
                response = await client.post(self.config.url, files=files, headers=headers)
        except httpx.HTTPError as e:
            raise DeliveryChannelError(
                f"Webhook upload failed: {type(e).__name__}: {e}",
                channel=self.channel.value,
            ) from e

        if not response.is_success:
            raise DeliveryChannelError(
                f"Webhook returned HTTP {response.status_code}",
                channel=self.channel.value,
                details={"status_code": response.status_code, "body": response.text[:200]},
            )

        logger.info(
            "Uploaded snapshot to webhook",
            extra={"snapshot": snapshot.filename, "status_code": response.status_code},
        )
        return ChannelResult.ok(self.channel, status_code=response.status_code)
