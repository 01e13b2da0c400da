"""
Delivery dispatcher.

Fans one snapshot out to the delivery channels concurrently and collects a
ChannelResult per channel.

Channel selection:
    channels=None       every channel is considered; unconfigured ones
                        report SKIPPED
    channels={...}      only the named channels are considered and they
                        count as explicitly requested

Invariants:
    - deliver() never raises for channel failures
    - One channel failing or hanging never prevents the others from running
    - Delivery never touches the local snapshot file
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from typing import Any

from ..config import ServerConfig
from ..snapshot import Snapshot
from .base import Channel, ChannelResult, ChannelStatus, DeliveryChannel
from .email import EmailChannel
from .s3 import S3Channel
from .webhook import WebhookChannel

logger = logging.getLogger(__name__)

SUCCESS = "success"
PARTIAL_DELIVERY_FAILURE = "partial-delivery-failure"


def outcome_for(results: dict[Channel, ChannelResult]) -> str:
    """Pipeline outcome implied by a set of channel results."""
    if any(result.status == ChannelStatus.FAILED for result in results.values()):
        return PARTIAL_DELIVERY_FAILURE
    return SUCCESS


class DeliveryDispatcher:
    """Delivers snapshots through every configured channel.

    Example:
        >>> dispatcher = DeliveryDispatcher.from_config(config)
        >>> results = await dispatcher.deliver(snapshot)
        >>> outcome_for(results)
        'success'
    """

    def __init__(self, channels: Iterable[DeliveryChannel]) -> None:
        self._channels: dict[Channel, DeliveryChannel] = {c.channel: c for c in channels}

    @classmethod
    def from_config(cls, config: ServerConfig) -> DeliveryDispatcher:
        return cls(
            [
                WebhookChannel(config.webhook),
                S3Channel(config.s3),
                EmailChannel(config.email),
            ]
        )

    def get_channel(self, channel: Channel) -> DeliveryChannel | None:
        return self._channels.get(channel)

    async def deliver(
        self,
        snapshot: Snapshot,
        channels: Iterable[Channel] | None = None,
        system_stats: dict[str, Any] | None = None,
    ) -> dict[Channel, ChannelResult]:
        """Deliver a snapshot to the selected channels.

        Args:
            snapshot: Snapshot to deliver
            channels: Explicitly requested channels (None = defaults)
            system_stats: Counters included in the email summary

        Returns:
            Result per considered channel
        """
        requested = channels is not None
        selected = list(dict.fromkeys(channels)) if requested else list(self._channels)

        results: dict[Channel, ChannelResult] = {}
        runnable = []
        for channel in selected:
            impl = self._channels.get(channel)
            if impl is None:
                results[channel] = ChannelResult.skipped(channel, "channel not available")
            else:
                runnable.append(impl)

        gathered = await asyncio.gather(
            *(self._run_channel(impl, snapshot, system_stats, requested) for impl in runnable)
        )
        for result in gathered:
            results[result.channel] = result

        logger.info(
            "Delivery finished",
            extra={
                "snapshot": snapshot.filename,
                "results": {c.value: r.status.value for c, r in results.items()},
            },
        )
        return results

    async def _run_channel(
        self,
        impl: DeliveryChannel,
        snapshot: Snapshot,
        system_stats: dict[str, Any] | None,
        requested: bool,
    ) -> ChannelResult:
        try:
            return await impl.send(snapshot, system_stats=system_stats, requested=requested)
        except Exception as e:
            logger.error(
                f"Delivery channel {impl.channel.value} failed: {e}",
                extra={"channel": impl.channel.value, "snapshot": snapshot.filename},
            )
            return ChannelResult.from_error(impl.channel, e)
