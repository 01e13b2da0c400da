"""
Shared types for delivery channels.

Invariants:
    - A channel reports exactly one ChannelResult per delivery
    - SKIPPED means "not configured", never an error
    - A channel never mutates or deletes the snapshot it delivers
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..errors import BackupError
from ..snapshot import Snapshot


class Channel(str, Enum):
    """Off-box delivery channels."""

    WEBHOOK = "webhook"
    S3 = "s3"
    EMAIL = "email"

    @classmethod
    def parse(cls, value: str) -> Channel:
        try:
            return cls(value.strip().lower())
        except ValueError:
            valid = ", ".join(c.value for c in cls)
            raise ValueError(f"Unknown delivery channel '{value}' (expected one of: {valid})") from None


class ChannelStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class ChannelResult:
    """Outcome of delivering one snapshot through one channel.

    Attributes:
        channel: Channel the result belongs to
        status: succeeded, failed or skipped
        error: Error message for failed deliveries
        error_code: Error code for failed deliveries
        detail: Channel-specific context (HTTP status, S3 key, recipients)
    """

    channel: Channel
    status: ChannelStatus
    error: str | None = None
    error_code: str | None = None
    detail: dict[str, Any] = field(default_factory=dict)

    @property
    def attempted(self) -> bool:
        return self.status != ChannelStatus.SKIPPED

    @property
    def succeeded(self) -> bool:
        return self.status == ChannelStatus.SUCCEEDED

    @classmethod
    def ok(cls, channel: Channel, **detail: Any) -> ChannelResult:
        return cls(channel=channel, status=ChannelStatus.SUCCEEDED, detail=detail)

    @classmethod
    def skipped(cls, channel: Channel, reason: str) -> ChannelResult:
        return cls(channel=channel, status=ChannelStatus.SKIPPED, detail={"reason": reason})

    @classmethod
    def from_error(cls, channel: Channel, error: BaseException) -> ChannelResult:
        if isinstance(error, BackupError):
            return cls(
                channel=channel,
                status=ChannelStatus.FAILED,
                error=error.message,
                error_code=error.code,
                detail=dict(error.details),
            )
        return cls(
            channel=channel,
            status=ChannelStatus.FAILED,
            error=str(error) or type(error).__name__,
            error_code="DELIVERY_CHANNEL_FAILED",
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel.value,
            "status": self.status.value,
            "error": self.error,
            "error_code": self.error_code,
            "detail": self.detail,
        }


class DeliveryChannel:
    """Base class for delivery channels.

    Subclasses set ``channel`` and implement ``configured`` and ``send``.
    ``send`` raises on failure; the dispatcher turns exceptions into failed
    results.
    """

    channel: Channel

    @property
    def configured(self) -> bool:
        raise NotImplementedError

    async def send(
        self,
        snapshot: Snapshot,
        system_stats: dict[str, Any] | None = None,
        requested: bool = False,
    ) -> ChannelResult:
        raise NotImplementedError
