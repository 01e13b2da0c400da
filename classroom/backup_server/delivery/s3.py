"""
S3 delivery channel.

Stores each snapshot as an object under the configured prefix:
    s3://<bucket>/<snapshot_prefix>/<snapshot filename>

The same bucket and prefix serve as a remote restore source, so object keys
sort in creation order exactly like local filenames.

Invariants:
    - Missing bucket means SKIPPED
    - Objects are written once and never overwritten by this channel
    - Connect and read timeouts are always set
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from aiobotocore.config import AioConfig
from aiobotocore.session import get_session

from ..config import S3Config
from ..errors import DeliveryChannelError
from ..snapshot import Snapshot
from .base import Channel, ChannelResult, DeliveryChannel

logger = logging.getLogger(__name__)

SQLITE_CONTENT_TYPE = "application/x-sqlite3"


def s3_client_kwargs(config: S3Config) -> dict[str, Any]:
    """Build create_client keyword arguments for an S3 configuration."""
    client_kwargs: dict[str, Any] = {
        "region_name": config.region,
        "config": AioConfig(
            connect_timeout=config.timeout_seconds,
            read_timeout=config.timeout_seconds,
            retries={"max_attempts": 2},
        ),
    }

    if config.endpoint_url:
        client_kwargs["endpoint_url"] = config.endpoint_url

    if config.access_key_id:
        client_kwargs["aws_access_key_id"] = config.access_key_id
        client_kwargs["aws_secret_access_key"] = config.secret_access_key

    return client_kwargs


def object_key(config: S3Config, filename: str) -> str:
    prefix = config.snapshot_prefix.strip("/")
    return f"{prefix}/{filename}" if prefix else filename


class S3Channel(DeliveryChannel):
    """Uploads snapshots to S3 (or any S3-compatible store such as MinIO).

    Args:
        config: S3 configuration
        session: aiobotocore session (a new one is created when omitted)
    """

    channel = Channel.S3

    def __init__(self, config: S3Config, session: Any = None) -> None:
        self.config = config
        self._session = session

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
            return ChannelResult.skipped(self.channel, "S3_BUCKET not set")

        key = object_key(self.config, snapshot.filename)
        body = await asyncio.get_event_loop().run_in_executor(None, Path(snapshot.path).read_bytes)
        session = self._session or get_session()

        try:
            async with session.create_client("s3", **s3_client_kwargs(self.config)) as client:
                await client.put_object(
                    Bucket=self.config.bucket,
                    Key=key,
                    Body=body,
                    ContentType=SQLITE_CONTENT_TYPE,
                )
        except Exception as e:
            raise DeliveryChannelError(
                f"S3 upload failed: {e}",
                channel=self.channel.value,
                details={"bucket": self.config.bucket, "key": key},
            ) from e

        logger.info(
            "Uploaded snapshot to S3",
            extra={"bucket": self.config.bucket, "key": key, "size_bytes": len(body)},
        )
        return ChannelResult.ok(self.channel, bucket=self.config.bucket, key=key)
