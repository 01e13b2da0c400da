"""
Remote restore sources.

A remote source fetches one candidate database file into a local path during
startup recovery. Two sources exist:
- HttpRemoteSource: GET REMOTE_BACKUP_URL (optional bearer token)
- S3RemoteSource: newest object under the S3 snapshot prefix

Invariants:
    - fetch() is attempted once per startup; there are no retry loops
    - fetch() writes only to the destination it is given
    - Every network call carries a timeout
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import httpx
from aiobotocore.session import get_session

from ..config import RestoreConfig, S3Config, ServerConfig
from ..delivery.s3 import s3_client_kwargs
from ..errors import BackupError

logger = logging.getLogger(__name__)


class RemoteSource:
    """Base class for remote restore sources."""

    def describe(self) -> str:
        raise NotImplementedError

    async def fetch(self, dest: Path) -> str:
        """Download the candidate database into dest.

        Returns:
            Location the file was fetched from
        """
        raise NotImplementedError


class HttpRemoteSource(RemoteSource):
    """Downloads a database file from an HTTP(S) URL."""

    def __init__(
        self,
        url: str,
        token: str | None = None,
        timeout_seconds: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self.token = token
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    def describe(self) -> str:
        return self.url

    async def fetch(self, dest: Path) -> str:
        headers = {}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        async with httpx.AsyncClient(
            transport=self._transport,
            timeout=self.timeout_seconds,
            follow_redirects=True,
        ) as client:
            async with client.stream("GET", self.url, headers=headers) as response:
                response.raise_for_status()
                with open(dest, "wb") as f:
                    async for chunk in response.aiter_bytes():
                        f.write(chunk)

        logger.info("Downloaded remote database", extra={"url": self.url})
        return self.url


class S3RemoteSource(RemoteSource):
    """Downloads the newest snapshot object from S3."""

    def __init__(self, config: S3Config, session: Any = None) -> None:
        self.config = config
        self._session = session

    def describe(self) -> str:
        return f"s3://{self.config.bucket}/{self.config.snapshot_prefix}/"

    async def fetch(self, dest: Path) -> str:
        session = self._session or get_session()
        prefix = self.config.snapshot_prefix.strip("/")
        prefix = f"{prefix}/" if prefix else ""

        async with session.create_client("s3", **s3_client_kwargs(self.config)) as client:
            keys = []
            paginator = client.get_paginator("list_objects_v2")
            async for page in paginator.paginate(Bucket=self.config.bucket, Prefix=prefix):
                keys.extend(
                    obj["Key"] for obj in page.get("Contents", []) if obj["Key"].endswith(".db")
                )

            if not keys:
                raise BackupError(
                    f"No snapshot objects under {self.describe()}",
                    code="REMOTE_SNAPSHOT_NOT_FOUND",
                )

            latest = max(keys)
            response = await client.get_object(Bucket=self.config.bucket, Key=latest)
            content = await response["Body"].read()

        dest.write_bytes(content)
        location = f"s3://{self.config.bucket}/{latest}"
        logger.info("Downloaded remote snapshot", extra={"location": location})
        return location


def build_remote_source(config: ServerConfig) -> RemoteSource | None:
    """Pick the remote restore source for a configuration.

    REMOTE_BACKUP_URL wins; otherwise the S3 snapshot prefix is used when
    RESTORE_FROM_S3 is on and a bucket is configured.
    """
    restore: RestoreConfig = config.restore
    if restore.remote_url:
        return HttpRemoteSource(
            restore.remote_url,
            token=restore.remote_token,
            timeout_seconds=restore.timeout_seconds,
        )
    if restore.restore_from_s3 and config.s3.configured:
        return S3RemoteSource(config.s3)
    return None
