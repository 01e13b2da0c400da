"""
Email delivery channel.

Sends the snapshot as an attachment over SMTP, and optionally a short
attachment-free report when a run fails. smtplib is blocking, so every SMTP
session runs in the default executor.

Message layout:
    multipart/mixed
      multipart/alternative (text/plain, text/html summary)
      application/x-sqlite3 attachment named exactly like the snapshot

Invariants:
    - Missing recipient means SKIPPED unless email was explicitly requested
    - Oversized snapshots fail before any SMTP connection is opened
    - Bcc recipients receive the message but never appear in its headers
    - Passwords are never logged or returned by describe_config()

How to change safely:
    - Keep the size check ahead of _open_session()
    - Port 465 implies implicit TLS; other ports use STARTTLS when enabled
"""

from __future__ import annotations

import asyncio
import html
import logging
import smtplib
from datetime import datetime, timezone
from email.message import EmailMessage
from email.utils import make_msgid
from pathlib import Path
from typing import Any

from ..config import EmailConfig
from ..errors import AttachmentTooLargeError, DeliveryChannelError, NoRecipientConfiguredError
from ..snapshot import Snapshot
from .base import Channel, ChannelResult, DeliveryChannel

logger = logging.getLogger(__name__)

IMPLICIT_TLS_PORT = 465
SUBJECT_PREFIX = "Classroom points system"


def format_size(size_bytes: int) -> str:
    """Human-readable file size."""
    if size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.2f} KB"
    return f"{size_bytes / (1024 * 1024):.2f} MB"


def _split_addresses(value: str | None) -> list[str]:
    if not value:
        return []
    return [addr.strip() for addr in value.split(",") if addr.strip()]


class EmailChannel(DeliveryChannel):
    """Emails snapshots as attachments."""

    channel = Channel.EMAIL

    def __init__(self, config: EmailConfig) -> None:
        self.config = config

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
            if requested:
                raise NoRecipientConfiguredError()
            return ChannelResult.skipped(self.channel, "BACKUP_TO_EMAIL not set")

        size_bytes = Path(snapshot.path).stat().st_size
        if size_bytes > self.config.max_attachment_bytes:
            raise AttachmentTooLargeError(size_bytes, self.config.max_attachment_bytes)

        if not self.config.sender:
            raise DeliveryChannelError(
                "No sender address configured (set BACKUP_FROM_EMAIL or SMTP_USER)",
                channel=self.channel.value,
                code="NO_SENDER_CONFIGURED",
            )

        message = self.build_message(snapshot, size_bytes, system_stats)
        recipients = self._recipients()

        try:
            await asyncio.get_event_loop().run_in_executor(
                None, self._send_message, message, recipients
            )
        except (smtplib.SMTPException, OSError) as e:
            raise DeliveryChannelError(
                f"SMTP delivery failed: {type(e).__name__}: {e}",
                channel=self.channel.value,
            ) from e

        logger.info(
            "Emailed snapshot",
            extra={
                "snapshot": snapshot.filename,
                "size_bytes": size_bytes,
                "recipient_count": len(recipients),
            },
        )
        return ChannelResult.ok(
            self.channel,
            message_id=message["Message-ID"],
            recipients=len(recipients),
        )

    def build_message(
        self,
        snapshot: Snapshot,
        size_bytes: int,
        system_stats: dict[str, Any] | None = None,
    ) -> EmailMessage:
        """Build the backup email with the snapshot attached."""
        message = EmailMessage()
        message["Subject"] = (
            f"{SUBJECT_PREFIX} - database backup ({snapshot.created_at.strftime('%Y-%m-%d')})"
        )
        message["From"] = self.config.sender
        message["To"] = ", ".join(_split_addresses(self.config.to_addr))
        cc = _split_addresses(self.config.cc_addr)
        if cc:
            message["Cc"] = ", ".join(cc)
        message["Message-ID"] = make_msgid(domain="classroom-backup")

        created = snapshot.created_at.strftime("%Y-%m-%d %H:%M:%S UTC")
        size = format_size(size_bytes)
        stats = system_stats or {}

        text_lines = [
            "Classroom points system database backup",
            "",
            f"Backup time: {created}",
            f"File name:   {snapshot.filename}",
            f"File size:   {size}",
            "Backup type: full SQLite database",
        ]
        if stats.get("total_students"):
            text_lines += [
                "",
                f"Students:      {stats['total_students']}",
                f"Point logs:    {stats.get('total_logs', 'N/A')}",
                f"Running days:  {stats.get('running_days', 'N/A')}",
            ]
        text_lines += ["", "This message was sent automatically. Please do not reply."]
        message.set_content("\n".join(text_lines))
        message.add_alternative(self._render_html(snapshot.filename, size, created, stats), subtype="html")

        with open(snapshot.path, "rb") as f:
            message.add_attachment(
                f.read(),
                maintype="application",
                subtype="x-sqlite3",
                filename=snapshot.filename,
            )
        return message

    async def send_failure_notice(
        self,
        outcome: str,
        error: str | None,
        run_id: str,
        trigger: str,
        when: datetime,
    ) -> str:
        """Email a short report about a failed backup run.

        Returns:
            Message-ID of the sent report

        Raises:
            NoRecipientConfiguredError: If BACKUP_TO_EMAIL is not set
            DeliveryChannelError: If no sender is configured or SMTP fails
        """
        if not self.configured:
            raise NoRecipientConfiguredError()
        if not self.config.sender:
            raise DeliveryChannelError(
                "No sender address configured (set BACKUP_FROM_EMAIL or SMTP_USER)",
                channel=self.channel.value,
                code="NO_SENDER_CONFIGURED",
            )

        message = self.build_failure_message(outcome, error, run_id, trigger, when)
        recipients = self._recipients()

        try:
            await asyncio.get_event_loop().run_in_executor(
                None, self._send_message, message, recipients
            )
        except (smtplib.SMTPException, OSError) as e:
            raise DeliveryChannelError(
                f"SMTP delivery failed: {type(e).__name__}: {e}",
                channel=self.channel.value,
            ) from e

        logger.info(
            "Emailed backup failure report",
            extra={"run_id": run_id, "outcome": outcome, "recipient_count": len(recipients)},
        )
        return message["Message-ID"]

    def build_failure_message(
        self,
        outcome: str,
        error: str | None,
        run_id: str,
        trigger: str,
        when: datetime,
    ) -> EmailMessage:
        """Build the plain-text failure report (no attachment)."""
        message = EmailMessage()
        message["Subject"] = f"{SUBJECT_PREFIX} - backup failed ({when.strftime('%Y-%m-%d')})"
        message["From"] = self.config.sender
        message["To"] = ", ".join(_split_addresses(self.config.to_addr))
        cc = _split_addresses(self.config.cc_addr)
        if cc:
            message["Cc"] = ", ".join(cc)
        message["Message-ID"] = make_msgid(domain="classroom-backup")

        message.set_content(
            "\n".join(
                [
                    "Classroom points system database backup FAILED",
                    "",
                    f"Time:    {when.strftime('%Y-%m-%d %H:%M:%S UTC')}",
                    f"Run:     {run_id} ({trigger})",
                    f"Outcome: {outcome}",
                    f"Error:   {error or 'unknown'}",
                    "",
                    "Check the backup service logs and /v1/backup/status.",
                    "",
                    "This message was sent automatically. Please do not reply.",
                ]
            )
        )
        return message

    def _render_html(self, filename: str, size: str, created: str, stats: dict[str, Any]) -> str:
        rows = [
            ("Backup time", created),
            ("File name", filename),
            ("File size", size),
            ("Backup type", "Full SQLite database"),
        ]
        table = "".join(
            f'<tr><td style="padding:8px;background:#e9ecef;font-weight:bold;width:30%">{label}</td>'
            f'<td style="padding:8px;background:white">{html.escape(str(value))}</td></tr>'
            for label, value in rows
        )

        stats_block = ""
        if stats.get("total_students"):
            stats_block = (
                "<h4>System statistics</h4><ul>"
                f"<li>Students: {stats['total_students']}</li>"
                f"<li>Point logs: {stats.get('total_logs', 'N/A')}</li>"
                f"<li>Running days: {stats.get('running_days', 'N/A')}</li>"
                "</ul>"
            )

        return (
            '<div style="font-family:Arial,sans-serif;max-width:600px;margin:0 auto">'
            f"<h2>{SUBJECT_PREFIX}</h2><p>Automatic database backup</p>"
            f'<table style="width:100%;border-collapse:collapse">{table}</table>'
            "<p><strong>Status:</strong> backup completed and passed the integrity check.</p>"
            f"{stats_block}"
            "<p><small>This message was sent automatically. Please do not reply.</small></p>"
            "</div>"
        )

    def verify(self, send_test: bool = True) -> dict[str, Any]:
        """Check SMTP connectivity and credentials.

        Opens a session, logs in, issues NOOP and optionally sends a short
        test message to the configured recipient.

        Raises:
            DeliveryChannelError: If the SMTP session fails
        """
        test_sent = False
        try:
            with self._open_session() as smtp:
                smtp.noop()
                if send_test and self.configured and self.config.sender:
                    message = EmailMessage()
                    message["Subject"] = f"{SUBJECT_PREFIX} - email configuration test"
                    message["From"] = self.config.sender
                    message["To"] = ", ".join(_split_addresses(self.config.to_addr))
                    message.set_content(
                        "If you received this message, backup email delivery is configured "
                        f"correctly.\n\nSent at {datetime.now(timezone.utc).isoformat()}"
                    )
                    smtp.send_message(message)
                    test_sent = True
        except (smtplib.SMTPException, OSError) as e:
            raise DeliveryChannelError(
                f"SMTP verification failed: {type(e).__name__}: {e}",
                channel=self.channel.value,
            ) from e

        logger.info("SMTP configuration verified", extra={"test_message_sent": test_sent})
        return {"smtp": "ok", "test_message_sent": test_sent}

    def describe_config(self) -> dict[str, Any]:
        """Configuration view with the password redacted."""
        return {
            "smtp_host": self.config.smtp_host,
            "smtp_port": self.config.smtp_port,
            "smtp_user": self.config.smtp_user,
            "smtp_password": "set" if self.config.smtp_password else "missing",
            "starttls": self.config.starttls,
            "from": self.config.sender,
            "to": self.config.to_addr,
            "cc": self.config.cc_addr,
            "bcc": self.config.bcc_addr,
            "max_attachment_mb": self.config.max_attachment_mb,
            "configured": self.configured,
        }

    def _recipients(self) -> list[str]:
        return (
            _split_addresses(self.config.to_addr)
            + _split_addresses(self.config.cc_addr)
            + _split_addresses(self.config.bcc_addr)
        )

    def _open_session(self) -> smtplib.SMTP:
        if self.config.smtp_port == IMPLICIT_TLS_PORT:
            smtp: smtplib.SMTP = smtplib.SMTP_SSL(
                self.config.smtp_host,
                self.config.smtp_port,
                timeout=self.config.timeout_seconds,
            )
        else:
            smtp = smtplib.SMTP(
                self.config.smtp_host,
                self.config.smtp_port,
                timeout=self.config.timeout_seconds,
            )
        try:
            if self.config.smtp_port != IMPLICIT_TLS_PORT and self.config.starttls:
                smtp.starttls()
            if self.config.smtp_user and self.config.smtp_password:
                smtp.login(self.config.smtp_user, self.config.smtp_password)
        except BaseException:
            smtp.close()
            raise
        return smtp

    def _send_message(self, message: EmailMessage, recipients: list[str]) -> None:
        with self._open_session() as smtp:
            smtp.send_message(message, to_addrs=recipients)
