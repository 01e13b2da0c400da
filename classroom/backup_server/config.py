"""
Configuration management for the classroom backup server.

All configuration is done via environment variables - no config files inside
containers. This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Delivery channels without configuration are skipped, never errors
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep the legacy variable names (SMTP_*, BACKUP_*_EMAIL) working
    - Document every new variable in the owning class docstring
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

from apscheduler.triggers.cron import CronTrigger

logger = logging.getLogger(__name__)

DEFAULT_CRON_SCHEDULE = "0 */4 * * *"
DEFAULT_TIMEZONE = "Asia/Hong_Kong"


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_optional(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()


@dataclass(frozen=True)
class StorageConfig:
    """Local database and backup directory configuration.

    Attributes:
        db_path: Path of the live SQLite database file
        backup_dir: Directory holding local snapshots
        retention_count: Number of most recent snapshots kept locally
        file_prefix: Filename prefix for snapshot files
        busy_timeout_ms: SQLite busy timeout in milliseconds
    """

    db_path: str = "./classroom.db"
    backup_dir: str = "./backups"
    retention_count: int = 7
    file_prefix: str = "classroom_backup"
    busy_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            db_path=os.getenv("DB_PATH", "./classroom.db"),
            backup_dir=os.getenv("BACKUP_DIR", "./backups"),
            retention_count=int(os.getenv("BACKUP_RETENTION_COUNT", "7")),
            file_prefix=os.getenv("BACKUP_FILE_PREFIX", "classroom_backup"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
        )


@dataclass(frozen=True)
class ScheduleConfig:
    """Recurring backup schedule configuration.

    Attributes:
        enabled: Whether the recurring backup trigger is installed
        cron: Five-field crontab expression
        timezone: IANA timezone the expression is evaluated in
        protective_snapshot_delay_seconds: Delay before the post-recovery snapshot
    """

    enabled: bool = True
    cron: str = DEFAULT_CRON_SCHEDULE
    timezone: str = DEFAULT_TIMEZONE
    protective_snapshot_delay_seconds: float = 2.0

    @classmethod
    def from_env(cls) -> ScheduleConfig:
        """Load configuration from environment variables."""
        return cls(
            enabled=_env_bool("AUTO_BACKUP_ENABLED", True),
            cron=os.getenv("BACKUP_CRON_SCHEDULE", DEFAULT_CRON_SCHEDULE),
            timezone=os.getenv("BACKUP_TIMEZONE", os.getenv("TZ", DEFAULT_TIMEZONE)),
            protective_snapshot_delay_seconds=float(
                os.getenv("PROTECTIVE_SNAPSHOT_DELAY_SECONDS", "2")
            ),
        )


@dataclass(frozen=True)
class WebhookConfig:
    """Remote webhook upload configuration.

    Attributes:
        url: Endpoint receiving the multipart upload (None = channel skipped)
        token: Optional bearer token
        timeout_seconds: Total request timeout
    """

    url: str | None = None
    token: str | None = None
    timeout_seconds: float = 60.0

    @property
    def configured(self) -> bool:
        return bool(self.url)

    @classmethod
    def from_env(cls) -> WebhookConfig:
        """Load configuration from environment variables."""
        return cls(
            url=_env_optional("BACKUP_WEBHOOK_URL"),
            token=_env_optional("BACKUP_API_KEY"),
            timeout_seconds=float(os.getenv("BACKUP_WEBHOOK_TIMEOUT_SECONDS", "60")),
        )


@dataclass(frozen=True)
class S3Config:
    """S3 configuration for off-box snapshot objects.

    Attributes:
        bucket: S3 bucket name (None = channel skipped)
        region: AWS region
        endpoint_url: Custom endpoint URL (for MinIO)
        snapshot_prefix: Key prefix for snapshot objects
        access_key_id: AWS access key ID (optional, uses AWS credential chain)
        secret_access_key: AWS secret access key (optional)
        timeout_seconds: Connect and read timeout for S3 calls
    """

    bucket: str | None = None
    region: str = "us-east-1"
    endpoint_url: str | None = None
    snapshot_prefix: str = "snapshots"
    access_key_id: str | None = None
    secret_access_key: str | None = None
    timeout_seconds: float = 60.0

    @property
    def configured(self) -> bool:
        return bool(self.bucket)

    @classmethod
    def from_env(cls) -> S3Config:
        """Load configuration from environment variables."""
        return cls(
            bucket=_env_optional("S3_BUCKET"),
            region=os.getenv("S3_REGION", os.getenv("AWS_REGION", "us-east-1")),
            endpoint_url=_env_optional("S3_ENDPOINT"),
            snapshot_prefix=os.getenv("S3_SNAPSHOT_PREFIX", "snapshots"),
            access_key_id=_env_optional("AWS_ACCESS_KEY_ID"),
            secret_access_key=_env_optional("AWS_SECRET_ACCESS_KEY"),
            timeout_seconds=float(os.getenv("S3_TIMEOUT_SECONDS", "60")),
        )


@dataclass(frozen=True)
class EmailConfig:
    """SMTP configuration for emailing snapshots.

    Attributes:
        smtp_host: SMTP server host
        smtp_port: SMTP server port (465 = implicit TLS)
        smtp_user: SMTP username
        smtp_password: SMTP password
        starttls: Upgrade the connection with STARTTLS (ports other than 465)
        from_addr: Sender address (defaults to smtp_user)
        to_addr: Recipient address (None = channel skipped)
        cc_addr: Optional carbon copy address
        bcc_addr: Optional blind carbon copy address
        max_attachment_mb: Largest snapshot that will be attached
        timeout_seconds: SMTP socket timeout
        notify_on_failure: Email a short failure report when a run fails
    """

    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_user: str | None = None
    smtp_password: str | None = None
    starttls: bool = True
    from_addr: str | None = None
    to_addr: str | None = None
    cc_addr: str | None = None
    bcc_addr: str | None = None
    max_attachment_mb: float = 25.0
    timeout_seconds: float = 60.0
    notify_on_failure: bool = False

    @property
    def configured(self) -> bool:
        return bool(self.to_addr)

    @property
    def max_attachment_bytes(self) -> int:
        return int(self.max_attachment_mb * 1024 * 1024)

    @property
    def sender(self) -> str | None:
        return self.from_addr or self.smtp_user

    @classmethod
    def from_env(cls) -> EmailConfig:
        """Load configuration from environment variables."""
        return cls(
            smtp_host=os.getenv("SMTP_HOST", "smtp.gmail.com"),
            smtp_port=int(os.getenv("SMTP_PORT", "587")),
            smtp_user=_env_optional("SMTP_USER"),
            smtp_password=_env_optional("SMTP_PASS"),
            starttls=_env_bool("SMTP_STARTTLS", True),
            from_addr=_env_optional("BACKUP_FROM_EMAIL"),
            to_addr=_env_optional("BACKUP_TO_EMAIL"),
            cc_addr=_env_optional("BACKUP_CC_EMAIL"),
            bcc_addr=_env_optional("BACKUP_BCC_EMAIL"),
            max_attachment_mb=float(os.getenv("BACKUP_MAX_ATTACHMENT_MB", "25")),
            timeout_seconds=float(os.getenv("SMTP_TIMEOUT_SECONDS", "60")),
            notify_on_failure=_env_bool("BACKUP_NOTIFY_ON_FAILURE", False),
        )


@dataclass(frozen=True)
class RestoreConfig:
    """Startup recovery configuration.

    Attributes:
        remote_url: URL serving the latest database snapshot (optional)
        remote_token: Optional bearer token for remote_url
        restore_from_s3: Use the S3 snapshot prefix as remote source when no URL is set
        timeout_seconds: Timeout for the remote download
    """

    remote_url: str | None = None
    remote_token: str | None = None
    restore_from_s3: bool = True
    timeout_seconds: float = 120.0

    @classmethod
    def from_env(cls) -> RestoreConfig:
        """Load configuration from environment variables."""
        return cls(
            remote_url=_env_optional("REMOTE_BACKUP_URL"),
            remote_token=_env_optional("REMOTE_BACKUP_TOKEN"),
            restore_from_s3=_env_bool("RESTORE_FROM_S3", True),
            timeout_seconds=float(os.getenv("REMOTE_RESTORE_TIMEOUT_SECONDS", "120")),
        )


@dataclass(frozen=True)
class HttpConfig:
    """Operator HTTP surface configuration.

    Attributes:
        host: Address to bind
        port: Port to listen on
        operator_token: Bearer token required on mutating routes (None = open)
    """

    host: str = "0.0.0.0"
    port: int = 3001
    operator_token: str | None = None

    @classmethod
    def from_env(cls) -> HttpConfig:
        """Load configuration from environment variables."""
        return cls(
            host=os.getenv("HTTP_HOST", "0.0.0.0"),
            port=int(os.getenv("HTTP_PORT", os.getenv("BACKUP_SERVICE_PORT", "3001"))),
            operator_token=_env_optional("OPERATOR_TOKEN"),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Observability and logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
        error_log_size: Capacity of the in-memory error list
        backup_log_file: Append-only run log file (optional)
    """

    log_level: str = "INFO"
    log_format: str = "json"
    error_log_size: int = 50
    backup_log_file: str | None = None

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
            error_log_size=int(os.getenv("BACKUP_ERROR_LOG_SIZE", "50")),
            backup_log_file=_env_optional("BACKUP_LOG_FILE"),
        )


@dataclass
class ServerConfig:
    """Complete server configuration.

    This aggregates all configuration sections and provides validation.

    Attributes:
        storage: Database and backup directory configuration
        schedule: Recurring backup schedule
        webhook: Webhook delivery channel
        s3: S3 delivery channel and remote restore source
        email: Email delivery channel
        restore: Startup recovery configuration
        http: Operator HTTP surface
        observability: Logging configuration
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    webhook: WebhookConfig = field(default_factory=WebhookConfig)
    s3: S3Config = field(default_factory=S3Config)
    email: EmailConfig = field(default_factory=EmailConfig)
    restore: RestoreConfig = field(default_factory=RestoreConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServerConfig with all sections populated from environment.

        Raises:
            ValueError: If configuration is missing or invalid.
        """
        config = cls(
            storage=StorageConfig.from_env(),
            schedule=ScheduleConfig.from_env(),
            webhook=WebhookConfig.from_env(),
            s3=S3Config.from_env(),
            email=EmailConfig.from_env(),
            restore=RestoreConfig.from_env(),
            http=HttpConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.storage.retention_count < 1:
            raise ValueError("BACKUP_RETENTION_COUNT must be at least 1")

        if not 0 < self.email.smtp_port < 65536:
            raise ValueError(f"SMTP_PORT out of range: {self.email.smtp_port}")

        if self.email.max_attachment_mb <= 0:
            raise ValueError("BACKUP_MAX_ATTACHMENT_MB must be positive")

        if self.observability.error_log_size < 1:
            raise ValueError("BACKUP_ERROR_LOG_SIZE must be at least 1")

        if self.schedule.enabled:
            try:
                CronTrigger.from_crontab(self.schedule.cron, timezone=self.schedule.timezone)
            except Exception as e:
                raise ValueError(
                    f"Invalid BACKUP_CRON_SCHEDULE '{self.schedule.cron}' "
                    f"for timezone '{self.schedule.timezone}': {e}"
                ) from e

        if self.email.configured and not self.email.sender:
            logger.warning("BACKUP_TO_EMAIL set but neither BACKUP_FROM_EMAIL nor SMTP_USER is set")

        if not os.path.exists(self.storage.backup_dir):
            logger.warning(
                f"Backup directory does not exist: {self.storage.backup_dir}. "
                "It will be created on first snapshot."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Server configuration loaded",
            extra={
                "db_path": self.storage.db_path,
                "backup_dir": self.storage.backup_dir,
                "retention_count": self.storage.retention_count,
                "auto_backup_enabled": self.schedule.enabled,
                "cron": self.schedule.cron,
                "timezone": self.schedule.timezone,
                "webhook_configured": self.webhook.configured,
                "s3_bucket": self.s3.bucket,
                "smtp_host": self.email.smtp_host,
                "email_recipient_configured": self.email.configured,
                "email_notify_on_failure": self.email.notify_on_failure,
                "remote_restore_url_configured": bool(self.restore.remote_url),
                "http_bind": f"{self.http.host}:{self.http.port}",
                "log_level": self.observability.log_level,
            },
        )
