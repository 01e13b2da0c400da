"""
Unit tests for environment configuration.

Tests cover:
- Defaults
- Legacy variable names
- Validation failures
"""

import pytest

from classroom.backup_server.config import (
    EmailConfig,
    ScheduleConfig,
    ServerConfig,
    StorageConfig,
)

ENV_VARS = [
    "DB_PATH",
    "BACKUP_DIR",
    "BACKUP_RETENTION_COUNT",
    "AUTO_BACKUP_ENABLED",
    "BACKUP_CRON_SCHEDULE",
    "BACKUP_TIMEZONE",
    "TZ",
    "BACKUP_WEBHOOK_URL",
    "BACKUP_API_KEY",
    "S3_BUCKET",
    "SMTP_HOST",
    "SMTP_PORT",
    "SMTP_USER",
    "SMTP_PASS",
    "BACKUP_FROM_EMAIL",
    "BACKUP_TO_EMAIL",
    "BACKUP_MAX_ATTACHMENT_MB",
    "REMOTE_BACKUP_URL",
    "HTTP_PORT",
    "BACKUP_SERVICE_PORT",
    "OPERATOR_TOKEN",
    "BACKUP_ERROR_LOG_SIZE",
    "BACKUP_LOG_FILE",
    "BACKUP_NOTIFY_ON_FAILURE",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("BACKUP_DIR", str(tmp_path / "backups"))


class TestServerConfig:
    """Tests for ServerConfig.from_env()."""

    def test_defaults(self):
        """Defaults match the documented values."""
        config = ServerConfig.from_env()

        assert config.storage.db_path == "./classroom.db"
        assert config.storage.retention_count == 7
        assert config.schedule.enabled is True
        assert config.schedule.cron == "0 */4 * * *"
        assert config.schedule.timezone == "Asia/Hong_Kong"
        assert config.email.smtp_host == "smtp.gmail.com"
        assert config.email.smtp_port == 587
        assert config.email.max_attachment_bytes == 25 * 1024 * 1024
        assert config.webhook.configured is False
        assert config.s3.configured is False
        assert config.email.configured is False
        assert config.http.port == 3001
        assert config.observability.error_log_size == 50
        assert config.email.notify_on_failure is False

    def test_env_overrides(self, monkeypatch):
        """Environment variables override defaults."""
        monkeypatch.setenv("DB_PATH", "/data/classroom.db")
        monkeypatch.setenv("BACKUP_RETENTION_COUNT", "3")
        monkeypatch.setenv("AUTO_BACKUP_ENABLED", "false")
        monkeypatch.setenv("BACKUP_WEBHOOK_URL", "https://hooks.example.com/backup")
        monkeypatch.setenv("BACKUP_API_KEY", "k")
        monkeypatch.setenv("SMTP_USER", "sender@example.com")
        monkeypatch.setenv("BACKUP_TO_EMAIL", "teacher@example.com")
        monkeypatch.setenv("BACKUP_SERVICE_PORT", "4000")
        monkeypatch.setenv("BACKUP_NOTIFY_ON_FAILURE", "true")

        config = ServerConfig.from_env()

        assert config.storage.db_path == "/data/classroom.db"
        assert config.storage.retention_count == 3
        assert config.schedule.enabled is False
        assert config.webhook.configured is True
        assert config.webhook.token == "k"
        assert config.email.sender == "sender@example.com"
        assert config.email.configured is True
        assert config.http.port == 4000
        assert config.email.notify_on_failure is True

    def test_blank_values_are_unset(self, monkeypatch):
        """Blank optional variables count as unset."""
        monkeypatch.setenv("BACKUP_TO_EMAIL", "  ")

        assert ServerConfig.from_env().email.configured is False

    def test_from_address_override(self, monkeypatch):
        """BACKUP_FROM_EMAIL wins over SMTP_USER."""
        monkeypatch.setenv("SMTP_USER", "smtp@example.com")
        monkeypatch.setenv("BACKUP_FROM_EMAIL", "backups@example.com")

        assert ServerConfig.from_env().email.sender == "backups@example.com"

    def test_timezone_from_tz(self, monkeypatch):
        """TZ is used when BACKUP_TIMEZONE is unset."""
        monkeypatch.setenv("TZ", "UTC")

        assert ServerConfig.from_env().schedule.timezone == "UTC"

    def test_invalid_retention(self, monkeypatch):
        """Retention below one is rejected."""
        monkeypatch.setenv("BACKUP_RETENTION_COUNT", "0")

        with pytest.raises(ValueError, match="BACKUP_RETENTION_COUNT"):
            ServerConfig.from_env()

    def test_invalid_cron(self, monkeypatch):
        """An unparseable cron expression is rejected."""
        monkeypatch.setenv("BACKUP_CRON_SCHEDULE", "every four hours")

        with pytest.raises(ValueError, match="BACKUP_CRON_SCHEDULE"):
            ServerConfig.from_env()

    def test_invalid_cron_ignored_when_disabled(self, monkeypatch):
        """The cron expression is not validated when scheduling is off."""
        monkeypatch.setenv("BACKUP_CRON_SCHEDULE", "every four hours")
        monkeypatch.setenv("AUTO_BACKUP_ENABLED", "0")

        assert ServerConfig.from_env().schedule.enabled is False

    def test_invalid_smtp_port(self):
        """SMTP port must be in range."""
        config = ServerConfig(email=EmailConfig(smtp_port=70000))

        with pytest.raises(ValueError, match="SMTP_PORT"):
            config.validate()

    def test_invalid_attachment_limit(self):
        """Attachment limit must be positive."""
        config = ServerConfig(email=EmailConfig(max_attachment_mb=0))

        with pytest.raises(ValueError, match="BACKUP_MAX_ATTACHMENT_MB"):
            config.validate()

    def test_validate_accepts_dataclass_defaults(self, tmp_path):
        """Directly constructed configs validate."""
        config = ServerConfig(
            storage=StorageConfig(db_path=str(tmp_path / "c.db"), backup_dir=str(tmp_path)),
            schedule=ScheduleConfig(cron="30 2 * * *", timezone="UTC"),
        )

        config.validate()

    def test_log_config_redacts_secrets(self, monkeypatch, caplog):
        """log_config never logs passwords or tokens."""
        monkeypatch.setenv("SMTP_PASS", "hunter2")
        monkeypatch.setenv("BACKUP_API_KEY", "secret-key")
        monkeypatch.setenv("OPERATOR_TOKEN", "op-token")

        config = ServerConfig.from_env()
        with caplog.at_level("INFO"):
            config.log_config()

        for record in caplog.records:
            dumped = str(record.__dict__)
            assert "hunter2" not in dumped
            assert "secret-key" not in dumped
            assert "op-token" not in dumped
