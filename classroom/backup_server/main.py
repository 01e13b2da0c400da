"""
Classroom backup server - Main entry point.

This module starts the backup service with all components:
- Startup recovery (RestoreCoordinator) before anything is served
- Protective snapshot after a non-trivial recovery
- Recurring backup scheduler (APScheduler cron job)
- Operator HTTP API (aiohttp)

Usage:
    python -m classroom.backup_server.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - Recovery completes before the HTTP API accepts requests
    - RestoreExhaustedError terminates the process with exit status 1
    - Graceful shutdown stops the scheduler before the HTTP API

How to change safely:
    - Add new components with enable/disable flags
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

import json_log_formatter
from aiohttp import web

from .api import start_http_server
from .config import ServerConfig
from .errors import RestoreExhaustedError
from .subsystem import BackupSubsystem

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("aiobotocore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


class Server:
    """Classroom backup server orchestrator.

    Manages the lifecycle of all server components:
    - Backup subsystem (recovery, pipeline, scheduler)
    - HTTP API

    Attributes:
        config: Server configuration
        subsystem: Backup subsystem shared by the scheduler and the API

    Example:
        >>> server = Server()
        >>> await server.start()
        >>> # Server is running
        >>> await server.stop()
    """

    def __init__(self, config: ServerConfig | None = None) -> None:
        """Initialize the server.

        Args:
            config: Optional server configuration (loaded from env if not provided)
        """
        self.config = config or ServerConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()

        self.subsystem: BackupSubsystem | None = None
        self.http_runner: web.AppRunner | None = None

    async def start(self) -> None:
        """Start the server and block until shutdown is requested.

        Raises:
            RestoreExhaustedError: If no usable database could be produced
        """
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting classroom backup server")
        self.config.log_config()

        try:
            self.subsystem = BackupSubsystem.from_config(self.config)

            decision = await self.subsystem.startup()
            logger.info(
                f"Database ready: {decision.outcome.value}",
                extra={"db_path": str(self.subsystem.db_path)},
            )

            self.subsystem.start_scheduler()
            self.http_runner = await start_http_server(self.subsystem, self.config.http)

            self._running = True
            logger.info("Classroom backup server started successfully")

            # Wait for shutdown signal
            await self._shutdown_event.wait()

        except Exception as e:
            if not isinstance(e, RestoreExhaustedError):
                logger.error(f"Server startup failed: {e}", exc_info=True)
            self._running = True
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if not self._running:
            return

        logger.info("Stopping classroom backup server")

        if self.subsystem:
            await self.subsystem.shutdown()

        if self.http_runner:
            await self.http_runner.cleanup()
            self.http_runner = None

        self._running = False
        logger.info("Classroom backup server stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    # Load configuration
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    # Setup logging
    setup_logging(config)

    # Create server
    server = Server(config)

    # Setup signal handlers
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    # Run server
    exit_code = 0
    try:
        loop.run_until_complete(server.start())
    except RestoreExhaustedError as e:
        logger.critical(f"Database recovery exhausted, exiting: {e}")
        exit_code = 1
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(server.stop())
        loop.close()

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
