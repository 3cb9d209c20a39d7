"""
Main entry point for the Matrix moderation relay.

This module loads configuration, sets up logging and persistence, logs the bot
into the homeserver and runs the relay engine until a shutdown signal arrives.
"""

import asyncio
import logging
import signal
import sys
from datetime import timedelta
from typing import Optional

import structlog

from fourwarder.clients import MatrixClient
from fourwarder.config import Settings, load_settings
from fourwarder.core import (
    EventNormalizer, RelayEngine, RetryPolicy, SqlCorrelationStore, SqlResumeCursor
)
from fourwarder.core.errors import ConfigError
from fourwarder.database import DatabaseManager, init_database

logger = structlog.get_logger(__name__)


def configure_logging(settings: Settings) -> None:
    """Configure structlog on top of the standard logging module."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(ensure_ascii=False)
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handlers = [logging.StreamHandler()]
    if settings.log_file:
        handlers.append(logging.FileHandler(settings.log_file, encoding='utf-8'))

    logging.basicConfig(
        level=logging.DEBUG if settings.debug_mode else getattr(logging, settings.log_level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True,
    )
    # httpx logs every long-poll request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


class BotApplication:
    """Main application class for the moderation relay."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.db_manager: Optional[DatabaseManager] = None
        self.matrix_client: Optional[MatrixClient] = None
        self.relay_engine: Optional[RelayEngine] = None
        self._shutdown_event = asyncio.Event()

    async def initialize(self) -> None:
        """Initialize all components of the application."""
        settings = self.settings
        logger.info("Initializing relay application...")

        self.db_manager = DatabaseManager(settings.async_database_url())
        await init_database(self.db_manager)
        logger.info("Database initialized")

        self.matrix_client = MatrixClient(
            settings.homeserver,
            settings.username,
            settings.password.get_secret_value(),
            device_id=settings.device_id,
            sync_timeout_ms=settings.sync_timeout_ms,
            request_timeout=settings.request_timeout,
        )
        room_roles = settings.room_roles()
        await self.matrix_client.start(room_roles.keys())
        logger.info("Matrix client initialized", user_id=self.matrix_client.user_id)

        self.relay_engine = RelayEngine(
            transport=self.matrix_client,
            correlation_store=SqlCorrelationStore(self.db_manager),
            resume_cursor=SqlResumeCursor(self.db_manager),
            room_roles=room_roles,
            approval_symbol=settings.approval_symbol,
            retry_policy=RetryPolicy(
                max_attempts=settings.max_retry_attempts,
                base_delay=settings.retry_base_delay,
                max_delay=settings.retry_max_delay,
            ),
            normalizer=EventNormalizer(room_roles, own_user_id=self.matrix_client.user_id),
            retention=timedelta(days=settings.retention_days) if settings.retention_days else None,
        )
        logger.info("Relay application initialization complete")

    async def start(self) -> None:
        """Start relaying and wait for a shutdown signal."""
        logger.info(
            "Launching 4warder_bot",
            homeserver=self.settings.homeserver,
            username=self.settings.username,
        )
        await self.relay_engine.start()
        await self._shutdown_event.wait()

    async def shutdown(self) -> None:
        """Gracefully shutdown the application."""
        logger.info("Shutting down relay application...")

        if self.relay_engine:
            await self.relay_engine.stop()

        if self.matrix_client:
            await self.matrix_client.stop()

        if self.db_manager:
            await self.db_manager.close()
            logger.info("Database connections closed")

        logger.info("Relay application shutdown complete")

    def request_shutdown(self) -> None:
        """Handle shutdown signals."""
        logger.info("Received shutdown signal, initiating shutdown...")
        self._shutdown_event.set()


async def main() -> int:
    """Main entry point for the relay application."""
    try:
        settings = load_settings()
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    configure_logging(settings)
    app = BotApplication(settings)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, app.request_shutdown)
        except NotImplementedError:
            signal.signal(sig, lambda signum, frame: app.request_shutdown())

    try:
        await app.initialize()
        await app.start()
    except Exception as e:
        logger.error("Fatal error in main application", error=str(e), exc_info=e)
        return 1
    finally:
        await app.shutdown()
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
