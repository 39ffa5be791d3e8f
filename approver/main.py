"""Main entry point for the Approver service.

This module provides the main entry point that:
1. Loads and validates configuration
2. Sets up logging
3. Builds the key/value backend, record store and approval service
4. Runs the timeout sweeper until SIGTERM/SIGINT
5. Stops the sweeper and closes the backend on shutdown
"""

import asyncio
import logging
import signal
import sys

from approver import __version__
from approver.cli import load_config_from_cli
from approver.config import Settings, set_settings
from approver.domain.services.approval import ApprovalService
from approver.domain.services.notification import NotificationBackend
from approver.domain.services.timeout import TimeoutSweeper
from approver.infra.jobs.scheduler import JobScheduler
from approver.infra.kv.backend import InMemoryKVBackend, KVBackend, RedisKVBackend
from approver.infra.kv.records import RecordStore
from approver.infra.observability import setup_logging, start_metrics_server

logger = logging.getLogger(__name__)


def create_backend(settings: Settings) -> KVBackend:
    """Build the configured key/value backend (not yet initialized)."""
    if settings.kv_backend == "redis":
        return RedisKVBackend(
            redis_url=settings.redis_url,
            pool_size=settings.redis_pool_size,
            timeout_seconds=settings.redis_timeout_seconds,
            key_prefix=settings.redis_key_prefix,
        )
    return InMemoryKVBackend()


def print_startup_banner(settings: Settings) -> None:  # pragma: no cover
    """Log startup banner with configuration information."""
    config = settings.to_dict()

    logger.info("=" * 60)
    logger.info("Approver Service")
    logger.info(f"Version: {__version__}")
    logger.info("=" * 60)
    logger.info(f"  Environment: {settings.environment}")
    logger.info(f"  Log Level: {settings.log_level}")
    logger.info(f"  Key/Value Backend: {settings.kv_backend}")
    if settings.kv_backend == "redis":
        logger.info(f"  Redis URL: {config['redis_url']}")
    logger.info(f"  Timeout Sweeper: {'enabled' if settings.timeout_sweeper_enabled else 'disabled'}")
    logger.info(f"  Approval Timeout: {settings.approval_timeout_seconds}s")
    logger.info(f"  Check Interval: {settings.timeout_check_interval_seconds}s")
    if settings.metrics_port:
        logger.info(f"  Metrics: http://{settings.metrics_host}:{settings.metrics_port}/metrics")
    logger.info("=" * 60)


class Application:
    """Wires the approval engine together for one process."""

    def __init__(self, settings: Settings, notifier: NotificationBackend | None = None) -> None:
        self.settings = settings
        self.backend = create_backend(settings)
        self.store = RecordStore(
            self.backend,
            max_scan_keys=settings.kv_max_scan_keys,
            page_size=settings.kv_list_page_size,
        )
        self.service = ApprovalService(self.store, notifier=notifier)
        self.scheduler = JobScheduler(settings)
        self.sweeper = TimeoutSweeper(self.service, self.store, self.scheduler, settings)
        self.metrics_server = None

    async def start(self) -> None:
        """Initialize the backend and start background work."""
        await self.backend.init()

        if self.settings.metrics_port:
            self.metrics_server = start_metrics_server(
                self.settings.metrics_port, self.settings.metrics_host
            )

        if self.settings.timeout_sweeper_enabled:
            await self.sweeper.start()
        else:
            logger.info("Timeout sweeper disabled by configuration")

    async def stop(self) -> None:
        """Stop the sweeper, then release the backend and the metrics endpoint."""
        await self.sweeper.stop()
        await self.backend.close()

        if self.metrics_server is not None:
            await asyncio.to_thread(self.metrics_server.shutdown)
            self.metrics_server.server_close()
            self.metrics_server = None


class GracefulShutdown:
    """Graceful shutdown coordinator.

    Turns SIGTERM/SIGINT into an asyncio event the main coroutine waits on.
    """

    def __init__(self) -> None:
        self._shutdown_event = asyncio.Event()

    def _handle_signal(self, signum: int) -> None:
        signal_name = signal.Signals(signum).name
        logger.info(
            f"Received {signal_name}, initiating graceful shutdown",
            extra={"signal": signal_name},
        )
        self._shutdown_event.set()

    def register_handlers(self) -> None:
        """Register signal handlers for SIGTERM and SIGINT."""
        signal.signal(signal.SIGTERM, lambda s, _f: self._handle_signal(s))
        signal.signal(signal.SIGINT, lambda s, _f: self._handle_signal(s))

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    async def wait_for_shutdown(self) -> None:
        """Wait for shutdown signal."""
        await self._shutdown_event.wait()


async def run(settings: Settings, shutdown: GracefulShutdown | None = None) -> None:
    """Run the service until shutdown is requested."""
    shutdown = shutdown or GracefulShutdown()
    app = Application(settings)

    await app.start()
    logger.info("Approver service running")

    try:
        await shutdown.wait_for_shutdown()
    finally:
        await app.stop()
        logger.info("Graceful shutdown complete")


def main() -> int:  # pragma: no cover
    """Main entry point for the Approver service.

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    try:
        settings = load_config_from_cli()
        set_settings(settings)

        setup_logging(
            level="DEBUG" if settings.debug else settings.log_level,
            json_format=settings.log_format == "json",
            log_file=settings.log_file,
        )
        print_startup_banner(settings)

        shutdown = GracefulShutdown()
        shutdown.register_handlers()

        asyncio.run(run(settings, shutdown))
        return 0

    except KeyboardInterrupt:
        print("\nShutdown requested... exiting", file=sys.stderr)
        return 0
    except Exception as e:
        if "settings" in locals():
            logger.exception(f"Fatal error: {e}")
        else:
            print(f"Fatal error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
