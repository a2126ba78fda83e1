"""Main daemon entry point with systemd integration.

This module wires the niri connection, the reconciler actor and the
control server together and provides the main event loop with systemd
integration (sd_notify, watchdog, journald logging).
"""

import asyncio
import contextlib
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

try:
    from systemd import journal, daemon as sd_daemon
    SYSTEMD_AVAILABLE = True
except ImportError:
    SYSTEMD_AVAILABLE = False

from . import __version__
from .config import DaemonConfig, load_config
from .connection import ResilientNiriConnection
from .errors import ManagerUnavailable
from .ipc_server import IPCServer
from .reconciler import Reconciler

logger = logging.getLogger(__name__)


@contextlib.contextmanager
def _suppress_stderr_fd():
    """Suppress stderr at the file descriptor level.

    systemd-python writes directly to file descriptor 2, bypassing
    Python's sys.stderr.
    """
    stderr_fd = sys.stderr.fileno()
    saved_stderr_fd = os.dup(stderr_fd)

    devnull_fd = os.open(os.devnull, os.O_WRONLY)
    os.dup2(devnull_fd, stderr_fd)
    os.close(devnull_fd)

    try:
        yield
    finally:
        os.dup2(saved_stderr_fd, stderr_fd)
        os.close(saved_stderr_fd)


class DaemonHealthMonitor:
    """Manages systemd health notifications and watchdog pings."""

    def __init__(self) -> None:
        self.watchdog_interval: Optional[float] = None
        self._setup_watchdog()

    def _setup_watchdog(self) -> None:
        """Detect watchdog interval from systemd environment."""
        if not SYSTEMD_AVAILABLE:
            return

        watchdog_usec = os.environ.get("WATCHDOG_USEC")
        if watchdog_usec:
            # Ping at 1/3 of the systemd timeout
            self.watchdog_interval = int(watchdog_usec) / 3_000_000
            logger.info(f"Systemd watchdog enabled: {self.watchdog_interval:.1f}s interval")
        else:
            logger.debug("Systemd watchdog not configured")

    def _notify(self, state: str) -> None:
        if SYSTEMD_AVAILABLE:
            with _suppress_stderr_fd():
                sd_daemon.notify(state)

    def notify_ready(self) -> None:
        """Send READY=1 signal to systemd."""
        if SYSTEMD_AVAILABLE:
            self._notify("READY=1")
            logger.info("Sent READY=1 to systemd")
        else:
            logger.debug("Systemd not available, skipping READY notification")

    def notify_watchdog(self) -> None:
        self._notify("WATCHDOG=1")

    def notify_stopping(self) -> None:
        if SYSTEMD_AVAILABLE:
            self._notify("STOPPING=1")
            logger.info("Sent STOPPING=1 to systemd")

    async def watchdog_loop(self) -> None:
        """Background task that sends watchdog pings."""
        if not self.watchdog_interval:
            return

        while True:
            await asyncio.sleep(self.watchdog_interval)
            self.notify_watchdog()


class NStickyDaemon:
    """Main daemon class."""

    def __init__(self, config: DaemonConfig) -> None:
        self.config = config
        self.connection: Optional[ResilientNiriConnection] = None
        self.reconciler: Optional[Reconciler] = None
        self.ipc_server: Optional[IPCServer] = None
        self.health_monitor: Optional[DaemonHealthMonitor] = None
        self.shutdown_event = asyncio.Event()

    async def initialize(self) -> None:
        """Initialize daemon components.

        Raises:
            ManagerUnavailable: If no niri socket is configured
        """
        logger.info("Initializing nsticky daemon...")

        if not self.config.niri_socket:
            raise ManagerUnavailable("NIRI_SOCKET is not set; nsticky must run inside a niri session")

        self.health_monitor = DaemonHealthMonitor()
        self.connection = ResilientNiriConnection(self.config)
        self.reconciler = Reconciler(self.connection, stage_workspace=self.config.stage_workspace)
        self.ipc_server = await IPCServer.from_systemd_socket(self.reconciler, self.config)

        logger.info(f"niri socket: {self.config.niri_socket}")

    async def run(self) -> None:
        """Main event loop.

        Returns only when the niri event stream is closed for shutdown and
        raises ManagerUnavailable when niri stays unreachable.
        """
        logger.info("Starting daemon event loop...")

        self.health_monitor.notify_ready()
        watchdog_task = asyncio.create_task(self.health_monitor.watchdog_loop(), name="watchdog")
        actor_task = asyncio.create_task(self.reconciler.run(), name="reconciler")

        try:
            await self.reconciler.pump_events()
        finally:
            for task in (actor_task, watchdog_task):
                task.cancel()
            for task in (actor_task, watchdog_task):
                try:
                    await task
                except asyncio.CancelledError:
                    pass

    async def shutdown(self) -> None:
        """Graceful shutdown with timeouts to prevent hanging."""
        logger.info("Shutting down daemon...")

        if self.health_monitor:
            self.health_monitor.notify_stopping()

        if self.ipc_server:
            try:
                await asyncio.wait_for(self.ipc_server.stop(), timeout=5.0)
            except asyncio.TimeoutError:
                logger.warning("IPC server shutdown timed out after 5s (continuing)")

        if self.connection:
            self.connection.close()

        logger.info("Daemon shutdown complete")

    def setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        def shutdown_handler(signum, frame):
            logger.info(f"Received signal {signum}, initiating shutdown...")
            loop.call_soon_threadsafe(self.shutdown_event.set)

        def debug_handler(signum, frame):
            """Log registry state without shutting down."""
            logger.info("=== DEBUG INFO (USR1) ===")
            logger.info(f"PID: {os.getpid()}")
            if self.reconciler:
                logger.info(f"Registry: {self.reconciler.registry.snapshot()}")
                logger.info(f"Active workspace: {self.reconciler.active_workspace}")
            if self.connection:
                logger.info(f"niri connected: {self.connection.is_connected}")
            logger.info("======================")

        signal.signal(signal.SIGTERM, shutdown_handler)
        signal.signal(signal.SIGINT, shutdown_handler)
        signal.signal(signal.SIGUSR1, debug_handler)


def setup_logging() -> None:
    """Setup logging to systemd journal or stderr."""
    log_level = os.environ.get("LOG_LEVEL", "INFO").upper()

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    if SYSTEMD_AVAILABLE and os.environ.get("JOURNAL_STREAM"):
        with _suppress_stderr_fd():
            handler = journal.JournalHandler(SYSLOG_IDENTIFIER="nsticky")
    else:
        handler = logging.StreamHandler(sys.stderr)

    formatter = logging.Formatter("%(levelname)s [%(name)s] %(message)s")
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)

    logger.info(f"Logging configured: level={log_level}")
    if not SYSTEMD_AVAILABLE:
        logger.debug("systemd-python not available, running without systemd integration")


async def main_async(config: DaemonConfig) -> int:
    """Async main function.

    Returns:
        Exit code (0 = success, non-zero = error)
    """
    daemon = NStickyDaemon(config)

    try:
        daemon.setup_signal_handlers()
        await daemon.initialize()

        run_task = asyncio.create_task(daemon.run(), name="daemon-run")
        shutdown_task = asyncio.create_task(daemon.shutdown_event.wait(), name="shutdown-wait")

        done, pending = await asyncio.wait(
            [run_task, shutdown_task], return_when=asyncio.FIRST_COMPLETED
        )

        for task in pending:
            task.cancel()

        exit_code = 0
        if run_task in done and run_task.exception() is not None:
            logger.error(f"Event loop stopped: {run_task.exception()}")
            exit_code = 1

        await daemon.shutdown()
        return exit_code

    except ManagerUnavailable as e:
        logger.error(f"Fatal error: {e.message}")
        await daemon.shutdown()
        return 1

    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1


def main(config_file: Optional[Path] = None) -> None:
    """Main entry point."""
    setup_logging()

    logger.info(f"nsticky daemon {__version__} starting...")
    logger.info(f"PID: {os.getpid()}")

    try:
        config = load_config(config_file)
    except (ValueError, ValidationError) as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    logger.info(f"Control socket: {config.control_socket}")

    try:
        exit_code = asyncio.run(main_async(config))
        sys.exit(exit_code)

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(0)


if __name__ == "__main__":
    main()
