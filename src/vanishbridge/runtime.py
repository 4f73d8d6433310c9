"""Process runtime: logging, the single-instance lock, and the main loop.

    vanishbridge run

1. Take the pid lock (a previous live instance is asked to stop first)
2. Recover every persisted link into a live session
3. Long-poll Telegram until SIGINT / SIGTERM
4. Release connections without unlinking anything, drop the lock
"""

import asyncio
import logging
import os
import signal
import sys
import time
from pathlib import Path

from vanishbridge.bridge import Bridge
from vanishbridge.config import BridgeSettings, load_settings
from vanishbridge.controller.commands import CommandRouter
from vanishbridge.controller.telegram import TelegramController
from vanishbridge.errors import BridgeError
from vanishbridge.protocol.green_api import GreenAPIProtocol

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(settings: BridgeSettings) -> Path | None:
    """Log to stderr, and to logs/bridge.log when file logging is on."""
    root = logging.getLogger("vanishbridge")
    root.setLevel(settings.logs.level.upper())
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    stream = logging.StreamHandler(sys.stderr)
    stream.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(stream)

    if not settings.logs.enabled:
        return None

    log_dir = settings.log_dir
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "bridge.log"
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(file_handler)
    return log_file


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)  # Signal 0 = check if process exists
        return True
    except (ProcessLookupError, PermissionError):
        return False


def read_pid(pid_file: Path) -> int | None:
    """PID of a running instance, or None."""
    if not pid_file.exists():
        return None
    try:
        pid = int(pid_file.read_text().strip())
    except (ValueError, OSError):
        return None
    return pid if _pid_alive(pid) else None


def acquire_instance_lock(pid_file: Path, wait: float = 5.0) -> None:
    """Make this process the only running instance.

    A live previous instance gets SIGTERM and a few seconds to exit;
    a stale pid file is simply replaced.
    """
    previous = read_pid(pid_file)
    if previous is not None and previous != os.getpid():
        logger.warning(f"Another instance is running (pid={previous}), stopping it")
        try:
            os.kill(previous, signal.SIGTERM)
        except ProcessLookupError:
            pass
        deadline = time.monotonic() + wait
        while _pid_alive(previous) and time.monotonic() < deadline:
            time.sleep(0.2)
        if _pid_alive(previous):
            raise BridgeError(
                f"Previous instance (pid={previous}) did not exit",
                context={"pid_file": str(pid_file)},
            )

    pid_file.parent.mkdir(parents=True, exist_ok=True)
    pid_file.write_text(str(os.getpid()))


def release_instance_lock(pid_file: Path) -> None:
    """Remove the pid file if it still belongs to this process."""
    try:
        if pid_file.exists() and pid_file.read_text().strip() == str(os.getpid()):
            pid_file.unlink()
    except OSError as e:
        logger.warning(f"Could not remove {pid_file}: {e}")


def build_bridge(
    settings: BridgeSettings,
) -> tuple[Bridge, TelegramController, CommandRouter]:
    """Wire the controller, protocol driver, bridge and command router."""
    controller = TelegramController(settings.bot_token)
    protocol = GreenAPIProtocol(
        instances=settings.green_api.instances,
        api_url=settings.green_api.api_url,
        poll_interval=settings.green_api.poll_interval,
    )
    bridge = Bridge.from_settings(settings, protocol, controller)
    router = CommandRouter(
        bridge,
        controller,
        admin_id=settings.telegram.admin_id,
        pagination_limit=settings.bot.pagination_limit,
    )
    controller.set_handler(router)
    return bridge, controller, router


async def serve(settings: BridgeSettings, shutdown_event: asyncio.Event | None = None) -> None:
    """Run the bridge until `shutdown_event` is set or a stop signal arrives."""
    if not settings.bot_token:
        raise BridgeError("Telegram bot token is not configured. Run: vanishbridge setup")

    bridge, controller, _ = build_bridge(settings)
    stop = shutdown_event or asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    try:
        report = await bridge.start()
        if report.failed:
            logger.warning(f"{len(report.failed)} links could not be recovered")
        await controller.start_polling(shutdown_event=stop)
    finally:
        logger.info("Shutting down, releasing sessions")
        await bridge.stop()
        await controller.close()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)


def run(config_path: Path | None = None) -> None:
    """Foreground entry point used by `vanishbridge run`."""
    settings = load_settings(config_path)
    log_file = configure_logging(settings)
    if log_file:
        logger.info(f"Logging to {log_file}")

    pid_file = settings.pid_file
    acquire_instance_lock(pid_file)
    logger.info(f"Bridge started (pid={os.getpid()})")
    try:
        asyncio.run(serve(settings))
    finally:
        release_instance_lock(pid_file)
        logger.info("Bridge stopped")
