from __future__ import annotations

import argparse
import asyncio
import logging
import signal

from pathlib import Path

from shared.protocol import DEFAULT_BROKER_HOST, DEFAULT_BROKER_PORT

from server.room_broker import RoomBroker
from server.signaling_server import SignalingServer

logger = logging.getLogger(__name__)


def _configure_logging(args: argparse.Namespace) -> None:
    log_handlers: list[logging.Handler] = [logging.StreamHandler()]
    if args.log_file:
        from logging.handlers import RotatingFileHandler

        args.log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            args.log_file,
            maxBytes=max(1024, args.log_max_bytes),
            backupCount=max(1, args.log_backup_count),
        )
        file_handler.setFormatter(logging.Formatter("[%(asctime)s] %(levelname)s %(name)s: %(message)s"))
        log_handlers.append(file_handler)

    logging.basicConfig(
        level=getattr(logging, args.log_level, logging.INFO),
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        handlers=log_handlers,
        force=True,
    )


async def main() -> None:
    parser = argparse.ArgumentParser(description="PairWatch room broker")
    parser.add_argument("--host", default=DEFAULT_BROKER_HOST, help="Host/IP to bind the broker")
    parser.add_argument("--port", type=int, default=DEFAULT_BROKER_PORT, help="WebSocket port")
    parser.add_argument(
        "--log-level",
        type=str.upper,
        default="INFO",
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "NOTSET"],
        help="Logging verbosity",
    )
    parser.add_argument("--log-file", type=Path, default=None, help="Optional path to a rotating log file")
    parser.add_argument("--log-max-bytes", type=int, default=5 * 1024 * 1024, help="Max size of the log file before rotation")
    parser.add_argument("--log-backup-count", type=int, default=5, help="Number of rotated log files to retain")
    args = parser.parse_args()

    _configure_logging(args)

    broker = RoomBroker()
    signaling_server = SignalingServer(args.host, args.port, broker)

    stop_event = asyncio.Event()

    def _signal_handler() -> None:
        logger.info("Shutdown signal received")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            asyncio.get_running_loop().add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            # Signals aren't implemented on Windows for ProactorEventLoop; fallback to keyboard interrupt.
            pass

    await signaling_server.start()

    server_task = asyncio.create_task(signaling_server.wait_closed())
    stop_task = asyncio.create_task(stop_event.wait())
    await asyncio.wait({server_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
    stop_task.cancel()

    logger.info("Stopping broker (%d open rooms)", broker.room_count)
    try:
        await signaling_server.stop()
    except Exception:
        logger.exception("Error stopping broker")

    logger.info("Shutdown complete")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
