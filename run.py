"""Launcher for the SaveEnroller daemon.

Versions every save under SAVES_DIR into CONFIG_ROOT/.SaveEnroller and
exits when the process PID exits. Pass ``debug`` instead of a PID to run
until interrupted.

Usage:
    python run.py CONFIG_ROOT SAVES_DIR PID
    python run.py CONFIG_ROOT SAVES_DIR debug --log-level DEBUG
    python run.py CONFIG_ROOT SAVES_DIR PID --config config/config.json
"""

import argparse
import logging
import os
import signal
import sys
import threading
from pathlib import Path

from save_enroller.config import DEBUG_MARKER, LOG_FILE_NAME, load_config
from save_enroller.daemon.parent_tracker import wait_for_parent
from save_enroller.daemon.service import SaveEnrollerDaemon, storage_dir_for

logger = logging.getLogger("save_enroller")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def parse_parent(value: str):
    """PID as int, or None for the debug marker."""
    if value.lower() == DEBUG_MARKER:
        return None
    try:
        pid = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(
            f"expected a process id or '{DEBUG_MARKER}', got {value!r}"
        )
    if pid <= 0:
        raise argparse.ArgumentTypeError(f"invalid process id: {pid}")
    return pid


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="SaveEnroller - versioned backups of save files",
    )
    parser.add_argument("config_root", help="Directory that holds .SaveEnroller/")
    parser.add_argument("saves_dir", help="Directory of save files to watch")
    parser.add_argument(
        "parent",
        type=parse_parent,
        help=f"PID to follow (exit when it exits) or '{DEBUG_MARKER}'",
    )
    parser.add_argument(
        "-c", "--config",
        default=None,
        help="Path to config.json (default: built-in settings)",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help=f"Log file (default: <config_root>/.SaveEnroller/{LOG_FILE_NAME})",
    )
    return parser


def setup_logging(level: str, log_file: Path):
    handlers = [logging.StreamHandler()]
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8", delay=True))
    except OSError as exc:
        print(f"Cannot open log file {log_file}: {exc}", file=sys.stderr)
    logging.basicConfig(
        level=getattr(logging, level),
        format=LOG_FORMAT,
        handlers=handlers,
    )


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    log_file = Path(args.log_file) if args.log_file else (
        storage_dir_for(args.config_root) / LOG_FILE_NAME
    )
    setup_logging(args.log_level, log_file)

    if not os.path.isdir(args.saves_dir):
        parser.error(f"Saves directory does not exist: {args.saves_dir}")

    try:
        config = load_config(args.config)
    except (OSError, ValueError) as exc:
        parser.error(f"Cannot load config: {exc}")

    stop_event = threading.Event()

    def handle_signal(signum, frame):
        logger.info("Received signal %s, shutting down...", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    daemon = SaveEnrollerDaemon(args.config_root, args.saves_dir, config)
    daemon.start()
    try:
        if args.parent is None:
            logger.info("Debug mode: running until interrupted")
            while not stop_event.is_set():
                stop_event.wait(timeout=1.0)
        else:
            wait_for_parent(args.parent, stop_event, config.parent_poll_seconds)
    finally:
        daemon.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
