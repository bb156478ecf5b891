"""Tie the daemon's lifetime to the process that launched it."""

import logging
import threading

import psutil

from save_enroller.config import PARENT_POLL_SECONDS

logger = logging.getLogger(__name__)


def get_parent_process(pid: int) -> psutil.Process | None:
    """Return the process for ``pid``, or None if it is not running."""
    try:
        proc = psutil.Process(pid)
        if not proc.is_running() or proc.status() == psutil.STATUS_ZOMBIE:
            return None
        return proc
    except (psutil.NoSuchProcess, psutil.ZombieProcess):
        return None
    except psutil.AccessDenied:
        # Still running, we just cannot inspect it
        return psutil.Process(pid)


def wait_for_parent(
    pid: int,
    stop_event: threading.Event,
    poll_interval: float = PARENT_POLL_SECONDS,
) -> bool:
    """Block until process ``pid`` exits or ``stop_event`` is set.

    Returns True if the parent exited (or was never running), False if the
    wait ended because of ``stop_event``.
    """
    proc = get_parent_process(pid)
    if proc is None:
        logger.warning("Parent process %d is not running", pid)
        return True

    try:
        name = proc.name()
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        name = None
    logger.info("Tracking parent process pid=%d (%s)", pid, name)

    while not stop_event.is_set():
        try:
            proc.wait(timeout=poll_interval)
        except psutil.TimeoutExpired:
            continue
        except psutil.NoSuchProcess:
            pass
        logger.info("Parent process %d exited", pid)
        return True
    return False
