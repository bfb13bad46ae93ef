"""Single-instance enforcement.

Only one background process may own the hotkey, the settings file and the
update lifecycle. Later invocations find the lock taken and talk to the
running instance through signals:

- SIGUSR1: start a capture (bound to the user's hotkey)
- SIGUSR2: check for updates now
- SIGHUP: reload settings written by another invocation (e.g. --pair)

A freshly installed build is started while the old one is still shutting
down, so it waits for the lock instead of signalling.
"""

import fcntl
import logging
import os
import signal
import time
from typing import Optional, TextIO

from .config import Config

log = logging.getLogger(__name__)

SIGNAL_CAPTURE = signal.SIGUSR1
SIGNAL_CHECK_UPDATES = signal.SIGUSR2
SIGNAL_RELOAD = signal.SIGHUP


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except OSError:
        return False
    return True


class InstanceManager:
    """Owns the lock file for the lifetime of the background process."""

    def __init__(self, config: Config):
        self.config = config
        self._handle: Optional[TextIO] = None

    def acquire_lock(self) -> bool:
        """Take the lock and record our PID in it.

        Returns:
            False if another process holds it
        """
        if self._handle is not None:
            return True

        path = self.config.lock_file
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            # Append mode: losing the race must not wipe the owner's PID
            handle = open(path, "a+")
        except OSError as e:
            log.error("Cannot open lock file %s: %s", path, e)
            return False
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as e:
            log.debug("Lock %s is held elsewhere: %s", path, e)
            handle.close()
            return False

        handle.seek(0)
        handle.truncate()
        handle.write(str(os.getpid()))
        handle.flush()
        self._handle = handle
        log.debug("Lock %s acquired by PID %d", path, os.getpid())
        return True

    def wait_for_lock(self, timeout_s: float, poll_s: float = 0.5) -> bool:
        """Retry ``acquire_lock`` until it succeeds or ``timeout_s`` passes."""
        deadline = time.monotonic() + timeout_s
        while not self.acquire_lock():
            if time.monotonic() >= deadline:
                log.warning("Previous instance still holds the lock after %.0fs", timeout_s)
                return False
            time.sleep(poll_s)
        return True

    def release_lock(self) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        except OSError as e:
            log.debug("Unlock failed: %s", e)
        finally:
            handle.close()
        self.config.lock_file.unlink(missing_ok=True)

    def get_running_pid(self) -> Optional[int]:
        """PID recorded in the lock file, if that process is alive."""
        try:
            pid = int(self.config.lock_file.read_text().strip())
        except (OSError, ValueError):
            return None
        return pid if _pid_alive(pid) else None

    def signal_running(self, signum: int) -> bool:
        """Deliver ``signum`` to the running instance, never to ourselves."""
        pid = self.get_running_pid()
        if pid is None or pid == os.getpid():
            return False
        try:
            os.kill(pid, signum)
        except OSError as e:
            log.debug("Could not signal PID %d: %s", pid, e)
            return False
        log.debug("Sent %s to PID %d", signal.Signals(signum).name, pid)
        return True

    def signal_capture(self) -> bool:
        return self.signal_running(SIGNAL_CAPTURE)

    def signal_check_updates(self) -> bool:
        return self.signal_running(SIGNAL_CHECK_UPDATES)

    def signal_reload(self) -> bool:
        return self.signal_running(SIGNAL_RELOAD)
