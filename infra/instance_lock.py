"""
PID-file lock on a ledger data directory.

Two runtimes writing the same JSON ledger would interleave their
whole-file rewrites and double-execute standing orders, so the runtime
takes this lock before loading state. A lock file left behind by a
process that is no longer running is treated as stale and replaced.
"""

import atexit
import logging
import os
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class SingleInstanceLock:
    """
    Usage:
        lock = SingleInstanceLock("autotrader", lock_dir="data/ledger")
        if not lock.acquire():
            raise RuntimeError("ledger already in use")
        ...
        lock.release()  # also released at interpreter exit
    """

    def __init__(self, name: str, lock_dir: str = "data"):
        self.name = name
        self.lock_dir = Path(lock_dir)
        self.lock_file = self.lock_dir / f"{name}.pid"
        self.acquired = False
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        atexit.register(self.release)

    @staticmethod
    def _is_process_running(pid: int) -> bool:
        try:
            os.kill(pid, 0)
            return True
        except OSError:
            return False

    def holder_pid(self) -> Optional[int]:
        try:
            return int(self.lock_file.read_text().strip())
        except (OSError, ValueError):
            return None

    def acquire(self) -> bool:
        """
        Returns:
            True if the lock is now held by this process, False if another
            live process holds it
        """
        if self.acquired:
            return True

        if self.lock_file.exists():
            existing_pid = self.holder_pid()
            if existing_pid is not None and existing_pid != os.getpid() and self._is_process_running(existing_pid):
                logger.error(f"Ledger in use by PID={existing_pid} (lock file: {self.lock_file})")
                return False
            logger.warning(f"Replacing stale lock file {self.lock_file} (PID={existing_pid})")
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

        try:
            self.lock_file.write_text(str(os.getpid()))
        except OSError as e:
            logger.error(f"Failed to create lock file {self.lock_file}: {e}")
            return False
        self.acquired = True
        logger.info(f"Lock acquired (PID={os.getpid()}, file={self.lock_file})")
        return True

    def release(self) -> None:
        if not self.acquired:
            return
        try:
            self.lock_file.unlink()
            logger.info(f"Lock released (file={self.lock_file})")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to release lock {self.lock_file}: {e}")
        self.acquired = False

    def __enter__(self):
        if not self.acquire():
            raise RuntimeError(f"Failed to acquire lock for {self.name}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False
