from contextlib import contextmanager
from pathlib import Path

from filelock import FileLock, Timeout

from omnisync.common_utils import safe_print
from omnisync.i18n import _


class OmnisyncLockManager:
    """Process-safe locking for omnisync operations."""

    def __init__(self, config_manager):
        self.lock_dir = Path(config_manager.config_dir) / ".locks"
        self.lock_dir.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def acquire_lock(self, lock_name: str, timeout: float = 300.0):
        """
        Acquire an exclusive lock for critical operations.

        Args:
            lock_name: Name of the lock (e.g., 'sync')
            timeout: Max seconds to wait for lock

        Raises:
            TimeoutError: if another process keeps the lock for longer than `timeout`.
        """
        lock = FileLock(str(self.lock_dir / f"{lock_name}.lock"))
        try:
            lock.acquire(timeout=0)
        except Timeout:
            safe_print(_("⏳ Waiting for {} lock...").format(lock_name))
            try:
                lock.acquire(timeout=timeout)
            except Timeout:
                raise TimeoutError(
                    _("Failed to acquire '{}' lock after {}s").format(lock_name, timeout)
                ) from None
        try:
            yield  # Critical section runs here
        finally:
            lock.release()
