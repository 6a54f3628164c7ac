"""Instance Locks - Serialize mutations of one instance within the process"""
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

from ..config.settings import settings
from ..domain.errors import ConcurrencyError
from ..utils.logger import get_logger

logger = get_logger(__name__)


class _InstanceLock:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0  # holders plus waiters


class InstanceLockRegistry:
    """
    One mutex per instance id

    Every command holds the instance's lock across validation, handler
    resolution and commit. An entry lives only while some thread holds or
    waits for it, so the registry stays as small as the set of busy
    instances.
    """

    def __init__(self, timeout_seconds: Optional[float] = None):
        self._guard = threading.Lock()
        self._locks: Dict[str, _InstanceLock] = {}
        self._timeout = timeout_seconds

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _checkout(self, instance_id: str) -> _InstanceLock:
        with self._guard:
            entry = self._locks.get(instance_id)
            if entry is None:
                entry = _InstanceLock()
                self._locks[instance_id] = entry
            entry.users += 1
            return entry

    def _checkin(self, instance_id: str, entry: _InstanceLock) -> None:
        with self._guard:
            entry.users -= 1
            if entry.users == 0:
                self._locks.pop(instance_id, None)

    @contextmanager
    def hold(self, instance_id: str) -> Iterator[None]:
        """Hold the instance lock or raise ConcurrencyError on timeout"""
        timeout = self._timeout if self._timeout is not None else settings.instance_lock_timeout_seconds
        entry = self._checkout(instance_id)
        try:
            if not entry.lock.acquire(timeout=timeout):
                logger.warning(
                    f"Timed out waiting for lock on instance {instance_id}",
                    extra={"instance_id": instance_id}
                )
                raise ConcurrencyError(
                    f"Instance {instance_id} is busy, retry the command",
                    details={"instance_id": instance_id, "timeout_seconds": timeout}
                )
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            self._checkin(instance_id, entry)


# Shared by every engine in the process
instance_locks = InstanceLockRegistry()
