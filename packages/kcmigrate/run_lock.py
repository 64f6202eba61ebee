"""
Run Lock - One migration run per target at a time

File-based lease guarding the backup directory and the deployment target.

- Acquired atomically with O_CREAT | O_EXCL
- Lock file holds JSON metadata: run_id, profile, pid, hostname, expires_at
- The holder renews the lease at every step boundary
- An expired lease is only broken when its process is confirmed gone
  (or lives on another host, where liveness cannot be checked)
"""

import json
import logging
import os
import socket
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional

from .errors import LockAcquisitionError

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunLease:
    """
    Lease-style lock file for a migration target.

    Usage:
        with RunLease(lock_dir, "prod-keycloak", lease_seconds=7200).hold(run_id) as lease:
            ...
            lease.renew()
    """

    def __init__(
        self,
        lock_dir: Path,
        key: str,
        lease_seconds: int = 7200,
        wait_seconds: int = 0,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize run lease.

        Args:
            lock_dir: Directory holding lock files (the backup root)
            key: Target identity, usually the profile name
            lease_seconds: Lease length; renewed at step boundaries
            wait_seconds: How long to wait for a held lock before giving up
        """
        self.lock_dir = Path(lock_dir)
        self.lock_file = self.lock_dir / f".{key}.lock"
        self.key = key
        self.lease_seconds = lease_seconds
        self.wait_seconds = wait_seconds
        self._clock = clock
        self._sleep = sleep
        self.metadata: Optional[dict] = None

    @property
    def held(self) -> bool:
        return self.metadata is not None

    def acquire(self, run_id: str) -> None:
        """
        Acquire the lease.

        Raises:
            LockAcquisitionError: If another live run holds it
        """
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        deadline = time.monotonic() + self.wait_seconds

        while True:
            if self._try_acquire(run_id):
                logger.info(f"Run lease acquired for {self.key} (run {run_id})")
                return

            if self._is_stale():
                logger.warning(f"Breaking stale run lease {self.lock_file}")
                self._force_release()
                continue

            if time.monotonic() >= deadline:
                info = self.read() or {}
                raise LockAcquisitionError(
                    f"Target '{self.key}' is locked by run {info.get('run_id', 'unknown')} "
                    f"(pid {info.get('pid', '?')} on {info.get('hostname', '?')}, "
                    f"lease until {info.get('expires_at', '?')})"
                )
            self._sleep(1)

    def renew(self) -> None:
        """
        Extend the lease. Fails if the lock file no longer belongs to us.

        Raises:
            LockAcquisitionError: If the lease was lost
        """
        self.ensure_held()
        self.metadata["expires_at"] = (_add(self._clock(), self.lease_seconds)).isoformat()
        tmp = self.lock_file.with_suffix(".tmp")
        tmp.write_text(json.dumps(self.metadata, indent=2), encoding="utf-8")
        os.replace(tmp, self.lock_file)

    def ensure_held(self) -> None:
        """Raise LockAcquisitionError unless the lock file is ours."""
        if not self.metadata:
            raise LockAcquisitionError(f"Run lease for '{self.key}' is not held")
        current = self.read()
        if not current or current.get("run_id") != self.metadata["run_id"]:
            raise LockAcquisitionError(
                f"Run lease for '{self.key}' was lost "
                f"(now held by {(current or {}).get('run_id', 'nobody')})"
            )

    def release(self) -> bool:
        """
        Release the lease if we hold it.

        Returns:
            True if released, False if not held by us
        """
        if not self.metadata:
            return False

        current = self.read()
        if current and current.get("run_id") != self.metadata["run_id"]:
            logger.error(
                f"Lease ownership mismatch: expected {self.metadata['run_id']}, "
                f"got {current.get('run_id')}"
            )
            self.metadata = None
            return False

        try:
            self.lock_file.unlink()
        except FileNotFoundError:
            logger.warning(f"Lease file {self.lock_file} already removed")
        logger.info(f"Run lease released for {self.key} (run {self.metadata['run_id']})")
        self.metadata = None
        return True

    def read(self) -> Optional[dict]:
        """Lock metadata, or None if unlocked or unreadable."""
        try:
            with open(self.lock_file, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to read lock file {self.lock_file}: {e}")
            return None

    def hold(self, run_id: str) -> "RunLeaseContext":
        return RunLeaseContext(self, run_id)

    def _try_acquire(self, run_id: str) -> bool:
        now = self._clock()
        metadata = {
            "run_id": run_id,
            "key": self.key,
            "acquired_at": now.isoformat(),
            "expires_at": _add(now, self.lease_seconds).isoformat(),
            "pid": os.getpid(),
            "hostname": socket.gethostname(),
        }
        try:
            fd = os.open(str(self.lock_file), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False

        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(metadata, f, indent=2)
        self.metadata = metadata
        return True

    def _is_stale(self) -> bool:
        """
        Expired AND holder not provably alive.

        Unreadable metadata is never considered stale.
        """
        info = self.read()
        if not info:
            return False

        try:
            expires_at = datetime.fromisoformat(info["expires_at"])
        except (KeyError, ValueError):
            return False

        if self._clock() <= expires_at:
            return False

        if info.get("hostname") == socket.gethostname() and info.get("pid"):
            if _is_process_alive(int(info["pid"])):
                logger.warning(f"Lease expired but process {info['pid']} is still alive")
                return False
        return True

    def _force_release(self) -> None:
        try:
            self.lock_file.unlink()
        except FileNotFoundError:
            pass


class RunLeaseContext:
    """Context manager that acquires on entry and always releases on exit."""

    def __init__(self, lease: RunLease, run_id: str):
        self.lease = lease
        self.run_id = run_id

    def __enter__(self) -> RunLease:
        self.lease.acquire(self.run_id)
        return self.lease

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.lease.release()
        return False


def _add(moment: datetime, seconds: int) -> datetime:
    return moment + timedelta(seconds=seconds)


def _is_process_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True
