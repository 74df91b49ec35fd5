"""
StateStore - Persist ExecutionRecords per network.

The StateStore manages:
- The active ExecutionRecord per (network, recipe)
- History of superseded and invalidated records
- The network-scoped run lock that keeps two invocations from racing

Storage backends:
- In-memory (for testing)
- File-based: one JSON document per network, written atomically

Layout of the file-based store:
    state_dir/
        local.json
        local.lock
        testnet.json
        ...
"""

import errno
import json
import logging
import os
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

from mintorch.errors import AlreadyRunning, StateUnavailable, StateWriteFailed
from mintorch.schemas import ExecutionRecord, NetworkProfile

logger = logging.getLogger(__name__)

STATE_VERSION = 1

# Age after which a lock file without a readable pid is considered abandoned
UNREADABLE_LOCK_GRACE_S = 60.0


class StateStore(ABC):
    """
    Abstract base class for ExecutionRecord storage.

    Implementations must provide methods to:
    - Read the active record for (network, recipe)
    - Write a record, superseding the previous one
    - Invalidate a record
    - Hold a network-scoped lock for the duration of a run
    """

    @abstractmethod
    def get(self, recipe: str, profile: NetworkProfile) -> Optional[ExecutionRecord]:
        """
        Active record for a recipe on the profile's network.

        Raises:
            StateUnavailable: If the storage cannot be read
        """

    @abstractmethod
    def record(
        self,
        recipe: str,
        profile: NetworkProfile,
        fingerprint: str,
        timestamp: Optional[datetime] = None,
        steps: tuple[str, ...] = (),
        elapsed_ms: Optional[int] = None,
    ) -> ExecutionRecord:
        """
        Write a new active record, moving any previous one to history.

        Raises:
            StateWriteFailed: If the record could not be persisted
        """

    @abstractmethod
    def invalidate(self, recipe: str, profile: NetworkProfile) -> bool:
        """
        Drop the active record so the next run executes.

        Returns:
            True if a record existed
        """

    @abstractmethod
    def records(self, profile: NetworkProfile) -> list[ExecutionRecord]:
        """All active records for the profile's network."""

    @abstractmethod
    def history(self, profile: NetworkProfile) -> list[ExecutionRecord]:
        """Superseded and invalidated records, oldest first."""

    @abstractmethod
    def lock(self, profile: NetworkProfile):
        """
        Context manager holding the run lock for the profile's network.

        Raises:
            AlreadyRunning: If another invocation holds the lock
        """

    def is_satisfied(self, recipe: str, profile: NetworkProfile, fingerprint: str) -> bool:
        """True only if an active record exists with exactly this fingerprint."""
        existing = self.get(recipe, profile)
        return existing is not None and existing.fingerprint == fingerprint


class InMemoryStateStore(StateStore):
    """
    In-memory implementation of StateStore for testing.

    All data is lost when the instance is garbage collected.
    """

    def __init__(self):
        self._records: dict[tuple[str, str], ExecutionRecord] = {}
        self._history: dict[str, list[ExecutionRecord]] = {}
        self._locked: set[str] = set()

    def get(self, recipe: str, profile: NetworkProfile) -> Optional[ExecutionRecord]:
        return self._records.get((profile.name, recipe))

    def record(self, recipe, profile, fingerprint, timestamp=None, steps=(), elapsed_ms=None):
        new = ExecutionRecord(
            recipe=recipe,
            network=profile.name,
            fingerprint=fingerprint,
            recorded_at=timestamp or datetime.now(timezone.utc),
            steps=tuple(steps),
            elapsed_ms=elapsed_ms,
        )
        previous = self._records.get((profile.name, recipe))
        if previous is not None:
            self._history.setdefault(profile.name, []).append(previous)
        self._records[(profile.name, recipe)] = new
        return new

    def invalidate(self, recipe: str, profile: NetworkProfile) -> bool:
        previous = self._records.pop((profile.name, recipe), None)
        if previous is None:
            return False
        self._history.setdefault(profile.name, []).append(previous)
        return True

    def records(self, profile: NetworkProfile) -> list[ExecutionRecord]:
        return [r for (network, _), r in self._records.items() if network == profile.name]

    def history(self, profile: NetworkProfile) -> list[ExecutionRecord]:
        return list(self._history.get(profile.name, []))

    @contextmanager
    def lock(self, profile: NetworkProfile) -> Iterator[None]:
        if profile.name in self._locked:
            raise AlreadyRunning(profile.name, os.getpid())
        self._locked.add(profile.name)
        try:
            yield
        finally:
            self._locked.discard(profile.name)

    def clear(self) -> None:
        """Clear all stored data (for testing)."""
        self._records.clear()
        self._history.clear()
        self._locked.clear()


def _pid_alive(pid: int) -> bool:
    """True if a process with this pid exists."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else
        return True
    return True


class FileStateStore(StateStore):
    """
    File-based implementation of StateStore.

    Each network's records live in ``<state_dir>/<network>.json``:
        {"version": 1, "records": {recipe: record}, "history": [record, ...]}

    Writes go to a temp file that replaces the document, so a crash never
    leaves a half-written file. The run lock is ``<state_dir>/<network>.lock``,
    created with the owner's pid already in it; a lock whose owner is no
    longer alive is swept.
    """

    def __init__(self, state_dir: Path | str):
        self._state_dir = Path(state_dir)

    @property
    def state_dir(self) -> Path:
        return self._state_dir

    def _state_path(self, network: str) -> Path:
        return self._state_dir / f"{network}.json"

    def _lock_path(self, network: str) -> Path:
        return self._state_dir / f"{network}.lock"

    def _ensure_dir(self) -> None:
        try:
            self._state_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StateUnavailable(f"State directory {self._state_dir} is not usable: {e}")
        if not os.access(self._state_dir, os.W_OK):
            raise StateUnavailable(f"State directory {self._state_dir} is not writable")

    def _load(self, network: str) -> dict[str, Any]:
        """Read one network's document; a missing file is an empty store."""
        self._ensure_dir()
        path = self._state_path(network)
        if not path.exists():
            return {"version": STATE_VERSION, "records": {}, "history": []}
        try:
            with open(path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StateUnavailable(f"Cannot read state file {path}: {e}")
        if not isinstance(data, dict) or not isinstance(data.get("records"), dict):
            raise StateUnavailable(f"State file {path} is corrupt")
        data.setdefault("history", [])
        return data

    def _save(self, network: str, data: dict[str, Any]) -> None:
        path = self._state_path(network)
        tmp_path = path.with_suffix(f".json.tmp.{os.getpid()}")
        try:
            with open(tmp_path, "w") as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise StateWriteFailed(f"Cannot write state file {path}: {e}")

    def _parse(self, data: dict[str, Any], source: str) -> ExecutionRecord:
        try:
            return ExecutionRecord.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise StateUnavailable(f"Malformed record in {source}: {e}")

    def get(self, recipe: str, profile: NetworkProfile) -> Optional[ExecutionRecord]:
        data = self._load(profile.name)
        entry = data["records"].get(recipe)
        if entry is None:
            return None
        return self._parse(entry, str(self._state_path(profile.name)))

    def record(self, recipe, profile, fingerprint, timestamp=None, steps=(), elapsed_ms=None):
        try:
            data = self._load(profile.name)
        except StateUnavailable as e:
            raise StateWriteFailed(str(e))

        new = ExecutionRecord(
            recipe=recipe,
            network=profile.name,
            fingerprint=fingerprint,
            recorded_at=timestamp or datetime.now(timezone.utc),
            steps=tuple(steps),
            elapsed_ms=elapsed_ms,
        )
        previous = data["records"].get(recipe)
        if previous is not None:
            data["history"].append(previous)
        data["records"][recipe] = new.to_dict()
        data["version"] = STATE_VERSION
        self._save(profile.name, data)

        logger.debug(
            f"Recorded {recipe} on {profile.name}",
            extra={"recipe": recipe, "network": profile.name, "event": "record_written",
                   "metadata": {"fingerprint": fingerprint}},
        )
        return new

    def invalidate(self, recipe: str, profile: NetworkProfile) -> bool:
        data = self._load(profile.name)
        previous = data["records"].pop(recipe, None)
        if previous is None:
            return False
        data["history"].append(previous)
        self._save(profile.name, data)
        return True

    def records(self, profile: NetworkProfile) -> list[ExecutionRecord]:
        data = self._load(profile.name)
        source = str(self._state_path(profile.name))
        return [self._parse(entry, source) for entry in data["records"].values()]

    def history(self, profile: NetworkProfile) -> list[ExecutionRecord]:
        data = self._load(profile.name)
        source = str(self._state_path(profile.name))
        return [self._parse(entry, source) for entry in data["history"]]

    def _read_lock_owner(self, lock_path: Path) -> Optional[int]:
        try:
            return int(lock_path.read_text().strip())
        except (OSError, ValueError):
            return None

    def sweep_stale_lock(self, network: str) -> bool:
        """
        Remove the network lock if its owner process is gone.

        A lock without a readable pid is only swept once it is older than
        UNREADABLE_LOCK_GRACE_S.

        Returns:
            True if a stale lock was removed
        """
        lock_path = self._lock_path(network)
        try:
            age = time.time() - lock_path.stat().st_mtime
        except FileNotFoundError:
            return False
        owner = self._read_lock_owner(lock_path)
        if owner is None and age < UNREADABLE_LOCK_GRACE_S:
            return False
        if owner is not None and _pid_alive(owner):
            return False
        lock_path.unlink(missing_ok=True)
        logger.warning(
            f"Removed stale lock for network '{network}' (owner pid {owner})",
            extra={"network": network, "event": "stale_lock_swept"},
        )
        return True

    def _write_pid_file(self, network: str) -> Path:
        pid_path = self._state_dir / f"{network}.lock.{os.getpid()}.tmp"
        try:
            with open(pid_path, "w") as f:
                f.write(str(os.getpid()))
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            pid_path.unlink(missing_ok=True)
            raise StateUnavailable(f"Cannot write lock {pid_path}: {e}")
        return pid_path

    def _acquire(self, network: str) -> Path:
        self._ensure_dir()
        lock_path = self._lock_path(network)
        # The lock appears with its pid already written
        pid_path = self._write_pid_file(network)
        try:
            for _ in range(2):
                try:
                    os.link(pid_path, lock_path)
                except FileExistsError:
                    if self.sweep_stale_lock(network):
                        continue
                    raise AlreadyRunning(network, self._read_lock_owner(lock_path))
                except OSError as e:
                    if e.errno in (errno.EACCES, errno.EPERM, errno.EROFS, errno.ENOSPC, errno.ENOTSUP):
                        raise StateUnavailable(f"Cannot create lock {lock_path}: {e}")
                    raise
                return lock_path
            raise AlreadyRunning(network, self._read_lock_owner(lock_path))
        finally:
            pid_path.unlink(missing_ok=True)

    @contextmanager
    def lock(self, profile: NetworkProfile) -> Iterator[None]:
        lock_path = self._acquire(profile.name)
        try:
            yield
        finally:
            if self._read_lock_owner(lock_path) == os.getpid():
                lock_path.unlink(missing_ok=True)
