"""
Durable checkpoint of prepared claims.

Handles:
- Reading/writing the prepared-claims table to <plugin dir>/checkpoint.yaml
- Schema version and checksum verification on load
- Thread-safe and process-safe file access

Concurrency Safety:
- Thread locks (threading.Lock) protect against races within one process
- File locks (fcntl.flock) protect against races between processes
- Writes go to a unique temp file that is renamed over the target, so a
  reader never sees a half-written checkpoint
- A dedicated lock file serializes whole load-modify-save transactions
"""

from __future__ import annotations

import hashlib
import logging
import os
import sys
import tempfile
import threading
from collections.abc import Iterator
from contextlib import AbstractContextManager, contextmanager
from pathlib import Path
from typing import Any

import yaml

from dracpu.defaults import DRIVER_PLUGIN_CHECKPOINT_FILE
from dracpu.devices import PreparedClaims, prepared_claims_from_dict, prepared_claims_to_dict
from dracpu.errors import StorageCorruptError, StorageUnavailableError

logger = logging.getLogger(__name__)

CHECKPOINT_VERSION = "v1"

_TEMP_SUFFIX = ".tmp"
_LOCK_FILE = ".lock"


def _acquire_file_lock(file_obj: Any, exclusive: bool = False) -> None:
    """
    Acquire an advisory lock on an open file.

    Uses fcntl.flock on Unix systems. On Windows there is no file locking and
    only the thread lock applies.
    """
    if sys.platform != "win32":
        import fcntl

        lock_type = fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH
        try:
            fcntl.flock(file_obj.fileno(), lock_type)
        except OSError as e:
            logger.debug(f"Could not acquire file lock: {e}")


def _release_file_lock(file_obj: Any) -> None:
    if sys.platform != "win32":
        import fcntl

        try:
            fcntl.flock(file_obj.fileno(), fcntl.LOCK_UN)
        except OSError as e:
            logger.debug(f"Could not release file lock: {e}")


class FileStore:
    """
    Key-addressed blob store backed by one directory.

    Each key is a file name inside the directory. Keys may not contain path
    separators, and names starting with a dot are reserved for temp and
    lock files.
    """

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)
        self._thread_lock = threading.Lock()

        try:
            self.directory.mkdir(mode=0o750, parents=True, exist_ok=True)
        except OSError as e:
            raise StorageUnavailableError(f"unable to create {self.directory}: {e}") from e

    def _path(self, key: str) -> Path:
        if not key or "/" in key or os.sep in key or key.startswith("."):
            raise ValueError(f"invalid store key: {key!r}")
        return self.directory / key

    def read(self, key: str) -> bytes:
        """
        Raises:
            StorageUnavailableError: If the key does not exist or cannot be read
        """
        path = self._path(key)
        try:
            with self._thread_lock:
                with open(path, "rb") as f:
                    _acquire_file_lock(f, exclusive=False)
                    try:
                        return f.read()
                    finally:
                        _release_file_lock(f)
        except FileNotFoundError as e:
            raise StorageUnavailableError(f"{key} not found in {self.directory}") from e
        except OSError as e:
            raise StorageUnavailableError(f"unable to read {path}: {e}") from e

    def write(self, key: str, data: bytes) -> None:
        """
        Atomically replace the blob stored under ``key``.

        Each write goes to its own temp file, so concurrent writers never
        share one; the last rename wins.

        Raises:
            StorageUnavailableError: If the data cannot be written
        """
        path = self._path(key)
        temp_file: Path | None = None
        try:
            with self._thread_lock:
                fd, temp_name = tempfile.mkstemp(
                    dir=self.directory, prefix=f".{key}.", suffix=_TEMP_SUFFIX
                )
                temp_file = Path(temp_name)
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                    f.flush()
                    os.fsync(f.fileno())

                os.replace(temp_file, path)
                self._sync_directory()
        except OSError as e:
            if temp_file is not None:
                try:
                    temp_file.unlink(missing_ok=True)
                except OSError:
                    logger.debug(f"Could not remove temp file {temp_file}")
            raise StorageUnavailableError(f"unable to write {path}: {e}") from e

    def _sync_directory(self) -> None:
        if sys.platform == "win32":
            return
        dir_fd = os.open(self.directory, os.O_RDONLY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)

    @contextmanager
    def lock(self) -> Iterator[None]:
        """
        Hold an exclusive lock on the directory across several operations.

        The lock is an flock on a dedicated lock file, so it is shared by every
        FileStore and every process using the same directory.

        Raises:
            StorageUnavailableError: If the lock file cannot be opened
        """
        try:
            lock_file = open(self.directory / _LOCK_FILE, "a+b")
        except OSError as e:
            raise StorageUnavailableError(f"unable to open lock file in {self.directory}: {e}") from e
        with lock_file:
            _acquire_file_lock(lock_file, exclusive=True)
            try:
                yield
            finally:
                _release_file_lock(lock_file)

    def list_keys(self) -> list[str]:
        """
        Raises:
            StorageUnavailableError: If the directory cannot be listed
        """
        try:
            with self._thread_lock:
                return sorted(
                    p.name
                    for p in self.directory.iterdir()
                    if p.is_file() and not p.name.startswith(".")
                )
        except OSError as e:
            raise StorageUnavailableError(f"unable to list {self.directory}: {e}") from e

    def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            with self._thread_lock:
                path.unlink(missing_ok=True)
        except OSError as e:
            raise StorageUnavailableError(f"unable to delete {path}: {e}") from e


def _checksum(payload: dict[str, Any]) -> str:
    canonical = yaml.safe_dump(payload, sort_keys=True, default_flow_style=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class CheckpointStore:
    """
    Versioned, checksummed snapshot of the prepared-claims table.

    Every save writes the complete table; there is no incremental update.
    """

    def __init__(self, store: FileStore, key: str = DRIVER_PLUGIN_CHECKPOINT_FILE) -> None:
        self.store = store
        self.key = key

    def lock(self) -> AbstractContextManager[None]:
        """Exclusive lock held across a load-modify-save transaction."""
        return self.store.lock()

    def initialize(self) -> None:
        """Write an empty checkpoint unless one already exists."""
        with self.lock():
            if self.key in self.store.list_keys():
                logger.debug(f"Checkpoint {self.key} already exists")
                return

            logger.info(f"Creating empty checkpoint {self.key}")
            self.save({})

    def load(self) -> PreparedClaims:
        """
        Load the prepared-claims table.

        Raises:
            StorageUnavailableError: If the checkpoint cannot be read
            StorageCorruptError: If the content does not decode against the
                expected schema version or fails its checksum
        """
        raw = self.store.read(self.key)

        try:
            data = yaml.safe_load(raw.decode("utf-8"))
        except (UnicodeDecodeError, yaml.YAMLError) as e:
            raise StorageCorruptError(f"malformed checkpoint {self.key}: {e}") from e

        if not isinstance(data, dict):
            raise StorageCorruptError(
                f"checkpoint {self.key} has invalid type: {type(data).__name__}, expected mapping"
            )

        version = data.get("version")
        if version != CHECKPOINT_VERSION:
            raise StorageCorruptError(
                f"checkpoint {self.key} has version {version!r}, expected {CHECKPOINT_VERSION!r}"
            )

        payload = data.get("preparedClaims") or {}
        if not isinstance(payload, dict):
            raise StorageCorruptError(f"checkpoint {self.key} preparedClaims is not a mapping")
        if data.get("checksum") != _checksum(payload):
            raise StorageCorruptError(f"checkpoint {self.key} checksum mismatch")

        return prepared_claims_from_dict(payload)

    def save(self, claims: PreparedClaims) -> None:
        """
        Raises:
            StorageUnavailableError: If the checkpoint cannot be written
        """
        payload = prepared_claims_to_dict(claims)
        document = {
            "version": CHECKPOINT_VERSION,
            "checksum": _checksum(payload),
            "preparedClaims": payload,
        }
        content = yaml.safe_dump(document, sort_keys=False, default_flow_style=False)
        self.store.write(self.key, content.encode("utf-8"))
