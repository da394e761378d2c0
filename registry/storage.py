"""
Product Authentication Registry - Metadata Cache Storage

This module provides JSON-based persistence with file locking, atomic
synchronous flushes and rotating backups, and the durable metadata cache that
maps fingerprints to descriptive metadata and registration provenance.
"""

import fcntl
import json
import logging
import os
import shutil
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from threading import RLock
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from .exceptions import CacheCorruptError
from .schema import CacheEntry


logger = logging.getLogger(__name__)

CACHE_FORMAT_VERSION = 1


class StorageError(Exception):
    """Base storage exception."""
    pass


class FileLockTimeoutError(StorageError):
    """File lock acquisition timeout exception."""
    pass


class IntegrityError(StorageError):
    """File integrity check failure exception."""
    pass


class FileLock:
    """Advisory inter-process lock held on a sidecar .lock file."""

    def __init__(self, file_path: Union[str, Path], timeout: float = 30.0):
        self.file_path = Path(file_path)
        self.lock_file_path = self.file_path.with_suffix(self.file_path.suffix + '.lock')
        self.timeout = timeout
        self.lock_fd: Optional[int] = None
        self._thread_lock = RLock()
        self._depth = 0

    def acquire(self) -> bool:
        """Acquire file lock with timeout."""
        if not self._thread_lock.acquire(timeout=self.timeout):
            raise FileLockTimeoutError(
                f"Failed to acquire lock on {self.file_path} within {self.timeout} seconds"
            )
        if self.lock_fd is not None:
            self._depth += 1
            return True

        try:
            fd = os.open(str(self.lock_file_path), os.O_CREAT | os.O_RDWR)
        except OSError as e:
            self._thread_lock.release()
            raise StorageError(f"Failed to open lock file {self.lock_file_path}: {e}")

        start_time = time.time()
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                self.lock_fd = fd
                self._depth = 1
                return True
            except BlockingIOError:
                if time.time() - start_time >= self.timeout:
                    os.close(fd)
                    self._thread_lock.release()
                    raise FileLockTimeoutError(
                        f"Failed to acquire lock on {self.file_path} within {self.timeout} seconds"
                    )
                time.sleep(0.05)

    def release(self) -> None:
        """Release file lock."""
        if self.lock_fd is None:
            return
        try:
            self._depth -= 1
            if self._depth == 0:
                fcntl.flock(self.lock_fd, fcntl.LOCK_UN)
                os.close(self.lock_fd)
                self.lock_fd = None
        finally:
            self._thread_lock.release()

    def is_locked(self) -> bool:
        return self.lock_fd is not None

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()


class JSONStorage:
    """JSON document storage with atomic, fsync'd writes."""

    def __init__(
        self,
        file_path: Union[str, Path],
        backup_count: int = 5,
        lock_timeout: float = 30.0
    ):
        self.file_path = Path(file_path)
        self.backup_count = backup_count
        self.lock = FileLock(self.file_path, timeout=lock_timeout)

        self.file_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def backup_dir(self) -> Path:
        return self.file_path.parent / 'backups'

    def _write_file(self, data: Dict[str, Any]) -> None:
        """Write data to file atomically and flush it to disk."""
        json_data = json.dumps(data, indent=2, sort_keys=True, default=str).encode('utf-8')
        temp_file = self.file_path.with_suffix(self.file_path.suffix + '.tmp')

        try:
            with open(temp_file, 'wb') as f:
                f.write(json_data)
                f.flush()
                os.fsync(f.fileno())

            os.replace(temp_file, self.file_path)

            dir_fd = os.open(str(self.file_path.parent), os.O_RDONLY)
            try:
                os.fsync(dir_fd)
            finally:
                os.close(dir_fd)

        except OSError as e:
            if temp_file.exists():
                temp_file.unlink()
            raise StorageError(f"Failed to write {self.file_path}: {e}")

    def _create_backup(self) -> Optional[Path]:
        """Create timestamped backup of current file."""
        if not self.file_path.exists():
            return None

        timestamp = datetime.now(timezone.utc).strftime('%Y%m%d_%H%M%S_%f')
        backup_path = self.backup_dir / f"{self.file_path.stem}_{timestamp}{self.file_path.suffix}"
        backup_path.parent.mkdir(parents=True, exist_ok=True)

        shutil.copy2(self.file_path, backup_path)
        self._cleanup_old_backups()
        return backup_path

    def _cleanup_old_backups(self) -> None:
        """Remove old backup files beyond backup_count."""
        for backup_file in self.list_backups()[self.backup_count:]:
            try:
                backup_file.unlink()
            except OSError as e:
                logger.warning(f"Failed to remove old backup {backup_file}: {e}")

    @contextmanager
    def locked(self):
        """Hold the storage file lock across several operations."""
        with self.lock:
            yield

    def read(self) -> Dict[str, Any]:
        """Read and deserialize data from storage; missing file reads as empty."""
        with self.lock:
            if not self.file_path.exists():
                return {}
            try:
                raw = self.file_path.read_bytes()
            except OSError as e:
                raise StorageError(f"Failed to read {self.file_path}: {e}")

            if not raw.strip():
                return {}

            try:
                data = json.loads(raw.decode('utf-8'))
            except (UnicodeDecodeError, json.JSONDecodeError) as e:
                raise IntegrityError(f"Invalid JSON data in {self.file_path}: {e}")

            if not isinstance(data, dict):
                raise IntegrityError(f"Expected a JSON object in {self.file_path}")
            return data

    def write(self, data: Dict[str, Any], create_backup: bool = False) -> None:
        """Write data to storage atomically."""
        with self.lock:
            if create_backup:
                self._create_backup()
            self._write_file(data)

    def update(self, updater_func: Callable[[Dict[str, Any]], Dict[str, Any]]) -> Dict[str, Any]:
        """Read-modify-write under the file lock."""
        with self.lock:
            updated = updater_func(self.read())
            self._write_file(updated)
            return updated

    def exists(self) -> bool:
        return self.file_path.exists()

    def size(self) -> int:
        if not self.file_path.exists():
            return 0
        return self.file_path.stat().st_size

    def backup(self) -> Optional[Path]:
        """Create a manual backup of the current file."""
        with self.lock:
            return self._create_backup()

    def list_backups(self) -> List[Path]:
        """List backup files, newest first."""
        if not self.backup_dir.exists():
            return []
        pattern = f"{self.file_path.stem}_*{self.file_path.suffix}"
        backups = list(self.backup_dir.glob(pattern))
        backups.sort(key=lambda p: p.name, reverse=True)
        return backups

    def quarantine(self) -> Optional[Path]:
        """Move an unreadable file aside so the next write does not destroy it."""
        with self.lock:
            if not self.file_path.exists():
                return None
            timestamp = datetime.now(timezone.utc).strftime('%Y%m%d_%H%M%S')
            target = self.file_path.with_name(f"{self.file_path.name}.corrupt-{timestamp}")
            os.replace(self.file_path, target)
            return target


class MetadataCache:
    """
    Durable fingerprint -> metadata cache.

    Entries are loaded at startup and every mutating call flushes the whole
    document synchronously before returning. Entry metadata is never
    rewritten once stored.
    """

    def __init__(
        self,
        storage_dir: Union[str, Path] = "registry_data",
        file_name: str = "metadata_cache.json",
        backup_count: int = 5,
        lock_timeout: float = 30.0
    ):
        self.storage_dir = Path(storage_dir)
        self.storage = JSONStorage(
            self.storage_dir / file_name,
            backup_count=backup_count,
            lock_timeout=lock_timeout
        )
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = RLock()
        self.load_error: Optional[CacheCorruptError] = None
        self.load()

    def load(self) -> int:
        """
        Load entries from disk.

        An unreadable document is logged, moved aside and treated as an empty
        cache. Individually invalid entries are skipped.

        Returns:
            Number of entries loaded
        """
        with self._lock:
            self._entries = {}
            self.load_error = None
            try:
                data = self.storage.read()
            except StorageError as e:
                self.load_error = CacheCorruptError(str(e), path=str(self.storage.file_path))
                quarantined = self.storage.quarantine()
                logger.error(
                    f"Metadata cache unreadable, starting empty: {e} (moved to {quarantined})"
                )
                return 0

            raw_entries = data.get('entries', {})
            if not isinstance(raw_entries, dict):
                self.load_error = CacheCorruptError(
                    "Cache 'entries' is not an object", path=str(self.storage.file_path)
                )
                logger.error(f"Metadata cache malformed, starting empty: {self.load_error}")
                return 0

            for key, raw in raw_entries.items():
                try:
                    entry = CacheEntry.model_validate(raw)
                except PydanticValidationError as e:
                    logger.warning(f"Skipping invalid cache entry {key}: {e.error_count()} error(s)")
                    continue
                if entry.fingerprint != key.lower():
                    logger.warning(f"Skipping cache entry stored under mismatched key {key}")
                    continue
                self._entries[entry.fingerprint] = entry

            logger.info(f"Loaded {len(self._entries)} metadata cache entries from {self.storage.file_path}")
            return len(self._entries)

    def _serialize(self) -> Dict[str, Any]:
        return {
            'version': CACHE_FORMAT_VERSION,
            'updated_at': datetime.now(timezone.utc).isoformat(),
            'entries': {
                fp: entry.model_dump(mode='json', by_alias=True)
                for fp, entry in sorted(self._entries.items())
            },
        }

    def flush(self) -> None:
        """Write the in-memory entries to disk synchronously."""
        with self._lock:
            self.storage.write(self._serialize())

    def get(self, fingerprint: str) -> Optional[CacheEntry]:
        with self._lock:
            return self._entries.get(fingerprint.lower())

    def contains(self, fingerprint: str) -> bool:
        with self._lock:
            return fingerprint.lower() in self._entries

    def put_if_absent(self, entry: CacheEntry) -> bool:
        """
        Insert an entry unless one already exists for its fingerprint.

        Returns:
            True if the entry was inserted and flushed

        Raises:
            StorageError: If the flush fails (the insert is rolled back)
        """
        return bool(self.put_many_if_absent([entry]))

    def put_many_if_absent(self, entries: Iterable[CacheEntry]) -> List[str]:
        """Insert several entries with a single flush; returns inserted fingerprints."""
        with self._lock:
            inserted = []
            for entry in entries:
                if entry.fingerprint in self._entries:
                    continue
                self._entries[entry.fingerprint] = entry
                inserted.append(entry.fingerprint)

            if not inserted:
                return []

            try:
                self.flush()
            except StorageError:
                for fp in inserted:
                    self._entries.pop(fp, None)
                raise
            return inserted

    def update_provenance(self, fingerprints: Iterable[str], registered_by: str, registration_time: int) -> List[str]:
        """
        Re-attribute existing entries to the registrant the ledger recorded.

        Metadata is left untouched; only registered_by and registration_time
        change. Returns the fingerprints that were rewritten.

        Raises:
            StorageError: If the flush fails (the previous entries are restored)
        """
        with self._lock:
            previous: Dict[str, CacheEntry] = {}
            for fp in fingerprints:
                key = fp.lower()
                entry = self._entries.get(key)
                if entry is None or entry.registered_by == registered_by:
                    continue
                previous[key] = entry
                self._entries[key] = entry.model_copy(
                    update={'registered_by': registered_by, 'registration_time': registration_time}
                )

            if not previous:
                return []

            try:
                self.flush()
            except StorageError:
                self._entries.update(previous)
                raise
            return list(previous)

    def remove(self, fingerprint: str) -> bool:
        """
        Delete an entry and flush.

        Returns:
            True if an entry was removed

        Raises:
            StorageError: If the flush fails (the entry is restored in memory)
        """
        key = fingerprint.lower()
        with self._lock:
            entry = self._entries.pop(key, None)
            if entry is None:
                return False
            try:
                self.flush()
            except StorageError:
                self._entries[key] = entry
                raise
            return True

    def entries(self) -> List[CacheEntry]:
        with self._lock:
            return list(self._entries.values())

    def fingerprints(self) -> List[str]:
        with self._lock:
            return list(self._entries.keys())

    def backup(self) -> Optional[Path]:
        """Snapshot the cache file into the rotating backup directory."""
        return self.storage.backup()

    def get_storage_info(self) -> Dict[str, Any]:
        return {
            'file_path': str(self.storage.file_path),
            'size_bytes': self.storage.size(),
            'exists': self.storage.exists(),
            'entries': len(self),
            'backup_count': len(self.storage.list_backups()),
            'load_error': self.load_error.code if self.load_error else None,
        }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
