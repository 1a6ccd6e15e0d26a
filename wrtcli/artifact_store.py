"""
Artifact Store
==============

This module owns the local half of the backup lifecycle: the archive files
themselves and the per-device metadata journal that records them.

Layout under the backup root::

    <backup_root>/<device>/
        20240101_120000_1a2b3c4d_full_backup.tar.gz
        metadata.json      # ordered list of BackupRecord objects
        .last_id           # highest backup id ever issued for the device

Features:
- Atomic artifact and journal writes (temporary file, fsync, rename)
- Journal read-modify-write serialized per device with an in-process lock
- Idempotent artifact deletion
- Removal of temporary and unrecorded files left behind by interrupted creates
"""

import logging
import os
import tempfile
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from pydantic import ValidationError

from .config import Settings
from .error_handling import NotFoundError, StorageError
from .schemas import BackupRecord, journal_adapter

logger = logging.getLogger(__name__)

JOURNAL_FILENAME = "metadata.json"
SEQUENCE_FILENAME = ".last_id"
TEMP_PREFIX = ".tmp-"
ARTIFACT_SUFFIX = "_full_backup.tar.gz"


def _fsync_directory(path: Path):
    """Flush a directory entry so a rename inside it survives a crash."""
    if not hasattr(os, "O_DIRECTORY"):
        return
    fd = os.open(path, os.O_RDONLY | os.O_DIRECTORY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def atomic_write(path: Path, data: bytes):
    """Write bytes to path so readers only ever see the old or the new content."""
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=TEMP_PREFIX, suffix=".part")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise
    _fsync_directory(path.parent)


class ArtifactStore:
    """Local filesystem storage for backup archives and their journal."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.base_path = Path(settings.backup_root)
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    def device_lock(self, device_name: str) -> threading.RLock:
        """Return the lock serializing journal updates for one device."""
        with self._locks_guard:
            if device_name not in self._locks:
                self._locks[device_name] = threading.RLock()
            return self._locks[device_name]

    def device_dir(self, device_name: str, create: bool = False) -> Path:
        if not device_name or device_name in (".", "..") or "/" in device_name or "\\" in device_name:
            raise StorageError(f"Invalid device name for backup storage: {device_name!r}")

        path = self.base_path / device_name
        if create:
            try:
                path.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise StorageError(f"Cannot create backup directory {path}: {e}", e) from e
        return path

    def _artifact_path(self, device_name: str, filename: str) -> Path:
        if not filename or Path(filename).name != filename or filename.startswith("."):
            raise StorageError(f"Invalid artifact filename: {filename!r}")
        return self.device_dir(device_name) / filename

    @staticmethod
    def generate_filename(timestamp: Optional[datetime] = None) -> str:
        """Generate a unique artifact filename."""
        if timestamp is None:
            timestamp = datetime.now(timezone.utc)
        return f"{timestamp.strftime('%Y%m%d_%H%M%S')}_{uuid.uuid4().hex[:8]}{ARTIFACT_SUFFIX}"

    # Artifacts

    def write(self, device_name: str, data: bytes) -> Tuple[str, int]:
        """Durably store an archive and return (filename, size)."""
        if not data:
            raise StorageError(f"Refusing to store an empty backup for {device_name}")

        device_dir = self.device_dir(device_name, create=True)
        filename = self.generate_filename()
        path = device_dir / filename
        with self.device_lock(device_name):
            try:
                atomic_write(path, data)
            except OSError as e:
                raise StorageError(f"Failed to write backup file {path}: {e}", e) from e

        size = len(data)
        logger.info(f"Saved backup file: {path} ({size} bytes)")
        return filename, size

    def read(self, device_name: str, filename: str) -> bytes:
        path = self._artifact_path(device_name, filename)
        try:
            with open(path, "rb") as f:
                return f.read()
        except OSError as e:
            raise StorageError(f"Failed to read backup file {path}: {e}", e) from e

    def delete_artifact(self, device_name: str, filename: str):
        """Delete an archive; a file that is already gone counts as deleted."""
        path = self._artifact_path(device_name, filename)
        try:
            path.unlink()
            logger.info(f"Deleted backup file: {path}")
        except FileNotFoundError:
            logger.debug(f"Backup file already absent: {path}")
        except OSError as e:
            raise StorageError(f"Failed to delete backup file {path}: {e}", e) from e

    def list_artifacts(self, device_name: str) -> List[str]:
        """Names of archive files present on disk for a device."""
        device_dir = self.device_dir(device_name)
        if not device_dir.is_dir():
            return []
        return sorted(p.name for p in device_dir.iterdir() if p.is_file() and p.name.endswith(ARTIFACT_SUFFIX))

    def sweep(self, device_name: str) -> int:
        """Remove leftovers of interrupted creates.

        Deletes temporary files and every archive that no journal record
        names. Callers must not hold an archive they still intend to record
        while sweeping; the orchestrator sweeps and creates under the same
        device lock.
        """
        device_dir = self.device_dir(device_name)
        if not device_dir.is_dir():
            return 0

        removed = 0
        with self.device_lock(device_name):
            for path in device_dir.glob(f"{TEMP_PREFIX}*"):
                try:
                    path.unlink()
                    removed += 1
                except FileNotFoundError:
                    continue
                except OSError as e:
                    logger.warning(f"Could not remove stale temporary file {path}: {e}")

            recorded = {record.filename for record in self._load_journal(device_name)}
            for filename in self.list_artifacts(device_name):
                if filename not in recorded:
                    logger.warning(f"Removing unrecorded backup file {device_dir / filename}")
                    self.delete_artifact(device_name, filename)
                    removed += 1

        if removed:
            logger.info(f"Cleaned up {removed} stale files for {device_name}")
        return removed

    # Journal

    def _load_journal(self, device_name: str) -> List[BackupRecord]:
        path = self.device_dir(device_name) / JOURNAL_FILENAME
        if not path.exists():
            return []
        try:
            return journal_adapter.validate_json(path.read_bytes())
        except OSError as e:
            raise StorageError(f"Failed to read backup metadata {path}: {e}", e) from e
        except ValidationError as e:
            raise StorageError(f"Backup metadata {path} is corrupt: {e}", e) from e

    def _save_journal(self, device_name: str, records: List[BackupRecord]):
        path = self.device_dir(device_name, create=True) / JOURNAL_FILENAME
        try:
            atomic_write(path, journal_adapter.dump_json(records, indent=2, exclude_none=True))
        except OSError as e:
            raise StorageError(f"Failed to write backup metadata {path}: {e}", e) from e

    def _load_last_id(self, device_name: str) -> int:
        path = self.device_dir(device_name) / SEQUENCE_FILENAME
        try:
            return int(path.read_text().strip() or 0)
        except FileNotFoundError:
            return 0
        except (OSError, ValueError) as e:
            raise StorageError(f"Failed to read backup id sequence {path}: {e}") from e

    def _save_last_id(self, device_name: str, last_id: int):
        path = self.device_dir(device_name, create=True) / SEQUENCE_FILENAME
        try:
            atomic_write(path, f"{last_id}\n".encode())
        except OSError as e:
            raise StorageError(f"Failed to write backup id sequence {path}: {e}", e) from e

    def next_id(self, device_name: str) -> int:
        """Next backup id: one past the highest id ever issued for the device."""
        with self.device_lock(device_name):
            records = self._load_journal(device_name)
            highest = max((record.id for record in records), default=0)
            return max(highest, self._load_last_id(device_name)) + 1

    def append_record(self, device_name: str, filename: str, size: int,
                      description: Optional[str] = None,
                      created: Optional[datetime] = None) -> BackupRecord:
        """Assign the next id to a stored archive and append it to the journal."""
        with self.device_lock(device_name):
            records = self._load_journal(device_name)
            record = BackupRecord(
                id=self.next_id(device_name),
                filename=filename,
                created=created or datetime.now(timezone.utc),
                description=description,
                size=size,
            )
            self._save_last_id(device_name, record.id)
            records.append(record)
            self._save_journal(device_name, records)

        logger.info(f"Recorded backup {record.id} for {device_name} ({filename})")
        return record

    def remove_record(self, device_name: str, backup_id: int) -> BackupRecord:
        with self.device_lock(device_name):
            records = self._load_journal(device_name)
            for index, record in enumerate(records):
                if record.id == backup_id:
                    del records[index]
                    self._save_journal(device_name, records)
                    logger.info(f"Removed backup {backup_id} from {device_name} journal")
                    return record

        raise NotFoundError(f"Backup '{backup_id}' not found for device '{device_name}'")

    def list_records(self, device_name: str) -> List[BackupRecord]:
        with self.device_lock(device_name):
            return self._load_journal(device_name)

    def get_record(self, device_name: str, backup_id: int) -> BackupRecord:
        for record in self.list_records(device_name):
            if record.id == backup_id:
                return record
        raise NotFoundError(f"Backup '{backup_id}' not found for device '{device_name}'")
