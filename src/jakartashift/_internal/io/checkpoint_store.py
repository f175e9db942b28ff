"""Persistence for progress records and file snapshots (internal).

Layout under the state directory::

    <state_dir>/<sha256(resolved project path)[:16]>/progress.json
    <state_dir>/<sha256(resolved project path)[:16]>/snapshots/<sha256 of content>

Snapshots are content addressed, so taking the same snapshot twice is a
no-op and a snapshot id doubles as an integrity check on restore.
"""

import hashlib
import json
import logging
import os
import threading
from pathlib import Path
from typing import Callable, Iterable, Optional, Union

from pydantic import ValidationError

from jakartashift._internal.canonical_json import read_json, write_canonical
from jakartashift.exceptions import CheckpointStoreError
from jakartashift.kernel.hash_utils import bytes_hash
from jakartashift.kernel.progress import PROGRESS_SCHEMA_VERSION, ProgressRecord, new_record

logger = logging.getLogger(__name__)

RECORD_FILE = "progress.json"
SNAPSHOT_DIR = "snapshots"


def project_key(project_path: Union[str, Path]) -> str:
    resolved = str(Path(project_path).resolve())
    return hashlib.sha256(resolved.encode("utf-8")).hexdigest()[:16]


class CheckpointStore:
    """Single writer for one project's progress record and snapshots.

    All writes go through one lock; record writes are atomic renames.
    """

    def __init__(self, state_dir: Union[str, Path], project_path: Union[str, Path]):
        self.project_path = str(Path(project_path).resolve())
        self.directory = Path(state_dir) / project_key(project_path)
        self.record_path = self.directory / RECORD_FILE
        self.snapshot_dir = self.directory / SNAPSHOT_DIR
        self._lock = threading.Lock()

    def load(self) -> Optional[ProgressRecord]:
        """The persisted record, or None when nothing was recorded yet."""
        if not self.record_path.exists():
            return None
        try:
            data = read_json(self.record_path)
        except (OSError, json.JSONDecodeError) as e:
            raise CheckpointStoreError(f"Cannot read progress record {self.record_path}: {e}") from e
        if not isinstance(data, dict) or data.get("schema_version") != PROGRESS_SCHEMA_VERSION:
            raise CheckpointStoreError(
                f"Unsupported progress record schema in {self.record_path}: "
                f"expected {PROGRESS_SCHEMA_VERSION}, got {data.get('schema_version') if isinstance(data, dict) else data!r}"
            )
        try:
            return ProgressRecord.model_validate(data)
        except ValidationError as e:
            raise CheckpointStoreError(f"Corrupt progress record {self.record_path}: {e}") from e

    def load_or_new(self, plan_fingerprint: str = "") -> ProgressRecord:
        record = self.load()
        if record is None:
            return new_record(self.project_path, plan_fingerprint)
        return record

    def save(self, record: ProgressRecord) -> None:
        with self._lock:
            self._write(record)

    def _write(self, record: ProgressRecord) -> None:
        try:
            write_canonical(self.record_path, record.model_dump(mode="json"))
        except OSError as e:
            raise CheckpointStoreError(f"Cannot write progress record {self.record_path}: {e}") from e

    def update(self, fn: Callable[[ProgressRecord], ProgressRecord]) -> ProgressRecord:
        """Read-modify-write under the lock. fn must be pure."""
        with self._lock:
            current = self.load()
            if current is None:
                current = new_record(self.project_path)
            updated = fn(current)
            self._write(updated)
            return updated

    # Snapshots

    def snapshot(self, file: Path) -> str:
        """Store the current bytes of file; returns the snapshot id."""
        data = file.read_bytes()
        snapshot_id = bytes_hash(data)
        target = self.snapshot_dir / snapshot_id
        with self._lock:
            if not target.exists():
                try:
                    self.snapshot_dir.mkdir(parents=True, exist_ok=True)
                    tmp = target.with_name(f".{snapshot_id}.{os.getpid()}.{threading.get_ident()}.tmp")
                    tmp.write_bytes(data)
                    os.replace(tmp, target)
                except OSError as e:
                    raise CheckpointStoreError(f"Cannot write snapshot for {file}: {e}") from e
        return snapshot_id

    def restore(self, snapshot_id: str, file: Path) -> None:
        """Write snapshot bytes back to file, verifying their hash first."""
        source = self.snapshot_dir / snapshot_id
        try:
            data = source.read_bytes()
        except OSError as e:
            raise CheckpointStoreError(f"Snapshot {snapshot_id} missing for {file}: {e}") from e
        if bytes_hash(data) != snapshot_id:
            raise CheckpointStoreError(f"Snapshot {snapshot_id} for {file} is corrupt")
        file.parent.mkdir(parents=True, exist_ok=True)
        file.write_bytes(data)

    def prune_snapshots(self, keep: Iterable[str] = ()) -> int:
        """Delete snapshots not listed in keep; returns how many were removed."""
        keep = set(keep)
        removed = 0
        if not self.snapshot_dir.exists():
            return 0
        with self._lock:
            for entry in sorted(self.snapshot_dir.iterdir()):
                if entry.name not in keep:
                    entry.unlink()
                    removed += 1
        logger.info("Pruned %d snapshot(s) for %s", removed, self.project_path)
        return removed
