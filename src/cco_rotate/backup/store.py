"""Hash-chained append-only backup store.

Each backup is a JSON line containing the snapshot plus:
- prev_hash: SHA-256 of the previous entry (or "0"*64 for the first)
- entry_hash: SHA-256 of this entry's content (computed before writing)

Backup IDs are derived from the write timestamp and the entry hash, so
an ID names exactly one immutable snapshot.  Entries are never rewritten;
the forward rotation path only writes, and reading is reserved for
operator-triggered rollback.

Root secret snapshots contain the secret value.  The file is created
with owner-only permissions.
"""

from __future__ import annotations

import hashlib
import json
import os
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from cco_rotate.errors import BackupError
from cco_rotate.models import Backup, BackupKind

GENESIS_HASH = "0" * 64
BACKUP_FILENAME = "backups.jsonl"


@runtime_checkable
class BackupStore(Protocol):
    """Protocol for backup stores."""

    def write(self, kind: BackupKind, payload: dict[str, Any]) -> str:
        """Append a snapshot and return its backup ID."""
        ...

    def list(self, kind: BackupKind | None = None) -> list[str]:
        """Backup IDs in write order, optionally filtered by kind."""
        ...

    def read(self, backup_id: str) -> Backup:
        """Return a single backup.  Raises BackupError if unknown."""
        ...


class FileBackupStore:
    """Append-only, hash-chained JSON-lines backup store.

    Thread-safe via a lock on write operations.
    """

    def __init__(
        self,
        directory: str | Path,
        cluster_id: str = "",
    ) -> None:
        self._dir = Path(directory)
        self._path = self._dir / BACKUP_FILENAME
        self._cluster_id = cluster_id
        self._lock = threading.Lock()
        self._prev_hash = self._read_last_hash()

    @property
    def path(self) -> Path:
        return self._path

    def _read_last_hash(self) -> str:
        """Read the hash of the last entry, or return genesis hash."""
        if not self._path.exists() or self._path.stat().st_size == 0:
            return GENESIS_HASH

        last_line = ""
        with self._path.open("r", encoding="utf-8") as f:
            for line in f:
                stripped = line.strip()
                if stripped:
                    last_line = stripped

        if not last_line:
            return GENESIS_HASH

        try:
            entry = json.loads(last_line)
            return entry.get("entry_hash", GENESIS_HASH)
        except json.JSONDecodeError as exc:
            raise BackupError(
                f"Corrupt backup store: last line is not valid JSON: {self._path}"
            ) from exc

    def write(self, kind: BackupKind, payload: dict[str, Any]) -> str:
        timestamp = datetime.now(tz=UTC)
        with self._lock:
            backup = Backup(
                backup_id="",
                timestamp=timestamp,
                kind=kind,
                cluster_id=self._cluster_id,
                payload=payload,
                prev_hash=self._prev_hash,
            )
            # Hash over everything except the ID and the hash itself
            hash_payload = backup.model_dump(
                mode="json", exclude={"entry_hash", "backup_id"},
            )
            entry_hash = hashlib.sha256(
                json.dumps(hash_payload, sort_keys=True).encode("utf-8")
            ).hexdigest()
            backup.entry_hash = entry_hash
            backup.backup_id = (
                f"bk-{timestamp.strftime('%Y%m%dT%H%M%S%fZ')}-{entry_hash[:8]}"
            )

            json_line = json.dumps(backup.model_dump(mode="json"), sort_keys=True)
            try:
                self._dir.mkdir(parents=True, exist_ok=True)
                fd = os.open(self._path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o600)
                with os.fdopen(fd, "a", encoding="utf-8") as f:
                    f.write(json_line + "\n")
            except OSError as exc:
                raise BackupError(f"Cannot write backup to {self._path}: {exc}") from exc
            self._prev_hash = entry_hash

        return backup.backup_id

    def list(self, kind: BackupKind | None = None) -> list[str]:
        return [
            b.backup_id for b in self.read_backups()
            if kind is None or b.kind == kind
        ]

    def read(self, backup_id: str) -> Backup:
        for backup in self.read_backups():
            if backup.backup_id == backup_id:
                return backup
        raise BackupError(f"Backup not found: {backup_id}")

    def read_backups(self) -> list[Backup]:
        """Read all backups from the store file."""
        if not self._path.exists():
            return []

        backups: list[Backup] = []
        with self._path.open("r", encoding="utf-8") as f:
            for i, line in enumerate(f):
                stripped = line.strip()
                if not stripped:
                    continue
                try:
                    backups.append(Backup(**json.loads(stripped)))
                except Exception as e:
                    raise BackupError(
                        f"Corrupt entry at line {i + 1} in {self._path}: {e}"
                    ) from e

        return backups


def verify_backups(path: str | Path) -> tuple[bool, list[str]]:
    """Verify the integrity of a backup store file.

    Returns (is_valid, list_of_errors).
    An empty error list means no entry was altered, removed or reordered.
    """
    path = Path(path)
    if path.is_dir():
        path = path / BACKUP_FILENAME
    if not path.exists():
        return True, []

    errors: list[str] = []
    prev_hash = GENESIS_HASH
    line_num = 0

    with path.open("r", encoding="utf-8") as f:
        for line in f:
            stripped = line.strip()
            if not stripped:
                continue
            line_num += 1

            try:
                data = json.loads(stripped)
            except json.JSONDecodeError as e:
                errors.append(f"Line {line_num}: invalid JSON: {e}")
                continue

            stored_prev = data.get("prev_hash", "")
            if stored_prev != prev_hash:
                errors.append(
                    f"Line {line_num}: chain broken: "
                    f"expected prev_hash {prev_hash[:16]}..., "
                    f"got {stored_prev[:16]}..."
                )

            stored_hash = data.get("entry_hash", "")
            verify_data = {
                k: v for k, v in data.items() if k not in ("entry_hash", "backup_id")
            }
            recomputed = hashlib.sha256(
                json.dumps(verify_data, sort_keys=True).encode("utf-8")
            ).hexdigest()

            if stored_hash != recomputed:
                errors.append(
                    f"Line {line_num}: hash mismatch: "
                    f"stored {stored_hash[:16]}..., "
                    f"computed {recomputed[:16]}..."
                )

            prev_hash = stored_hash

    return len(errors) == 0, errors
