"""Delimited record I/O: load, pre-flight, backup and atomic write."""

from __future__ import annotations

import codecs
import csv
import errno
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .errors import DatasetIOError


@dataclass
class RecordSet:
    """Ordered columns plus rows; rows are mutated in place by a batch run."""

    fieldnames: List[str]
    rows: List[Dict[str, str]] = field(default_factory=list)
    delimiter: str = ","
    encoding: str = "utf-8"

    def ensure_columns(self, columns: Iterable[str]) -> None:
        for column in columns:
            if column not in self.fieldnames:
                self.fieldnames.append(column)
        for row in self.rows:
            for column in self.fieldnames:
                row.setdefault(column, "")

    def __len__(self) -> int:
        return len(self.rows)


def load_records(path: Path, *, delimiter: str = ",") -> RecordSet:
    path = Path(path)
    if not path.is_file():
        raise DatasetIOError(f"Dataset not found: {path}", path)
    try:
        with path.open("rb") as raw:
            encoding = "utf-8-sig" if raw.read(3) == codecs.BOM_UTF8 else "utf-8"
        with path.open("r", encoding=encoding, newline="") as fh:
            reader = csv.DictReader(fh, delimiter=delimiter)
            fieldnames = list(reader.fieldnames or [])
            rows = [{key: (value if value is not None else "") for key, value in row.items() if key is not None} for row in reader]
    except (OSError, UnicodeDecodeError, csv.Error) as exc:
        raise DatasetIOError(f"Dataset unreadable: {path}: {exc}", path) from exc
    if not fieldnames:
        raise DatasetIOError(f"Dataset has no header row: {path}", path)
    if not rows:
        raise DatasetIOError(f"Dataset has no records: {path}", path)
    return RecordSet(fieldnames=fieldnames, rows=rows, delimiter=delimiter, encoding=encoding)


def _probe_lock(path: Path) -> None:
    """Raise DatasetIOError when another process holds the file."""

    try:
        fh = path.open("r+b")
    except PermissionError as exc:
        raise DatasetIOError(f"Dataset is locked or read-only: {path}", path) from exc
    except OSError as exc:
        raise DatasetIOError(f"Dataset cannot be opened for writing: {path}: {exc}", path) from exc
    with fh:
        if os.name != "posix":
            return
        import fcntl

        try:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            if exc.errno in (errno.EAGAIN, errno.EACCES, errno.EWOULDBLOCK):
                raise DatasetIOError(f"Dataset is locked by another process: {path}", path) from exc
            raise DatasetIOError(f"Dataset lock check failed: {path}: {exc}", path) from exc
        fcntl.flock(fh.fileno(), fcntl.LOCK_UN)


def ensure_writable(path: Path) -> None:
    """Pre-flight check run before any network activity."""

    path = Path(path)
    if not path.is_file():
        raise DatasetIOError(f"Dataset not found: {path}", path)
    if not os.access(path, os.W_OK):
        raise DatasetIOError(f"Dataset is read-only: {path}", path)
    parent = path.resolve().parent
    if not os.access(parent, os.W_OK):
        raise DatasetIOError(f"Dataset directory is not writable: {parent}", path)
    _probe_lock(path)


def backup_path_for(path: Path, now: Optional[datetime] = None) -> Path:
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y%m%dT%H%M%SZ")
    return path.with_name(f"{path.stem}.bak-{stamp}{path.suffix}")


def write_backup(path: Path, now: Optional[datetime] = None) -> Path:
    path = Path(path)
    target = backup_path_for(path, now)
    try:
        shutil.copy2(path, target)
    except OSError as exc:
        raise DatasetIOError(f"Backup failed for {path}: {exc}", path) from exc
    return target


def write_records(path: Path, records: RecordSet) -> None:
    """Atomically replace ``path`` with the augmented record set."""

    path = Path(path)
    tmp_name: Optional[str] = None
    try:
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.resolve().parent))
        with os.fdopen(fd, "w", encoding=records.encoding, newline="") as fh:
            writer = csv.DictWriter(fh, fieldnames=records.fieldnames, delimiter=records.delimiter, extrasaction="ignore")
            writer.writeheader()
            for row in records.rows:
                writer.writerow(row)
        if path.exists():
            shutil.copymode(path, tmp_name)
        os.replace(tmp_name, path)
        tmp_name = None
    except OSError as exc:
        raise DatasetIOError(f"Dataset write failed: {path}: {exc}", path) from exc
    finally:
        if tmp_name and os.path.exists(tmp_name):
            os.unlink(tmp_name)


__all__ = [
    "RecordSet",
    "backup_path_for",
    "ensure_writable",
    "load_records",
    "write_backup",
    "write_records",
]
