"""
Snapshot and archive storage.

Layout under the session directory:

    session.json                      current SummaryV1, replaced atomically
    archive/history-<timestamp>.json  pre-compaction history, write-once

Every write goes through a temp file in the target directory that is
fsynced before it is renamed (snapshot) or hard-linked (archive) into
place, so readers never observe a partial file. Any OSError surfaces as
StoreIOError.
"""

import json
import logging
import os
import re
import tempfile
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

from .errors import StoreIOError, SynthesisSchemaError
from .messages import Message
from .snapshot import SummaryV1

logger = logging.getLogger(__name__)

SNAPSHOT_FILENAME = "session.json"
ARCHIVE_DIRNAME = "archive"
ARCHIVE_PREFIX = "history-"

_TIMESTAMP_RE = re.compile(r"^[0-9]{8}T[0-9]{6}(?:\.[0-9]{1,6})?Z$")

# One lock per resolved session directory
_dir_locks: dict[str, threading.Lock] = {}
_dir_locks_guard = threading.Lock()


def _lock_for(path: Path) -> threading.Lock:
    key = str(path.resolve())
    with _dir_locks_guard:
        return _dir_locks.setdefault(key, threading.Lock())


def archive_timestamp(moment: Optional[datetime] = None) -> str:
    """ISO-8601 basic format, safe for file names: 20261019T101500.123456Z."""
    moment = moment or datetime.now(timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%S.%fZ")


def _dumps(data) -> bytes:
    return json.dumps(data, indent=2, sort_keys=True, ensure_ascii=False).encode("utf-8")


def _fsync_dir(directory: Path):
    """Flush directory metadata. Not supported everywhere; best effort there."""
    try:
        fd = os.open(directory, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


@contextmanager
def _durable_tempfile(directory: Path, prefix: str):
    """Yields (file, path) for a temp file that is always cleaned up on exit."""
    fd, tmp_name = tempfile.mkstemp(prefix=prefix, suffix=".tmp", dir=directory)
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as f:
            yield f, tmp_path
    finally:
        try:
            tmp_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.debug("Could not remove temp file %s: %s", tmp_path, e)


def atomic_write_json(path: Path, data) -> Path:
    """Write JSON so that ``path`` holds either the old or the new content."""
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with _durable_tempfile(path.parent, f".{path.name}.") as (f, tmp_path):
            f.write(_dumps(data))
            f.flush()
            os.fsync(f.fileno())
            f.close()
            _fsync_dir(path.parent)
            os.replace(tmp_path, path)
        _fsync_dir(path.parent)
    except OSError as e:
        raise StoreIOError(f"failed to write {path}: {e}", path=path) from e
    return path


def write_once_json(path: Path, data) -> Path:
    """Create ``path`` with JSON content; never overwrites an existing file."""
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with _durable_tempfile(path.parent, f".{path.name}.") as (f, tmp_path):
            f.write(_dumps(data))
            f.flush()
            os.fsync(f.fileno())
            f.close()
            os.link(tmp_path, path)
        _fsync_dir(path.parent)
    except FileExistsError as e:
        raise StoreIOError(f"archive already exists: {path}", path=path) from e
    except OSError as e:
        raise StoreIOError(f"failed to write {path}: {e}", path=path) from e
    return path


class SnapshotStore:
    """Sole writer of the session's snapshot file and archive directory."""

    def __init__(self, session_dir):
        self.session_dir = Path(session_dir)
        self.snapshot_path = self.session_dir / SNAPSHOT_FILENAME
        self.archive_dir = self.session_dir / ARCHIVE_DIRNAME
        self._lock = _lock_for(self.session_dir)

    def persist_snapshot(self, snapshot: SummaryV1) -> Path:
        with self._lock:
            path = atomic_write_json(self.snapshot_path, snapshot.to_dict())
        logger.info("Persisted snapshot to %s", path)
        return path

    def load_snapshot(self) -> Optional[SummaryV1]:
        if not self.snapshot_path.exists():
            return None
        try:
            data = json.loads(self.snapshot_path.read_text(encoding="utf-8"))
        except OSError as e:
            raise StoreIOError(
                f"failed to read {self.snapshot_path}: {e}", path=self.snapshot_path
            ) from e
        except json.JSONDecodeError as e:
            raise StoreIOError(
                f"corrupted snapshot {self.snapshot_path}: {e}", path=self.snapshot_path
            ) from e
        try:
            return SummaryV1.from_dict(data)
        except SynthesisSchemaError as e:
            raise StoreIOError(
                f"snapshot {self.snapshot_path} does not match schema: {e.message}",
                path=self.snapshot_path,
            ) from e

    def archive_path(self, timestamp: str) -> Path:
        if not _TIMESTAMP_RE.match(timestamp):
            raise StoreIOError(f"invalid archive timestamp: {timestamp!r}")
        return self.archive_dir / f"{ARCHIVE_PREFIX}{timestamp}.json"

    def archive(self, messages: Iterable[Message], timestamp: Optional[str] = None) -> Path:
        """Write the full pre-compaction history as one write-once record."""
        timestamp = timestamp or archive_timestamp()
        path = self.archive_path(timestamp)
        record = {
            "timestamp": timestamp,
            "messages": [m.to_dict() for m in messages],
        }
        with self._lock:
            write_once_json(path, record)
        logger.info("Archived %d messages to %s", len(record["messages"]), path)
        return path

    def list_archives(self) -> list[str]:
        """Archive timestamps, oldest first."""
        if not self.archive_dir.is_dir():
            return []
        stamps = []
        for entry in self.archive_dir.glob(f"{ARCHIVE_PREFIX}*.json"):
            stamp = entry.name[len(ARCHIVE_PREFIX):-len(".json")]
            if _TIMESTAMP_RE.match(stamp):
                stamps.append(stamp)
        return sorted(stamps)

    def load_archive(self, timestamp: str) -> list[Message]:
        path = self.archive_path(timestamp)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return [Message.from_dict(item) for item in data["messages"]]
        except OSError as e:
            raise StoreIOError(f"failed to read archive {path}: {e}", path=path) from e
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise StoreIOError(f"corrupted archive {path}: {e}", path=path) from e
