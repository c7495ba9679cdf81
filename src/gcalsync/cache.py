"""Calendar snapshot cache, backup rotation and to-do preservation.

Responsibilities
- `CalendarSnapshot`: immutable capture of one calendar URL (local body,
  last known remote body, credentials reference, to-do block, local file).
- `CalendarCache`: time-boxed snapshots per URL. Entries expire one by one by
  age; when the entry ceiling is reached the whole cache is dropped (no LRU).
- `BackupManager`: once per hour per URL writes the remote body and the local
  file into dated, hash-suffixed files and removes backups past retention.
- `ToDoStore`: VTODO blocks the remote side cannot store, kept in the work
  directory and re-attached to bodies written back locally.

Notes
- Bodies carrying the error marker are never backed up.
- All methods assume the caller holds the engine lock (see sync.service).
"""

from __future__ import annotations

import logging
import shutil
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from pathlib import Path
from urllib.parse import urlsplit

from .ical.parser import attach_todo_block, extract_todo_block, has_error_marker
from .utils.hashing import url_hash

__all__ = ["BackupManager", "CalendarCache", "CalendarSnapshot", "ToDoStore"]

log = logging.getLogger(__name__)

Clock = Callable[[], float]

_BACKUP_WINDOW_SEC = 3600.0


@dataclass(frozen=True)
class CalendarSnapshot:
    url: str
    calendar_id: str = "primary"
    body: bytes | None = None
    previous_body: bytes | None = None
    username: str | None = None
    # Opaque credential reference, never logged
    password: str | None = None
    last_modified: int = 0
    todo_block: str | None = None
    file_path: str | None = None

    @property
    def is_sync_job(self) -> bool:
        """Private iCalendar exports end in .ics; anything else is a plain feed."""
        return self.url.endswith(".ics")

    def body_with_todos(self) -> bytes | None:
        if self.body is None:
            return None
        return attach_todo_block(self.body, self.todo_block)


class CalendarCache:
    def __init__(
        self,
        *,
        timeout_sec: float = 180,
        feed_timeout_sec: float = 3600,
        max_entries: int = 100,
        clock: Clock = time.time,
    ) -> None:
        self.timeout_ms = int(timeout_sec * 1000)
        self.feed_timeout_ms = int(feed_timeout_sec * 1000)
        self.max_entries = max_entries
        self._clock = clock
        self._entries: dict[str, CalendarSnapshot] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, url: object) -> bool:
        return url in self._entries

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    def timeout_for(self, url: str) -> int:
        return self.timeout_ms if url.endswith(".ics") else self.feed_timeout_ms

    def peek(self, url: str) -> CalendarSnapshot | None:
        """Cached snapshot regardless of age."""
        return self._entries.get(url)

    def is_fresh(self, url: str, timeout_ms: int | None = None) -> bool:
        snapshot = self._entries.get(url)
        if snapshot is None:
            return False
        limit = self.timeout_for(url) if timeout_ms is None else timeout_ms
        return self.now_ms() - snapshot.last_modified < limit

    def invalidate_if_stale(self, url: str, timeout_ms: int | None = None) -> bool:
        """Evict the entry of `url` when older than the timeout; True if evicted."""
        if url in self._entries and not self.is_fresh(url, timeout_ms):
            del self._entries[url]
            log.debug("cache-expired url=%s", url)
            return True
        return False

    def invalidate(self, url: str) -> None:
        self._entries.pop(url, None)

    def clear(self) -> None:
        self._entries.clear()

    def get(
        self, url: str, loader: Callable[[], CalendarSnapshot] | None = None
    ) -> CalendarSnapshot | None:
        """Serve a fresh cached snapshot, else load (when a loader is given) and cache it."""
        self.invalidate_if_stale(url)
        snapshot = self._entries.get(url)
        if snapshot is not None:
            return snapshot
        if loader is None:
            return None
        return self.put(url, loader())

    def put(self, url: str, snapshot: CalendarSnapshot) -> CalendarSnapshot:
        """Store `snapshot` stamped with the current time and return the stored value."""
        if url not in self._entries and len(self._entries) >= self.max_entries:
            log.debug("cache-full entries=%d", len(self._entries))
            self._entries.clear()
        stored = replace(snapshot, url=url, last_modified=self.now_ms())
        self._entries[url] = stored
        return stored


class BackupManager:
    def __init__(self, work_dir: str | Path, *, timeout_days: int = 7, clock: Clock = time.time) -> None:
        self.directory = Path(work_dir) / "backup"
        self.timeout_sec = timeout_days * 86400
        self._clock = clock
        self._window_start = 0.0
        self._done: set[str] = set()

    @property
    def enabled(self) -> bool:
        return self.timeout_sec > 0

    def purge(self) -> None:
        """Remove every backup; used when backups are switched off."""
        if self.directory.is_dir():
            shutil.rmtree(self.directory)
            log.info("backups-removed dir=%s", self.directory)

    def file_names(self, url: str, now: float) -> tuple[str, str]:
        day = time.strftime("%Y-%m-%d", time.localtime(now))
        digest = url_hash(url)
        return f"{day}-gcal-{digest}.ics", f"{day}-ical-{digest}.ics"

    def maybe_backup(self, snapshot: CalendarSnapshot) -> bool:
        """Back up `snapshot` unless its URL was already handled this hour."""
        if not self.enabled or not snapshot.is_sync_job:
            return False
        now = self._clock()
        if now - self._window_start > _BACKUP_WINDOW_SEC:
            self._window_start = now
            self._done.clear()
        if snapshot.url in self._done:
            return False
        self._done.add(snapshot.url)

        self.directory.mkdir(parents=True, exist_ok=True)
        if len(self._done) == 1:
            self.cleanup(now)

        gcal_name, ical_name = self.file_names(snapshot.url, now)
        self._save(self.directory / gcal_name, snapshot.body_with_todos())
        if snapshot.file_path:
            local = Path(snapshot.file_path)
            target = self.directory / ical_name
            if local.is_file() and not target.exists():
                self._save(target, local.read_bytes())
        return True

    def cleanup(self, now: float | None = None) -> int:
        if not self.directory.is_dir():
            return 0
        limit = (self._clock() if now is None else now) - self.timeout_sec
        removed = 0
        for path in self.directory.iterdir():
            if path.is_file() and path.stat().st_mtime < limit:
                path.unlink()
                removed += 1
        if removed:
            log.debug("backups-expired count=%d", removed)
        return removed

    @staticmethod
    def _save(path: Path, data: bytes | None) -> None:
        if not data or path.exists() or has_error_marker(data):
            return
        try:
            path.write_bytes(data)
        except OSError as exc:
            log.warning("backup-write-failed path=%s error=%s", path, exc)


class ToDoStore:
    def __init__(self, work_dir: str | Path, *, max_entries: int = 100) -> None:
        self.directory = Path(work_dir) / "todo"
        self.max_entries = max_entries
        self._cache: dict[str, str] = {}

    def path_for(self, url: str) -> Path:
        if url.endswith(".ics"):
            prefix = "gcal"
        else:
            host = urlsplit(url).hostname or "feed"
            labels = [p for p in host.split(".") if p and p != "www"]
            prefix = labels[0] if labels else "feed"
        return self.directory / f"{prefix}-{url_hash(url)}.ics"

    def save(self, url: str, body: bytes | str) -> str | None:
        """Store the VTODO block of `body`; returns the block or None without to-dos."""
        block = extract_todo_block(body)
        path = self.path_for(url)
        if block is None:
            self._cache.pop(url, None)
            path.unlink(missing_ok=True)
            return None
        if self._cache.get(url) == block:
            return block
        if len(self._cache) > self.max_entries:
            self._cache.clear()
        self._cache[url] = block
        self.directory.mkdir(parents=True, exist_ok=True)
        path.write_bytes(block.encode("utf-8"))
        return block

    def load(self, url: str) -> str | None:
        block = self._cache.get(url)
        if block is not None:
            return block
        path = self.path_for(url)
        if not path.exists():
            return None
        try:
            block = path.read_bytes().decode("utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            log.warning("todo-read-failed path=%s error=%s", path, exc)
            path.unlink(missing_ok=True)
            return None
        if len(self._cache) > self.max_entries:
            self._cache.clear()
        self._cache[url] = block
        return block
