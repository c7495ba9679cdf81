"""Calendar service: cache, backups and to-do preservation around the engine.

Entry points
- `get_calendar(request)`: remote body for a URL, served from the cache while
  fresh (with the preserved to-dos attached).
- `calendar_changed(request)`: a new local body arrived. The snapshot's
  previous body is the cached remote body when still fresh, else a fresh
  download; the snapshot is cached and queued for background sync.
- `synchronize_now(request)`: on-demand two-way reconciliation; returns the
  merged remote body, to-dos re-attached, ready to be written locally.

Notes
- Bodies with the error marker are ignored as input and never cached.
- Every cache read-modify-write runs under the synchronizer's lock.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace

from ..cache import BackupManager, CalendarCache, CalendarSnapshot, ToDoStore
from ..ical.parser import has_error_marker
from .mutations import MutationStats
from .synchronizer import Synchronizer

__all__ = ["CalendarRequest", "CalendarService"]

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class CalendarRequest:
    url: str
    calendar_id: str = "primary"
    body: bytes | None = None
    username: str | None = None
    password: str | None = None
    file_path: str | None = None

    def snapshot(self) -> CalendarSnapshot:
        return CalendarSnapshot(
            url=self.url,
            calendar_id=self.calendar_id,
            body=self.body,
            username=self.username,
            password=self.password,
            file_path=self.file_path,
        )


class CalendarService:
    def __init__(
        self,
        synchronizer: Synchronizer,
        cache: CalendarCache,
        *,
        backups: BackupManager | None = None,
        todos: ToDoStore | None = None,
    ) -> None:
        self.synchronizer = synchronizer
        self.cache = cache
        self.backups = backups
        self.todos = todos
        self.lock = synchronizer.lock

    def _todo_block(self, url: str) -> str | None:
        return self.todos.load(url) if self.todos is not None else None

    def _save_todos(self, request: CalendarRequest) -> str | None:
        if self.todos is None or not request.body:
            return None
        return self.todos.save(request.url, request.body)

    def _backup(self, snapshot: CalendarSnapshot) -> None:
        if self.backups is None:
            return
        try:
            self.backups.maybe_backup(snapshot)
        except OSError as exc:
            log.warning("backup-failed url=%s error=%s", snapshot.url, exc)

    # ----------------------------
    # Download
    # ----------------------------

    def get_calendar(self, request: CalendarRequest) -> bytes:
        """Remote body of `request.url` with preserved to-dos attached."""
        with self.lock:
            self.cache.invalidate_if_stale(request.url)
            cached = self.cache.peek(request.url)
            if cached is not None and cached.body is not None:
                log.debug("calendar-served-from-cache url=%s", request.url)
                return cached.body_with_todos() or cached.body

            remote = self.synchronizer.load_remote(request.snapshot())
            if has_error_marker(remote):
                return remote
            snapshot = replace(
                request.snapshot(),
                body=remote,
                previous_body=remote,
                todo_block=self._todo_block(request.url),
            )
            stored = self.cache.put(request.url, snapshot)
            self._backup(stored)
            return stored.body_with_todos() or remote

    # ----------------------------
    # Upload
    # ----------------------------

    def calendar_changed(self, request: CalendarRequest) -> CalendarSnapshot | None:
        """Queue a changed local body for background sync; None when ignored."""
        if not request.body or has_error_marker(request.body):
            log.debug("calendar-change-ignored url=%s", request.url)
            return None
        with self.lock:
            todo_block = self._save_todos(request)
            cached = self.cache.peek(request.url)
            if cached is not None and self.cache.is_fresh(request.url, self.cache.timeout_ms):
                previous = cached.previous_body
            else:
                previous = self.synchronizer.load_remote(request.snapshot())
            if previous is None or has_error_marker(previous):
                log.warning("calendar-change-skipped url=%s reason=remote-unavailable", request.url)
                return None
            snapshot = replace(request.snapshot(), previous_body=previous, todo_block=todo_block)
            stored = self.cache.put(request.url, snapshot)
        if stored.is_sync_job:
            self.synchronizer.notify_changed(stored)
        return stored

    def synchronize_now(
        self, request: CalendarRequest, stats: MutationStats | None = None
    ) -> bytes | None:
        """Reconcile `request.body` with the remote side; merged body or None."""
        if not request.body or has_error_marker(request.body):
            log.debug("synchronize-ignored url=%s", request.url)
            return None
        with self.lock:
            todo_block = self._save_todos(request)
            snapshot = replace(request.snapshot(), todo_block=todo_block)
            previous = self.synchronizer.load_remote(snapshot)
            if has_error_marker(previous):
                log.warning("synchronize-skipped url=%s reason=remote-unavailable", request.url)
                return None
            snapshot = replace(snapshot, previous_body=previous)
            merged = self.synchronizer.synchronize_now(snapshot, stats)
            if has_error_marker(merged):
                self.cache.invalidate(request.url)
                return None
            result = replace(snapshot, body=merged, previous_body=merged)
            stored = self.cache.put(request.url, result)
            self._backup(stored)
            return stored.body_with_todos() or merged
