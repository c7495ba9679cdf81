"""Reconciliation engine: background queue and on-demand synchronization.

Background mode
- `notify_changed(snapshot)` appends to an unbounded FIFO consumed by one
  daemon worker. Per item: local additions/changes are pushed as updates (an
  update without remote counterpart becomes an insert); when there are none,
  events that disappeared locally are removed remotely (if deletion is on).
- Errors are logged and the worker moves on to the next item.

On-demand mode
- `synchronize_now(snapshot)` computes the local and the remote delta at once
  and classifies them with the offline event registry:
  - local change, no remote counterpart: insert, unless the registry knows
    the UID (the remote side deleted it; the fresh download drops it locally);
  - local change with counterpart: update only when the remote entry did not
    move since the last sync (registry timestamp equals remote `updated`);
  - remote-only event known to the registry: removed locally, delete remotely;
    unknown: a new remote event, absorbed by the download.
- Deletes run before updates, updates before inserts. The remote body is then
  downloaded again, the registry rewritten from it and the body returned.
- Without any delta nothing is mutated and the previous body is returned.

Concurrency
- One re-entrant lock serializes every cycle of either mode; the calendar
  service shares it for cache and registry read-modify-write.
- `stop()` interrupts the worker: a pending retry pause raises
  `SyncInterrupted` and the current item is abandoned.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable, Sequence
from dataclasses import replace

from ..cache import CalendarSnapshot
from ..ical.parser import CalendarParseError, EventCollection, has_error_marker, parse_events
from ..mapping.events import insert_extensions
from ..remote import RemoteCalendarClient, RemoteError, RetryPolicy, SyncInterrupted
from ..state import OfflineEventRegistry
from .compare import AlarmRegistry, EventComparator
from .delta import compute_delta
from .matcher import EventMatcher
from .mutations import MutationStats, RemoteMutator
from .recurrence import RecurrenceNormalizer

__all__ = ["SyncInterrupted", "Synchronizer"]

log = logging.getLogger(__name__)

RemoteLoader = Callable[[str], bytes]


class Synchronizer:
    def __init__(
        self,
        client: RemoteCalendarClient,
        loader: RemoteLoader,
        registry: OfflineEventRegistry,
        *,
        delete_enabled: bool = True,
        extended_sync: bool = False,
        alarm_methods: Sequence[str] = ("popup",),
        match_threshold: int = 2,
        retry: RetryPolicy | None = None,
        lock: threading.RLock | None = None,
    ) -> None:
        self.loader = loader
        self.registry = registry
        self.delete_enabled = delete_enabled
        self.extended_sync = extended_sync
        self.lock = lock or threading.RLock()
        self._stop = threading.Event()
        self._queue: queue.Queue[CalendarSnapshot | None] = queue.Queue()
        self._worker: threading.Thread | None = None
        self.last_stats: MutationStats | None = None

        self.retry = replace(retry or RetryPolicy(), sleep=self._sleep)
        self.normalizer = RecurrenceNormalizer()
        # The remote export lacks reminders unless extended sync injects them
        self.alarm_registry = None if extended_sync else AlarmRegistry()
        self.comparator = EventComparator(
            self.normalizer, self.alarm_registry, compare_extensions=extended_sync
        )
        self.matcher = EventMatcher(client, threshold=match_threshold, retry=self.retry)
        self.mutator = RemoteMutator(
            client,
            self.matcher,
            retry=self.retry,
            alarm_methods=alarm_methods,
            extended_sync=extended_sync,
            alarm_registry=self.alarm_registry,
        )
        if not delete_enabled:
            log.info("remote-delete-disabled")

    def _sleep(self, seconds: float) -> None:
        if self._stop.wait(seconds):
            raise SyncInterrupted("synchronizer stopped")

    # ----------------------------
    # Background mode
    # ----------------------------

    @property
    def running(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._worker = threading.Thread(target=self._run, name="gcalsync-synchronizer", daemon=True)
        self._worker.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        self._queue.put(None)
        if self._worker is not None:
            self._worker.join(timeout)
            self._worker = None

    def notify_changed(self, snapshot: CalendarSnapshot) -> None:
        self._queue.put(snapshot)

    def pending(self) -> int:
        return self._queue.qsize()

    def join(self) -> None:
        """Block until every queued snapshot has been processed."""
        self._queue.join()

    def _run(self) -> None:
        while not self._stop.is_set():
            snapshot = self._queue.get()
            try:
                if snapshot is None or self._stop.is_set():
                    return
                with self.lock:
                    self.process_changed(snapshot)
            except SyncInterrupted:
                log.info("synchronizer-interrupted url=%s", snapshot.url if snapshot else None)
                return
            except Exception:
                log.exception("background-sync-error", extra={"calendar_url": snapshot.url if snapshot else None})
            finally:
                self._queue.task_done()

    def process_changed(
        self, snapshot: CalendarSnapshot, stats: MutationStats | None = None
    ) -> MutationStats:
        """One background cycle for a changed local calendar."""
        stats = stats or MutationStats()
        if not snapshot.body or has_error_marker(snapshot.previous_body):
            log.debug("sync-skipped url=%s", snapshot.url)
            return stats
        log.debug("sync-started url=%s mode=background", snapshot.url)
        with self.lock:
            local = parse_events(snapshot.body)
            remote = self._parse_previous(snapshot)
            changes = compute_delta(remote.events, local.events, True, self.comparator, snapshot.url)
            if not changes:
                removed = compute_delta(local.events, remote.events, False, self.comparator)
                if removed and self.delete_enabled:
                    self.mutator.remove_events(snapshot, removed, stats)
            else:
                self.mutator.update_events(snapshot, changes, local.timezones, stats)
        self.last_stats = stats
        self._log_finished(snapshot, stats, "background")
        return stats

    # ----------------------------
    # On-demand mode
    # ----------------------------

    def synchronize_now(
        self, snapshot: CalendarSnapshot, stats: MutationStats | None = None
    ) -> bytes:
        stats = stats or MutationStats()
        url = snapshot.url
        if has_error_marker(snapshot.previous_body) or not snapshot.body:
            log.warning("sync-skipped url=%s reason=no-usable-body", url)
            return snapshot.previous_body or b""
        log.debug("sync-started url=%s mode=on-demand", url)
        with self.lock:
            self.registry.load()
            local = parse_events(snapshot.body)
            remote = self._parse_previous(snapshot)

            local_changes = compute_delta(remote.events, local.events, True, self.comparator, url)
            remote_changes = compute_delta(local.events, remote.events, False, self.comparator)

            inserts = []
            updates = []
            removes = []
            processed: set[str] = set()

            for event in local_changes:
                if not event.uid:
                    log.error("event-missing-uid url=%s title=%s", url, event.display_title())
                    continue
                entry = self.matcher.find_remote_event(snapshot, event)
                if entry is None:
                    if self.registry.contains(url, event.uid):
                        log.debug("event-removed-remotely title=%s", event.display_title())
                    else:
                        log.debug("event-new-locally title=%s", event.display_title())
                        inserts.append(event)
                    continue

                if entry.id:
                    processed.add(entry.id)
                stored = self.registry.stored(url, event.uid)
                if stored is None:
                    remote_uid = self.matcher.remote_uid(snapshot, event.uid)
                    if remote_uid:
                        stored = self.registry.stored(url, remote_uid)
                remote_changed = True
                if stored is not None and entry.updated is not None:
                    remote_changed = stored // 1000 != entry.updated // 1000
                if remote_changed:
                    log.debug("event-changed-remotely title=%s", event.display_title())
                else:
                    log.debug("event-changed-locally title=%s", event.display_title())
                    updates.append(event)

            for event in remote_changes:
                entry = self.matcher.find_remote_event(snapshot, event)
                if entry is None or entry.id in processed:
                    continue
                if self.registry.contains(url, event.uid or ""):
                    log.debug("event-removed-locally title=%s", event.display_title())
                    removes.append(event)
                else:
                    log.debug("event-new-remotely title=%s", event.display_title())

            if not local_changes and not remote_changes:
                self.registry.update(url, snapshot.previous_body)
                self.last_stats = stats
                return snapshot.previous_body or b""

            if removes and self.delete_enabled:
                self.mutator.remove_events(snapshot, removes, stats)
            if updates:
                self.mutator.update_events(snapshot, updates, local.timezones, stats)
            if inserts:
                self.mutator.insert_events(snapshot, inserts, local.timezones, stats)

            body = self.load_remote(snapshot)
            self.registry.update(url, body)
        self.last_stats = stats
        self._log_finished(snapshot, stats, "on-demand")
        return body

    # ----------------------------
    # Remote body
    # ----------------------------

    def load_remote(self, snapshot: CalendarSnapshot) -> bytes:
        """Download the remote body; with extended sync, re-insert the extended fields."""
        body = self.loader(snapshot.url)
        self.matcher.invalidate(snapshot.url)
        if not self.extended_sync or has_error_marker(body):
            return body
        with self.lock:
            try:
                identity = self.matcher.build_identity_map(replace(snapshot, previous_body=body))
                entries = {
                    uid: identity.remotes[remote_id]
                    for uid, remote_id in identity.remote_ids.items()
                    if remote_id in identity.remotes
                }
                return insert_extensions(body, entries)
            except (RemoteError, CalendarParseError) as exc:
                log.debug("extensions-skipped url=%s error=%s", snapshot.url, exc)
                return body
            finally:
                self.matcher.invalidate(snapshot.url)

    # ----------------------------
    # Helpers
    # ----------------------------

    @staticmethod
    def _parse_previous(snapshot: CalendarSnapshot) -> EventCollection:
        if not snapshot.previous_body or has_error_marker(snapshot.previous_body):
            return EventCollection()
        return parse_events(snapshot.previous_body)

    @staticmethod
    def _log_finished(snapshot: CalendarSnapshot, stats: MutationStats, mode: str) -> None:
        log.info(
            "sync-finished url=%s mode=%s inserted=%d updated=%d deleted=%d skipped=%d errors=%d",
            snapshot.url,
            mode,
            stats.inserted,
            stats.updated,
            stats.deleted,
            stats.skipped,
            stats.errors,
        )
