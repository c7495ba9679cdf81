"""Top-level sync orchestrator.

Responsibilities
- Construct the engine from the loaded config (explicit constructor wiring)
- Enforce single-run lock using a filesystem lock file
- Drive on-demand passes over the configured calendars (`run_once`) or the
  background mode (`watch`), which reconciles every local file once on start
  and then queues changed files and refreshes expired ones
- Provide an overall summary and exit code

Exit codes
- 0: success
- 2: partial (per-event errors or skipped calendars)
- 3: fatal (could not start/run)

Notes
- The merged remote body (plus preserved to-dos) replaces the local file
  atomically after each on-demand pass.
- Calendars without `local_file` have nothing to reconcile and are skipped.
"""

from __future__ import annotations

import errno
import logging
import os
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from types import TracebackType

from ..cache import BackupManager, CalendarCache, ToDoStore
from ..config import AppConfig, CalendarConfig
from ..google.auth import get_credentials
from ..google.calendar import GoogleCalendarClient
from ..google.ics import IcsLoader
from ..ical.parser import has_error_marker
from ..remote import RemoteCalendarClient, RetryPolicy
from ..state import OfflineEventRegistry
from ..utils.http import RetryConfig
from .mutations import MutationStats
from .service import CalendarRequest, CalendarService
from .synchronizer import Synchronizer

__all__ = ["CalendarRunResult", "FileLock", "Orchestrator", "RunSummary"]

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class CalendarRunResult:
    inserted: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0
    errors: int = 0
    written: bool = False

    @classmethod
    def from_stats(cls, stats: MutationStats, *, written: bool) -> CalendarRunResult:
        return cls(
            inserted=stats.inserted,
            updated=stats.updated,
            deleted=stats.deleted,
            skipped=stats.skipped,
            errors=stats.errors,
            written=written,
        )


@dataclass(frozen=True)
class RunSummary:
    calendars: dict[str, CalendarRunResult] = field(default_factory=dict)

    def aggregate(self) -> dict[str, int]:
        total = {"inserted": 0, "updated": 0, "deleted": 0, "skipped": 0, "errors": 0}
        for res in self.calendars.values():
            for k in total:
                total[k] += getattr(res, k)
        return total


class FileLock:
    """Non-blocking PID file lock using O_CREAT|O_EXCL.

    A lock left behind by a dead process is detected and replaced.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self._fd: int | None = None

    def _create(self) -> None:
        self._fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        os.write(self._fd, str(os.getpid()).encode("utf-8"))
        os.fsync(self._fd)

    def acquire(self) -> None:
        try:
            self._create()
        except OSError as e:
            if e.errno != errno.EEXIST:
                raise
            if self._is_stale_lock():
                log.warning("lock-stale-removed path=%s", self.path)
                try:
                    os.unlink(self.path)
                    self._create()
                    return
                except OSError:
                    # Another process won the race
                    pass
            raise RuntimeError(f"Another instance is running (lock exists at {self.path})") from e

    def _is_stale_lock(self) -> bool:
        """True when the lock file names a process that no longer exists."""
        try:
            with open(self.path, encoding="utf-8") as f:
                pid_str = f.read().strip()
        except (FileNotFoundError, PermissionError):
            return True
        if not pid_str.isdigit():
            return True
        try:
            os.kill(int(pid_str), 0)
        except OSError:
            return True
        return False

    def release(self) -> None:
        if self._fd is not None:
            try:
                os.close(self._fd)
            except OSError:
                pass
            self._fd = None
        try:
            os.unlink(self.path)
        except FileNotFoundError:
            pass

    def __enter__(self) -> FileLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()


def write_atomic(path: str | Path, data: bytes) -> None:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=".gcalsync-", dir=str(target.parent))
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
        os.replace(tmp, target)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


class Orchestrator:
    def __init__(
        self,
        cfg: AppConfig,
        *,
        client: RemoteCalendarClient | None = None,
        loader: IcsLoader | None = None,
    ) -> None:
        self.cfg = cfg
        self._client = client
        self._loader = loader
        self.service: CalendarService | None = None

    # ----------------------------
    # Wiring
    # ----------------------------

    def _build_client(self) -> RemoteCalendarClient:
        if self._client is not None:
            return self._client
        creds = get_credentials(self.cfg.google, allow_interactive=True)
        return GoogleCalendarClient(creds, send_invitations=self.cfg.google.send_invitations)

    def _build_loader(self) -> IcsLoader:
        if self._loader is not None:
            return self._loader
        sync = self.cfg.sync
        return IcsLoader(
            retry=RetryConfig(
                max_retries=max(sync.max_retries, 1),
                backoff_initial_sec=sync.retry_interval_sec,
            )
        )

    def build(self) -> CalendarService:
        """Construct the calendar service and its engine from the config."""
        if self.service is not None:
            return self.service
        sync = self.cfg.sync
        work_dir = Path(self.cfg.state.work_dir)
        work_dir.mkdir(parents=True, exist_ok=True)

        loader = self._build_loader()
        synchronizer = Synchronizer(
            self._build_client(),
            loader.load,
            OfflineEventRegistry(self.cfg.state.registry_path),
            delete_enabled=sync.delete_enabled,
            extended_sync=sync.extended_sync,
            alarm_methods=self.cfg.google.alarm_methods,
            match_threshold=sync.match_threshold,
            retry=RetryPolicy(max_retries=sync.max_retries, interval_sec=sync.retry_interval_sec),
        )
        cache = CalendarCache(
            timeout_sec=sync.cache_timeout_sec,
            feed_timeout_sec=sync.feed_cache_timeout_sec,
            max_entries=sync.max_cache_entries,
        )
        backups = BackupManager(work_dir, timeout_days=sync.backup_timeout_days)
        if not backups.enabled:
            backups.purge()
        todos = ToDoStore(work_dir, max_entries=sync.max_cache_entries)
        self.service = CalendarService(synchronizer, cache, backups=backups, todos=todos)
        return self.service

    @staticmethod
    def _request(cal: CalendarConfig, body: bytes | None = None) -> CalendarRequest:
        return CalendarRequest(
            url=cal.ics_url,
            calendar_id=cal.calendar_id,
            body=body,
            username=cal.username,
            file_path=cal.local_file,
        )

    def _selected(self, names: list[str] | None) -> dict[str, CalendarConfig]:
        if not names:
            return dict(self.cfg.calendars)
        missing = [n for n in names if n not in self.cfg.calendars]
        if missing:
            raise ValueError(f"Unknown calendar(s): {', '.join(missing)}")
        return {n: self.cfg.calendars[n] for n in names}

    # ----------------------------
    # On-demand mode
    # ----------------------------

    def sync_calendar(self, name: str, cal: CalendarConfig) -> CalendarRunResult:
        service = self.build()
        stats = MutationStats()
        if not cal.local_file:
            log.warning("calendar-no-local-file name=%s", name)
            return CalendarRunResult(skipped=1)

        local = Path(cal.local_file)
        if not local.is_file():
            # First run: seed the local file from the remote side
            body = service.get_calendar(self._request(cal))
        else:
            body = service.synchronize_now(self._request(cal, local.read_bytes()), stats)
        if body is None or has_error_marker(body):
            log.warning("calendar-not-written name=%s", name)
            stats.errors += 1
            return CalendarRunResult.from_stats(stats, written=False)

        write_atomic(local, body)
        log.info("calendar-written name=%s path=%s bytes=%d", name, local, len(body))
        return CalendarRunResult.from_stats(stats, written=True)

    def run_once(self, names: list[str] | None = None) -> tuple[int, RunSummary]:
        """Synchronize the selected calendars once; returns exit code and summary."""
        lock_path = self.cfg.runtime.lock_path
        log.info("acquiring-lock %s", lock_path)
        lock = FileLock(lock_path)
        try:
            lock.acquire()
        except (RuntimeError, OSError) as e:
            log.error("lock-failed %s", e)
            return 3, RunSummary()

        results: dict[str, CalendarRunResult] = {}
        exit_code = 3
        try:
            calendars = self._selected(names)
            self.build()
            for name, cal in calendars.items():
                try:
                    results[name] = self.sync_calendar(name, cal)
                except Exception:
                    log.exception("calendar-sync-failed", extra={"calendar": name})
                    results[name] = CalendarRunResult(errors=1)
            summary = RunSummary(results)
            exit_code = 0 if summary.aggregate()["errors"] == 0 else 2
        except Exception:
            log.exception("sync-fatal")
            summary = RunSummary(results)
        finally:
            lock.release()
        return exit_code, summary

    # ----------------------------
    # Background mode
    # ----------------------------

    @staticmethod
    def _write_if_changed(local: Path, body: bytes | None) -> bool:
        if body is None or has_error_marker(body):
            return False
        if local.is_file() and local.read_bytes() == body:
            return False
        write_atomic(local, body)
        return True

    def poll(self, mtimes: dict[str, float]) -> None:
        """One watch iteration: queue changed local files, refresh expired ones."""
        service = self.build()
        for name, cal in self.cfg.calendars.items():
            if not cal.local_file:
                continue
            local = Path(cal.local_file)
            try:
                mtime = local.stat().st_mtime if local.is_file() else None
                if mtime is not None and name not in mtimes:
                    # Edits made while nobody was watching are reconciled on-demand once
                    body = service.synchronize_now(self._request(cal, local.read_bytes()))
                    if self._write_if_changed(local, body):
                        log.info("calendar-written name=%s path=%s", name, local)
                    mtimes[name] = local.stat().st_mtime
                elif mtime is not None and mtimes[name] != mtime:
                    mtimes[name] = mtime
                    log.info("local-change-detected name=%s", name)
                    service.calendar_changed(self._request(cal, local.read_bytes()))
                elif service.synchronizer.pending() == 0 and not service.cache.is_fresh(cal.ics_url):
                    if self._write_if_changed(local, service.get_calendar(self._request(cal))):
                        log.info("calendar-refreshed name=%s", name)
                    if local.is_file():
                        mtimes[name] = local.stat().st_mtime
            except Exception:
                log.exception("watch-poll-failed", extra={"calendar": name})

    def watch(self, stop: threading.Event | None = None, *, iterations: int | None = None) -> int:
        """Background mode until `stop` is set (or `iterations` polls ran)."""
        stop = stop or threading.Event()
        lock = FileLock(self.cfg.runtime.lock_path)
        try:
            lock.acquire()
        except (RuntimeError, OSError) as e:
            log.error("lock-failed %s", e)
            return 3
        try:
            service = self.build()
            service.synchronizer.start()
            mtimes: dict[str, float] = {}
            count = 0
            log.info("watch-started calendars=%d", len(self.cfg.calendars))
            while not stop.is_set():
                self.poll(mtimes)
                count += 1
                if iterations is not None and count >= iterations:
                    break
                stop.wait(self.cfg.sync.poll_interval_sec)
            service.synchronizer.join()
        except KeyboardInterrupt:
            log.info("watch-interrupted")
        except Exception:
            log.exception("watch-fatal")
            return 3
        finally:
            if self.service is not None:
                self.service.synchronizer.stop()
            lock.release()
        return 0
