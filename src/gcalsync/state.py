"""Offline event registry: calendar URL -> (UID -> remote last-modified millis).

The registry records, per calendar, which events the remote side held after
the last completed on-demand synchronization and when each was last modified
there. On the next run it tells apart:
- an event missing remotely but known here (deleted remotely) from a new
  local event;
- a remote change (timestamp moved) from a local change (timestamp equal).

File format (plain text, CRLF, meant to stay human-diffable)

  #GCALSYNC EVENT REGISTRY
  #DO NOT MODIFY THIS FILE!
  #2024-05-01T10:00:00Z

  URL\thttps://example.com/basic.ics

  uid-1@example.com\t1714557600000
  uid-2@example.com\t1714557700000

Lines without a tab are ignored. A file that cannot be parsed is deleted and
the registry starts empty. Writes go through a temporary file and
`os.replace`, and the file is restricted to its owner.

Example
  from gcalsync.state import OfflineEventRegistry
  reg = OfflineEventRegistry("/data/gcalsync/event-registry.txt")
  reg.load()
  reg.update("https://example.com/basic.ics", remote_body)
  print(reg.stored("https://example.com/basic.ics", "uid-1@example.com"))
"""

from __future__ import annotations

import logging
import os
import stat
import tempfile
from datetime import UTC, datetime
from pathlib import Path

from .ical.parser import CalendarParseError, has_error_marker, parse_events

__all__ = ["OfflineEventRegistry"]

log = logging.getLogger(__name__)

_HEADER = "#GCALSYNC EVENT REGISTRY\r\n#DO NOT MODIFY THIS FILE!\r\n"


class OfflineEventRegistry:
    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._calendars: dict[str, dict[str, int]] = {}
        self._loaded = False

    # -------------
    # Queries
    # -------------

    def uids(self, url: str) -> dict[str, int]:
        return dict(self._calendars.get(url, {}))

    def contains(self, url: str, uid: str) -> bool:
        return uid in self._calendars.get(url, {})

    def stored(self, url: str, uid: str) -> int | None:
        return self._calendars.get(url, {}).get(uid)

    def calendars(self) -> dict[str, int]:
        """Tracked calendar URLs with their UID counts."""
        return {url: len(uids) for url, uids in self._calendars.items()}

    # -------------
    # Load / save
    # -------------

    def load(self, *, force: bool = False) -> None:
        """Read the registry file once; later calls are no-ops unless forced."""
        if self._loaded and not force:
            return
        self._loaded = True
        self._calendars = {}
        if not self.path.is_file():
            return
        try:
            self._calendars = self.parse(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, ValueError) as exc:
            log.warning("registry-corrupt path=%s error=%s", self.path, exc)
            self._calendars = {}
            self.path.unlink(missing_ok=True)
            return
        log.debug("registry-loaded path=%s calendars=%d", self.path, len(self._calendars))

    @staticmethod
    def parse(content: str) -> dict[str, dict[str, int]]:
        calendars: dict[str, dict[str, int]] = {}
        url: str | None = None
        uids: dict[str, int] = {}
        for raw in content.splitlines():
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            if line.startswith("URL\t"):
                if url is not None and uids:
                    calendars[url] = uids
                url = line[4:].strip()
                uids = {}
                continue
            uid, sep, millis = line.partition("\t")
            if not sep:
                continue
            uids[uid] = int(millis)
        if url is not None and uids:
            calendars[url] = uids
        return calendars

    def render(self, now: datetime | None = None) -> str:
        stamp = (now or datetime.now(tz=UTC)).strftime("%Y-%m-%dT%H:%M:%SZ")
        parts = [_HEADER, f"#{stamp}\r\n"]
        for url, uids in self._calendars.items():
            if not url:
                continue
            parts.append(f"\r\nURL\t{url}\r\n\r\n")
            parts.extend(f"{uid}\t{millis}\r\n" for uid, millis in uids.items())
        return "".join(parts)

    def save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        content = self.render()
        fd, tmp = tempfile.mkstemp(prefix=".event-registry-", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="") as fh:
                fh.write(content)
            os.chmod(tmp, stat.S_IRUSR | stat.S_IWUSR)
            os.replace(tmp, self.path)
        except OSError as exc:
            log.warning("registry-save-failed path=%s error=%s", self.path, exc)
            Path(tmp).unlink(missing_ok=True)
            return
        log.debug("registry-saved path=%s bytes=%d", self.path, len(content))

    # -------------
    # Updates
    # -------------

    def update(self, url: str, body: bytes | None) -> bool:
        """Replace the entries of `url` with the events of a remote body and save.

        Placeholder (error marker) and unparsable bodies leave the registry
        untouched; returns whether it was rewritten.
        """
        if not body or has_error_marker(body):
            return False
        try:
            events = parse_events(body).events
        except CalendarParseError as exc:
            log.warning("registry-update-skipped url=%s error=%s", url, exc)
            return False
        self.load()
        self._calendars[url] = {
            ev.uid: ev.last_modified or ev.created or 0 for ev in events if ev.uid
        }
        self.save()
        return True

    def clear(self, url: str | None = None) -> None:
        if url is None:
            self._calendars.clear()
        else:
            self._calendars.pop(url, None)
