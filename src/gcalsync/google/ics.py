"""Download of the remote calendar's private iCalendar export.

The export ("remote body") is the engine's ground truth for what the remote
side looks like. A download that keeps failing never raises: it yields the
placeholder calendar carrying the error marker (see ical.parser), which every
consumer recognizes and refuses to persist.

Notes
- Up to `retry.max_retries` attempts (default 5) with a fixed pause.
- A body not starting with BEGIN:VCALENDAR (an HTML login page, a quota
  notice) counts as a failed attempt.
- Connection failures (DNS, refused) produce the "NETWORK DOWN" placeholder.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import replace
from time import sleep

import httpx

from ..ical.parser import decode_body, error_calendar
from ..utils.http import RetryConfig, create_client, request_with_retries

__all__ = ["IcsLoader", "InvalidFeedError"]

log = logging.getLogger(__name__)


class InvalidFeedError(ValueError):
    """The downloaded document is not an iCalendar body."""


class IcsLoader:
    def __init__(
        self,
        client: httpx.Client | None = None,
        *,
        retry: RetryConfig | None = None,
        sleep_fn: Callable[[float], None] = sleep,
    ) -> None:
        self._client = client or create_client()
        self.retry = retry or RetryConfig()
        # Attempts are counted by load(); each fetch is a single request
        self._single = replace(self.retry, max_retries=1)
        self._sleep = sleep_fn

    def close(self) -> None:
        self._client.close()

    def fetch(self, url: str) -> bytes:
        """One download attempt; raises on any failure."""
        resp = request_with_retries(
            self._client, "GET", url, retry=self._single, sleep_fn=self._sleep
        )
        resp.raise_for_status()
        body = resp.content
        if not decode_body(body[:64]).lstrip().startswith("BEGIN:VCALENDAR"):
            raise InvalidFeedError(f"Not an iCalendar document (HTTP {resp.status_code})")
        return body

    def load(self, url: str) -> bytes:
        """Remote body, or the error placeholder calendar once every attempt failed."""
        attempts = max(self.retry.max_retries, 1)
        for attempt in range(1, attempts + 1):
            try:
                body = self.fetch(url)
            except httpx.ConnectError as exc:
                log.warning("network-down url=%s error=%s", url, exc)
                return error_calendar(str(exc), network_down=True)
            except (httpx.HTTPError, InvalidFeedError) as exc:
                if attempt == attempts:
                    log.error("calendar-load-failed url=%s error=%s", url, exc)
                    return error_calendar(str(exc))
                log.debug("calendar-load-retry url=%s attempt=%d error=%s", url, attempt, exc)
                self._sleep(self.retry.backoff_initial_sec)
                continue
            log.debug("calendar-loaded url=%s bytes=%d", url, len(body))
            return body
        return error_calendar(None)
