"""HTTP utilities and a small retry wrapper built on httpx.

Intended use:
- Provide a single place for timeouts, retries, backoff, and User-Agent.
- Used for downloading the private iCalendar export of a remote calendar;
  API mutations go through google-api-python-client instead.

Notes:
- Backoff is fixed (no exponential growth) by default: the remote feed either
  answers within a few seconds or is down for a while.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Iterable, Mapping, MutableMapping
from dataclasses import dataclass
from time import sleep

import httpx

log = logging.getLogger(__name__)

__all__ = [
    "RetryConfig",
    "create_client",
    "request_with_retries",
]


@dataclass(frozen=True)
class RetryConfig:
    max_retries: int = 5
    backoff_initial_sec: float = 1.0
    backoff_factor: float = 1.0
    status_forcelist: tuple[int, ...] = (429, 500, 502, 503, 504)
    methods: tuple[str, ...] = ("GET", "HEAD")


def _user_agent() -> str:
    return "gcalsync/0.1"


def create_client(
    auth: httpx.Auth | tuple[str, str] | None = None,
    timeout: float = 30.0,
    headers: Mapping[str, str] | None = None,
    verify: bool | str = True,
    limits: httpx.Limits | None = None,
) -> httpx.Client:
    """Create a configured httpx client.

    Keep-alive connections are pooled; a single process only ever talks to a
    handful of feed hosts, so small limits are plenty.
    """
    if verify is False and os.getenv("GCALSYNC_ENVIRONMENT") == "production":
        raise ValueError(
            "SSL certificate verification cannot be disabled in production environment. "
            "Set GCALSYNC_ENVIRONMENT to 'development' or 'test' to allow insecure connections."
        )
    if verify is False:
        log.warning("tls-verification-disabled")

    base_headers: MutableMapping[str, str] = {"User-Agent": _user_agent()}
    if headers:
        base_headers.update(headers)
    conn_limits = limits or httpx.Limits(max_keepalive_connections=5, max_connections=10)
    return httpx.Client(
        auth=auth,
        timeout=timeout,
        headers=base_headers,
        verify=verify,
        follow_redirects=True,
        limits=conn_limits,
    )


def _should_retry(
    method: str,
    status_code: int | None,
    exc: Exception | None,
    retry: RetryConfig,
) -> bool:
    if method.upper() not in retry.methods:
        return False
    if exc is not None:
        # Network/transport errors are retryable
        return True
    if status_code is None:
        return False
    return status_code in retry.status_forcelist


def _backoff_delay(attempt: int, retry: RetryConfig) -> float:
    # attempt starts at 1
    return retry.backoff_initial_sec * (retry.backoff_factor ** (attempt - 1))


def request_with_retries(
    client: httpx.Client,
    method: str,
    url: str,
    *,
    headers: Mapping[str, str] | None = None,
    params: Mapping[str, str] | None = None,
    retry: RetryConfig | None = None,
    expected: Iterable[int] = (200,),
    sleep_fn: Callable[[float], None] = sleep,
) -> httpx.Response:
    """Perform an HTTP request with retries on transient errors."""
    cfg = retry or RetryConfig()
    expected_codes = set(expected)
    attempts = max(cfg.max_retries, 1)
    last_exc: Exception | None = None
    resp: httpx.Response | None = None

    for attempt in range(1, attempts + 1):
        try:
            resp = client.request(method=method, url=url, headers=headers, params=params)
            if resp.status_code in expected_codes:
                return resp
            if not _should_retry(method, resp.status_code, None, cfg):
                return resp
            log.debug("http-retry status=%s attempt=%d", resp.status_code, attempt)
        except httpx.HTTPError as exc:
            last_exc = exc
            if not _should_retry(method, None, exc, cfg):
                raise
            log.debug("http-retry error=%s attempt=%d", type(exc).__name__, attempt)

        if attempt < attempts:
            delay = _backoff_delay(attempt, cfg)
            if delay > 0:
                sleep_fn(delay)

    # Exhausted retries; if we have a response return it; else raise last_exc
    if resp is not None:
        return resp
    assert last_exc is not None
    raise last_exc
