"""Google Calendar API v3 client implementing the remote calendar contract.

Features
- `list` pages through every event of a calendar (series masters plus
  overridden instances, deleted entries excluded).
- `get`/`insert`/`update`/`delete` by event id.
- Payload mapping lives in mapping.events (`remote_from_google`,
  `remote_to_google`).

Error mapping
- HTTP 404 / 410 -> RemoteNotFoundError
- HTTP 429 / 5xx, socket and transport failures -> RemoteUnavailableError
- anything else -> RemoteApiError carrying the server's message, which the
  mutation layer inspects for "read-only", "no instances", "cannot override"
  and "many reminder".

Notes
- We do not set `singleEvents=True`: the engine works on series plus
  exceptions, as the iCalendar export does.

Refs:
- https://developers.google.com/calendar/api/v3/reference/events
"""

from __future__ import annotations

import logging
import socket
from collections.abc import Callable
from typing import Any

from google.auth.exceptions import TransportError
from googleapiclient.discovery import build as gapi_build
from googleapiclient.errors import HttpError

from ..mapping.events import remote_from_google, remote_to_google
from ..remote import (
    RemoteApiError,
    RemoteEvent,
    RemoteNotFoundError,
    RemoteUnavailableError,
)

__all__ = ["GoogleCalendarClient", "translate_http_error"]

logger = logging.getLogger(__name__)

_UNAVAILABLE_STATUS = {429, 500, 502, 503, 504}


def _status_of(exc: HttpError) -> int | None:
    code = getattr(exc, "status_code", None) or getattr(getattr(exc, "resp", None), "status", None)
    try:
        return int(code) if code is not None else None
    except (TypeError, ValueError):
        return None


def _message_of(exc: HttpError) -> str:
    return str(getattr(exc, "reason", None) or exc)


def translate_http_error(exc: HttpError) -> Exception:
    status = _status_of(exc)
    message = _message_of(exc)
    if status in (404, 410):
        return RemoteNotFoundError(message)
    if status in _UNAVAILABLE_STATUS:
        return RemoteUnavailableError(message)
    return RemoteApiError(message, status=status)


class GoogleCalendarClient:
    def __init__(
        self,
        credentials: Any = None,
        *,
        send_invitations: bool = False,
        page_size: int = 250,
        service: Any = None,
    ) -> None:
        self._svc = service or gapi_build(
            "calendar", "v3", credentials=credentials, cache_discovery=False
        )
        self.send_invitations = send_invitations
        self.page_size = page_size

    def _execute(self, request_fn: Callable[[], Any]) -> Any:
        try:
            return request_fn().execute()
        except HttpError as exc:
            raise translate_http_error(exc) from exc
        except (TransportError, socket.timeout, ConnectionError) as exc:
            raise RemoteUnavailableError(str(exc)) from exc

    @property
    def _send_updates(self) -> str:
        return "all" if self.send_invitations else "none"

    def list(self, calendar_id: str) -> list[RemoteEvent]:
        events: list[RemoteEvent] = []
        page_token: str | None = None
        while True:
            resp = self._execute(
                lambda: self._svc.events().list(
                    calendarId=calendar_id,
                    pageToken=page_token,
                    maxResults=self.page_size,
                    showDeleted=False,
                    singleEvents=False,
                )
            )
            for item in resp.get("items", []) or []:
                if not item.get("id") or item.get("status") == "cancelled":
                    continue
                events.append(remote_from_google(item))
            page_token = resp.get("nextPageToken")
            if not page_token:
                break
        logger.debug("remote-listed calendar_id=%s events=%d", calendar_id, len(events))
        return events

    def get(self, calendar_id: str, remote_id: str) -> RemoteEvent:
        item = self._execute(
            lambda: self._svc.events().get(calendarId=calendar_id, eventId=remote_id)
        )
        if item.get("status") == "cancelled":
            raise RemoteNotFoundError(f"Event {remote_id} was deleted")
        return remote_from_google(item)

    def insert(self, calendar_id: str, event: RemoteEvent) -> RemoteEvent:
        body = remote_to_google(event, send_invitations=self.send_invitations)
        body.pop("id", None)
        body.pop("iCalUID", None)
        item = self._execute(
            lambda: self._svc.events().insert(
                calendarId=calendar_id, body=body, sendUpdates=self._send_updates
            )
        )
        return remote_from_google(item)

    def update(self, calendar_id: str, event: RemoteEvent) -> RemoteEvent:
        if not event.id:
            raise ValueError("Cannot update a remote event without id")
        body = remote_to_google(event, send_invitations=self.send_invitations)
        item = self._execute(
            lambda: self._svc.events().update(
                calendarId=calendar_id,
                eventId=event.id,
                body=body,
                sendUpdates=self._send_updates,
            )
        )
        return remote_from_google(item)

    def delete(self, calendar_id: str, remote_id: str) -> None:
        self._execute(
            lambda: self._svc.events().delete(
                calendarId=calendar_id, eventId=remote_id, sendUpdates=self._send_updates
            )
        )
