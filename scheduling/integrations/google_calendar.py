"""Google Calendar v3 client scoped to one doctor's calendar."""

import logging
from datetime import datetime
from typing import Any

import httplib2
from google.auth.exceptions import GoogleAuthError, RefreshError
from google.oauth2.credentials import Credentials
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from scheduling.core import config
from scheduling.core.errors import CredentialMissing, ExternalServiceError, RemoteEventNotFound

logger = logging.getLogger(__name__)

_COMPONENT = 'google_calendar_client'
_MISSING_EVENT_STATUSES = {404, 410}
_PAGE_SIZE = 250


def http_status(exc: HttpError) -> int | None:
    response = getattr(exc, 'resp', None)
    return int(response.status) if response is not None and getattr(response, 'status', None) else None


class GoogleCalendarClient:
    """Blocking client; every request is bounded by the socket timeout."""

    __slots__ = ('_calendar_id', '_service')

    def __init__(
        self,
        *,
        calendar_id: str,
        refresh_token: str,
        timeout: float | None = None,
        client_id: str | None = None,
        client_secret: str | None = None,
        token_uri: str | None = None,
    ):
        credentials = Credentials(
            token=None,
            refresh_token=refresh_token,
            client_id=client_id or config.GOOGLE_CLIENT_ID,
            client_secret=client_secret or config.GOOGLE_CLIENT_SECRET,
            token_uri=token_uri or config.GOOGLE_TOKEN_URI,
            scopes=[config.GOOGLE_CALENDAR_SCOPE],
        )
        http = AuthorizedHttp(
            credentials,
            http=httplib2.Http(timeout=timeout or config.CALENDAR_TIMEOUT_SECONDS),
        )
        self._calendar_id = calendar_id
        self._service = build('calendar', 'v3', http=http, cache_discovery=False)

    @property
    def calendar_id(self) -> str:
        return self._calendar_id

    def list_events(self, time_min: datetime, time_max: datetime) -> list[dict[str, Any]]:
        events: list[dict[str, Any]] = []
        page_token = None
        while True:
            request = self._service.events().list(
                calendarId=self._calendar_id,
                timeMin=time_min.isoformat(),
                timeMax=time_max.isoformat(),
                singleEvents=True,
                showDeleted=False,
                maxResults=_PAGE_SIZE,
                pageToken=page_token,
            )
            response = self._execute('list_events', request, num_retries=config.CALENDAR_LIST_RETRIES)
            events.extend(item for item in response.get('items', []) if isinstance(item, dict))
            page_token = response.get('nextPageToken')
            if not page_token:
                return events

    def insert_event(self, body: dict[str, Any]) -> dict[str, Any]:
        request = self._service.events().insert(calendarId=self._calendar_id, body=body, sendUpdates='none')
        return self._execute('insert_event', request)

    def update_event(self, event_id: str, body: dict[str, Any]) -> dict[str, Any]:
        # Patch keeps fields owned by the doctor, such as conferencing and attendees.
        request = self._service.events().patch(
            calendarId=self._calendar_id,
            eventId=event_id,
            body=body,
            sendUpdates='none',
        )
        return self._execute('update_event', request, event_id=event_id)

    def delete_event(self, event_id: str) -> bool:
        request = self._service.events().delete(calendarId=self._calendar_id, eventId=event_id, sendUpdates='none')
        try:
            self._execute('delete_event', request, event_id=event_id)
        except RemoteEventNotFound:
            logger.info(
                'google_calendar_event_missing',
                extra={'component': _COMPONENT, 'action': 'delete_event', 'event_id': event_id},
            )
            return False
        return True

    def _execute(self, action: str, request, num_retries: int = 0, event_id: str | None = None) -> dict[str, Any]:
        try:
            return request.execute(num_retries=num_retries) or {}
        except HttpError as exc:
            status_code = http_status(exc)
            if status_code in _MISSING_EVENT_STATUSES and event_id is not None:
                raise RemoteEventNotFound(f'Remote event {event_id} no longer exists.', status_code) from exc
            self._log_error(action, status_code=status_code)
            raise ExternalServiceError(f'Google Calendar {action} failed with HTTP {status_code}.', status_code) from exc
        except RefreshError as exc:
            self._log_error(action)
            raise CredentialMissing('Google Calendar authorization was revoked or expired; re-authorize.') from exc
        except (GoogleAuthError, httplib2.HttpLib2Error, OSError) as exc:
            # socket timeouts surface as OSError subclasses
            self._log_error(action)
            raise ExternalServiceError(f'Google Calendar {action} failed: {exc}') from exc

    def _log_error(self, action: str, status_code: int | None = None) -> None:
        extra = {
            'component': _COMPONENT,
            'action': action,
            'calendar_id': self._calendar_id,
        }
        if status_code is not None:
            extra['status_code'] = status_code
            logger.error('google_calendar_http_error', extra=extra)
            return
        logger.exception('google_calendar_unexpected_error', extra=extra)
