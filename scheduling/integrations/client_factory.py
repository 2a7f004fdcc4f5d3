"""Builds a calendar client for a doctor from their stored credential."""

import logging
from datetime import datetime
from typing import Any, Protocol

import httplib2
from google.auth.exceptions import GoogleAuthError
from googleapiclient.errors import Error as GoogleApiClientError

from scheduling.core import config
from scheduling.core.errors import CredentialMissing, ExternalServiceError
from scheduling.integrations.credentials import CredentialCipher
from scheduling.integrations.google_calendar import GoogleCalendarClient
from scheduling.models.records import DoctorRecord

logger = logging.getLogger(__name__)


class CalendarClient(Protocol):
    def list_events(self, time_min: datetime, time_max: datetime) -> list[dict[str, Any]]:
        ...

    def insert_event(self, body: dict[str, Any]) -> dict[str, Any]:
        ...

    def update_event(self, event_id: str, body: dict[str, Any]) -> dict[str, Any]:
        ...

    def delete_event(self, event_id: str) -> bool:
        ...


class CalendarClientFactory:
    def __init__(self, directory, cipher: CredentialCipher | None, client_class=GoogleCalendarClient, timeout=None):
        self._directory = directory
        self._cipher = cipher
        self._client_class = client_class
        self._timeout = timeout or config.CALENDAR_TIMEOUT_SECONDS

    def create(self, doctor: DoctorRecord) -> CalendarClient:
        if not doctor.has_credential:
            raise CredentialMissing(f'Doctor {doctor.id} has not connected a calendar.')
        if self._cipher is None:
            raise CredentialMissing('Calendar credentials cannot be read: no encryption key is configured.')

        refresh_token = self._cipher.decrypt(self._directory.get_encrypted_refresh_token(doctor.id))
        if not refresh_token:
            raise CredentialMissing(f'Stored calendar credential for doctor {doctor.id} is unreadable; re-authorize.')

        try:
            return self._client_class(
                calendar_id=doctor.calendar_id,
                refresh_token=refresh_token,
                timeout=self._timeout,
            )
        except (GoogleAuthError, GoogleApiClientError, httplib2.HttpLib2Error, OSError) as exc:
            logger.exception('Calendar client could not be built.', extra={'doctor_id': doctor.id})
            raise ExternalServiceError('Calendar service is unavailable.') from exc
