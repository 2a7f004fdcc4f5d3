from datetime import datetime, timezone
from types import SimpleNamespace

import httplib2
import pytest
from google.auth.exceptions import DefaultCredentialsError, RefreshError
from googleapiclient.errors import HttpError

from scheduling.core.errors import CredentialMissing, ExternalServiceError, RemoteEventNotFound
from scheduling.integrations.client_factory import CalendarClientFactory
from scheduling.integrations.credentials import CredentialCipher
from scheduling.integrations.google_calendar import GoogleCalendarClient, http_status
from scheduling.models.records import DoctorRecord

KEY = '000102030405060708090a0b0c0d0e0f101112131415161718191a1b1c1d1e1f'


class FakeRequest:
    def __init__(self, outcome):
        self._outcome = outcome
        self.num_retries = None

    def execute(self, num_retries: int = 0):
        self.num_retries = num_retries
        if isinstance(self._outcome, Exception):
            raise self._outcome
        return self._outcome


class FakeEventsResource:
    def __init__(self, **outcomes):
        self._outcomes = outcomes
        self.calls: list[tuple[str, dict]] = []

    def _request(self, action: str, kwargs: dict) -> FakeRequest:
        self.calls.append((action, kwargs))
        outcome = self._outcomes[action]
        if isinstance(outcome, list):
            outcome = outcome.pop(0)
        return FakeRequest(outcome)

    def list(self, **kwargs):
        return self._request('list', kwargs)

    def insert(self, **kwargs):
        return self._request('insert', kwargs)

    def patch(self, **kwargs):
        return self._request('patch', kwargs)

    def delete(self, **kwargs):
        return self._request('delete', kwargs)


def build_http_error(status_code: int) -> HttpError:
    return HttpError(httplib2.Response({'status': status_code}), b'')


def make_client(**outcomes) -> tuple[GoogleCalendarClient, FakeEventsResource]:
    events = FakeEventsResource(**outcomes)
    client = object.__new__(GoogleCalendarClient)
    client._calendar_id = 'primary'
    client._service = SimpleNamespace(events=lambda: events)
    return client, events


def test_http_status_reads_response_status() -> None:
    assert http_status(build_http_error(410)) == 410


def test_list_events_follows_pagination() -> None:
    client, events = make_client(
        list=[
            {'items': [{'id': 'evt-1'}], 'nextPageToken': 'page-2'},
            {'items': [{'id': 'evt-2'}, 'not-an-event']},
        ]
    )

    result = client.list_events(
        datetime(2024, 6, 10, tzinfo=timezone.utc),
        datetime(2024, 6, 11, tzinfo=timezone.utc),
    )

    assert [event['id'] for event in result] == ['evt-1', 'evt-2']
    assert [kwargs['pageToken'] for _, kwargs in events.calls] == [None, 'page-2']
    assert events.calls[0][1]['singleEvents'] is True
    assert events.calls[0][1]['timeMin'] == '2024-06-10T00:00:00+00:00'


def test_insert_event_maps_http_error() -> None:
    client, _ = make_client(insert=build_http_error(500))

    with pytest.raises(ExternalServiceError) as exception_info:
        client.insert_event({'summary': 'Available'})

    assert exception_info.value.status_code == 500
    assert not isinstance(exception_info.value, RemoteEventNotFound)


def test_update_event_reports_missing_event() -> None:
    client, events = make_client(patch=build_http_error(404))

    with pytest.raises(RemoteEventNotFound):
        client.update_event('evt-1', {'summary': 'Booked'})

    assert events.calls[0][1]['eventId'] == 'evt-1'


@pytest.mark.parametrize('status_code', [404, 410])
def test_delete_event_returns_false_when_already_gone(status_code: int) -> None:
    client, _ = make_client(delete=build_http_error(status_code))

    assert client.delete_event('evt-1') is False


def test_delete_event_returns_true_on_success() -> None:
    client, _ = make_client(delete='')

    assert client.delete_event('evt-1') is True


def test_list_events_not_found_is_an_external_failure() -> None:
    client, _ = make_client(list=build_http_error(404))

    with pytest.raises(ExternalServiceError) as exception_info:
        client.list_events(datetime(2024, 6, 10, tzinfo=timezone.utc), datetime(2024, 6, 11, tzinfo=timezone.utc))

    assert not isinstance(exception_info.value, RemoteEventNotFound)


def test_revoked_refresh_token_is_credential_missing() -> None:
    client, _ = make_client(insert=RefreshError('invalid_grant'))

    with pytest.raises(CredentialMissing):
        client.insert_event({})


def test_socket_timeout_is_external_failure() -> None:
    client, _ = make_client(insert=TimeoutError('timed out'))

    with pytest.raises(ExternalServiceError):
        client.insert_event({})


class FakeDirectory:
    def __init__(self, encrypted_token: str | None):
        self._encrypted_token = encrypted_token

    def get_encrypted_refresh_token(self, doctor_id: str) -> str | None:
        return self._encrypted_token


def test_factory_builds_client_with_decrypted_token() -> None:
    cipher = CredentialCipher(KEY)
    built = {}

    def _client_class(**kwargs):
        built.update(kwargs)
        return 'client'

    factory = CalendarClientFactory(FakeDirectory(cipher.encrypt('secret-token')), cipher, client_class=_client_class, timeout=3)
    doctor = DoctorRecord(id='doc-1', calendar_id='clinic@example.com', has_credential=True)

    assert factory.create(doctor) == 'client'
    assert built == {'calendar_id': 'clinic@example.com', 'refresh_token': 'secret-token', 'timeout': 3}


def test_factory_requires_cipher_and_credential() -> None:
    cipher = CredentialCipher(KEY)
    doctor = DoctorRecord(id='doc-1', has_credential=True)

    with pytest.raises(CredentialMissing):
        CalendarClientFactory(FakeDirectory('x'), None).create(doctor)

    with pytest.raises(CredentialMissing):
        CalendarClientFactory(FakeDirectory('x'), cipher).create(DoctorRecord(id='doc-1'))

    with pytest.raises(CredentialMissing):
        CalendarClientFactory(FakeDirectory('abcd:ef'), cipher).create(doctor)


def test_factory_maps_client_build_failure() -> None:
    cipher = CredentialCipher(KEY)

    def _client_class(**kwargs):
        raise DefaultCredentialsError('no client configuration')

    factory = CalendarClientFactory(FakeDirectory(cipher.encrypt('secret-token')), cipher, client_class=_client_class)

    with pytest.raises(ExternalServiceError):
        factory.create(DoctorRecord(id='doc-1', has_credential=True))
