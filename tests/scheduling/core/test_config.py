import pytest

from scheduling.core import config
from scheduling.core.errors import ConflictError, ConcurrencyError, PersistenceError


def test_get_bool_reads_common_truthy_values() -> None:
    assert config._get_bool(' Yes ') is True
    assert config._get_bool('0') is False
    assert config._get_bool(None, default=True) is True


def test_get_int_and_list_fall_back_to_defaults() -> None:
    assert config._get_int('  ', 20) == 20
    assert config._get_int('7', 20) == 7
    assert config._get_list(None, ['a']) == ['a']
    assert config._get_list('http://a, ,http://b', []) == ['http://a', 'http://b']


def test_validate_runtime_config_accepts_development_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, 'APP_ENV', 'development')
    monkeypatch.setattr(config, 'REFRESH_TOKEN_ENCRYPTION_KEY', '')

    config.validate_runtime_config()


@pytest.mark.parametrize(
    ('settings', 'message'),
    [
        ({'REFRESH_TOKEN_ENCRYPTION_KEY': 'abc123'}, '64-character hex'),
        ({'APP_ENV': 'production', 'REFRESH_TOKEN_ENCRYPTION_KEY': ''}, 'must be set in production'),
        (
            {
                'APP_ENV': 'production',
                'REFRESH_TOKEN_ENCRYPTION_KEY': 'ab' * 32,
                'GOOGLE_CLIENT_ID': '',
            },
            'GOOGLE_CLIENT_ID',
        ),
        ({'CALENDAR_TIMEOUT_SECONDS': 0}, 'CALENDAR_TIMEOUT_SECONDS'),
        ({'LOCK_LEASE_SECONDS': 0}, 'LOCK_LEASE_SECONDS'),
        ({'CALENDAR_TIMEZONE': 'Mars/Olympus_Mons'}, 'not a known time zone'),
    ],
)
def test_validate_runtime_config_rejects_fatal_settings(
    monkeypatch: pytest.MonkeyPatch,
    settings: dict,
    message: str,
) -> None:
    monkeypatch.setattr(config, 'APP_ENV', 'development')
    monkeypatch.setattr(config, 'REFRESH_TOKEN_ENCRYPTION_KEY', '')
    for name, value in settings.items():
        monkeypatch.setattr(config, name, value)

    with pytest.raises(RuntimeError) as exception_info:
        config.validate_runtime_config()

    assert message in str(exception_info.value)


def test_errors_expose_kind_and_retryability() -> None:
    conflict = ConflictError('Overlaps.', conflicting_slot_id='slot-1')

    assert conflict.to_dict() == {'kind': 'conflict', 'message': 'Overlaps.', 'conflicting_slot_id': 'slot-1'}
    assert ConcurrencyError('busy').retryable is True
    assert PersistenceError('down').retryable is True
    assert conflict.retryable is False
