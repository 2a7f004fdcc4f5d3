import pytest

from scheduling.core.errors import CredentialConfigError
from scheduling.integrations.credentials import CredentialCipher, build_cipher

KEY = '000102030405060708090a0b0c0d0e0f101112131415161718191a1b1c1d1e1f'


def test_encrypt_produces_iv_and_ciphertext_hex() -> None:
    cipher = CredentialCipher(KEY)

    encrypted = cipher.encrypt('1//refresh-token')
    iv_hex, ciphertext_hex = encrypted.split(':')

    assert len(iv_hex) == 32
    assert len(ciphertext_hex) % 32 == 0
    assert cipher.decrypt(encrypted) == '1//refresh-token'


def test_encrypt_uses_fresh_iv_each_time() -> None:
    cipher = CredentialCipher(KEY)

    assert cipher.encrypt('token') != cipher.encrypt('token')


def test_encrypt_returns_none_for_empty_token() -> None:
    assert CredentialCipher(KEY).encrypt('') is None


@pytest.mark.parametrize(
    'ciphertext',
    [
        None,
        '',
        'no-separator',
        'zz:zz',
        '00112233:00112233445566778899aabbccddeeff',
        '000102030405060708090a0b0c0d0e0f:',
        '000102030405060708090a0b0c0d0e0f:0011',
    ],
)
def test_decrypt_returns_none_for_malformed_input(ciphertext) -> None:
    assert CredentialCipher(KEY).decrypt(ciphertext) is None


def test_decrypt_with_other_key_does_not_return_plaintext() -> None:
    encrypted = CredentialCipher(KEY).encrypt('refresh-token')
    other = CredentialCipher('ff' * 32)

    assert other.decrypt(encrypted) != 'refresh-token'


@pytest.mark.parametrize('key_hex', ['', 'abc', '00' * 16, 'zz' * 32])
def test_invalid_key_is_rejected_at_construction(key_hex: str) -> None:
    with pytest.raises(CredentialConfigError):
        CredentialCipher(key_hex)


def test_build_cipher_returns_none_without_key() -> None:
    assert build_cipher('') is None
    assert isinstance(build_cipher(KEY), CredentialCipher)
