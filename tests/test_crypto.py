import base64

import pytest

from cypher_mcp.utils.crypto import (
    IV_LENGTH,
    DecryptionError,
    EncryptedData,
    decrypt,
    decrypt_from_string,
    derive_key,
    encrypt,
    encrypt_to_string,
    generate_encryption_key,
    generate_url_safe_token,
    hash_value,
    secure_compare,
)

KEY = generate_encryption_key()


@pytest.mark.parametrize(
    "plaintext",
    ["neo4j+s://abc.databases.neo4j.io", "", "pässwörd with ünïcode ✓", "x" * 5000],
)
def test_encrypt_then_decrypt_returns_plaintext(plaintext):
    assert decrypt(encrypt(plaintext, KEY), KEY) == plaintext


def test_same_plaintext_encrypts_differently():
    first = encrypt("password", KEY)
    second = encrypt("password", KEY)
    assert first.iv != second.iv
    assert first.ciphertext != second.ciphertext


def test_iv_is_twelve_bytes():
    data = encrypt("password", KEY)
    assert len(base64.b64decode(data.iv)) == IV_LENGTH


def test_wrong_key_fails():
    data = encrypt("password", KEY)
    with pytest.raises(DecryptionError):
        decrypt(data, generate_encryption_key())


def test_corrupted_ciphertext_fails():
    data = encrypt("password", KEY)
    raw = bytearray(base64.b64decode(data.ciphertext))
    raw[0] ^= 0xFF
    tampered = EncryptedData(iv=data.iv, ciphertext=base64.b64encode(bytes(raw)).decode())
    with pytest.raises(DecryptionError):
        decrypt(tampered, KEY)


def test_combined_string_form():
    value = encrypt_to_string("bolt://localhost:7687", KEY)
    assert value.count(":") == 1
    assert decrypt_from_string(value, KEY) == "bolt://localhost:7687"


@pytest.mark.parametrize("value", ["no-separator", "a:b:c", ":abc", "abc:"])
def test_malformed_combined_string(value):
    with pytest.raises(ValueError, match="Invalid encrypted string format"):
        decrypt_from_string(value, KEY)


def test_non_base64_secret_is_hashed_to_key_length():
    assert len(derive_key("not base64 at all!")) == 32
    assert derive_key("not base64 at all!") == derive_key("not base64 at all!")


def test_url_safe_token_alphabet():
    for _ in range(20):
        token = generate_url_safe_token(32)
        assert not set("+/=") & set(token)
        assert len(token) == 43


def test_hash_and_compare():
    assert hash_value("abc") == hash_value("abc")
    assert len(hash_value("abc")) == 64
    assert secure_compare("token", "token")
    assert not secure_compare("token", "tokem")
