"""
AES-GCM helpers used to keep Neo4j credentials encrypted at rest.

Stored values use the combined form ``iv:ciphertext`` where both parts are
standard base64. The GCM tag is appended to the ciphertext by AESGCM.
"""
import base64
import binascii
import hashlib
import hmac
import secrets
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

KEY_LENGTH = 32
IV_LENGTH = 12


class DecryptionError(Exception):
    """Raised when a ciphertext cannot be authenticated with the given key."""


@dataclass(frozen=True)
class EncryptedData:
    iv: str
    ciphertext: str


def _b64encode(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def _b64decode(value: str) -> bytes:
    return base64.b64decode(value.encode("ascii"), validate=True)


def derive_key(secret: str) -> bytes:
    """
    Turn an operator-supplied secret into a 256-bit AES key.

    The secret is normally base64; anything that does not decode is used as
    raw UTF-8. Material that is not already 32 bytes is hashed with SHA-256.
    """
    try:
        material = _b64decode(secret)
    except (binascii.Error, ValueError):
        material = secret.encode("utf-8")
    if len(material) == KEY_LENGTH:
        return material
    return hashlib.sha256(material).digest()


def encrypt(plaintext: str, secret: str) -> EncryptedData:
    iv = secrets.token_bytes(IV_LENGTH)
    ciphertext = AESGCM(derive_key(secret)).encrypt(iv, plaintext.encode("utf-8"), None)
    return EncryptedData(iv=_b64encode(iv), ciphertext=_b64encode(ciphertext))


def decrypt(data: EncryptedData, secret: str) -> str:
    try:
        iv = _b64decode(data.iv)
        ciphertext = _b64decode(data.ciphertext)
        plaintext = AESGCM(derive_key(secret)).decrypt(iv, ciphertext, None)
    except (InvalidTag, binascii.Error, ValueError) as e:
        raise DecryptionError("Decryption failed: Invalid key or corrupted data") from e
    return plaintext.decode("utf-8")


def encrypt_to_string(plaintext: str, secret: str) -> str:
    data = encrypt(plaintext, secret)
    return f"{data.iv}:{data.ciphertext}"


def decrypt_from_string(value: str, secret: str) -> str:
    parts = value.split(":")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise ValueError("Invalid encrypted string format")
    return decrypt(EncryptedData(iv=parts[0], ciphertext=parts[1]), secret)


def generate_encryption_key() -> str:
    return _b64encode(secrets.token_bytes(KEY_LENGTH))


def generate_token(length: int = 32) -> str:
    return _b64encode(secrets.token_bytes(length))


def generate_url_safe_token(length: int = 32) -> str:
    # base64url without padding: no '+', '/' or '='
    return generate_token(length).replace("+", "-").replace("/", "_").rstrip("=")


def hash_value(data: str) -> str:
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def secure_compare(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))
