"""
Envelope Cipher — symmetric encryption of payloads with a session key.

Wire format of a ciphertext string:
    base64( [nonce 12B][encrypted_payload + tag 16B] )

The envelope ``{"encrypted": <ciphertext>}`` carries nothing else: no
session id, no key material and no plaintext.

Security Note:
    Never log plaintext or ciphertext values.
    Nonces are random 96-bit; collision probability negligible under normal usage.
"""
import os
import base64
import binascii
from typing import Any

import orjson
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305

from ..exceptions import DecryptionError, PayloadFormatError

NONCE_SIZE = 12  # 96-bit nonce
TAG_SIZE = 16
KEY_LENGTH = 32  # AES-256

_CIPHERS = {
    "aesgcm": AESGCM,
    "chacha20": ChaCha20Poly1305,
}


def get_cipher_cls(backend: str = "aesgcm") -> type:
    """Return the AEAD cipher class for a backend name."""
    try:
        return _CIPHERS[backend.lower()]
    except KeyError:
        raise ValueError(f"Unsupported cipher backend: {backend}") from None


# ---------------------------------------------------------------------------
# Raw bytes
# ---------------------------------------------------------------------------

def encrypt_bytes(plaintext: bytes, key: bytes, backend: str = "aesgcm") -> str:
    """Encrypt bytes and return the base64 ciphertext string.

    Args:
        plaintext: Data to encrypt.
        key: 32-byte session key.
        backend: AEAD backend name.

    Returns:
        Base64 encoded ``nonce + ciphertext + tag``.
    """
    cipher = get_cipher_cls(backend)(key)
    nonce = os.urandom(NONCE_SIZE)
    ct = cipher.encrypt(nonce, plaintext, None)
    return base64.b64encode(nonce + ct).decode("ascii")


def decrypt_bytes(ciphertext: str, key: bytes, backend: str = "aesgcm") -> bytes:
    """Decrypt a base64 ciphertext string produced by :func:`encrypt_bytes`.

    Args:
        ciphertext: Base64 encoded ``nonce + ciphertext + tag``.
        key: 32-byte session key.
        backend: AEAD backend name.

    Returns:
        Decrypted plaintext bytes.

    Raises:
        DecryptionError: If the ciphertext is malformed, truncated, or fails
            authentication under ``key``.
    """
    if not isinstance(ciphertext, str):
        raise DecryptionError("Ciphertext must be a string")
    try:
        raw = base64.b64decode(ciphertext.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as err:
        raise DecryptionError("Ciphertext is not valid base64") from err
    _min = NONCE_SIZE + TAG_SIZE
    if len(raw) < _min:
        raise DecryptionError(
            f"Ciphertext too short: {len(raw)} bytes (minimum {_min})"
        )
    try:
        cipher = get_cipher_cls(backend)(key)
        return cipher.decrypt(raw[:NONCE_SIZE], raw[NONCE_SIZE:], None)
    except InvalidTag as err:
        raise DecryptionError("Ciphertext failed authentication") from err
    except ValueError as err:
        # invalid key length for the cipher
        raise DecryptionError(str(err)) from err


# ---------------------------------------------------------------------------
# Structured payloads
# ---------------------------------------------------------------------------

def serialize_payload(payload: Any) -> bytes:
    """Serialize a JSON-compatible payload to bytes."""
    return orjson.dumps(payload)


def deserialize_payload(data: bytes) -> Any:
    """Parse decrypted bytes as JSON.

    Raises:
        PayloadFormatError: If the plaintext is not valid JSON.
    """
    try:
        return orjson.loads(data)
    except orjson.JSONDecodeError as err:
        raise PayloadFormatError(
            "Decrypted payload is not valid JSON"
        ) from err


def encrypt_payload(payload: Any, key: bytes, backend: str = "aesgcm") -> str:
    """Serialize and encrypt a payload, returning the ciphertext string."""
    return encrypt_bytes(serialize_payload(payload), key, backend)


def decrypt_payload(ciphertext: str, key: bytes, backend: str = "aesgcm") -> Any:
    """Decrypt a ciphertext string and parse it as JSON.

    Raises:
        DecryptionError: cipher or authentication failure.
        PayloadFormatError: plaintext is not valid JSON.
    """
    return deserialize_payload(decrypt_bytes(ciphertext, key, backend))


# ---------------------------------------------------------------------------
# Text (push events)
# ---------------------------------------------------------------------------

def encrypt_text(text: str, key: bytes, backend: str = "aesgcm") -> str:
    return encrypt_bytes(text.encode("utf-8"), key, backend)


def decrypt_text(ciphertext: str, key: bytes, backend: str = "aesgcm") -> str:
    plaintext = decrypt_bytes(ciphertext, key, backend)
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as err:
        raise PayloadFormatError("Decrypted event is not UTF-8 text") from err
