"""
Encryption Configuration — validated settings read from the environment.

Environment variables:
    ENABLE_E2E_ENCRYPTION = true|false
    E2E_SESSION_KEY_TTL = <seconds>
    E2E_SWEEP_INTERVAL = <seconds, 0 disables the periodic sweep>
    E2E_RSA_KEY_SIZE = 2048|3072|4096
    E2E_CIPHER_BACKEND = aesgcm|chacha20
    E2E_STRICT_MODE = true|false
    E2E_ROUTE_PREFIX = /api/v1/crypto
    E2E_PRIVATE_KEY_FILE = <path to a PKCS#8 PEM private key>

Security Note:
    Never log key material. Only log session ids and configuration flags.
"""
import os
import base64
import secrets
import logging
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from ..conf import DEFAULT_ROUTE_PREFIX, SESSION_KEY_LENGTH, is_true

logger = logging.getLogger("navigator.e2e")

SUPPORTED_KEY_SIZES = (2048, 3072, 4096)
SUPPORTED_CIPHERS = ("aesgcm", "chacha20")


def generate_session_key() -> bytes:
    """Generate a random 32-byte symmetric session key."""
    return secrets.token_bytes(SESSION_KEY_LENGTH)


def encode_key(key: bytes) -> str:
    """Return a base64 string for raw key bytes (wire transport only)."""
    return base64.b64encode(key).decode("ascii")


def load_private_key_pem(path: Optional[str]) -> Optional[bytes]:
    """Read a PEM private key from disk.

    Args:
        path: filesystem path, or None.

    Returns:
        PEM bytes, or None when no path is configured.

    Raises:
        RuntimeError: If the configured file cannot be read.
    """
    if not path:
        return None
    try:
        with open(path, "rb") as fp:
            return fp.read()
    except OSError as err:
        raise RuntimeError(
            f"Unable to read E2E private key file {path}: {err}"
        ) from err


class CryptoConfig(BaseModel):
    """Validated encryption layer configuration."""

    enabled: bool = False
    session_key_ttl: int = Field(default=86400, ge=1)
    sweep_interval: int = Field(default=300, ge=0)
    rsa_key_size: int = Field(default=2048)
    cipher_backend: str = Field(default="aesgcm")
    strict: bool = False
    route_prefix: str = Field(default=DEFAULT_ROUTE_PREFIX)
    private_key_file: Optional[str] = None

    @field_validator("rsa_key_size")
    @classmethod
    def validate_key_size(cls, v: int) -> int:
        """Validate the RSA modulus size."""
        if v not in SUPPORTED_KEY_SIZES:
            raise ValueError(f"Unsupported RSA key size: {v}")
        return v

    @field_validator("cipher_backend")
    @classmethod
    def validate_cipher(cls, v: str) -> str:
        """Validate cipher backend is supported."""
        v = v.lower()
        if v not in SUPPORTED_CIPHERS:
            raise ValueError(f"Unsupported cipher backend: {v}")
        return v

    @field_validator("route_prefix")
    @classmethod
    def validate_prefix(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError("route_prefix must start with '/'")
        return v.rstrip("/")

    @classmethod
    def from_env(cls) -> "CryptoConfig":
        """Create CryptoConfig by loading values from environment.

        Returns:
            Populated CryptoConfig instance.
        """
        env = os.environ
        config = cls(
            enabled=is_true(env.get("ENABLE_E2E_ENCRYPTION")),
            session_key_ttl=int(env.get("E2E_SESSION_KEY_TTL", 86400)),
            sweep_interval=int(env.get("E2E_SWEEP_INTERVAL", 300)),
            rsa_key_size=int(env.get("E2E_RSA_KEY_SIZE", 2048)),
            cipher_backend=env.get("E2E_CIPHER_BACKEND", "aesgcm"),
            strict=is_true(env.get("E2E_STRICT_MODE")),
            route_prefix=env.get("E2E_ROUTE_PREFIX", DEFAULT_ROUTE_PREFIX),
            private_key_file=env.get("E2E_PRIVATE_KEY_FILE") or None,
        )
        logger.debug(
            "E2E config loaded: enabled=%s cipher=%s strict=%s ttl=%d",
            config.enabled, config.cipher_backend,
            config.strict, config.session_key_ttl,
        )
        return config
