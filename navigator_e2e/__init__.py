"""Navigator E2E.

Session-level end-to-end encryption for aiohttp APIs.
"""
from .version import __version__
from .exceptions import (
    EncryptionError,
    HandshakeError,
    DecryptionError,
    PayloadFormatError,
    SessionKeyAbsent,
)
from .crypto import (
    CryptoConfig,
    KeyPairManager,
    SessionKeyStore,
    HandshakeService,
    StreamEventCodec,
)
from .middleware import RequestState, read_payload
from .service import EncryptionService, setup_encryption, get_service
from .client import ClientCryptoAgent

__all__ = (
    "__version__",
    "EncryptionError",
    "HandshakeError",
    "DecryptionError",
    "PayloadFormatError",
    "SessionKeyAbsent",
    "CryptoConfig",
    "KeyPairManager",
    "SessionKeyStore",
    "HandshakeService",
    "StreamEventCodec",
    "RequestState",
    "read_payload",
    "EncryptionService",
    "setup_encryption",
    "get_service",
    "ClientCryptoAgent",
)
