"""Crypto core — keypair, session key store, handshake and envelope cipher.

Security Note (Threat Model):
    Protects payloads against passive observation on top of TLS. Session
    keys live in process memory for their TTL; a memory dump of the process
    exposes them. Keys are not shared across processes and are lost on restart.
"""

from .config import CryptoConfig, generate_session_key
from .cipher import (
    encrypt_payload,
    decrypt_payload,
    encrypt_text,
    decrypt_text,
)
from .keypair import KeyPairManager
from .store import SessionKeyStore
from .handshake import HandshakeService
from .stream import StreamEventCodec, EventStreamWriter

__all__ = [
    "CryptoConfig",
    "generate_session_key",
    "encrypt_payload",
    "decrypt_payload",
    "encrypt_text",
    "decrypt_text",
    "KeyPairManager",
    "SessionKeyStore",
    "HandshakeService",
    "StreamEventCodec",
    "EventStreamWriter",
]
