"""
Handshake Service — installs the session key sent by a client.

The client generates a random 32-byte key, encrypts it with the server public
key (RSA-OAEP) and sends ``{sessionId, encryptedSessionKey}``. A second
handshake for the same session id replaces the key; this is the only
rotation mechanism.
"""
import asyncio
import logging
from typing import Optional, Union

from ..conf import SESSION_KEY_LENGTH
from ..exceptions import HandshakeError
from .keypair import KeyPairManager
from .store import SessionKeyStore

logger = logging.getLogger("navigator.e2e")

MAX_SESSION_ID_LENGTH = 255


class HandshakeService:
    """Validates and installs session keys."""

    def __init__(
        self,
        keypair: KeyPairManager,
        store: SessionKeyStore,
        key_length: int = SESSION_KEY_LENGTH,
    ):
        self.keypair = keypair
        self.store = store
        self.key_length = key_length

    def validate_request(self, data: dict) -> tuple[str, str]:
        """Extract and check the handshake fields from a request body.

        Returns:
            Tuple of (session_id, encrypted_session_key).

        Raises:
            HandshakeError: (invalid_request) on missing or malformed fields.
        """
        if not isinstance(data, dict):
            raise HandshakeError(
                "Handshake body must be an object",
                code=HandshakeError.INVALID_REQUEST,
            )
        session_id = data.get("sessionId")
        encrypted_key = data.get("encryptedSessionKey")
        if not isinstance(session_id, str) or not session_id.strip():
            raise HandshakeError(
                "Missing sessionId", code=HandshakeError.INVALID_REQUEST
            )
        if len(session_id) > MAX_SESSION_ID_LENGTH:
            raise HandshakeError(
                "sessionId is too long", code=HandshakeError.INVALID_REQUEST
            )
        if not isinstance(encrypted_key, str) or not encrypted_key:
            raise HandshakeError(
                "Missing encryptedSessionKey",
                code=HandshakeError.INVALID_REQUEST,
            )
        return session_id, encrypted_key

    def install(self, session_id: str, encrypted_key: Union[bytes, str]) -> bytes:
        """Decrypt, validate and store a session key (synchronous).

        Raises:
            HandshakeError: bad_ciphertext or wrong_key_length. No key is
                installed on failure.
        """
        key = self.keypair.decrypt(encrypted_key)
        if len(key) != self.key_length:
            raise HandshakeError(
                f"Session key must be {self.key_length} bytes, got {len(key)}",
                code=HandshakeError.WRONG_KEY_LENGTH,
            )
        rotated = self.store.get(session_id) is not None
        self.store.put(session_id, key)
        logger.info(
            "E2E session key %s: session=%s",
            "rotated" if rotated else "installed", session_id,
        )
        return key

    async def handshake(
        self,
        session_id: str,
        encrypted_key: Union[bytes, str],
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        """Install a session key without blocking the event loop.

        The RSA decrypt runs in the default executor.

        Args:
            session_id: opaque client session identifier.
            encrypted_key: RSA-OAEP encrypted key, raw or base64.

        Raises:
            HandshakeError: If the key material cannot be installed.
        """
        loop = loop or asyncio.get_running_loop()
        try:
            await loop.run_in_executor(
                None, self.install, session_id, encrypted_key
            )
        except HandshakeError as err:
            logger.warning(
                "E2E handshake rejected: session=%s error=%s",
                session_id, err.code,
            )
            raise

    def revoke(self, session_id: str) -> bool:
        """Drop the key of a session (logout)."""
        removed = self.store.delete(session_id)
        if removed:
            logger.info("E2E session key revoked: session=%s", session_id)
        return removed
