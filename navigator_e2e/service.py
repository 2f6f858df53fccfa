"""
Encryption Service — process-scoped owner of the encryption layer state.

One ``EncryptionService`` is built at application setup and injected into
the middlewares and views; nothing is reached through module globals.

    app = web.Application()
    setup_encryption(app)            # reads CryptoConfig.from_env()
"""
import asyncio
import logging
from typing import Any, Optional

from aiohttp import web

from .conf import SESSION_COOKIE, SESSION_HEADER
from .crypto.cipher import decrypt_payload, encrypt_bytes, encrypt_payload
from .crypto.config import CryptoConfig, load_private_key_pem
from .crypto.handshake import HandshakeService
from .crypto.keypair import KeyPairManager
from .crypto.store import SessionKeyStore
from .crypto.stream import EventStreamWriter, StreamEventCodec
from .handlers import CryptoHandlers
from .middleware import decrypt_request_middleware, encrypt_response_middleware

logger = logging.getLogger("navigator.e2e")


class EncryptionService:
    """Keypair, session keys, handshake and codecs for one process.

    Args:
        config: validated configuration; read from the environment if omitted.
        keypair: RSA keypair manager (loaded from ``private_key_file`` when
            configured, generated otherwise).
        store: session key store; pass a subclass to share keys between
            processes.
    """

    def __init__(
        self,
        config: Optional[CryptoConfig] = None,
        keypair: Optional[KeyPairManager] = None,
        store: Optional[SessionKeyStore] = None,
    ):
        self.config = config if config is not None else CryptoConfig.from_env()
        if keypair is None:
            pem = load_private_key_pem(self.config.private_key_file)
            if pem:
                keypair = KeyPairManager.from_pem(pem)
            else:
                keypair = KeyPairManager(key_size=self.config.rsa_key_size)
        self.keypair = keypair
        self.store = store if store is not None else SessionKeyStore(
            ttl=self.config.session_key_ttl,
            sweep_interval=self.config.sweep_interval,
        )
        self.handshakes = HandshakeService(self.keypair, self.store)
        self.codec = StreamEventCodec(self.config.cipher_backend)

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    # ------------------------------------------------------------------
    # Session resolution
    # ------------------------------------------------------------------

    def session_id(self, request: web.Request) -> Optional[str]:
        """Session id from the ``X-Session-Id`` header, else the session cookie."""
        return request.headers.get(SESSION_HEADER) or request.cookies.get(SESSION_COOKIE)

    def resolve_key(self, request: web.Request) -> Optional[bytes]:
        session_id = self.session_id(request)
        if not session_id:
            return None
        return self.store.get(session_id)

    # ------------------------------------------------------------------
    # Envelope helpers
    # ------------------------------------------------------------------

    def encrypt(self, payload: Any, key: bytes) -> str:
        return encrypt_payload(payload, key, self.config.cipher_backend)

    def encrypt_bytes(self, plaintext: bytes, key: bytes) -> str:
        return encrypt_bytes(plaintext, key, self.config.cipher_backend)

    def decrypt(self, ciphertext: str, key: bytes) -> Any:
        return decrypt_payload(ciphertext, key, self.config.cipher_backend)

    def event_stream(self, request: web.Request) -> EventStreamWriter:
        """SSE writer encrypting events for the session of ``request``."""
        if not self.enabled:
            return EventStreamWriter(self.codec, lambda: None)
        return EventStreamWriter(self.codec, lambda: self.resolve_key(request))

    # ------------------------------------------------------------------
    # Application lifecycle
    # ------------------------------------------------------------------

    async def on_startup(self, app: web.Application) -> None:
        if not self.enabled:
            logger.info("E2E encryption is DISABLED")
            return
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.keypair.generate)
        self.store.start()
        logger.info(
            "E2E encryption is ENABLED (cipher=%s, strict=%s)",
            self.config.cipher_backend, self.config.strict,
        )

    async def on_cleanup(self, app: web.Application) -> None:
        await self.store.stop()


SERVICE_KEY = web.AppKey("navigator_e2e.service", EncryptionService)


def setup_encryption(
    app: web.Application,
    config: Optional[CryptoConfig] = None,
    service: Optional[EncryptionService] = None,
) -> EncryptionService:
    """Install the encryption layer on an aiohttp application.

    Adds the crypto routes and the two middlewares; the response stage is
    the outer one so it also sees errors raised by the request stage.

    Returns:
        The installed EncryptionService.
    """
    if service is None:
        service = EncryptionService(config)
    app[SERVICE_KEY] = service
    app.middlewares.append(encrypt_response_middleware(service))
    app.middlewares.append(decrypt_request_middleware(service))
    CryptoHandlers(service).setup(app, service.config.route_prefix)
    app.on_startup.append(service.on_startup)
    app.on_cleanup.append(service.on_cleanup)
    return service


def get_service(request: web.Request) -> EncryptionService:
    """Return the EncryptionService installed on the request's application."""
    return request.app[SERVICE_KEY]
