"""
Crypto Handlers — capability probe, public key distribution and handshake.

Routes (relative to the configured prefix, ``/api/v1/crypto`` by default):
    GET    /status       -> {"enabled": bool, "cipher": str}
    GET    /public-key   -> {"publicKey": "<PEM>"}
    POST   /handshake    -> {"success": true}
    DELETE /handshake    -> {"success": bool}   (revoke the session key)
"""
import asyncio
from typing import TYPE_CHECKING

import orjson
from aiohttp import web

from .exceptions import EncryptionError, HandshakeError
from .middleware import json_dumps, json_error

if TYPE_CHECKING:
    from .service import EncryptionService


class CryptoHandlers:
    """Views bound to an :class:`EncryptionService`."""

    def __init__(self, service: "EncryptionService"):
        self.service = service

    def _require_enabled(self) -> None:
        if not self.service.enabled:
            raise json_error(
                EncryptionError("Encryption is not enabled", code="disabled"),
                status=404,
            )

    async def status(self, request: web.Request) -> web.Response:
        return web.json_response(
            {
                "enabled": self.service.enabled,
                "cipher": self.service.config.cipher_backend,
            },
            dumps=json_dumps,
        )

    async def public_key(self, request: web.Request) -> web.Response:
        self._require_enabled()
        loop = asyncio.get_running_loop()
        # first call may still have to generate the keypair
        pem = await loop.run_in_executor(None, self.service.keypair.public_key)
        return web.json_response({"publicKey": pem}, dumps=json_dumps)

    async def handshake(self, request: web.Request) -> web.Response:
        self._require_enabled()
        try:
            data = await request.json(loads=orjson.loads)
        except ValueError as err:
            raise json_error(
                HandshakeError(
                    "Handshake body is not JSON",
                    code=HandshakeError.INVALID_REQUEST,
                )
            ) from err
        try:
            session_id, encrypted_key = self.service.handshakes.validate_request(data)
            await self.service.handshakes.handshake(session_id, encrypted_key)
        except HandshakeError as err:
            raise json_error(err) from err
        return web.json_response({"success": True}, dumps=json_dumps)

    async def revoke(self, request: web.Request) -> web.Response:
        self._require_enabled()
        session_id = self.service.session_id(request)
        if not session_id:
            raise json_error(
                HandshakeError(
                    "Missing session id", code=HandshakeError.INVALID_REQUEST
                )
            )
        removed = self.service.handshakes.revoke(session_id)
        return web.json_response({"success": removed}, dumps=json_dumps)

    def setup(self, app: web.Application, prefix: str) -> None:
        app.router.add_get(f"{prefix}/status", self.status)
        app.router.add_get(f"{prefix}/public-key", self.public_key)
        app.router.add_post(f"{prefix}/handshake", self.handshake)
        app.router.add_delete(f"{prefix}/handshake", self.revoke)
