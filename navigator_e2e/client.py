"""
Client Crypto Agent — client-side counterpart of the encryption layer.

Drives capability discovery, the handshake and envelope encoding for an
aiohttp ``ClientSession``:

    async with ClientCryptoAgent("https://api.example.com") as agent:
        answer = await agent.request("POST", "/api/v1/ask", json={"question": "hi"})

The agent only becomes ``active`` after the server explicitly accepted the
handshake; until then every operation passes payloads through untouched.

Security Note:
    The session key is kept in memory only; the session id (not secret) may
    be persisted to ``storage_path`` so it survives restarts.
"""
import base64
import logging
import uuid
from pathlib import Path
from typing import Any, AsyncIterator, Optional, Union

import aiohttp
import orjson
from cryptography.hazmat.primitives import serialization

from .conf import (
    DEFAULT_ROUTE_PREFIX,
    ENCRYPTED_HEADER,
    ENVELOPE_FIELD,
    SESSION_COOKIE,
    SESSION_HEADER,
    is_true,
)
from .crypto.cipher import decrypt_payload, encrypt_payload
from .crypto.config import generate_session_key
from .crypto.keypair import oaep_padding
from .crypto.stream import StreamEventCodec
from .exceptions import DecryptionError, HandshakeError, PayloadFormatError

logger = logging.getLogger("navigator.e2e")


class ClientCryptoAgent:
    """Client-side handshake and envelope codec.

    Args:
        base_url: server root URL.
        session: existing aiohttp ClientSession (one is created if omitted).
        storage_path: JSON file where the session id is persisted.
        prefix: route prefix of the crypto endpoints.
    """

    def __init__(
        self,
        base_url: str,
        session: Optional[aiohttp.ClientSession] = None,
        storage_path: Optional[Union[str, Path]] = None,
        prefix: str = DEFAULT_ROUTE_PREFIX,
    ):
        self.base_url = base_url.rstrip("/")
        self.prefix = prefix.rstrip("/")
        self._session = session
        self._owns_session = session is None
        self._storage = Path(storage_path) if storage_path else None
        self._session_id: Optional[str] = None
        self._public_pem: Optional[str] = None
        self._key: Optional[bytes] = None
        self._enabled = False
        self._active = False
        self._codec = StreamEventCodec()

    async def __aenter__(self) -> "ClientCryptoAgent":
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # --- Properties ---

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def active(self) -> bool:
        return self._active

    @property
    def http(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return self._session

    @property
    def session_id(self) -> str:
        if self._session_id is None:
            self._session_id = self._load_session_id()
        return self._session_id

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    # --- Session id persistence ---

    def _load_session_id(self) -> str:
        """Reuse a stored session id, then the session cookie, else a new one."""
        if self._storage is not None and self._storage.exists():
            try:
                stored = orjson.loads(self._storage.read_bytes())
                if isinstance(stored, dict) and stored.get("sessionId"):
                    return stored["sessionId"]
            except (OSError, orjson.JSONDecodeError) as err:
                logger.warning(
                    "E2E ignoring unreadable session storage %s: %s",
                    self._storage, err,
                )
        session_id = None
        for cookie in self.http.cookie_jar:
            if cookie.key == SESSION_COOKIE and cookie.value:
                session_id = cookie.value
                break
        session_id = session_id or uuid.uuid4().hex
        if self._storage is not None:
            self._storage.write_bytes(orjson.dumps({"sessionId": session_id}))
        return session_id

    # --- Handshake ---

    async def start(self) -> bool:
        """Probe the server and perform the handshake.

        Returns:
            True if the agent is now active, False if encryption is disabled
            on the server or the handshake failed.
        """
        self._active = False
        self._key = None
        try:
            async with self.http.get(self._url(f"{self.prefix}/status")) as resp:
                resp.raise_for_status()
                status = await resp.json(loads=orjson.loads)
            self._enabled = bool(status.get("enabled"))
            if not self._enabled:
                logger.info("E2E encryption is DISABLED on server")
                return False
            self._codec = StreamEventCodec(status.get("cipher", "aesgcm"))
            async with self.http.get(self._url(f"{self.prefix}/public-key")) as resp:
                resp.raise_for_status()
                data = await resp.json(loads=orjson.loads)
            self._public_pem = data["publicKey"]
            await self._handshake()
        except (aiohttp.ClientError, HandshakeError, ValueError, KeyError) as err:
            logger.error("E2E failed to initialize encryption: %s", err)
            return False
        logger.debug("E2E encryption initialized: session=%s", self.session_id)
        return True

    async def _handshake(self) -> None:
        key = generate_session_key()
        public_key = serialization.load_pem_public_key(
            self._public_pem.encode("ascii")
        )
        encrypted = public_key.encrypt(key, oaep_padding())
        body = {
            "sessionId": self.session_id,
            "encryptedSessionKey": base64.b64encode(encrypted).decode("ascii"),
        }
        async with self.http.post(
            self._url(f"{self.prefix}/handshake"),
            data=orjson.dumps(body),
            headers={"Content-Type": "application/json"},
        ) as resp:
            if resp.status != 200:
                raise HandshakeError(
                    f"Handshake failed with status {resp.status}"
                )
        self._key = key
        self._active = True

    async def rotate(self) -> bool:
        """Replace the session key with a fresh one (re-handshake)."""
        if not self._enabled or self._public_pem is None:
            return await self.start()
        self._active = False
        self._key = None
        try:
            await self._handshake()
        except (aiohttp.ClientError, HandshakeError) as err:
            logger.error("E2E key rotation failed: %s", err)
            return False
        return True

    # --- Envelope ---

    def headers(self) -> dict:
        """Marker headers for a protected request (empty while inactive)."""
        if not self._active:
            return {}
        return {ENCRYPTED_HEADER: "true", SESSION_HEADER: self.session_id}

    def encrypt(self, payload: Any) -> Any:
        """Wrap a payload in an envelope; passthrough while inactive."""
        if not self._active:
            return payload
        return {
            ENVELOPE_FIELD: encrypt_payload(payload, self._key, self._codec.backend)
        }

    def decrypt(self, body: Any, marked: bool = True) -> Any:
        """Open an envelope.

        Args:
            body: response body.
            marked: whether the server flagged the body as encrypted.

        Raises:
            DecryptionError: when a marked body arrives while the agent is
                inactive, or when it does not decrypt with the session key.
                Callers should re-handshake.
        """
        if not marked:
            return body
        if not self._active:
            raise DecryptionError(
                "Encrypted response but no session key, re-handshake"
            )
        if not isinstance(body, dict) or not isinstance(body.get(ENVELOPE_FIELD), str):
            raise DecryptionError("Response is not an encrypted envelope")
        return decrypt_payload(body[ENVELOPE_FIELD], self._key, self._codec.backend)

    def _should_mark(self, path: str, kwargs: dict) -> bool:
        # crypto endpoints and raw/multipart uploads are never encrypted
        if path.startswith(f"{self.prefix}/"):
            return False
        return "data" not in kwargs

    async def request(
        self, method: str, path: str, json: Any = None, **kwargs
    ) -> Any:
        """Send a request through the encryption layer and decode the reply.

        JSON bodies (``json=``) are encrypted while the agent is active; a
        ``data=`` body (form, multipart, raw bytes) is sent as-is and the
        request is not marked.

        Returns:
            The decoded JSON payload, or the response text for non-JSON replies.

        Raises:
            aiohttp.ClientResponseError: on a 4xx/5xx status; ``message``
                carries the (decrypted) error payload.
            PayloadFormatError: if a JSON reply cannot be parsed.
            DecryptionError: if an encrypted reply cannot be opened.
        """
        headers = dict(kwargs.pop("headers", None) or {})
        mark = self._should_mark(path, kwargs)
        if mark:
            headers.update(self.headers())
        if json is not None:
            kwargs["data"] = orjson.dumps(self.encrypt(json) if mark else json)
            headers["Content-Type"] = "application/json"
        async with self.http.request(
            method, self._url(path), headers=headers, **kwargs
        ) as resp:
            raw = await resp.read()
            marked = is_true(resp.headers.get(ENCRYPTED_HEADER))
            if resp.content_type == "application/json" and raw:
                try:
                    body = orjson.loads(raw)
                except orjson.JSONDecodeError as err:
                    raise PayloadFormatError(
                        "Response body is not valid JSON"
                    ) from err
                payload = self.decrypt(body, marked=marked)
            else:
                payload = raw.decode(resp.get_encoding()) if raw else None
            if resp.status >= 400:
                raise aiohttp.ClientResponseError(
                    resp.request_info,
                    resp.history,
                    status=resp.status,
                    message=str(payload),
                    headers=resp.headers,
                )
        return payload

    # --- Push events ---

    def decode_event(self, text: str) -> str:
        """Best-effort decryption of one push event."""
        return self._codec.decode(text, self._key if self._active else None)

    async def iter_events(self, response: aiohttp.ClientResponse) -> AsyncIterator[str]:
        """Yield decoded ``data`` of each event of a text/event-stream response."""
        buffer: list[str] = []
        async for raw in response.content:
            line = raw.decode("utf-8").rstrip("\r\n")
            if not line:
                if buffer:
                    yield self.decode_event("\n".join(buffer))
                    buffer = []
                continue
            if line.startswith(":"):
                continue
            if line.startswith("data:"):
                value = line[5:]
                buffer.append(value[1:] if value.startswith(" ") else value)
        if buffer:
            yield self.decode_event("\n".join(buffer))

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
