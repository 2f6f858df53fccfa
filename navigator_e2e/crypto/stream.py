"""
Stream Event Codec — per-event encryption for server-push (SSE) streams.

Events are encrypted one at a time, not per connection: a stream may start
before the client finished its handshake, so early events go out as
plaintext and later ones as ciphertext. Decoding is therefore best-effort and
falls back to the raw event text.
"""
import logging
from typing import Callable, Optional

from aiohttp import web

from ..exceptions import EncryptionError
from .cipher import decrypt_text, encrypt_text

logger = logging.getLogger("navigator.e2e")


class StreamEventCodec:
    """Encrypt and decrypt individual push events."""

    def __init__(self, backend: str = "aesgcm"):
        self.backend = backend

    def encode(self, text: str, key: Optional[bytes]) -> str:
        """Encrypt an event, or return it unchanged when no key is known."""
        if key is None:
            return text
        return encrypt_text(text, key, self.backend)

    def decode(self, text: str, key: Optional[bytes]) -> str:
        """Decrypt an event; on any failure return the raw text."""
        if key is None or not isinstance(text, str):
            return text
        try:
            return decrypt_text(text, key, self.backend)
        except EncryptionError:
            return text

    @staticmethod
    def format_event(data: str, event: Optional[str] = None) -> bytes:
        """Frame one event as a ``text/event-stream`` message."""
        lines = []
        if event:
            lines.append(f"event: {event}")
        for line in data.split("\n"):
            lines.append(f"data: {line}")
        return ("\n".join(lines) + "\n\n").encode("utf-8")


class EventStreamWriter:
    """SSE response that encrypts every event with the current session key.

    The key is resolved for each event, so a handshake completing mid-stream
    switches the following events to ciphertext.

    Args:
        codec: event codec.
        key_resolver: callable returning the session key or None.
    """

    def __init__(
        self,
        codec: StreamEventCodec,
        key_resolver: Callable[[], Optional[bytes]],
    ):
        self.codec = codec
        self._resolve_key = key_resolver
        self._response: Optional[web.StreamResponse] = None

    @property
    def response(self) -> Optional[web.StreamResponse]:
        return self._response

    async def prepare(self, request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse(
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
            }
        )
        await response.prepare(request)
        self._response = response
        return response

    async def send(self, data: str, event: Optional[str] = None) -> None:
        if self._response is None:
            raise RuntimeError("EventStreamWriter.prepare() was not called")
        payload = self.codec.encode(data, self._resolve_key())
        await self._response.write(self.codec.format_event(payload, event))

    async def close(self) -> None:
        if self._response is not None:
            await self._response.write_eof()
