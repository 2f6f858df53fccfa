"""Shared fixtures for the encryption layer tests."""
import base64

import pytest
from aiohttp import web
from cryptography.hazmat.primitives import serialization

from navigator_e2e import (
    CryptoConfig,
    EncryptionService,
    KeyPairManager,
    SessionKeyStore,
    read_payload,
    setup_encryption,
)
from navigator_e2e.conf import REQUEST_STATE
from navigator_e2e.crypto.keypair import oaep_padding


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(scope="session")
def keypair():
    """One RSA keypair for the whole test session (generation is slow)."""
    kp = KeyPairManager(key_size=2048)
    kp.generate()
    return kp


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return CryptoConfig(enabled=True, sweep_interval=0)


@pytest.fixture
def service(config, keypair, clock):
    store = SessionKeyStore(
        ttl=config.session_key_ttl, sweep_interval=0, clock=clock
    )
    return EncryptionService(config, keypair=keypair, store=store)


@pytest.fixture
def seal_key(keypair):
    """Encrypt raw key bytes with the server public key, base64 encoded."""
    def _seal(key: bytes) -> str:
        public_key = serialization.load_pem_public_key(
            keypair.public_key().encode("ascii")
        )
        return base64.b64encode(public_key.encrypt(key, oaep_padding())).decode("ascii")
    return _seal


@pytest.fixture
def received():
    """Payloads delivered to the downstream handlers."""
    return []


@pytest.fixture
def make_app(received):
    """Build an aiohttp app with the encryption layer and a few handlers."""
    def _make(service: EncryptionService) -> web.Application:
        app = web.Application()
        setup_encryption(app, service=service)

        async def ask(request: web.Request) -> web.Response:
            payload = await read_payload(request)
            received.append((payload, request[REQUEST_STATE]))
            return web.json_response({"answer": "hello"})

        async def created(request: web.Request) -> web.Response:
            response = web.json_response({"id": 7}, status=201)
            response.headers["X-Request-Id"] = "req-1"
            response.set_cookie("flavor", "oatmeal")
            return response

        async def info(request: web.Request) -> web.Response:
            return web.json_response({"version": "1.0"})

        async def plain(request: web.Request) -> web.Response:
            return web.Response(text="plain text")

        async def stream(request: web.Request) -> web.StreamResponse:
            writer = service.event_stream(request)
            await writer.prepare(request)
            await writer.send("token-1")
            await writer.send("token-2")
            await writer.close()
            return writer.response

        async def upload(request: web.Request) -> web.Response:
            form = await request.post()
            return web.json_response({"name": form["file"].filename})

        async def missing_flow(request: web.Request) -> web.Response:
            raise web.HTTPNotFound(
                text='{"message":"chatflow secret-123 not found"}',
                content_type="application/json",
            )

        app.router.add_post("/api/v1/ask", ask)
        app.router.add_post("/api/v1/upload", upload)
        app.router.add_get("/api/v1/missing-flow", missing_flow)
        app.router.add_post("/api/v1/items", created)
        app.router.add_get("/api/v1/info", info)
        app.router.add_get("/api/v1/plain", plain)
        app.router.add_get("/api/v1/stream", stream)
        return app
    return _make
