"""
HTTP level tests for the crypto endpoints and the encryption middlewares.

Tests cover:
- Capability probe, public key and handshake endpoints
- End-to-end encrypted request / response
- Fail-open on a missing session key, strict mode
- Fail-closed on corrupted ciphertexts and malformed envelopes
- Response encryption fallback and passthrough cases
- Multipart uploads and handler HTTP errors behind the layer
"""
import base64
import os
import warnings

import pytest
from aiohttp import FormData, web
from aiohttp.test_utils import TestClient, TestServer

from navigator_e2e import (
    CryptoConfig,
    EncryptionService,
    RequestState,
    SessionKeyStore,
    setup_encryption,
)
from navigator_e2e.conf import REQUEST_PAYLOAD, REQUEST_STATE
from navigator_e2e.crypto.cipher import decrypt_payload, encrypt_bytes, encrypt_payload
from navigator_e2e.crypto.config import generate_session_key
from navigator_e2e.service import SERVICE_KEY

PREFIX = "/api/v1/crypto"


def marked(session_id: str = "abc123") -> dict:
    return {"X-Encrypted": "true", "X-Session-Id": session_id}


async def handshake(client, seal_key, session_id="abc123", key=None) -> bytes:
    key = key or generate_session_key()
    resp = await client.post(
        f"{PREFIX}/handshake",
        json={"sessionId": session_id, "encryptedSessionKey": seal_key(key)},
    )
    assert resp.status == 200
    assert await resp.json() == {"success": True}
    return key


class TestCryptoEndpoints:

    @pytest.mark.asyncio
    async def test_status_enabled(self, service, make_app):
        async with TestClient(TestServer(make_app(service))) as client:
            resp = await client.get(f"{PREFIX}/status")
            assert resp.status == 200
            assert await resp.json() == {"enabled": True, "cipher": "aesgcm"}
            assert resp.headers["X-Encryption-Enabled"] == "true"

    @pytest.mark.asyncio
    async def test_status_disabled(self, keypair, make_app):
        service = EncryptionService(CryptoConfig(enabled=False), keypair=keypair)
        async with TestClient(TestServer(make_app(service))) as client:
            resp = await client.get(f"{PREFIX}/status")
            assert (await resp.json())["enabled"] is False
            assert resp.headers["X-Encryption-Enabled"] == "false"

    @pytest.mark.asyncio
    async def test_public_key(self, service, keypair, make_app):
        async with TestClient(TestServer(make_app(service))) as client:
            resp = await client.get(f"{PREFIX}/public-key")
            assert resp.status == 200
            assert (await resp.json())["publicKey"] == keypair.public_key()

    @pytest.mark.asyncio
    async def test_endpoints_disabled(self, keypair, make_app):
        service = EncryptionService(CryptoConfig(enabled=False), keypair=keypair)
        async with TestClient(TestServer(make_app(service))) as client:
            resp = await client.get(f"{PREFIX}/public-key")
            assert resp.status == 404
            assert (await resp.json())["error"] == "disabled"
            resp = await client.post(f"{PREFIX}/handshake", json={})
            assert resp.status == 404

    @pytest.mark.asyncio
    async def test_handshake_installs_key(self, service, make_app, seal_key):
        async with TestClient(TestServer(make_app(service))) as client:
            key = await handshake(client, seal_key)
        assert service.store.get("abc123") == key

    @pytest.mark.asyncio
    async def test_handshake_bad_ciphertext(self, service, make_app):
        async with TestClient(TestServer(make_app(service))) as client:
            resp = await client.post(f"{PREFIX}/handshake", json={
                "sessionId": "abc123",
                "encryptedSessionKey": base64.b64encode(os.urandom(256)).decode(),
            })
            assert resp.status == 400
            assert (await resp.json())["error"] == "bad_ciphertext"
        assert service.store.get("abc123") is None

    @pytest.mark.asyncio
    async def test_handshake_wrong_key_length(self, service, make_app, seal_key):
        async with TestClient(TestServer(make_app(service))) as client:
            resp = await client.post(f"{PREFIX}/handshake", json={
                "sessionId": "abc123",
                "encryptedSessionKey": seal_key(os.urandom(24)),
            })
            assert resp.status == 400
            assert (await resp.json())["error"] == "wrong_key_length"
        assert service.store.get("abc123") is None

    @pytest.mark.asyncio
    async def test_handshake_invalid_body(self, service, make_app):
        async with TestClient(TestServer(make_app(service))) as client:
            resp = await client.post(f"{PREFIX}/handshake", data=b"not json")
            assert resp.status == 400
            assert (await resp.json())["error"] == "invalid_request"
            resp = await client.post(f"{PREFIX}/handshake", json={"sessionId": "abc123"})
            assert resp.status == 400
            assert (await resp.json())["error"] == "invalid_request"

    @pytest.mark.asyncio
    async def test_revoke(self, service, make_app, seal_key):
        async with TestClient(TestServer(make_app(service))) as client:
            await handshake(client, seal_key)
            resp = await client.delete(
                f"{PREFIX}/handshake", headers={"X-Session-Id": "abc123"}
            )
            assert await resp.json() == {"success": True}
        assert service.store.get("abc123") is None


class TestEncryptedExchange:

    @pytest.mark.asyncio
    async def test_end_to_end(self, service, make_app, seal_key, received):
        """Test the abc123 scenario: encrypted question in, encrypted answer out."""
        async with TestClient(TestServer(make_app(service))) as client:
            key = await handshake(client, seal_key, "abc123")
            resp = await client.post(
                "/api/v1/ask",
                json={"encrypted": encrypt_payload({"question": "hi"}, key)},
                headers=marked("abc123"),
            )
            assert resp.status == 200
            assert resp.headers["X-Encrypted"] == "true"
            body = await resp.json()
        assert list(body) == ["encrypted"]
        assert decrypt_payload(body["encrypted"], key) == {"answer": "hello"}
        assert received == [({"question": "hi"}, RequestState.KEY_RESOLVED)]

    @pytest.mark.asyncio
    async def test_session_from_cookie(self, service, make_app, seal_key, received):
        async with TestClient(TestServer(make_app(service))) as client:
            key = await handshake(client, seal_key, "cookie-session")
            resp = await client.post(
                "/api/v1/ask",
                json={"encrypted": encrypt_payload({"question": "hi"}, key)},
                headers={"X-Encrypted": "true", "Cookie": "AUTOID=cookie-session"},
            )
            body = await resp.json()
        assert decrypt_payload(body["encrypted"], key) == {"answer": "hello"}
        assert received[0][0] == {"question": "hi"}

    @pytest.mark.asyncio
    async def test_marked_get_without_body(self, service, make_app, seal_key):
        async with TestClient(TestServer(make_app(service))) as client:
            key = await handshake(client, seal_key)
            resp = await client.get("/api/v1/info", headers=marked())
            assert resp.status == 200
            body = await resp.json()
        assert decrypt_payload(body["encrypted"], key) == {"version": "1.0"}

    @pytest.mark.asyncio
    async def test_status_headers_and_cookies_preserved(self, service, make_app, seal_key):
        async with TestClient(TestServer(make_app(service))) as client:
            key = await handshake(client, seal_key)
            resp = await client.post(
                "/api/v1/items",
                json={"encrypted": encrypt_payload({}, key)},
                headers=marked(),
            )
            assert resp.status == 201
            assert resp.headers["X-Request-Id"] == "req-1"
            assert resp.cookies["flavor"].value == "oatmeal"
            body = await resp.json()
        assert decrypt_payload(body["encrypted"], key) == {"id": 7}

    @pytest.mark.asyncio
    async def test_unmarked_request_is_plain(self, service, make_app, seal_key, received):
        async with TestClient(TestServer(make_app(service))) as client:
            await handshake(client, seal_key)
            resp = await client.post(
                "/api/v1/ask",
                json={"question": "hi"},
                headers={"X-Session-Id": "abc123"},
            )
            assert resp.headers["X-Encrypted"] == "false"
            assert await resp.json() == {"answer": "hello"}
        assert received == [({"question": "hi"}, RequestState.NOT_MARKED)]

    @pytest.mark.asyncio
    async def test_rotation_over_http(self, service, make_app, seal_key):
        """Test that a request sealed with a rotated-out key is rejected."""
        async with TestClient(TestServer(make_app(service))) as client:
            old_key = await handshake(client, seal_key)
            await handshake(client, seal_key)
            resp = await client.post(
                "/api/v1/ask",
                json={"encrypted": encrypt_payload({"question": "hi"}, old_key)},
                headers=marked(),
            )
            assert resp.status == 400
            assert (await resp.json())["error"] == "decryption_failed"


class TestFailOpen:

    @pytest.mark.asyncio
    async def test_unknown_session_passes_through(self, service, make_app, received):
        """Test a marked request for a never-handshaken session."""
        async with TestClient(TestServer(make_app(service))) as client:
            resp = await client.post(
                "/api/v1/ask", json={"question": "hi"}, headers=marked("never-seen")
            )
            assert resp.status == 200
            assert resp.headers["X-Encrypted"] == "false"
            assert await resp.json() == {"answer": "hello"}
        assert received == [({"question": "hi"}, RequestState.NO_SESSION_KEY)]

    @pytest.mark.asyncio
    async def test_expired_key_passes_through(self, service, make_app, seal_key, clock, received):
        """Test that a key past its TTL is no longer used."""
        async with TestClient(TestServer(make_app(service))) as client:
            key = await handshake(client, seal_key)
            clock.advance(service.config.session_key_ttl + 1)
            envelope = {"encrypted": encrypt_payload({"question": "hi"}, key)}
            resp = await client.post("/api/v1/ask", json=envelope, headers=marked())
            assert resp.status == 200
            assert await resp.json() == {"answer": "hello"}
        assert received == [(envelope, RequestState.NO_SESSION_KEY)]

    @pytest.mark.asyncio
    async def test_disabled_passes_through(self, keypair, make_app, received):
        service = EncryptionService(CryptoConfig(enabled=False), keypair=keypair)
        async with TestClient(TestServer(make_app(service))) as client:
            resp = await client.post(
                "/api/v1/ask", json={"question": "hi"}, headers=marked()
            )
            assert resp.headers["X-Encryption-Enabled"] == "false"
            assert await resp.json() == {"answer": "hello"}
        assert received == [({"question": "hi"}, RequestState.DISABLED)]

    @pytest.mark.asyncio
    async def test_strict_mode_rejects(self, keypair, make_app, received):
        config = CryptoConfig(enabled=True, strict=True, sweep_interval=0)
        service = EncryptionService(config, keypair=keypair)
        async with TestClient(TestServer(make_app(service))) as client:
            resp = await client.post(
                "/api/v1/ask", json={"question": "hi"}, headers=marked("never-seen")
            )
            assert resp.status == 412
            assert (await resp.json())["error"] == "session_key_absent"
            assert resp.headers["X-Encryption-Enabled"] == "true"
        assert received == []


class TestFailClosed:

    @pytest.mark.asyncio
    async def test_corrupted_ciphertext(self, service, make_app, seal_key, received):
        async with TestClient(TestServer(make_app(service))) as client:
            key = await handshake(client, seal_key)
            raw = bytearray(base64.b64decode(encrypt_payload({"question": "hi"}, key)))
            raw[15] ^= 0xFF
            resp = await client.post(
                "/api/v1/ask",
                json={"encrypted": base64.b64encode(bytes(raw)).decode()},
                headers=marked(),
            )
            assert resp.status == 400
            assert (await resp.json())["error"] == "decryption_failed"
            assert resp.headers["X-Encryption-Enabled"] == "true"
        assert received == []

    @pytest.mark.asyncio
    async def test_body_is_not_an_envelope(self, service, make_app, seal_key, received):
        async with TestClient(TestServer(make_app(service))) as client:
            await handshake(client, seal_key)
            resp = await client.post(
                "/api/v1/ask", json={"question": "hi"}, headers=marked()
            )
            assert resp.status == 400
            assert (await resp.json())["error"] == "invalid_payload"
        assert received == []

    @pytest.mark.asyncio
    async def test_body_is_not_json(self, service, make_app, seal_key, received):
        async with TestClient(TestServer(make_app(service))) as client:
            await handshake(client, seal_key)
            resp = await client.post(
                "/api/v1/ask",
                data=b"{oops",
                headers={**marked(), "Content-Type": "application/json"},
            )
            assert resp.status == 400
            assert (await resp.json())["error"] == "invalid_payload"
        assert received == []

    @pytest.mark.asyncio
    async def test_plaintext_is_not_json(self, service, make_app, seal_key, received):
        async with TestClient(TestServer(make_app(service))) as client:
            key = await handshake(client, seal_key)
            resp = await client.post(
                "/api/v1/ask",
                json={"encrypted": encrypt_bytes(b"not json", key)},
                headers=marked(),
            )
            assert resp.status == 400
            assert (await resp.json())["error"] == "invalid_payload"
        assert received == []


class TestResponseStage:

    @pytest.mark.asyncio
    async def test_encryption_failure_falls_back_to_plaintext(self, service, make_app):
        """Test that an unusable key sends the plaintext body."""
        service.store.put("broken", b"short")
        async with TestClient(TestServer(make_app(service))) as client:
            resp = await client.get("/api/v1/info", headers=marked("broken"))
            assert resp.status == 200
            assert resp.headers["X-Encrypted"] == "false"
            assert await resp.json() == {"version": "1.0"}

    @pytest.mark.asyncio
    async def test_non_json_response_passes_through(self, service, make_app, seal_key):
        async with TestClient(TestServer(make_app(service))) as client:
            await handshake(client, seal_key)
            resp = await client.get("/api/v1/plain", headers=marked())
            assert resp.headers["X-Encrypted"] == "false"
            assert await resp.text() == "plain text"

    @pytest.mark.asyncio
    async def test_error_responses_carry_capability(self, service, make_app):
        async with TestClient(TestServer(make_app(service))) as client:
            resp = await client.get("/api/v1/missing")
            assert resp.status == 404
            assert resp.headers["X-Encryption-Enabled"] == "true"

    @pytest.mark.asyncio
    async def test_separate_store_instance(self, keypair, make_app, seal_key):
        """Test that keys live only in the service that performed the handshake."""
        config = CryptoConfig(enabled=True, sweep_interval=0)
        first = EncryptionService(config, keypair=keypair)
        second = EncryptionService(config, keypair=keypair, store=SessionKeyStore())
        async with TestClient(TestServer(make_app(first))) as client:
            await handshake(client, seal_key)
        assert first.store.get("abc123") is not None
        assert second.store.get("abc123") is None

    @pytest.mark.asyncio
    async def test_handler_json_error_is_encrypted(self, service, make_app, seal_key):
        """Test that a JSON HTTP error raised by a handler does not leak plaintext."""
        async with TestClient(TestServer(make_app(service))) as client:
            key = await handshake(client, seal_key)
            resp = await client.get("/api/v1/missing-flow", headers=marked())
            assert resp.status == 404
            assert resp.headers["X-Encrypted"] == "true"
            assert resp.headers["X-Encryption-Enabled"] == "true"
            assert "secret-123" not in await resp.text()
            body = await resp.json()
        assert decrypt_payload(body["encrypted"], key) == {
            "message": "chatflow secret-123 not found"
        }

    @pytest.mark.asyncio
    async def test_handler_json_error_without_key(self, service, make_app):
        async with TestClient(TestServer(make_app(service))) as client:
            resp = await client.get(
                "/api/v1/missing-flow", headers=marked("never-seen")
            )
            assert resp.status == 404
            assert "X-Encrypted" not in resp.headers
            assert await resp.json() == {"message": "chatflow secret-123 not found"}

    @pytest.mark.asyncio
    async def test_request_stage_errors_stay_plaintext(self, service, make_app, seal_key):
        async with TestClient(TestServer(make_app(service))) as client:
            await handshake(client, seal_key)
            resp = await client.post(
                "/api/v1/ask", json={"encrypted": "AAAA"}, headers=marked()
            )
            assert resp.status == 400
            assert "X-Encrypted" not in resp.headers
            assert (await resp.json())["error"] == "decryption_failed"


class TestMultipart:

    @pytest.mark.asyncio
    async def test_marked_upload_passes_through(self, service, make_app, seal_key):
        async with TestClient(TestServer(make_app(service))) as client:
            key = await handshake(client, seal_key)
            form = FormData()
            form.add_field("file", b"hello", filename="a.txt")
            resp = await client.post("/api/v1/upload", data=form, headers=marked())
            assert resp.status == 200
            assert resp.headers["X-Encrypted"] == "true"
            body = await resp.json()
        assert decrypt_payload(body["encrypted"], key) == {"name": "a.txt"}


class TestServiceSetup:

    def test_injected_empty_store_is_kept(self, config, keypair):
        store = SessionKeyStore(ttl=60, sweep_interval=0)
        assert len(store) == 0
        service = EncryptionService(config, keypair=keypair, store=store)
        assert service.store is store
        assert service.handshakes.store is store
        assert service.config is config

    def test_setup_keeps_injected_service(self, service):
        app = web.Application()
        assert setup_encryption(app, service=service) is service
        assert app[SERVICE_KEY] is service

    @pytest.mark.asyncio
    async def test_request_keys_are_typed(self, service, make_app, seal_key, received):
        assert isinstance(REQUEST_PAYLOAD, web.RequestKey)
        assert isinstance(REQUEST_STATE, web.RequestKey)
        async with TestClient(TestServer(make_app(service))) as client:
            key = await handshake(client, seal_key)
            with warnings.catch_warnings():
                warnings.simplefilter("error", web.NotAppKeyWarning)
                resp = await client.post(
                    "/api/v1/ask",
                    json={"encrypted": encrypt_payload({"question": "hi"}, key)},
                    headers=marked(),
                )
            assert resp.status == 200
        assert received == [({"question": "hi"}, RequestState.KEY_RESOLVED)]
