"""
Encryption Middlewares — inbound decryption and outbound encryption stages.

Inbound, every request is classified into one of four states:

    DISABLED        encryption is off                       -> pass through
    NOT_MARKED      request is not flagged as encrypted     -> pass through
    NO_SESSION_KEY  flagged, but no key for its session     -> pass through
                    (fail-open, or 412 in strict mode)
    KEY_RESOLVED    flagged and a key was found             -> decrypt, and
                    reject the request on any failure (fail-closed)

Outbound, JSON responses to flagged requests (including JSON HTTP errors
raised by handlers) are wrapped in an envelope when the session key
resolves; if encryption fails, the plaintext body is sent instead
(best-effort). Form and multipart request bodies are never enveloped.

Security Note:
    Never log plaintext or ciphertext values.
"""
import logging
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

import orjson
from aiohttp import hdrs, web

from .conf import (
    ENCRYPTED_HEADER,
    ENCRYPTION_ENABLED_HEADER,
    ENVELOPE_FIELD,
    REQUEST_PAYLOAD,
    REQUEST_STATE,
    is_true,
)
from .exceptions import (
    DecryptionError,
    EncryptionError,
    PayloadFormatError,
    SessionKeyAbsent,
)

if TYPE_CHECKING:
    from .service import EncryptionService

logger = logging.getLogger("navigator.e2e")

_NO_BODY = object()

_HTTP_ERRORS = {
    400: web.HTTPBadRequest,
    404: web.HTTPNotFound,
    412: web.HTTPPreconditionFailed,
}


def json_dumps(obj: Any) -> str:
    return orjson.dumps(obj).decode("utf-8")


def json_error(err: EncryptionError, status: Optional[int] = None) -> web.HTTPException:
    """Build a JSON HTTP error from an encryption error."""
    exc_cls = _HTTP_ERRORS.get(status or err.status, web.HTTPBadRequest)
    return exc_cls(
        text=json_dumps(err.to_dict()),
        content_type="application/json",
    )


class RequestState(Enum):
    DISABLED = "disabled"
    NOT_MARKED = "not_marked"
    NO_SESSION_KEY = "no_session_key"
    KEY_RESOLVED = "key_resolved"


def classify_request(
    service: "EncryptionService", request: web.Request
) -> tuple[RequestState, Optional[bytes]]:
    """Return the decryption state of a request and its session key."""
    if not service.enabled:
        return RequestState.DISABLED, None
    if not is_true(request.headers.get(ENCRYPTED_HEADER)):
        return RequestState.NOT_MARKED, None
    key = service.resolve_key(request)
    if key is None:
        return RequestState.NO_SESSION_KEY, None
    return RequestState.KEY_RESOLVED, key


async def read_payload(request: web.Request) -> Any:
    """Return the request JSON payload, decrypted when it was encrypted.

    Handlers behind the decryption stage must read the body with this
    function instead of ``request.json()``.
    """
    if REQUEST_PAYLOAD in request:
        return request[REQUEST_PAYLOAD]
    body = await request.read()
    if not body:
        return None
    return orjson.loads(body)


async def _decrypt_body(
    service: "EncryptionService", request: web.Request, key: bytes
) -> Any:
    if request.content_type != "application/json" and request.body_exists:
        # form and multipart uploads are never enveloped
        logger.debug(
            "E2E passing non-JSON body through: session=%s path=%s content_type=%s",
            service.session_id(request), request.path, request.content_type,
        )
        return _NO_BODY
    raw = await request.read()
    if not raw.strip():
        # marked GET/DELETE requests carry no body
        return _NO_BODY
    try:
        body = orjson.loads(raw)
    except orjson.JSONDecodeError as err:
        raise PayloadFormatError("Encrypted request body is not JSON") from err
    if not isinstance(body, dict) or not isinstance(body.get(ENVELOPE_FIELD), str):
        raise PayloadFormatError(
            f"Encrypted request body must be {{{ENVELOPE_FIELD}: <ciphertext>}}"
        )
    return service.decrypt(body[ENVELOPE_FIELD], key)


def decrypt_request_middleware(service: "EncryptionService"):
    """Inbound stage: replace an encrypted body by its decrypted payload."""

    @web.middleware
    async def middleware(request: web.Request, handler):
        state, key = classify_request(service, request)
        request[REQUEST_STATE] = state
        if state is RequestState.NO_SESSION_KEY:
            session_id = service.session_id(request)
            if service.config.strict:
                logger.warning(
                    "E2E rejected request without session key: session=%s path=%s",
                    session_id, request.path,
                )
                raise json_error(SessionKeyAbsent())
            logger.debug(
                "E2E no session key, passing request through: session=%s path=%s",
                session_id, request.path,
            )
        elif state is RequestState.KEY_RESOLVED:
            try:
                payload = await _decrypt_body(service, request, key)
            except (DecryptionError, PayloadFormatError) as err:
                logger.warning(
                    "E2E failed to decrypt request: session=%s path=%s error=%s",
                    service.session_id(request), request.path, err.code,
                )
                raise json_error(err) from err
            if payload is not _NO_BODY:
                request[REQUEST_PAYLOAD] = payload
        return await handler(request)

    return middleware


def _is_json_response(response: web.StreamResponse) -> bool:
    return (
        isinstance(response, web.Response)
        and not response.prepared
        and response.content_type == "application/json"
        and isinstance(response.body, bytes)
    )


def encrypt_response(
    service: "EncryptionService", response: web.Response, key: bytes
) -> web.Response:
    """Wrap a JSON response body in an envelope.

    Status, headers and cookies of the original response are preserved. On
    failure the original (plaintext) response is returned.
    """
    try:
        ciphertext = service.encrypt_bytes(response.body, key)
    except Exception as err:
        logger.error(
            "E2E failed to encrypt response, sending plaintext: %s",
            err.__class__.__name__,
        )
        response.headers[ENCRYPTED_HEADER] = "false"
        return response
    encrypted = web.json_response(
        {ENVELOPE_FIELD: ciphertext},
        status=response.status,
        reason=response.reason,
        dumps=json_dumps,
    )
    for name, value in response.headers.items():
        if name in (hdrs.CONTENT_TYPE, hdrs.CONTENT_LENGTH):
            continue
        encrypted.headers.add(name, value)
    for name, morsel in response.cookies.items():
        encrypted.cookies[name] = morsel
    encrypted.headers[ENCRYPTED_HEADER] = "true"
    return encrypted


def _error_key(
    service: "EncryptionService", request: web.Request, exc: web.HTTPException
) -> Optional[bytes]:
    """Session key for a JSON HTTP error raised by an application handler.

    Errors produced by the encryption layer itself (request stage failures,
    crypto endpoints) stay in plaintext so the client can always read them.
    """
    if not service.enabled or not is_true(request.headers.get(ENCRYPTED_HEADER)):
        return None
    if isinstance(exc.__cause__, EncryptionError):
        return None
    if request.path.startswith(f"{service.config.route_prefix}/"):
        return None
    if not _is_json_response(exc):
        return None
    return service.resolve_key(request)


def encrypt_response_middleware(service: "EncryptionService"):
    """Outbound stage: advertise capability and encrypt JSON responses."""

    @web.middleware
    async def middleware(request: web.Request, handler):
        flag = "true" if service.enabled else "false"
        try:
            response = await handler(request)
        except web.HTTPException as exc:
            exc.headers[ENCRYPTION_ENABLED_HEADER] = flag
            key = _error_key(service, request, exc)
            if key is None:
                raise
            encrypted = encrypt_response(service, exc, key)
            if encrypted is exc:
                raise
            return encrypted
        if response.prepared:
            # streaming responses already sent their headers
            return response
        response.headers[ENCRYPTION_ENABLED_HEADER] = flag
        response.headers[ENCRYPTED_HEADER] = "false"
        if not service.enabled or not is_true(request.headers.get(ENCRYPTED_HEADER)):
            return response
        key = service.resolve_key(request)
        if key is None or not _is_json_response(response):
            return response
        return encrypt_response(service, response, key)

    return middleware
