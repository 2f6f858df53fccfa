"""Wire-level names shared by the server stages and the client agent."""
import os

from aiohttp import web

# Request / response markers
ENCRYPTED_HEADER = 'X-Encrypted'
ENCRYPTION_ENABLED_HEADER = 'X-Encryption-Enabled'
SESSION_HEADER = 'X-Session-Id'
SESSION_COOKIE = os.environ.get('E2E_SESSION_COOKIE', 'AUTOID')

# Envelope field: {"encrypted": "<ciphertext>"}
ENVELOPE_FIELD = 'encrypted'

# Keys on the aiohttp Request mapping
REQUEST_PAYLOAD = web.RequestKey('payload', object)
REQUEST_STATE = web.RequestKey('state', object)

DEFAULT_ROUTE_PREFIX = '/api/v1/crypto'

SESSION_KEY_LENGTH = 32  # AES-256


def is_true(value) -> bool:
    """Interpret a header or environment value as a boolean flag."""
    if value is None:
        return False
    return str(value).strip().lower() in ('true', '1', 'yes', 'on')
