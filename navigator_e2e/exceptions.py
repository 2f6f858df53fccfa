"""
Navigator E2E Exceptions.

Taxonomy:
- ``HandshakeError``: key material that cannot be installed (rejected, 400).
- ``DecryptionError``: a presented ciphertext failed to decrypt (fail-closed).
- ``PayloadFormatError``: decrypted plaintext is not a valid payload (fail-closed).
- ``SessionKeyAbsent``: no key for a marked request; only raised in strict mode,
  otherwise the request is passed through untouched.
"""


class EncryptionError(Exception):
    """Base class for all encryption layer errors."""

    code: str = 'encryption_error'
    status: int = 400

    def __init__(self, message: str = None, code: str = None):
        self.message = message or self.__class__.__doc__
        if code is not None:
            self.code = code
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message}


class HandshakeError(EncryptionError):
    """Session key material could not be installed."""

    BAD_CIPHERTEXT = 'bad_ciphertext'
    WRONG_KEY_LENGTH = 'wrong_key_length'
    INVALID_REQUEST = 'invalid_request'

    code = BAD_CIPHERTEXT


class DecryptionError(EncryptionError):
    """Ciphertext could not be decrypted with the session key."""

    code = 'decryption_failed'


class PayloadFormatError(EncryptionError):
    """Decrypted plaintext is not a well-formed payload."""

    code = 'invalid_payload'


class SessionKeyAbsent(EncryptionError):
    """No session key is installed for this session."""

    code = 'session_key_absent'
    status = 412
