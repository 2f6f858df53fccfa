"""
KeyPair Manager — the process-scoped RSA keypair used for the handshake.

Clients encrypt their symmetric session key with the public key using
RSA-OAEP (MGF1/SHA-256); only this process can recover it.

Security Note:
    The private key never leaves process memory and is never logged.
"""
import base64
import binascii
import logging
import threading
from typing import Optional, Union

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from ..exceptions import HandshakeError

logger = logging.getLogger("navigator.e2e")


def oaep_padding() -> padding.OAEP:
    """OAEP padding shared by the server and the client agent."""
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None,
    )


class KeyPairManager:
    """Owns the process RSA keypair.

    Generation is lazy and idempotent: the first call to ``generate()``,
    ``public_key()`` or ``decrypt()`` creates the keypair, later calls reuse it.
    Decryption only reads the private key and is safe to call concurrently.
    """

    def __init__(self, key_size: int = 2048, private_key=None):
        self._key_size = key_size
        self._private_key: Optional[rsa.RSAPrivateKey] = private_key
        self._public_pem: Optional[str] = None
        self._lock = threading.Lock()

    @classmethod
    def from_pem(cls, private_pem: bytes, password: bytes = None) -> "KeyPairManager":
        """Load an existing PKCS#8 private key instead of generating one."""
        key = serialization.load_pem_private_key(private_pem, password=password)
        if not isinstance(key, rsa.RSAPrivateKey):
            raise ValueError("E2E private key must be an RSA key")
        return cls(key_size=key.key_size, private_key=key)

    @property
    def key_size(self) -> int:
        return self._key_size

    @property
    def ready(self) -> bool:
        return self._private_key is not None

    def generate(self) -> None:
        """Create the keypair once per process."""
        if self._private_key is not None:
            return
        with self._lock:
            if self._private_key is None:
                self._private_key = rsa.generate_private_key(
                    public_exponent=65537,
                    key_size=self._key_size,
                )
                logger.info(
                    "E2E encryption RSA-%d key pair generated", self._key_size
                )

    def public_key(self) -> str:
        """Return the public key as a PEM (SubjectPublicKeyInfo) string."""
        if self._public_pem is None:
            self.generate()
            self._public_pem = self._private_key.public_key().public_bytes(
                serialization.Encoding.PEM,
                serialization.PublicFormat.SubjectPublicKeyInfo,
            ).decode("ascii")
        return self._public_pem

    def decrypt(self, ciphertext: Union[bytes, str]) -> bytes:
        """Decrypt key material encrypted with our public key.

        Args:
            ciphertext: raw RSA-OAEP ciphertext, or its base64 string form.

        Returns:
            Decrypted plaintext bytes.

        Raises:
            HandshakeError: (bad_ciphertext) if the ciphertext is malformed,
                has the wrong length or fails the OAEP padding check.
        """
        self.generate()
        if isinstance(ciphertext, str):
            try:
                ciphertext = base64.b64decode(ciphertext, validate=True)
            except (binascii.Error, ValueError) as err:
                raise HandshakeError(
                    "Session key is not valid base64",
                    code=HandshakeError.BAD_CIPHERTEXT,
                ) from err
        try:
            return self._private_key.decrypt(ciphertext, oaep_padding())
        except (ValueError, TypeError) as err:
            raise HandshakeError(
                "Failed to decrypt session key",
                code=HandshakeError.BAD_CIPHERTEXT,
            ) from err
