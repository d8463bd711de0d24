"""Random material for generate-once secrets."""

from __future__ import annotations

import base64
import secrets
import string

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

_ALPHANUMERIC = string.ascii_letters + string.digits


class SecretGenerator:
    """Source of randomness for passwords and keys.

    Only called on the creation branch of a reconciliation; tests substitute
    a deterministic implementation.
    """

    def random_bytes(self, length: int) -> bytes:
        return secrets.token_bytes(length)

    def random_string(self, length: int) -> str:
        return "".join(secrets.choice(_ALPHANUMERIC) for _ in range(length))

    def random_base64(self, length: int) -> str:
        """Base64 encoding of ``length`` random bytes."""
        return base64.b64encode(self.random_bytes(length)).decode("ascii")

    def rsa_private_key_pem(self, bits: int = 2048) -> bytes:
        """Unencrypted PKCS#8 PEM of a fresh RSA key."""
        key = rsa.generate_private_key(public_exponent=65537, key_size=bits)
        return key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
