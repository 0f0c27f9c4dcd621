"""
auth/codec.py -- Symmetric encryption for Jira tokens at rest.

Fernet (AES-128-CBC + HMAC-SHA256, from the `cryptography` package) seals
each token with authentication, so a flipped byte or a ciphertext produced
under another key is detected rather than decrypted into garbage.

The Fernet key is derived deterministically from the process-wide SECRET_KEY:
    urlsafe_b64encode(SHA-256(b"identityhub.token-codec:" + SECRET_KEY))
The domain prefix keeps this key distinct from the JWT and HMAC uses of the
same secret. Rotating SECRET_KEY therefore makes every stored token
undecryptable -- decrypt() raises CorruptedSecret and the lifecycle manager
asks the user to reconnect.

Layer rule: no imports from api/ or tracker/.
"""

from __future__ import annotations

import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken

from core.errors import CorruptedSecret

_KEY_CONTEXT = b"identityhub.token-codec:"


def _derive_fernet_key(secret: str) -> bytes:
    digest = hashlib.sha256(_KEY_CONTEXT + secret.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest)


class SecretCodec:
    """Encrypt/decrypt short text secrets (OAuth access and refresh tokens).

    Usage:
        codec = SecretCodec(get_settings().secret_key)
        sealed = codec.encrypt(access_token)
        codec.decrypt(sealed) == access_token
    """

    def __init__(self, secret: str) -> None:
        if not secret:
            raise ValueError("SecretCodec requires a non-empty secret")
        self._fernet = Fernet(_derive_fernet_key(secret))

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        """Return the plaintext, or raise CorruptedSecret.

        Never returns partially decoded data: Fernet verifies the HMAC before
        decrypting, and any decoding problem is folded into CorruptedSecret.
        """
        try:
            return self._fernet.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except (InvalidToken, ValueError, AttributeError) as exc:
            raise CorruptedSecret("stored secret cannot be decrypted") from exc
