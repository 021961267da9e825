"""
Session credentials

Short-lived opaque tokens that let the backend recover a user's password
later (auto-exit while the user is offline). AES-256-CBC under a per-user key
derived from a server secret, serialized as base64(iv || ciphertext).
"""

import base64
import binascii
import hashlib
import secrets
from typing import Optional

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from config.config import SESSION_CREDENTIAL_SECRET
from src.core.exceptions import AuthenticationError


IV_LENGTH = 16
BLOCK_BITS = 128


class SessionCredentialService:
    """Issue and recover session credentials"""

    def __init__(self, server_secret: Optional[str] = None):
        self.server_secret = server_secret or SESSION_CREDENTIAL_SECRET
        if not self.server_secret:
            raise ValueError("Session credential secret is not configured")

    def _user_key(self, user_id: int) -> bytes:
        # Same key for every credential of a user; the random IV makes tokens differ
        return hashlib.sha256(f"{self.server_secret}{user_id}".encode("utf-8")).digest()

    def issue(self, password: str, user_id: int) -> str:
        """
        Wrap a password into a session credential

        Args:
            password: User password (plaintext)
            user_id: Owner of the credential

        Returns:
            Base64 token
        """
        iv = secrets.token_bytes(IV_LENGTH)
        padder = padding.PKCS7(BLOCK_BITS).padder()
        padded = padder.update(password.encode("utf-8")) + padder.finalize()

        encryptor = Cipher(algorithms.AES(self._user_key(user_id)), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()

        return base64.b64encode(iv + ciphertext).decode("ascii")

    def recover(self, token: str, user_id: int) -> str:
        """
        Recover the password from a session credential

        Raises:
            AuthenticationError: Any decoding, length, padding or key mismatch
        """
        try:
            raw = base64.b64decode(token, validate=True)
            iv, ciphertext = raw[:IV_LENGTH], raw[IV_LENGTH:]
            if len(iv) != IV_LENGTH or not ciphertext or len(ciphertext) % IV_LENGTH:
                raise ValueError("bad credential length")

            decryptor = Cipher(algorithms.AES(self._user_key(user_id)), modes.CBC(iv)).decryptor()
            padded = decryptor.update(ciphertext) + decryptor.finalize()

            unpadder = padding.PKCS7(BLOCK_BITS).unpadder()
            plaintext = unpadder.update(padded) + unpadder.finalize()
            return plaintext.decode("utf-8")
        except (binascii.Error, ValueError, TypeError, UnicodeDecodeError) as e:
            raise AuthenticationError("Invalid session credential") from e
