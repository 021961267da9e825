"""
Password-based encryption envelope

PBKDF2-HMAC-SHA256 (100k iterations) + AES-256-GCM.
Serialized as hex "salt:iv:authTag:ciphertext".
"""

import hashlib
import secrets
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from src.core.exceptions import AuthenticationError, EnvelopeFormatError


SALT_LENGTH = 32
IV_LENGTH = 16
TAG_LENGTH = 16
KEY_LENGTH = 32
PBKDF2_ITERATIONS = 100_000


@dataclass(frozen=True)
class EncryptedPayload:
    """All fields hex-encoded"""

    ciphertext: str
    salt: str
    iv: str
    auth_tag: str


class EncryptionService:
    """
    Encrypts secrets (master seeds) under a user password

    Key derivation is deliberately slow; async callers should run
    encrypt/decrypt through asyncio.to_thread.
    """

    def __init__(self, iterations: int = PBKDF2_ITERATIONS):
        self.iterations = iterations

    def _derive_key(self, password: str, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=self.iterations,
        )
        return kdf.derive(password.encode("utf-8"))

    def encrypt(self, plaintext: str, password: str) -> EncryptedPayload:
        """
        Encrypt plaintext with a password-derived key

        Args:
            plaintext: Secret material (text)
            password: User password

        Returns:
            EncryptedPayload with fresh random salt and IV
        """
        salt = secrets.token_bytes(SALT_LENGTH)
        iv = secrets.token_bytes(IV_LENGTH)
        key = self._derive_key(password, salt)

        # AESGCM appends the 16-byte tag to the ciphertext
        sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, auth_tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]

        return EncryptedPayload(
            ciphertext=ciphertext.hex(),
            salt=salt.hex(),
            iv=iv.hex(),
            auth_tag=auth_tag.hex(),
        )

    def decrypt(self, payload: EncryptedPayload, password: str) -> str:
        """
        Decrypt a payload

        Raises:
            AuthenticationError: Wrong password, tampered data or malformed fields.
                The message never tells these cases apart.
        """
        try:
            salt = bytes.fromhex(payload.salt)
            iv = bytes.fromhex(payload.iv)
            auth_tag = bytes.fromhex(payload.auth_tag)
            ciphertext = bytes.fromhex(payload.ciphertext)
            if len(auth_tag) != TAG_LENGTH or not iv:
                raise ValueError("bad tag or iv length")

            key = self._derive_key(password, salt)
            plaintext = AESGCM(key).decrypt(iv, ciphertext + auth_tag, None)
            return plaintext.decode("utf-8")
        except (InvalidTag, ValueError, TypeError) as e:
            raise AuthenticationError("Invalid password or corrupted data") from e

    @staticmethod
    def pack(payload: EncryptedPayload) -> str:
        return f"{payload.salt}:{payload.iv}:{payload.auth_tag}:{payload.ciphertext}"

    @staticmethod
    def unpack(packed: str) -> EncryptedPayload:
        """
        Parse "salt:iv:authTag:ciphertext"

        Raises:
            EnvelopeFormatError: Not exactly four segments
        """
        parts = packed.split(":") if isinstance(packed, str) else []
        if len(parts) != 4:
            raise EnvelopeFormatError()
        salt, iv, auth_tag, ciphertext = parts
        return EncryptedPayload(ciphertext=ciphertext, salt=salt, iv=iv, auth_tag=auth_tag)

    @staticmethod
    def hash(data: str) -> str:
        """SHA-256 hex digest (refresh token storage)"""
        return hashlib.sha256(data.encode("utf-8")).hexdigest()

    @staticmethod
    def generate_random_string(length: int = 32) -> str:
        """Hex string of `length` random bytes"""
        return secrets.token_hex(length)
