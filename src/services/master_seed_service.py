"""
Master seed registry

Generates the per-user master seed at registration, stores it sealed under
the user's password and recovers it on demand. The plaintext never touches
the database.
"""

import asyncio
import secrets
from dataclasses import dataclass
from typing import Optional

import bcrypt
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.core.enums import AuditAction
from src.core.exceptions import AuthenticationError, NotFoundError
from src.database.crud import get_user_by_id
from src.database.models import User
from src.services.audit_service import AuditLogger
from src.services.encryption_service import EncryptionService
from src.services.hd_derivation import entropy_to_mnemonic


SEED_ENTROPY_BYTES = 32  # 24-word mnemonic


@dataclass(frozen=True)
class SealedSeed:
    master_seed_encrypted: str
    encryption_salt: str


def verify_password(password: str, password_hash: str) -> bool:
    """Constant-time bcrypt check; malformed hashes count as mismatch"""
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=12)).decode("utf-8")


class MasterSeedRegistry:
    """Seal, recover and export user master seeds"""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        encryption: Optional[EncryptionService] = None,
        audit: Optional[AuditLogger] = None,
    ):
        self.session_maker = session_maker
        self.encryption = encryption or EncryptionService()
        self.audit = audit or AuditLogger(session_maker)

    def _seal(self, password: str) -> SealedSeed:
        entropy = secrets.token_bytes(SEED_ENTROPY_BYTES)
        payload = self.encryption.encrypt(entropy.hex(), password)
        return SealedSeed(
            master_seed_encrypted=self.encryption.pack(payload),
            encryption_salt=payload.salt,
        )

    async def create_sealed_seed(self, password: str) -> SealedSeed:
        """
        Generate a fresh master seed and seal it under the password

        Returns:
            Packed envelope and its salt, ready to store on the user row
        """
        return await asyncio.to_thread(self._seal, password)

    def _open(self, packed: str, password: str) -> bytes:
        payload = self.encryption.unpack(packed)
        seed_hex = self.encryption.decrypt(payload, password)
        try:
            return bytes.fromhex(seed_hex)
        except ValueError as e:
            raise AuthenticationError("Invalid password or corrupted data") from e

    async def recover_entropy(self, user: User, password: str) -> bytes:
        """
        Decrypt the user's master seed

        Raises:
            AuthenticationError: Wrong password or corrupted envelope
        """
        return await asyncio.to_thread(self._open, user.master_seed_encrypted, password)

    async def export_seed_phrase(self, user_id: int, password: str) -> str:
        """
        Reveal the 24-word recovery phrase

        The password is checked against the bcrypt verifier before any
        decryption is attempted.

        Raises:
            NotFoundError: Unknown user
            AuthenticationError: Wrong password
        """
        async with self.session_maker() as session:
            user = await get_user_by_id(session, user_id)
        if user is None:
            raise NotFoundError("User not found")

        if not await asyncio.to_thread(verify_password, password, user.password_hash):
            logger.warning(f"Seed export rejected for user {user_id}: invalid password")
            raise AuthenticationError("Invalid password")

        entropy = await self.recover_entropy(user, password)
        phrase = entropy_to_mnemonic(entropy)

        await self.audit.log(
            AuditAction.SEED_VIEWED,
            user_id=user_id,
            resource_type="user",
            resource_id=str(user_id),
        )
        logger.info(f"Seed phrase exported for user {user_id}")
        return phrase
