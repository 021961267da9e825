"""
Ghost wallet service

Creates, lists, recycles and rotates ghost wallets. Keys are never stored:
every signing keypair is re-derived from (password -> master seed, index).
"""

from datetime import datetime, timedelta
from typing import Callable, List, Optional

from loguru import logger
from solders.keypair import Keypair
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.config import WalletDefaults
from src.core.enums import AuditAction, WalletStatus
from src.core.exceptions import NotFoundError, ValidationError
from src.database.crud import (
    create_ghost_wallet,
    get_ghost_wallet,
    get_user_by_id,
    increment_wallet_index,
    list_ghost_wallets,
)
from src.database.models import GhostWallet
from src.services.audit_service import AuditLogger
from src.services.hd_derivation import derivation_path, derive_keypair
from src.services.master_seed_service import MasterSeedRegistry
from src.utils.time_utils import as_utc, utcnow


class WalletService:
    """Ghost wallet lifecycle"""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        seed_registry: Optional[MasterSeedRegistry] = None,
        audit: Optional[AuditLogger] = None,
        clock: Callable[[], datetime] = utcnow,
        max_trades_per_wallet: int = WalletDefaults.MAX_TRADES_PER_WALLET,
        max_lifetime_hours: int = WalletDefaults.MAX_LIFETIME_HOURS,
    ):
        self.session_maker = session_maker
        self.audit = audit or AuditLogger(session_maker)
        self.seed_registry = seed_registry or MasterSeedRegistry(session_maker, audit=self.audit)
        self.clock = clock
        self.max_trades_per_wallet = max_trades_per_wallet
        self.max_lifetime_hours = max_lifetime_hours

    async def create_wallet(self, user_id: int, password: str) -> GhostWallet:
        """
        Derive and persist the next ghost wallet

        The user row stays locked from seed decryption to commit, so indexes
        are handed out strictly in order. A wrong password aborts before the
        counter moves.

        Raises:
            NotFoundError: Unknown user
            AuthenticationError: Wrong password / corrupted seed
        """
        async with self.session_maker() as session:
            user = await get_user_by_id(session, user_id, for_update=True)
            if user is None:
                raise NotFoundError("User not found")

            entropy = await self.seed_registry.recover_entropy(user, password)

            index = await increment_wallet_index(session, user_id)
            keypair = derive_keypair(entropy, index)

            wallet = await create_ghost_wallet(
                session,
                user_id=user_id,
                wallet_index=index,
                derivation_path=derivation_path(index),
                public_key=str(keypair.pubkey()),
                max_trades_per_wallet=self.max_trades_per_wallet,
                max_lifetime_hours=self.max_lifetime_hours,
            )
            await session.commit()
            await session.refresh(wallet)

        logger.info(f"Ghost wallet created: user {user_id}, index {index}, {wallet.public_key[:8]}...")
        await self.audit.log(
            AuditAction.GHOST_WALLET_CREATED,
            user_id=user_id,
            resource_type="ghost_wallet",
            resource_id=wallet.id,
            details={"wallet_index": index, "public_key": wallet.public_key},
        )
        return wallet

    async def derive_user_keypair(self, user_id: int, index: int, password: str) -> Keypair:
        """
        Re-derive the signing keypair of one of the user's wallets

        Raises:
            NotFoundError: Unknown user
            AuthenticationError: Wrong password / corrupted seed
        """
        async with self.session_maker() as session:
            user = await get_user_by_id(session, user_id)
        if user is None:
            raise NotFoundError("User not found")

        entropy = await self.seed_registry.recover_entropy(user, password)
        return derive_keypair(entropy, index)

    async def get_wallet(self, wallet_id: int, user_id: int) -> GhostWallet:
        async with self.session_maker() as session:
            wallet = await get_ghost_wallet(session, wallet_id, user_id=user_id)
        if wallet is None:
            raise NotFoundError("Ghost wallet not found")
        return wallet

    async def list_wallets(self, user_id: int, status: Optional[str] = None) -> List[GhostWallet]:
        async with self.session_maker() as session:
            return await list_ghost_wallets(session, user_id, status=status)

    async def recycle_wallet(self, wallet_id: int, user_id: int) -> GhostWallet:
        """
        Retire a wallet; it is never selected for new trades again

        Raises:
            NotFoundError: Wallet does not exist or belongs to another user
            ValidationError: Already recycled
        """
        async with self.session_maker() as session:
            wallet = await get_ghost_wallet(session, wallet_id, user_id=user_id)
            if wallet is None:
                raise NotFoundError("Ghost wallet not found")
            if wallet.status == WalletStatus.RECYCLED.value:
                raise ValidationError("Wallet is already recycled")

            wallet.status = WalletStatus.RECYCLED.value
            wallet.recycled_at = self.clock()
            await session.commit()

        logger.info(f"Ghost wallet recycled: {wallet_id} (user {user_id})")
        await self.audit.log(
            AuditAction.GHOST_WALLET_RECYCLED,
            user_id=user_id,
            resource_type="ghost_wallet",
            resource_id=wallet_id,
            details={"total_trades": wallet.total_trades},
        )
        return wallet

    def needs_rotation(self, wallet: GhostWallet) -> bool:
        """Trade cap reached or lifetime exceeded"""
        if wallet.total_trades >= wallet.max_trades_per_wallet:
            return True
        age = self.clock() - as_utc(wallet.created_at)
        return age >= timedelta(hours=wallet.max_lifetime_hours)

    async def get_or_create_trading_wallet(self, user_id: int, password: str) -> GhostWallet:
        """
        Pick an active wallet with spare capacity, or rotate to a new one

        Exhausted active wallets are moved to draining.
        """
        async with self.session_maker() as session:
            active = await list_ghost_wallets(session, user_id, status=WalletStatus.ACTIVE.value)

            candidate = None
            for wallet in active:
                if self.needs_rotation(wallet):
                    wallet.status = WalletStatus.DRAINING.value
                    logger.info(f"Ghost wallet {wallet.id} exhausted, draining")
                elif candidate is None:
                    candidate = wallet
            await session.commit()

        if candidate is not None:
            return candidate
        return await self.create_wallet(user_id, password)
