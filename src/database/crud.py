"""
CRUD operations for Ghost Trade Engine

Async database operations using SQLAlchemy 2.0
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.enums import ExitReason, TradeStatus, WalletStatus
from src.database.models import User, RefreshToken, GhostWallet, Trade, AuditLog
from src.utils.time_utils import utcnow

logger = logging.getLogger(__name__)


# ===========================
# USER OPERATIONS
# ===========================


async def get_user_by_id(
    session: AsyncSession, user_id: int, for_update: bool = False
) -> Optional[User]:
    """
    Get user by ID

    Args:
        session: Database session
        user_id: User ID
        for_update: Lock the row (SELECT ... FOR UPDATE)

    Returns:
        User model or None
    """
    stmt = select(User).where(User.id == user_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_user_by_email(session: AsyncSession, email: str) -> Optional[User]:
    stmt = select(User).where(User.email == email.strip().lower())
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_user_by_oauth(
    session: AsyncSession, provider: str, oauth_id: str
) -> Optional[User]:
    stmt = select(User).where(User.oauth_provider == provider, User.oauth_id == oauth_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def create_user(
    session: AsyncSession,
    email: str,
    password_hash: str,
    master_seed_encrypted: str,
    encryption_salt: str,
    password_is_generated: bool = False,
    oauth_provider: Optional[str] = None,
    oauth_id: Optional[str] = None,
) -> User:
    """
    Create new user with a sealed master seed

    Args:
        session: Database session
        email: Email (stored lower-cased)
        password_hash: bcrypt verifier
        master_seed_encrypted: Packed envelope
        encryption_salt: Envelope salt (hex)
        password_is_generated: Password was generated by the system
        oauth_provider: External identity provider
        oauth_id: Subject id at the provider

    Returns:
        Created User model
    """
    user = User(
        email=email.strip().lower(),
        password_hash=password_hash,
        master_seed_encrypted=master_seed_encrypted,
        encryption_salt=encryption_salt,
        wallet_index_counter=0,
        password_is_generated=password_is_generated,
        oauth_provider=oauth_provider,
        oauth_id=oauth_id,
    )
    session.add(user)
    await session.commit()
    await session.refresh(user)

    logger.info(f"User created: {user.id} (oauth: {oauth_provider or 'none'})")
    return user


async def touch_last_login(session: AsyncSession, user: User) -> None:
    user.last_login = utcnow()
    await session.commit()


async def increment_wallet_index(session: AsyncSession, user_id: int) -> int:
    """
    Reserve the next wallet index for a user

    Locks the user row and bumps the counter inside the caller's transaction.
    The caller commits (index consumed) or rolls back (index released).

    Returns:
        Newly reserved index
    """
    user = await get_user_by_id(session, user_id, for_update=True)
    if user is None:
        raise LookupError(f"User {user_id} not found")
    user.wallet_index_counter += 1
    await session.flush()
    return user.wallet_index_counter


# ===========================
# REFRESH TOKEN OPERATIONS
# ===========================


async def store_refresh_token(
    session: AsyncSession, user_id: int, token_hash: str, expires_at: datetime
) -> RefreshToken:
    token = RefreshToken(user_id=user_id, token_hash=token_hash, expires_at=expires_at)
    session.add(token)
    await session.commit()
    return token


async def get_refresh_token(session: AsyncSession, token_hash: str) -> Optional[RefreshToken]:
    stmt = select(RefreshToken).where(RefreshToken.token_hash == token_hash)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def revoke_refresh_token(session: AsyncSession, token: RefreshToken) -> None:
    token.is_revoked = True
    token.revoked_at = utcnow()
    await session.commit()


async def revoke_user_refresh_tokens(session: AsyncSession, user_id: int) -> int:
    """
    Revoke every active refresh token of a user

    Returns:
        Number of revoked tokens
    """
    stmt = (
        update(RefreshToken)
        .where(RefreshToken.user_id == user_id, RefreshToken.is_revoked.is_(False))
        .values(is_revoked=True, revoked_at=utcnow())
    )
    result = await session.execute(stmt)
    await session.commit()
    return result.rowcount or 0


# ===========================
# GHOST WALLET OPERATIONS
# ===========================


async def create_ghost_wallet(
    session: AsyncSession,
    user_id: int,
    wallet_index: int,
    derivation_path: str,
    public_key: str,
    max_trades_per_wallet: int,
    max_lifetime_hours: int,
) -> GhostWallet:
    """
    Add a ghost wallet to the current transaction (caller commits)

    Returns:
        GhostWallet model (flushed, id assigned)
    """
    wallet = GhostWallet(
        user_id=user_id,
        wallet_index=wallet_index,
        derivation_path=derivation_path,
        public_key=public_key,
        status=WalletStatus.ACTIVE.value,
        max_trades_per_wallet=max_trades_per_wallet,
        max_lifetime_hours=max_lifetime_hours,
    )
    session.add(wallet)
    await session.flush()
    return wallet


async def get_ghost_wallet(
    session: AsyncSession, wallet_id: int, user_id: Optional[int] = None
) -> Optional[GhostWallet]:
    """
    Get ghost wallet by ID, optionally scoped to its owner
    """
    stmt = select(GhostWallet).where(GhostWallet.id == wallet_id)
    if user_id is not None:
        stmt = stmt.where(GhostWallet.user_id == user_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_ghost_wallets(
    session: AsyncSession, user_id: int, status: Optional[str] = None
) -> List[GhostWallet]:
    stmt = select(GhostWallet).where(GhostWallet.user_id == user_id)
    if status:
        stmt = stmt.where(GhostWallet.status == status)
    stmt = stmt.order_by(GhostWallet.wallet_index.asc())
    result = await session.execute(stmt)
    return list(result.scalars().all())


# ===========================
# TRADE OPERATIONS
# ===========================


async def get_trade(
    session: AsyncSession,
    trade_id: int,
    user_id: Optional[int] = None,
    for_update: bool = False,
) -> Optional[Trade]:
    """
    Get trade by ID

    Args:
        session: Database session
        trade_id: Trade ID
        user_id: Restrict to this owner
        for_update: Lock the row for the rest of the transaction

    Returns:
        Trade model or None
    """
    stmt = select(Trade).where(Trade.id == trade_id)
    if user_id is not None:
        stmt = stmt.where(Trade.user_id == user_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_open_trades(session: AsyncSession, order: str = "oldest_first") -> List[Trade]:
    """
    Get all open trades ordered by entry time

    Args:
        session: Database session
        order: oldest_first or newest_first

    Returns:
        List of open Trade models
    """
    ts = Trade.entry_timestamp
    ordering = (ts.desc(), Trade.id.desc()) if order == "newest_first" else (ts.asc(), Trade.id.asc())
    stmt = select(Trade).where(Trade.status == TradeStatus.OPEN.value).order_by(*ordering)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_pending_entries(session: AsyncSession) -> List[Trade]:
    """Trades whose entry broadcast is still awaiting confirmation, oldest first"""
    stmt = (
        select(Trade)
        .where(Trade.status == TradeStatus.PENDING.value)
        .order_by(Trade.created_at.asc(), Trade.id.asc())
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_position_trades(
    session: AsyncSession,
    user_id: int,
    ghost_wallet_id: int,
    token_address: str,
    for_update: bool = False,
) -> List[Trade]:
    """
    Open trades holding one token in one ghost wallet, oldest first

    Args:
        for_update: Lock the rows for the rest of the transaction
    """
    stmt = (
        select(Trade)
        .where(
            Trade.user_id == user_id,
            Trade.ghost_wallet_id == ghost_wallet_id,
            Trade.token_address == token_address,
            Trade.status == TradeStatus.OPEN.value,
        )
        .order_by(Trade.created_at.asc(), Trade.id.asc())
    )
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_user_trades(
    session: AsyncSession,
    user_id: int,
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[Trade]:
    stmt = select(Trade).where(Trade.user_id == user_id)
    if status:
        stmt = stmt.where(Trade.status == status)
    stmt = stmt.order_by(Trade.created_at.desc(), Trade.id.desc()).limit(limit).offset(offset)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_trade_stats(session: AsyncSession, user_id: int) -> dict:
    """
    Aggregate closed-trade statistics for a user

    Returns:
        Dict with counts, win rate and realized P/L
    """
    base = select(func.count(Trade.id)).where(Trade.user_id == user_id)

    open_count = await session.scalar(base.where(Trade.status == TradeStatus.OPEN.value))
    failed_count = await session.scalar(base.where(Trade.status == TradeStatus.FAILED.value))
    pending_count = await session.scalar(base.where(Trade.status == TradeStatus.PENDING.value))

    # Reconciliation rows record a sale without an entry, not a trade outcome
    closed_stmt = select(Trade.profit_loss_sol, Trade.profit_loss_pct).where(
        Trade.user_id == user_id,
        Trade.status == TradeStatus.CLOSED.value,
        Trade.exit_reason.is_distinct_from(ExitReason.RECONCILIATION.value),
    )
    closed = (await session.execute(closed_stmt)).all()

    wins = sum(1 for pl_sol, _ in closed if pl_sol is not None and pl_sol > 0)
    total_pl = sum((Decimal(str(pl_sol)) for pl_sol, _ in closed if pl_sol is not None), Decimal("0"))
    pcts = [Decimal(str(pct)) for _, pct in closed if pct is not None]

    return {
        "open_trades": open_count or 0,
        "closed_trades": len(closed),
        "failed_trades": failed_count or 0,
        "pending_trades": pending_count or 0,
        "winning_trades": wins,
        "win_rate": round(wins / len(closed) * 100, 2) if closed else 0.0,
        "total_profit_loss_sol": total_pl,
        "average_profit_loss_pct": (sum(pcts) / len(pcts)) if pcts else Decimal("0"),
    }


# ===========================
# AUDIT LOG OPERATIONS
# ===========================


async def create_audit_log(
    session: AsyncSession,
    action: str,
    user_id: Optional[int] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    details: Optional[dict] = None,
) -> AuditLog:
    """
    Append an audit log entry

    Args:
        session: Database session
        action: Action name (see AuditAction)
        user_id: Actor
        resource_type: e.g. trade, ghost_wallet
        resource_id: Resource identifier
        details: JSON metadata

    Returns:
        Created AuditLog model
    """
    entry = AuditLog(
        user_id=user_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        details=details or {},
    )
    session.add(entry)
    await session.commit()
    return entry


async def get_audit_logs(
    session: AsyncSession,
    user_id: Optional[int] = None,
    action: Optional[str] = None,
    limit: int = 100,
) -> List[AuditLog]:
    stmt = select(AuditLog).order_by(AuditLog.timestamp.desc(), AuditLog.id.desc()).limit(limit)
    if user_id is not None:
        stmt = stmt.where(AuditLog.user_id == user_id)
    if action:
        stmt = stmt.where(AuditLog.action == action)
    result = await session.execute(stmt)
    return list(result.scalars().all())
