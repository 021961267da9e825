"""
Database models for Ghost Trade Engine

SQLAlchemy 2.0 models with full type hints
"""

from datetime import datetime, UTC
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    JSON,
    String,
    Text,
    Integer,
    Boolean,
    DateTime,
    ForeignKey,
    UniqueConstraint,
    Numeric,
    Index,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.dialects.postgresql import JSONB

from src.core.enums import WalletStatus, TradeStatus


class Base(DeclarativeBase):
    """Base class for all models"""

    pass


# Prices in USD can be tiny (memecoins), amounts in SOL need lamport precision
PRICE = Numeric(38, 18)
SOL_AMOUNT = Numeric(20, 9)
TOKEN_AMOUNT = Numeric(40, 0)  # raw base units

# JSONB on PostgreSQL, plain JSON elsewhere (tests run on SQLite)
JSON_METADATA = JSON().with_variant(JSONB(), "postgresql")


# ===========================
# MODELS
# ===========================


class User(Base):
    """
    User model

    Holds:
    - Password verifier (bcrypt hash, never reversed)
    - Master seed, encrypted under the user's password (packed envelope)
    - Wallet index counter (strictly increasing, one per ghost wallet)
    - Optional external identity (OAuth) linkage

    Note: the master seed is immutable after registration
    """

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(
        String(255), unique=True, index=True, nullable=False, comment="Lower-cased email"
    )
    password_hash: Mapped[str] = mapped_column(
        String(255), nullable=False, comment="bcrypt password verifier"
    )
    master_seed_encrypted: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Packed envelope salt:iv:authTag:ciphertext"
    )
    encryption_salt: Mapped[str] = mapped_column(
        String(128), nullable=False, comment="Hex salt of the master seed envelope"
    )
    wallet_index_counter: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False, comment="Last assigned ghost wallet index"
    )
    password_is_generated: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
        comment="Password was system-generated and shown once (external identity users)",
    )
    oauth_provider: Mapped[Optional[str]] = mapped_column(
        String(50), nullable=True, comment="External identity provider (e.g. google)"
    )
    oauth_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, comment="Subject id at the identity provider"
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )
    last_login: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    wallets = relationship("GhostWallet", back_populates="user", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("oauth_provider", "oauth_id", name="uq_user_oauth_identity"),
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email}, wallets={self.wallet_index_counter})>"


class RefreshToken(Base):
    """
    Refresh token store - only the SHA-256 hash of the JWT is kept

    Rotated on every refresh, revoked on logout.
    """

    __tablename__ = "refresh_tokens"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    token_hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_revoked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    revoked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<RefreshToken(id={self.id}, user_id={self.user_id}, revoked={self.is_revoked})>"


class GhostWallet(Base):
    """
    Ghost wallet - a signing keypair derived from the user's master seed

    Only the public key is stored. The private key is re-derived on demand
    from (password -> master seed, wallet_index).
    """

    __tablename__ = "ghost_wallets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    wallet_index: Mapped[int] = mapped_column(
        Integer, nullable=False, comment="HD derivation index (unique per user)"
    )
    derivation_path: Mapped[str] = mapped_column(String(64), nullable=False)
    public_key: Mapped[str] = mapped_column(
        String(64), unique=True, index=True, nullable=False, comment="Base58 public key"
    )
    status: Mapped[str] = mapped_column(
        String(20), default=WalletStatus.ACTIVE.value, nullable=False, index=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )
    last_trade_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    recycled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    total_trades: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_volume_sol: Mapped[Decimal] = mapped_column(SOL_AMOUNT, default=Decimal("0"), nullable=False)
    profit_loss_sol: Mapped[Decimal] = mapped_column(SOL_AMOUNT, default=Decimal("0"), nullable=False)
    max_trades_per_wallet: Mapped[int] = mapped_column(Integer, default=50, nullable=False)
    max_lifetime_hours: Mapped[int] = mapped_column(Integer, default=168, nullable=False)

    user = relationship("User", back_populates="wallets")
    trades = relationship("Trade", back_populates="wallet")

    __table_args__ = (
        UniqueConstraint("user_id", "wallet_index", name="uq_wallet_user_index"),
    )

    def __repr__(self) -> str:
        return f"<GhostWallet(id={self.id}, user_id={self.user_id}, index={self.wallet_index}, status={self.status})>"


class Trade(Base):
    """
    Trade model - one entry swap (SOL -> token) and at most one exit swap

    Status flow:
    - pending -> open when an entry broadcast is confirmed late
    - pending -> failed when it failed on-chain
    - open -> closed when an exit swap is confirmed
    - open -> open when an exit attempt fails (retried next monitor cycle)
    - failed: entry never happened (kept for audit)
    """

    __tablename__ = "trades"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    ghost_wallet_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("ghost_wallets.id", ondelete="CASCADE"), nullable=False, index=True
    )
    token_address: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    # Entry
    entry_tx_hash: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    entry_timestamp: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    entry_price_usd: Mapped[Optional[Decimal]] = mapped_column(PRICE, nullable=True)
    entry_amount_sol: Mapped[Decimal] = mapped_column(SOL_AMOUNT, nullable=False)
    entry_amount_tokens: Mapped[Optional[Decimal]] = mapped_column(TOKEN_AMOUNT, nullable=True)
    entry_slippage_bps: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Exit parameters
    take_profit_pct: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 4), nullable=True)
    stop_loss_pct: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 4), nullable=True)
    trailing_stop_pct: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 4), nullable=True)
    max_hold_time_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    highest_price_usd: Mapped[Optional[Decimal]] = mapped_column(
        PRICE, nullable=True, comment="High-water mark since entry (trailing stop)"
    )

    # Exit
    exit_tx_hash: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    exit_timestamp: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    exit_price_usd: Mapped[Optional[Decimal]] = mapped_column(PRICE, nullable=True)
    exit_amount_sol: Mapped[Optional[Decimal]] = mapped_column(SOL_AMOUNT, nullable=True)
    exit_reason: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    profit_loss_sol: Mapped[Optional[Decimal]] = mapped_column(SOL_AMOUNT, nullable=True)
    profit_loss_pct: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 4), nullable=True)
    hold_time_seconds: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Exit broadcast whose confirmation timed out; reconciled on the next cycle
    pending_exit_tx_hash: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    pending_exit_reason: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    pending_exit_amount_sol: Mapped[Optional[Decimal]] = mapped_column(SOL_AMOUNT, nullable=True)
    pending_exit_price_usd: Mapped[Optional[Decimal]] = mapped_column(PRICE, nullable=True)
    closing_started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True, comment="Close claimed by a worker (exit swap in flight)"
    )

    status: Mapped[str] = mapped_column(
        String(20), default=TradeStatus.OPEN.value, nullable=False, index=True
    )
    session_credential: Mapped[Optional[str]] = mapped_column(
        Text, nullable=True, comment="Session credential resupplied by the monitor on auto-exit"
    )
    last_checked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )

    wallet = relationship("GhostWallet", back_populates="trades")

    __table_args__ = (
        Index("ix_trades_status_entry_ts", "status", "entry_timestamp"),
    )

    def __repr__(self) -> str:
        return f"<Trade(id={self.id}, token={self.token_address[:8]}, status={self.status})>"


class AuditLog(Base):
    """
    Audit log - append-only record of security-sensitive events

    Written best-effort: a failed insert never aborts the logged operation.
    """

    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[Optional[int]] = mapped_column(
        Integer, nullable=True, index=True, comment="Actor (no FK: rows outlive users)"
    )
    action: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    resource_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    resource_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    details: Mapped[dict] = mapped_column(
        "metadata", JSON_METADATA, default=dict, nullable=False
    )
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
        index=True,
    )

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, user_id={self.user_id}, action={self.action})>"
