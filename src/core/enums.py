"""
Core Enums - shared types for custody and trade lifecycle.

Defines:
- WalletStatus: ghost wallet lifecycle
- TradeStatus: trade state machine
- ExitReason: why a trade was (or should be) closed
- AuditAction: security-sensitive events written to the audit log
"""

from enum import Enum


class WalletStatus(str, Enum):
    """Ghost wallet lifecycle"""

    ACTIVE = "active"
    DRAINING = "draining"  # funds being moved out
    RECYCLED = "recycled"  # retired, never reused for new trades
    BURNED = "burned"  # considered linked/compromised


class TradeStatus(str, Enum):
    """
    Trade state machine.

    Lifecycle:
    - PENDING: entry broadcast but its confirmation timed out; the monitor
      polls the signature until it lands (OPEN) or fails (FAILED)
    - OPEN: entry confirmed, monitored every cycle
    - CLOSED: exit confirmed (terminal)
    - FAILED: entry attempt failed, kept for audit (terminal, never monitored)

    A failed exit attempt does NOT change the status: the trade stays OPEN
    and is retried on the next monitor cycle.
    """

    PENDING = "pending"
    OPEN = "open"
    CLOSED = "closed"
    FAILED = "failed"

    def is_terminal(self) -> bool:
        return self in (TradeStatus.CLOSED, TradeStatus.FAILED)


class ExitReason(str, Enum):
    """Exit trigger. Order of evaluation: stop_loss, take_profit, trailing_stop, timeout."""

    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"
    TRAILING_STOP = "trailing_stop"
    TIMEOUT = "timeout"
    MANUAL = "manual"
    RECONCILIATION = "reconciliation"  # tokens sold without a matching open trade


class AuditAction(str, Enum):
    """Audit log actions"""

    USER_REGISTERED = "user_registered"
    USER_LOGIN = "user_login"
    USER_LOGOUT = "user_logout"
    SEED_VIEWED = "seed_viewed"
    GHOST_WALLET_CREATED = "ghost_wallet_created"
    GHOST_WALLET_RECYCLED = "ghost_wallet_recycled"
    TRADE_CREATED = "trade_created"
    TRADE_ENTRY_FAILED = "trade_entry_failed"
    TRADE_CLOSED = "trade_closed"
    AUTO_CLOSE_FAILED = "auto_close_failed"
    TRADES_CLOSED_BY_TOKEN = "trades_closed_by_token"
    BALANCE_MISMATCH_DETECTED = "balance_mismatch_detected"
    BALANCE_RECONCILIATION = "balance_reconciliation"
