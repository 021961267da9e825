"""
Core module - shared enums and error types for the whole stack.
"""

from src.core.enums import (
    WalletStatus,
    TradeStatus,
    ExitReason,
    AuditAction,
)
from src.core.exceptions import (
    AppError,
    ValidationError,
    AuthenticationError,
    AuthorizationError,
    NotFoundError,
    EnvelopeFormatError,
    TradeNotOpenError,
    ExternalServiceError,
    ExchangeError,
    ConfirmationTimeoutError,
    PriceFeedError,
    TradeCloseError,
)

__all__ = [
    "WalletStatus",
    "TradeStatus",
    "ExitReason",
    "AuditAction",
    "AppError",
    "ValidationError",
    "AuthenticationError",
    "AuthorizationError",
    "NotFoundError",
    "EnvelopeFormatError",
    "TradeNotOpenError",
    "ExternalServiceError",
    "ExchangeError",
    "ConfirmationTimeoutError",
    "PriceFeedError",
    "TradeCloseError",
]
