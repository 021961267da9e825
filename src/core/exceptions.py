"""
Error taxonomy

- ValidationError: bad input, never retried, message shown to the caller as is
- AuthenticationError: generic messages only (no wrong-password vs corrupted-data oracle)
- NotFoundError: missing resources
- ExternalServiceError: transient failures of routing / RPC / price feed.
  During trade close these are retried by the next monitor cycle, nothing else.
"""

from typing import Optional


class AppError(Exception):
    """Base application error with an HTTP-like status code"""

    status_code: int = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def __str__(self) -> str:
        return self.message


class ValidationError(AppError):
    status_code = 400


class AuthenticationError(AppError):
    status_code = 401

    def __init__(self, message: str = "Authentication failed"):
        super().__init__(message)


class AuthorizationError(AppError):
    status_code = 403

    def __init__(self, message: str = "Unauthorized access"):
        super().__init__(message)


class NotFoundError(AppError):
    status_code = 404

    def __init__(self, message: str = "Resource not found"):
        super().__init__(message)


class EnvelopeFormatError(AuthenticationError):
    """Packed envelope does not have exactly four segments"""

    def __init__(self, message: str = "Invalid encrypted data format"):
        super().__init__(message)


class TradeNotOpenError(ValidationError):
    def __init__(self, trade_id: int, status: str):
        super().__init__(f"Trade {trade_id} is not open (status: {status})")
        self.trade_id = trade_id
        self.trade_status = status


class ExternalServiceError(AppError):
    status_code = 502


class ExchangeError(ExternalServiceError):
    """Quote / swap / broadcast failure"""

    def __init__(self, message: str, is_slippage: bool = False):
        super().__init__(message)
        self.is_slippage = is_slippage


class ConfirmationTimeoutError(ExchangeError):
    """Transaction was broadcast but not confirmed in time; outcome unknown"""

    def __init__(self, signature: str, timeout_sec: float, out_amount: Optional[int] = None):
        super().__init__(f"Transaction confirmation timeout: {signature} ({timeout_sec:.0f}s)")
        self.signature = signature
        self.out_amount = out_amount  # quoted output, base units


class PriceFeedError(ExternalServiceError):
    pass


class TradeCloseError(AppError):
    """Exit attempt failed; the trade is still open"""

    def __init__(self, trade_id: int, reason: str, error: Exception):
        super().__init__(f"Trade {trade_id} exit failed ({reason}): {error}")
        self.trade_id = trade_id
        self.reason = reason
        self.error = error
