"""
Service input/output models (pydantic)
"""

import re
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

from config.config import TradingDefaults


PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_BYTES = 72  # bcrypt input limit


def password_strength_errors(password: str) -> list[str]:
    """Return the list of unmet password rules (empty when strong enough)"""
    errors = []
    if len(password) < PASSWORD_MIN_LENGTH:
        errors.append(f"at least {PASSWORD_MIN_LENGTH} characters")
    if len(password.encode("utf-8")) > PASSWORD_MAX_BYTES:
        errors.append(f"at most {PASSWORD_MAX_BYTES} bytes")
    if not re.search(r"[A-Z]", password):
        errors.append("one uppercase letter")
    if not re.search(r"[a-z]", password):
        errors.append("one lowercase letter")
    if not re.search(r"\d", password):
        errors.append("one number")
    return errors


# ===========================
# AUTH
# ===========================


class RegisterRequest(BaseModel):
    """Email + password registration"""
    email: EmailStr
    password: str

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("password")
    @classmethod
    def check_strength(cls, value: str) -> str:
        errors = password_strength_errors(value)
        if errors:
            raise ValueError("Password must contain " + ", ".join(errors))
        return value


class ExternalIdentity(BaseModel):
    email: EmailStr
    provider: str = Field(min_length=1, max_length=50)
    external_id: str = Field(min_length=1, max_length=255)


class UserPublic(BaseModel):
    id: int
    email: str
    wallet_index_counter: int
    oauth_provider: Optional[str] = None

    model_config = {"from_attributes": True}


class TokenPair(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int  # access token lifetime, seconds


class AuthResult(BaseModel):
    """
    Result of register / login

    session_credential is present only when the user chose their own password.
    generated_password is set exactly once, on external-identity registration.
    """
    user: UserPublic
    tokens: TokenPair
    session_credential: Optional[str] = None
    generated_password: Optional[str] = None


class AccessTokenPayload(BaseModel):
    user_id: int
    email: str
    exp: int


# ===========================
# TRADES
# ===========================


class ExitParams(BaseModel):
    """Exit thresholds in percent; max hold time in minutes (optional)"""
    take_profit_pct: Decimal = Field(gt=0)
    stop_loss_pct: Decimal = Field(gt=0, le=100)
    trailing_stop_pct: Decimal = Field(gt=0, lt=100)
    max_hold_time_minutes: Optional[int] = Field(default=None, gt=0)


class CreateTradeRequest(BaseModel):
    ghost_wallet_id: int
    token_address: str = Field(min_length=32, max_length=64)
    amount_sol: Decimal = Field(gt=0)
    slippage_bps: int = Field(
        default=TradingDefaults.ENTRY_SLIPPAGE_BPS, gt=0, le=TradingDefaults.MAX_SLIPPAGE_BPS
    )
    exit_params: ExitParams
    session_credential: str = Field(min_length=1)
