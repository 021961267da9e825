"""
Authentication service

Email/password and external-identity accounts, JWT access tokens,
rotating refresh tokens and session credentials.
"""

import asyncio
import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional

from jose import JWTError, jwt
from loguru import logger
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.config import (
    JWT_ALGORITHM,
    JWT_EXPIRES_MINUTES,
    JWT_SECRET,
    REFRESH_TOKEN_EXPIRES_DAYS,
    REFRESH_TOKEN_SECRET,
)
from src.core.enums import AuditAction
from src.core.exceptions import AuthenticationError, NotFoundError, ValidationError
from src.database.crud import (
    create_user,
    get_refresh_token,
    get_user_by_email,
    get_user_by_id,
    get_user_by_oauth,
    revoke_refresh_token,
    revoke_user_refresh_tokens,
    store_refresh_token,
    touch_last_login,
)
from src.database.models import User
from src.services.audit_service import AuditLogger
from src.services.encryption_service import EncryptionService
from src.services.master_seed_service import MasterSeedRegistry, hash_password, verify_password
from src.services.schemas import (
    AccessTokenPayload,
    AuthResult,
    ExternalIdentity,
    RegisterRequest,
    TokenPair,
    UserPublic,
    password_strength_errors,
)
from src.services.session_credential_service import SessionCredentialService
from src.utils.time_utils import as_utc, utcnow


INVALID_LOGIN = "Invalid email or password"
INVALID_REFRESH = "Invalid or expired refresh token"
INVALID_ACCESS = "Invalid or expired token"


def _first_error(error: PydanticValidationError) -> str:
    details = error.errors()
    if not details:
        return "Invalid input"
    first = details[0]
    field = ".".join(str(part) for part in first.get("loc", ()))
    message = first.get("msg", "invalid value").removeprefix("Value error, ")
    return f"{field}: {message}" if field else message


def generate_password() -> str:
    """Random password that satisfies the strength rules"""
    while True:
        candidate = secrets.token_urlsafe(18)
        if not password_strength_errors(candidate):
            return candidate


class AuthService:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        seed_registry: Optional[MasterSeedRegistry] = None,
        credentials: Optional[SessionCredentialService] = None,
        audit: Optional[AuditLogger] = None,
        clock: Callable[[], datetime] = utcnow,
        jwt_secret: str = JWT_SECRET,
        refresh_secret: str = REFRESH_TOKEN_SECRET,
        access_expires_minutes: int = JWT_EXPIRES_MINUTES,
        refresh_expires_days: int = REFRESH_TOKEN_EXPIRES_DAYS,
    ):
        self.session_maker = session_maker
        self.audit = audit or AuditLogger(session_maker)
        self.seed_registry = seed_registry or MasterSeedRegistry(session_maker, audit=self.audit)
        self.credentials = credentials or SessionCredentialService()
        self.clock = clock
        self.jwt_secret = jwt_secret
        self.refresh_secret = refresh_secret
        self.access_expires = timedelta(minutes=access_expires_minutes)
        self.refresh_expires = timedelta(days=refresh_expires_days)

    # ===========================
    # TOKENS
    # ===========================

    def _create_access_token(self, user: User) -> str:
        now = self.clock()
        payload = {
            "sub": str(user.id),
            "user_id": user.id,
            "email": user.email,
            "type": "access",
            "iat": now,
            "exp": now + self.access_expires,
        }
        return jwt.encode(payload, self.jwt_secret, algorithm=JWT_ALGORITHM)

    async def _issue_tokens(self, user: User) -> TokenPair:
        now = self.clock()
        expires_at = now + self.refresh_expires
        refresh_token = jwt.encode(
            {
                "sub": str(user.id),
                "type": "refresh",
                "jti": secrets.token_urlsafe(16),
                "iat": now,
                "exp": expires_at,
            },
            self.refresh_secret,
            algorithm=JWT_ALGORITHM,
        )

        async with self.session_maker() as session:
            await store_refresh_token(
                session, user.id, EncryptionService.hash(refresh_token), expires_at
            )

        return TokenPair(
            access_token=self._create_access_token(user),
            refresh_token=refresh_token,
            expires_in=int(self.access_expires.total_seconds()),
        )

    def verify_access_token(self, token: str) -> AccessTokenPayload:
        """
        Decode and validate an access token

        Raises:
            AuthenticationError: Bad signature, expired, wrong type
        """
        try:
            payload = jwt.decode(token, self.jwt_secret, algorithms=[JWT_ALGORITHM])
            if payload.get("type") != "access":
                raise AuthenticationError(INVALID_ACCESS)
            return AccessTokenPayload(
                user_id=int(payload["user_id"]),
                email=payload["email"],
                exp=int(payload["exp"]),
            )
        except (JWTError, KeyError, TypeError, ValueError) as e:
            raise AuthenticationError(INVALID_ACCESS) from e

    async def refresh(self, refresh_token: str) -> TokenPair:
        """
        Rotate a refresh token: the presented one is revoked, a new pair issued

        Raises:
            AuthenticationError: Invalid, expired, unknown or revoked token
        """
        try:
            payload = jwt.decode(refresh_token, self.refresh_secret, algorithms=[JWT_ALGORITHM])
            user_id = int(payload["sub"])
        except (JWTError, KeyError, TypeError, ValueError) as e:
            raise AuthenticationError(INVALID_REFRESH) from e
        if payload.get("type") != "refresh":
            raise AuthenticationError(INVALID_REFRESH)

        async with self.session_maker() as session:
            stored = await get_refresh_token(session, EncryptionService.hash(refresh_token))
            if (
                stored is None
                or stored.is_revoked
                or stored.user_id != user_id
                or as_utc(stored.expires_at) <= self.clock()
            ):
                raise AuthenticationError(INVALID_REFRESH)

            user = await get_user_by_id(session, user_id)
            if user is None or not user.is_active:
                raise AuthenticationError(INVALID_REFRESH)

            await revoke_refresh_token(session, stored)

        return await self._issue_tokens(user)

    async def logout(self, user_id: int) -> int:
        """Revoke all refresh tokens of the user"""
        async with self.session_maker() as session:
            revoked = await revoke_user_refresh_tokens(session, user_id)

        logger.info(f"User {user_id} logged out ({revoked} refresh tokens revoked)")
        await self.audit.log(
            AuditAction.USER_LOGOUT,
            user_id=user_id,
            resource_type="user",
            resource_id=user_id,
            details={"revoked_tokens": revoked},
        )
        return revoked

    # ===========================
    # EMAIL / PASSWORD
    # ===========================

    async def register(self, email: str, password: str) -> AuthResult:
        """
        Register an email/password user

        Seals a fresh master seed under the password and returns tokens plus
        a session credential.

        Raises:
            ValidationError: Bad email, weak password, email already registered
        """
        try:
            request = RegisterRequest(email=email, password=password)
        except PydanticValidationError as e:
            raise ValidationError(_first_error(e)) from e

        async with self.session_maker() as session:
            if await get_user_by_email(session, request.email):
                raise ValidationError("Email already registered")

        user = await self._create_account(request.email, request.password)

        await self.audit.log(
            AuditAction.USER_REGISTERED,
            user_id=user.id,
            resource_type="user",
            resource_id=user.id,
            details={"method": "password"},
        )
        logger.info(f"User registered: {user.id}")

        return AuthResult(
            user=UserPublic.model_validate(user),
            tokens=await self._issue_tokens(user),
            session_credential=self.credentials.issue(request.password, user.id),
        )

    async def _create_account(
        self,
        email: str,
        password: str,
        password_is_generated: bool = False,
        oauth_provider: Optional[str] = None,
        oauth_id: Optional[str] = None,
    ) -> User:
        password_hash = await asyncio.to_thread(hash_password, password)
        sealed = await self.seed_registry.create_sealed_seed(password)

        async with self.session_maker() as session:
            return await create_user(
                session,
                email=email,
                password_hash=password_hash,
                master_seed_encrypted=sealed.master_seed_encrypted,
                encryption_salt=sealed.encryption_salt,
                password_is_generated=password_is_generated,
                oauth_provider=oauth_provider,
                oauth_id=oauth_id,
            )

    async def login(self, email: str, password: str) -> AuthResult:
        """
        Email/password login

        A session credential is issued only to users who chose their own
        password.

        Raises:
            AuthenticationError: Unknown/inactive user or wrong password
        """
        async with self.session_maker() as session:
            user = await get_user_by_email(session, email or "")
            if user is None or not user.is_active:
                raise AuthenticationError(INVALID_LOGIN)

            if not await asyncio.to_thread(verify_password, password, user.password_hash):
                logger.warning(f"Failed login for user {user.id}")
                raise AuthenticationError(INVALID_LOGIN)

            await touch_last_login(session, user)

        credential = None
        if not user.password_is_generated:
            credential = self.credentials.issue(password, user.id)

        await self.audit.log(
            AuditAction.USER_LOGIN,
            user_id=user.id,
            resource_type="user",
            resource_id=user.id,
            details={"method": "password"},
        )

        return AuthResult(
            user=UserPublic.model_validate(user),
            tokens=await self._issue_tokens(user),
            session_credential=credential,
        )

    # ===========================
    # EXTERNAL IDENTITY
    # ===========================

    async def register_external(self, email: str, provider: str, external_id: str) -> AuthResult:
        """
        Create an account for an externally identified user

        The password is generated here and returned exactly once, together
        with a session credential valid for this moment only. Later logins
        through the provider never get a credential.

        Raises:
            ValidationError: Identity or email already registered
        """
        try:
            identity = ExternalIdentity(email=email, provider=provider, external_id=external_id)
        except PydanticValidationError as e:
            raise ValidationError(_first_error(e)) from e

        normalized_email = str(identity.email).strip().lower()
        async with self.session_maker() as session:
            if await get_user_by_oauth(session, identity.provider, identity.external_id):
                raise ValidationError("External identity already registered")
            if await get_user_by_email(session, normalized_email):
                raise ValidationError("Email already registered")

        password = generate_password()
        user = await self._create_account(
            normalized_email,
            password,
            password_is_generated=True,
            oauth_provider=identity.provider,
            oauth_id=identity.external_id,
        )

        await self.audit.log(
            AuditAction.USER_REGISTERED,
            user_id=user.id,
            resource_type="user",
            resource_id=user.id,
            details={"method": "oauth", "provider": identity.provider},
        )
        logger.info(f"User registered via {identity.provider}: {user.id}")

        return AuthResult(
            user=UserPublic.model_validate(user),
            tokens=await self._issue_tokens(user),
            session_credential=self.credentials.issue(password, user.id),
            generated_password=password,
        )

    async def login_external(self, provider: str, external_id: str) -> AuthResult:
        """
        Login of an externally identified user (token pair only)

        Raises:
            AuthenticationError: Unknown identity or inactive user
        """
        async with self.session_maker() as session:
            user = await get_user_by_oauth(session, provider, external_id)
            if user is None or not user.is_active:
                raise AuthenticationError("Authentication failed")
            await touch_last_login(session, user)

        await self.audit.log(
            AuditAction.USER_LOGIN,
            user_id=user.id,
            resource_type="user",
            resource_id=user.id,
            details={"method": "oauth", "provider": provider},
        )

        return AuthResult(
            user=UserPublic.model_validate(user),
            tokens=await self._issue_tokens(user),
        )

    # ===========================
    # SESSION CREDENTIALS
    # ===========================

    async def issue_session_credential(self, user_id: int, password: str) -> str:
        """
        Issue a session credential after re-verifying the password

        Raises:
            NotFoundError: Unknown user
            AuthenticationError: Wrong password
        """
        async with self.session_maker() as session:
            user = await get_user_by_id(session, user_id)
        if user is None:
            raise NotFoundError("User not found")

        if not await asyncio.to_thread(verify_password, password, user.password_hash):
            raise AuthenticationError("Invalid password")

        return self.credentials.issue(password, user_id)

    def recover_session_credential(self, user_id: int, token: str) -> str:
        return self.credentials.recover(token, user_id)
