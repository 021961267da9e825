"""
Pytest configuration and fixtures for Ghost Trade Engine tests
"""

from decimal import Decimal
from typing import AsyncGenerator, Dict, List, Optional

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from src.database.models import Base
from src.services.audit_service import AuditLogger
from src.services.auth_service import AuthService
from src.services.encryption_service import EncryptionService
from src.services.master_seed_service import MasterSeedRegistry
from src.services.session_credential_service import SessionCredentialService
from src.services.swap_service import SwapResult
from src.services.trade_service import TradeService
from src.services.wallet_service import WalletService
from config.config import SOL_MINT
from src.core.exceptions import ExchangeError, PriceFeedError


# Test database URL (in-memory SQLite for testing)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TEST_PASSWORD = "GhostPass123"


@pytest.fixture(scope="function")
async def test_db_engine():
    """
    Create test database engine
    """
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
def session_maker(test_db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture(scope="function")
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """
    Create test database session
    """
    async with session_maker() as session:
        yield session
        await session.rollback()


# ===========================
# FAKE COLLABORATORS
# ===========================


class FakeSolana:
    """In-memory chain: SOL/token balances and signature statuses"""

    def __init__(self):
        self.balances: Dict[str, int] = {}
        self.token_balances: Dict[tuple, int] = {}
        self.statuses: Dict[str, Optional[str]] = {}
        self.token_balance_error: Optional[Exception] = None
        self.closed = False

    async def get_balance(self, public_key: str) -> int:
        return self.balances.get(public_key, 0)

    async def get_token_balance(self, owner: str, mint: str) -> int:
        if self.token_balance_error:
            raise self.token_balance_error
        return self.token_balances.get((owner, mint), 0)

    async def get_signature_status(self, signature: str) -> Optional[str]:
        return self.statuses.get(signature)

    async def close(self) -> None:
        self.closed = True


class FakeSwapExecutor:
    """
    Records every swap; `script` is consumed in order (SwapResult or
    Exception), afterwards swaps succeed with `default_out_amount`

    With a `chain`, confirmed swaps move token balances and a sell larger
    than the wallet holds fails like it would on-chain.
    """

    def __init__(self, default_out_amount: int = 1_000_000, chain: Optional[FakeSolana] = None):
        self.calls: List[dict] = []
        self.script: List[object] = []
        self.default_out_amount = default_out_amount
        self.chain = chain

    async def execute_swap(self, keypair, input_mint, output_mint, amount, slippage_bps):
        owner = str(keypair.pubkey())
        self.calls.append(
            {
                "public_key": owner,
                "input_mint": input_mint,
                "output_mint": output_mint,
                "amount": amount,
                "slippage_bps": slippage_bps,
            }
        )
        if self.script:
            step = self.script.pop(0)
            if isinstance(step, Exception):
                raise step
            result = step
        else:
            result = SwapResult(
                signature=f"sig{len(self.calls)}",
                in_amount=amount,
                out_amount=self.default_out_amount,
            )

        if self.chain is not None:
            balances = self.chain.token_balances
            if input_mint != SOL_MINT:
                held = balances.get((owner, input_mint), 0)
                if amount > held:
                    raise ExchangeError(f"insufficient funds: selling {amount}, holding {held}")
                balances[(owner, input_mint)] = held - amount
            if output_mint != SOL_MINT:
                balances[(owner, output_mint)] = balances.get((owner, output_mint), 0) + result.out_amount
        return result


class FakePriceFeed:
    """Prices per token; a list is consumed one value per lookup"""

    def __init__(self):
        self.prices: Dict[str, object] = {}
        self.errors: Dict[str, Exception] = {}
        self.closed = False

    async def get_token_price_usd(self, token_address: str) -> Decimal:
        if token_address in self.errors:
            raise self.errors[token_address]
        value = self.prices.get(token_address)
        if isinstance(value, list):
            value = value.pop(0) if len(value) > 1 else value[0]
        if value is None:
            raise PriceFeedError(f"No price for {token_address}")
        return Decimal(str(value))

    async def close(self) -> None:
        self.closed = True


# ===========================
# SERVICES
# ===========================


@pytest.fixture
def encryption() -> EncryptionService:
    # Low iteration count keeps the service-level tests fast
    return EncryptionService(iterations=1_000)


@pytest.fixture
def credentials() -> SessionCredentialService:
    return SessionCredentialService("test-session-secret")


@pytest.fixture
def audit(session_maker) -> AuditLogger:
    return AuditLogger(session_maker)


@pytest.fixture
def seed_registry(session_maker, encryption, audit) -> MasterSeedRegistry:
    return MasterSeedRegistry(session_maker, encryption=encryption, audit=audit)


@pytest.fixture
def wallet_service(session_maker, seed_registry, audit) -> WalletService:
    return WalletService(session_maker, seed_registry=seed_registry, audit=audit)


@pytest.fixture
def auth_service(session_maker, seed_registry, credentials, audit) -> AuthService:
    return AuthService(
        session_maker,
        seed_registry=seed_registry,
        credentials=credentials,
        audit=audit,
        jwt_secret="test-jwt-secret",
        refresh_secret="test-refresh-secret",
    )


@pytest.fixture
def fake_solana() -> FakeSolana:
    return FakeSolana()


@pytest.fixture
def fake_swap(fake_solana) -> FakeSwapExecutor:
    return FakeSwapExecutor(chain=fake_solana)


@pytest.fixture
def fake_prices() -> FakePriceFeed:
    return FakePriceFeed()


@pytest.fixture
def trade_service(
    session_maker, wallet_service, fake_swap, fake_solana, fake_prices, credentials, audit
) -> TradeService:
    return TradeService(
        session_maker=session_maker,
        wallet_service=wallet_service,
        swap_executor=fake_swap,
        solana=fake_solana,
        price_feed=fake_prices,
        credentials=credentials,
        audit=audit,
    )


@pytest.fixture
async def registered_user(auth_service):
    """Email/password user: (user_id, password, session_credential)"""
    result = await auth_service.register("trader@example.com", TEST_PASSWORD)
    return result.user.id, TEST_PASSWORD, result.session_credential


@pytest.fixture
async def funded_wallet(registered_user, wallet_service, fake_solana):
    """Active ghost wallet holding 10 SOL"""
    user_id, password, _ = registered_user
    wallet = await wallet_service.create_wallet(user_id, password)
    fake_solana.balances[wallet.public_key] = 10_000_000_000
    return wallet
