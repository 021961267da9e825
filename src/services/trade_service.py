"""
Trade lifecycle

Entry (SOL -> token), exit evaluation (stop loss, take profit, trailing stop,
timeout) and exit execution (token -> SOL) with failure isolation.

State machine:
- pending -> open / failed: entry broadcast whose confirmation timed out,
  resolved from its on-chain status by the monitor
- open -> closed: exit swap confirmed
- open -> open: exit attempt failed, retried by the next monitor cycle
- failed: entry never happened (audit only)

Exits run in three steps so no row lock is held across the exchange:
claim the trade (closing_started_at), swap, record the outcome.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Iterable, List, Optional, Set, Tuple

from loguru import logger
from solders.keypair import Keypair
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.config import (
    LAMPORTS_PER_SOL,
    PRICE_FEED_TIMEOUT_SEC,
    SOL_MINT,
    TradingDefaults,
)
from src.core.enums import AuditAction, ExitReason, TradeStatus, WalletStatus
from src.core.exceptions import (
    AuthenticationError,
    ConfirmationTimeoutError,
    ExchangeError,
    ExternalServiceError,
    NotFoundError,
    PriceFeedError,
    TradeCloseError,
    TradeNotOpenError,
    ValidationError,
)
from src.database import crud
from src.database.models import GhostWallet, Trade
from src.services.audit_service import AuditLogger
from src.services.dexscreener_service import DexScreenerService
from src.services.schemas import CreateTradeRequest
from src.services.session_credential_service import SessionCredentialService
from src.services.solana_service import STATUS_CONFIRMED, STATUS_FAILED, SolanaService
from src.services.swap_service import SwapExecutor, SwapResult
from src.services.wallet_service import WalletService
from src.utils.time_utils import as_utc, utcnow


HUNDRED = Decimal("100")
LAMPORT = Decimal("0.000000001")


def to_decimal(value) -> Optional[Decimal]:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def lamports_to_sol(lamports: int) -> Decimal:
    return Decimal(lamports) / Decimal(LAMPORTS_PER_SOL)


def split_proceeds(total: Decimal, weights: List[Decimal]) -> List[Decimal]:
    """
    Split SOL received by one sell across the trades it closed

    Shares follow the weights (entry token amounts), rounded to the
    lamport; the last share takes the remainder so the sum is exact.
    Equal shares when no weight is known.
    """
    if not weights:
        return []
    weight_sum = sum(weights, Decimal("0"))
    if weight_sum <= 0:
        weights = [Decimal("1")] * len(weights)
        weight_sum = Decimal(len(weights))

    shares = [(total * w / weight_sum).quantize(LAMPORT) for w in weights[:-1]]
    shares.append(total - sum(shares, Decimal("0")))
    return shares


@dataclass
class ExitDecision:
    """Outcome of one exit evaluation"""

    should_exit: bool
    reason: Optional[ExitReason]
    current_price: Decimal
    pl_pct: Decimal
    high_water_mark: Optional[Decimal]
    threshold: Optional[Decimal] = None


class TradeService:
    """Trade entry, evaluation and exit"""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        wallet_service: WalletService,
        swap_executor: SwapExecutor,
        solana: SolanaService,
        price_feed: DexScreenerService,
        credentials: Optional[SessionCredentialService] = None,
        audit: Optional[AuditLogger] = None,
        clock: Callable[[], datetime] = utcnow,
        price_timeout: float = PRICE_FEED_TIMEOUT_SEC,
        exit_slippage_ladder: tuple = TradingDefaults.EXIT_SLIPPAGE_LADDER_BPS,
        fee_buffer_lamports: int = TradingDefaults.FEE_BUFFER_LAMPORTS,
        close_claim_ttl_sec: int = TradingDefaults.CLOSE_CLAIM_TTL_SEC,
    ):
        self.session_maker = session_maker
        self.wallet_service = wallet_service
        self.swap_executor = swap_executor
        self.solana = solana
        self.price_feed = price_feed
        self.credentials = credentials or SessionCredentialService()
        self.audit = audit or AuditLogger(session_maker)
        self.clock = clock
        self.price_timeout = price_timeout
        self.exit_slippage_ladder = tuple(exit_slippage_ladder)
        self.fee_buffer_lamports = fee_buffer_lamports
        self.close_claim_ttl = timedelta(seconds=close_claim_ttl_sec)

        # Trades with a close in progress in this process
        self._closing: Set[int] = set()

    # ===========================
    # HELPERS
    # ===========================

    async def _wallet_keypair(self, wallet: GhostWallet, credential: str) -> Keypair:
        """session credential -> password -> master seed -> keypair"""
        password = self.credentials.recover(credential, wallet.user_id)
        keypair = await self.wallet_service.derive_user_keypair(
            wallet.user_id, wallet.wallet_index, password
        )
        if str(keypair.pubkey()) != wallet.public_key:
            raise AuthenticationError("Derived key does not match ghost wallet")
        return keypair

    async def get_current_price(self, token_address: str) -> Decimal:
        """
        Price feed lookup bounded by the price timeout

        Raises:
            PriceFeedError: No price or timeout
        """
        try:
            return await asyncio.wait_for(
                self.price_feed.get_token_price_usd(token_address), timeout=self.price_timeout
            )
        except asyncio.TimeoutError as e:
            raise PriceFeedError(f"Price lookup timed out for {token_address}") from e

    async def _signature_status(self, signature: str) -> Optional[str]:
        return await asyncio.wait_for(
            self.solana.get_signature_status(signature), timeout=self.price_timeout
        )

    def close_in_progress(self, trade: Trade, now: Optional[datetime] = None) -> bool:
        """True while a worker holds an unexpired close claim on the trade"""
        if trade.closing_started_at is None:
            return False
        now = now or self.clock()
        return now - as_utc(trade.closing_started_at) < self.close_claim_ttl

    # ===========================
    # ENTRY
    # ===========================

    def _new_trade(
        self,
        user_id: int,
        wallet: GhostWallet,
        request: CreateTradeRequest,
        status: TradeStatus,
        signature: str,
        out_amount: Optional[int],
        entry_price: Optional[Decimal],
        now: datetime,
    ) -> Trade:
        exit_params = request.exit_params
        return Trade(
            user_id=user_id,
            ghost_wallet_id=wallet.id,
            token_address=request.token_address,
            entry_tx_hash=signature,
            entry_timestamp=now,
            entry_price_usd=entry_price,
            entry_amount_sol=request.amount_sol,
            entry_amount_tokens=Decimal(out_amount) if out_amount is not None else None,
            entry_slippage_bps=request.slippage_bps,
            take_profit_pct=exit_params.take_profit_pct,
            stop_loss_pct=exit_params.stop_loss_pct,
            trailing_stop_pct=exit_params.trailing_stop_pct,
            max_hold_time_minutes=exit_params.max_hold_time_minutes,
            highest_price_usd=entry_price,
            status=status.value,
            session_credential=request.session_credential,
        )

    async def _entry_price(self, token_address: str) -> Optional[Decimal]:
        try:
            return await self.get_current_price(token_address)
        except PriceFeedError as e:
            # Trade stays open but is never auto-exited on price (no reference)
            logger.warning(f"Entry price unavailable for {token_address}: {e}")
            return None

    async def create_trade(self, user_id: int, request: CreateTradeRequest) -> Trade:
        """
        Buy a token from a ghost wallet and open a monitored trade

        An entry whose confirmation timed out is returned with status
        `pending`; the monitor opens or fails it once the chain knows.

        Raises:
            NotFoundError: Wallet not found for this user
            ValidationError: Wallet not active, insufficient funds
            AuthenticationError: Invalid session credential
            ExchangeError: Entry swap failed (a failed trade row is recorded)
        """
        wallet = await self.wallet_service.get_wallet(request.ghost_wallet_id, user_id)
        if wallet.status != WalletStatus.ACTIVE.value:
            raise ValidationError(f"Ghost wallet is {wallet.status}, not active")

        keypair = await self._wallet_keypair(wallet, request.session_credential)

        amount_lamports = int(request.amount_sol * LAMPORTS_PER_SOL)
        required = amount_lamports + self.fee_buffer_lamports
        balance = await self.solana.get_balance(wallet.public_key)
        if balance < required:
            raise ValidationError(
                f"Insufficient funds: wallet has {lamports_to_sol(balance)} SOL "
                f"but needs {lamports_to_sol(required)} SOL (trade + fees)"
            )

        try:
            swap = await self.swap_executor.execute_swap(
                keypair, SOL_MINT, request.token_address, amount_lamports, request.slippage_bps
            )
        except ConfirmationTimeoutError as e:
            return await self._record_pending_entry(user_id, wallet, request, e)
        except ExternalServiceError as e:
            await self._record_failed_entry(user_id, wallet, request, e)
            raise

        entry_price = await self._entry_price(request.token_address)

        now = self.clock()
        async with self.session_maker() as session:
            trade = self._new_trade(
                user_id, wallet, request, TradeStatus.OPEN, swap.signature, swap.out_amount, entry_price, now
            )
            session.add(trade)

            db_wallet = await crud.get_ghost_wallet(session, wallet.id)
            db_wallet.total_trades += 1
            db_wallet.last_trade_at = now

            await session.commit()
            await session.refresh(trade)

        logger.info(
            f"Trade {trade.id} opened: {request.amount_sol} SOL -> {request.token_address[:8]}... "
            f"@ ${entry_price} ({swap.signature})"
        )
        await self.audit.log(
            AuditAction.TRADE_CREATED,
            user_id=user_id,
            resource_type="trade",
            resource_id=trade.id,
            details={
                "token_address": request.token_address,
                "entry_amount_sol": str(request.amount_sol),
                "signature": swap.signature,
            },
        )
        return trade

    async def _record_pending_entry(
        self,
        user_id: int,
        wallet: GhostWallet,
        request: CreateTradeRequest,
        error: ConfirmationTimeoutError,
    ) -> Trade:
        async with self.session_maker() as session:
            trade = self._new_trade(
                user_id,
                wallet,
                request,
                TradeStatus.PENDING,
                error.signature,
                error.out_amount,
                None,
                self.clock(),
            )
            session.add(trade)
            await session.commit()
            await session.refresh(trade)

        logger.warning(
            f"Trade {trade.id} entry broadcast unconfirmed, will reconcile: {error.signature}"
        )
        return trade

    async def _record_failed_entry(
        self, user_id: int, wallet: GhostWallet, request: CreateTradeRequest, error: Exception
    ) -> None:
        async with self.session_maker() as session:
            trade = Trade(
                user_id=user_id,
                ghost_wallet_id=wallet.id,
                token_address=request.token_address,
                entry_amount_sol=request.amount_sol,
                entry_slippage_bps=request.slippage_bps,
                status=TradeStatus.FAILED.value,
            )
            session.add(trade)
            await session.commit()
            trade_id = trade.id

        logger.error(f"Trade entry failed for user {user_id} ({request.token_address}): {error}")
        await self.audit.log(
            AuditAction.TRADE_ENTRY_FAILED,
            user_id=user_id,
            resource_type="trade",
            resource_id=trade_id,
            details={"token_address": request.token_address, "error": str(error)},
        )

    async def reconcile_pending_entry(self, trade_id: int) -> str:
        """
        Resolve an entry broadcast whose confirmation timed out

        Returns:
            "opened" (confirmed, now monitored), "failed" (failed on-chain),
            "pending" (still unknown) or "none"
        """
        async with self.session_maker() as session:
            trade = await crud.get_trade(session, trade_id)
        if trade is None or trade.status != TradeStatus.PENDING.value:
            return "none"

        signature = trade.entry_tx_hash
        status = await self._signature_status(signature)

        if status == STATUS_FAILED:
            async with self.session_maker() as session:
                trade = await crud.get_trade(session, trade_id, for_update=True)
                if trade is None or trade.status != TradeStatus.PENDING.value:
                    return "none"
                trade.status = TradeStatus.FAILED.value
                trade.session_credential = None
                await session.commit()
                owner_id = trade.user_id

            logger.warning(f"Trade {trade_id} entry {signature} failed on-chain")
            await self.audit.log(
                AuditAction.TRADE_ENTRY_FAILED,
                user_id=owner_id,
                resource_type="trade",
                resource_id=trade_id,
                details={
                    "token_address": trade.token_address,
                    "error": "entry transaction failed on-chain",
                    "signature": signature,
                },
            )
            return "failed"

        if status != STATUS_CONFIRMED:
            logger.info(f"Trade {trade_id} pending entry {signature} still unconfirmed")
            return "pending"

        entry_price = await self._entry_price(trade.token_address)

        now = self.clock()
        async with self.session_maker() as session:
            trade = await crud.get_trade(session, trade_id, for_update=True)
            if trade is None or trade.status != TradeStatus.PENDING.value:
                return "none"
            trade.status = TradeStatus.OPEN.value
            trade.entry_price_usd = entry_price
            trade.highest_price_usd = entry_price

            db_wallet = await crud.get_ghost_wallet(session, trade.ghost_wallet_id)
            db_wallet.total_trades += 1
            db_wallet.last_trade_at = now

            await session.commit()
            owner_id = trade.user_id

        logger.info(f"Trade {trade_id} pending entry {signature} confirmed, trade open @ ${entry_price}")
        await self.audit.log(
            AuditAction.TRADE_CREATED,
            user_id=owner_id,
            resource_type="trade",
            resource_id=trade_id,
            details={
                "token_address": trade.token_address,
                "entry_amount_sol": str(trade.entry_amount_sol),
                "signature": signature,
                "reconciled": True,
            },
        )
        return "opened"

    # ===========================
    # EVALUATION
    # ===========================

    def evaluate(self, trade: Trade, current_price, now: Optional[datetime] = None) -> ExitDecision:
        """
        Decide whether a trade should exit at the current price

        Raises the trade's high-water mark first, then checks in order:
        stop loss, take profit, trailing stop, timeout. First match wins.
        The caller persists trade.highest_price_usd.
        """
        price = to_decimal(current_price)
        entry = to_decimal(trade.entry_price_usd)

        if not entry or entry <= 0:
            return ExitDecision(False, None, price, Decimal("0"), to_decimal(trade.highest_price_usd))

        pl_pct = (price - entry) / entry * HUNDRED

        hwm = to_decimal(trade.highest_price_usd) or entry
        if price > hwm:
            hwm = price
            trade.highest_price_usd = hwm

        def decision(reason: Optional[ExitReason], threshold: Optional[Decimal] = None) -> ExitDecision:
            return ExitDecision(reason is not None, reason, price, pl_pct, hwm, threshold)

        stop_loss = to_decimal(trade.stop_loss_pct)
        if stop_loss is not None and pl_pct <= -stop_loss:
            return decision(ExitReason.STOP_LOSS, -stop_loss)

        take_profit = to_decimal(trade.take_profit_pct)
        if take_profit is not None and pl_pct >= take_profit:
            return decision(ExitReason.TAKE_PROFIT, take_profit)

        trailing = to_decimal(trade.trailing_stop_pct)
        if trailing is not None and hwm > entry:
            trigger = hwm * (1 - trailing / HUNDRED)
            if price <= trigger:
                return decision(ExitReason.TRAILING_STOP, trigger)

        if trade.max_hold_time_minutes and trade.entry_timestamp:
            now = now or self.clock()
            held = now - as_utc(trade.entry_timestamp)
            if held >= timedelta(minutes=trade.max_hold_time_minutes):
                return decision(ExitReason.TIMEOUT, Decimal(trade.max_hold_time_minutes))

        return decision(None)

    async def record_evaluation(self, trade_id: int, high_water_mark: Optional[Decimal]) -> None:
        """Persist the high-water mark and the check timestamp"""
        async with self.session_maker() as session:
            trade = await crud.get_trade(session, trade_id)
            if trade is None or trade.status != TradeStatus.OPEN.value:
                return
            current = to_decimal(trade.highest_price_usd)
            if high_water_mark is not None and (current is None or high_water_mark > current):
                trade.highest_price_usd = high_water_mark
            trade.last_checked_at = self.clock()
            await session.commit()

    # ===========================
    # EXIT
    # ===========================

    async def close_trade(
        self,
        trade_id: int,
        reason: ExitReason | str = ExitReason.MANUAL,
        exit_price: Optional[Decimal] = None,
        session_credential: Optional[str] = None,
        user_id: Optional[int] = None,
        pl_pct: Optional[Decimal] = None,
    ) -> Trade:
        """
        Sell the token position of an open trade back to SOL

        Args:
            trade_id: Trade to close
            reason: Exit reason
            exit_price: Price observed when the exit was decided
            session_credential: Defaults to the credential stored on the trade
            user_id: Restrict to this owner (manual closes)
            pl_pct: P/L at decision time, for the failure audit entry

        Raises:
            NotFoundError: Trade not found
            TradeNotOpenError: Trade already closed / failed (no exchange attempted)
            ValidationError: Close already running, exit pending confirmation,
                no credential
            TradeCloseError: Exit attempt failed; trade is still open
        """
        if trade_id in self._closing:
            raise ValidationError(f"Trade {trade_id} close already in progress")

        self._closing.add(trade_id)
        try:
            return await self._close(
                trade_id, ExitReason(reason), to_decimal(exit_price), session_credential, user_id, pl_pct
            )
        finally:
            self._closing.discard(trade_id)

    async def _sell_with_ladder(self, keypair: Keypair, token_address: str, amount: int) -> SwapResult:
        """Retry only slippage failures, each time with a wider budget"""
        last_error: Optional[ExchangeError] = None
        for slippage_bps in self.exit_slippage_ladder:
            try:
                logger.info(f"Selling {token_address[:8]}... with {slippage_bps / 100}% slippage")
                return await self.swap_executor.execute_swap(
                    keypair, token_address, SOL_MINT, amount, slippage_bps
                )
            except ConfirmationTimeoutError:
                raise
            except ExchangeError as e:
                if not e.is_slippage:
                    raise
                logger.warning(f"Sell failed at {slippage_bps / 100}% slippage: {e}")
                last_error = e

        raise ExchangeError(
            f"Sell failed at every slippage level: {last_error}", is_slippage=True
        )

    async def _exit_amount(self, wallet: GhostWallet, trade: Trade) -> int:
        """
        Token amount to sell for one trade

        The whole on-chain balance when the trade is the only open one on
        this token in the wallet, otherwise its own recorded amount capped
        by the balance. The recorded amount is used only when the balance
        cannot be read.
        """
        recorded = int(trade.entry_amount_tokens or 0)
        try:
            balance = await self.solana.get_token_balance(wallet.public_key, trade.token_address)
        except ExternalServiceError as e:
            logger.warning(f"Token balance lookup failed for trade {trade.id}, using recorded amount: {e}")
            if recorded <= 0:
                raise ExchangeError(f"No token amount known for trade {trade.id}") from e
            return recorded

        if balance <= 0:
            raise ExchangeError(
                f"No {trade.token_address[:8]}... balance left in wallet for trade {trade.id}"
            )

        async with self.session_maker() as session:
            position = await crud.list_position_trades(
                session, trade.user_id, trade.ghost_wallet_id, trade.token_address
            )
        shared = any(t.id != trade.id for t in position)

        if shared and recorded > 0:
            return min(recorded, balance)
        return balance

    def _apply_exit(
        self,
        trade: Trade,
        wallet: GhostWallet,
        reason: ExitReason,
        signature: str,
        exit_amount_sol: Decimal,
        exit_price: Optional[Decimal],
    ) -> None:
        now = self.clock()
        entry_sol = to_decimal(trade.entry_amount_sol)
        pl_sol = exit_amount_sol - entry_sol
        started = as_utc(trade.entry_timestamp or trade.created_at)

        trade.status = TradeStatus.CLOSED.value
        trade.exit_reason = reason.value
        trade.exit_tx_hash = signature
        trade.exit_timestamp = now
        trade.exit_amount_sol = exit_amount_sol
        trade.exit_price_usd = exit_price
        trade.profit_loss_sol = pl_sol
        trade.profit_loss_pct = (pl_sol / entry_sol * HUNDRED) if entry_sol else Decimal("0")
        trade.hold_time_seconds = int((now - started).total_seconds())
        trade.pending_exit_tx_hash = None
        trade.pending_exit_reason = None
        trade.pending_exit_amount_sol = None
        trade.pending_exit_price_usd = None
        trade.closing_started_at = None
        trade.session_credential = None

        wallet.profit_loss_sol = to_decimal(wallet.profit_loss_sol or 0) + pl_sol
        wallet.total_volume_sol = to_decimal(wallet.total_volume_sol or 0) + entry_sol + exit_amount_sol

    def _check_closable(self, trade: Trade, now: datetime) -> None:
        if trade.status != TradeStatus.OPEN.value:
            raise TradeNotOpenError(trade.id, trade.status)
        if trade.pending_exit_tx_hash:
            raise ValidationError(f"Trade {trade.id} exit is pending confirmation")
        if self.close_in_progress(trade, now):
            raise ValidationError(f"Trade {trade.id} close already in progress")

    async def _claim(
        self, trade_id: int, user_id: Optional[int], session_credential: Optional[str]
    ) -> Tuple[Trade, GhostWallet, str]:
        """Lock, validate and mark the trade as closing, then release the lock"""
        now = self.clock()
        async with self.session_maker() as session:
            trade = await crud.get_trade(session, trade_id, user_id=user_id, for_update=True)
            if trade is None:
                raise NotFoundError("Trade not found")
            self._check_closable(trade, now)

            credential = session_credential or trade.session_credential
            if not credential:
                raise ValidationError(f"No session credential available for trade {trade_id}")

            wallet = await crud.get_ghost_wallet(session, trade.ghost_wallet_id)
            trade.closing_started_at = now
            await session.commit()

        return trade, wallet, credential

    async def _release_claims(self, trade_ids: Iterable[int]) -> None:
        async with self.session_maker() as session:
            for trade_id in trade_ids:
                trade = await crud.get_trade(session, trade_id, for_update=True)
                if trade is not None:
                    trade.closing_started_at = None
            await session.commit()

    async def _store_pending_exits(
        self,
        trades: List[Trade],
        reason: ExitReason,
        exit_price: Optional[Decimal],
        error: ConfirmationTimeoutError,
    ) -> None:
        """Remember an unconfirmed exit broadcast on every trade it would close"""
        if error.out_amount is not None:
            weights = [to_decimal(t.entry_amount_tokens) or Decimal("0") for t in trades]
            amounts = split_proceeds(lamports_to_sol(error.out_amount), weights)
        else:
            amounts = [None] * len(trades)

        async with self.session_maker() as session:
            for claimed, amount in zip(trades, amounts):
                trade = await crud.get_trade(session, claimed.id, for_update=True)
                trade.pending_exit_tx_hash = error.signature
                trade.pending_exit_reason = reason.value
                trade.pending_exit_amount_sol = amount
                trade.pending_exit_price_usd = exit_price
                trade.closing_started_at = None
            await session.commit()

        logger.warning(
            f"Exit broadcast unconfirmed for trade(s) {[t.id for t in trades]}, "
            f"will reconcile: {error.signature}"
        )

    async def _close(
        self,
        trade_id: int,
        reason: ExitReason,
        exit_price: Optional[Decimal],
        session_credential: Optional[str],
        user_id: Optional[int],
        pl_pct: Optional[Decimal],
    ) -> Trade:
        claimed, wallet, credential = await self._claim(trade_id, user_id, session_credential)

        owner_id = claimed.user_id
        if pl_pct is None and exit_price is not None and claimed.entry_price_usd:
            entry = to_decimal(claimed.entry_price_usd)
            pl_pct = (exit_price - entry) / entry * HUNDRED

        try:
            keypair = await self._wallet_keypair(wallet, credential)
            amount = await self._exit_amount(wallet, claimed)
            swap = await self._sell_with_ladder(keypair, claimed.token_address, amount)
        except ConfirmationTimeoutError as e:
            await self._store_pending_exits([claimed], reason, exit_price, e)
            await self._record_close_failure(trade_id, owner_id, reason, exit_price, pl_pct, e)
            raise TradeCloseError(trade_id, reason.value, e) from e
        except Exception as e:
            await self._release_claims([trade_id])
            await self._record_close_failure(trade_id, owner_id, reason, exit_price, pl_pct, e)
            raise TradeCloseError(trade_id, reason.value, e) from e

        async with self.session_maker() as session:
            trade = await crud.get_trade(session, trade_id, for_update=True)
            db_wallet = await crud.get_ghost_wallet(session, trade.ghost_wallet_id)
            self._apply_exit(
                trade, db_wallet, reason, swap.signature, lamports_to_sol(swap.out_amount), exit_price
            )
            await session.commit()
            await session.refresh(trade)

        logger.info(
            f"Trade {trade_id} closed ({reason.value}): P/L {trade.profit_loss_sol} SOL "
            f"({trade.profit_loss_pct:.2f}%)"
        )
        await self.audit.log(
            AuditAction.TRADE_CLOSED,
            user_id=owner_id,
            resource_type="trade",
            resource_id=trade_id,
            details={
                "exit_reason": reason.value,
                "profit_loss_sol": str(trade.profit_loss_sol),
                "signature": trade.exit_tx_hash,
            },
        )
        return trade

    async def _record_close_failure(
        self,
        trade_id: int,
        user_id: int,
        reason: ExitReason,
        current_price: Optional[Decimal],
        pl_pct: Optional[Decimal],
        error: Exception,
    ) -> None:
        logger.error(f"Trade {trade_id} exit failed ({reason.value}): {error}")
        await self.audit.log(
            AuditAction.AUTO_CLOSE_FAILED,
            user_id=user_id,
            resource_type="trade",
            resource_id=trade_id,
            details={
                "reason": reason.value,
                "current_price": str(current_price) if current_price is not None else None,
                "pl_pct": str(pl_pct) if pl_pct is not None else None,
                "error": str(error),
                "timestamp": self.clock().isoformat(),
            },
        )

    async def close_trade_automatically(self, trade_id: int, decision: ExitDecision) -> Trade:
        """
        Close a trade on behalf of an offline user, using the credential
        stored when the trade was opened

        Raises:
            ValidationError: No stored credential (audited as a failed close)
            TradeCloseError: Exit attempt failed
        """
        async with self.session_maker() as session:
            trade = await crud.get_trade(session, trade_id)
            if trade is None:
                raise NotFoundError("Trade not found")
            credential = trade.session_credential
            owner_id = trade.user_id

        reason = decision.reason or ExitReason.MANUAL
        if not credential:
            error = ValidationError(f"Trade {trade_id} has no stored session credential")
            await self._record_close_failure(
                trade_id, owner_id, reason, decision.current_price, decision.pl_pct, error
            )
            raise error

        return await self.close_trade(
            trade_id,
            reason,
            exit_price=decision.current_price,
            session_credential=credential,
            pl_pct=decision.pl_pct,
        )

    async def reconcile_pending_exit(self, trade_id: int) -> str:
        """
        Resolve an exit broadcast whose confirmation timed out

        Returns:
            "closed" (confirmed, trade finalized), "cleared" (failed on-chain,
            a new exit may be attempted), "pending" (still unknown) or "none"
        """
        async with self.session_maker() as session:
            trade = await crud.get_trade(session, trade_id)
        if trade is None or not trade.pending_exit_tx_hash:
            return "none"
        if trade.status != TradeStatus.OPEN.value:
            return "none"

        signature = trade.pending_exit_tx_hash
        status = await self._signature_status(signature)

        if status is None or status not in (STATUS_CONFIRMED, STATUS_FAILED):
            logger.info(f"Trade {trade_id} pending exit {signature} still unconfirmed")
            return "pending"

        async with self.session_maker() as session:
            trade = await crud.get_trade(session, trade_id, for_update=True)
            # Resolved by someone else meanwhile
            if trade is None or trade.pending_exit_tx_hash != signature:
                return "none"

            if status == STATUS_FAILED:
                trade.pending_exit_tx_hash = None
                trade.pending_exit_reason = None
                trade.pending_exit_amount_sol = None
                trade.pending_exit_price_usd = None
                await session.commit()
                logger.warning(f"Trade {trade_id} pending exit {signature} failed on-chain, cleared")
                return "cleared"

            wallet = await crud.get_ghost_wallet(session, trade.ghost_wallet_id)
            reason = ExitReason(trade.pending_exit_reason or ExitReason.MANUAL.value)
            exit_amount = to_decimal(trade.pending_exit_amount_sol) or Decimal("0")
            self._apply_exit(
                trade, wallet, reason, signature, exit_amount, to_decimal(trade.pending_exit_price_usd)
            )
            await session.commit()
            owner_id = trade.user_id
            pl_sol = trade.profit_loss_sol

        logger.info(f"Trade {trade_id} pending exit {signature} confirmed, trade closed")
        await self.audit.log(
            AuditAction.TRADE_CLOSED,
            user_id=owner_id,
            resource_type="trade",
            resource_id=trade_id,
            details={
                "exit_reason": reason.value,
                "profit_loss_sol": str(pl_sol),
                "signature": signature,
                "reconciled": True,
            },
        )
        return "closed"

    # ===========================
    # MANUAL CLOSE BY TOKEN
    # ===========================

    async def _claim_position(
        self, user_id: int, ghost_wallet_id: int, token_address: str
    ) -> List[Trade]:
        """Claim every open trade of a token in one wallet (all or none)"""
        now = self.clock()
        async with self.session_maker() as session:
            trades = await crud.list_position_trades(
                session, user_id, ghost_wallet_id, token_address, for_update=True
            )
            for trade in trades:
                if trade.id in self._closing:
                    raise ValidationError(f"Trade {trade.id} close already in progress")
                self._check_closable(trade, now)
            for trade in trades:
                trade.closing_started_at = now
            await session.commit()
        return trades

    async def close_trades_by_token(
        self, user_id: int, ghost_wallet_id: int, token_address: str, session_credential: str
    ) -> dict:
        """
        Manually sell a wallet's whole balance of one token in a single swap

        Every open trade of that token in the wallet is closed against the
        same sell; the SOL received is split in proportion to their entry
        token amounts. Tokens with no open trade (transferred in, or a
        record lost) are sold too and recorded as a balance reconciliation.

        Returns:
            Dict with closed count, SOL received, tokens sold, signature,
            trades and whether a reconciliation record was written

        Raises:
            NotFoundError: Wallet not found for this user
            ValidationError: No token balance, a close already in progress
            ExchangeError: Sell failed (claimed trades stay open)
        """
        wallet = await self.wallet_service.get_wallet(ghost_wallet_id, user_id)
        keypair = await self._wallet_keypair(wallet, session_credential)

        claimed = await self._claim_position(user_id, ghost_wallet_id, token_address)
        claimed_ids = [t.id for t in claimed]
        self._closing.update(claimed_ids)
        try:
            try:
                balance = await self.solana.get_token_balance(wallet.public_key, token_address)
                if balance <= 0:
                    raise ValidationError(
                        "No tokens found in wallet. Balance may have been sold or transferred out."
                    )
                logger.info(f"On-chain balance of {token_address[:8]}...: {balance} (base units)")
                swap = await self._sell_with_ladder(keypair, token_address, balance)
            except ConfirmationTimeoutError as e:
                if claimed:
                    await self._store_pending_exits(claimed, ExitReason.MANUAL, None, e)
                raise
            except Exception:
                await self._release_claims(claimed_ids)
                raise
        finally:
            self._closing.difference_update(claimed_ids)

        exit_sol = lamports_to_sol(swap.out_amount)

        if not claimed:
            trade = await self._record_reconciliation(
                user_id, ghost_wallet_id, token_address, swap.signature, exit_sol, balance
            )
            return {
                "closed_count": 0,
                "total_sol_received": exit_sol,
                "tokens_sold": balance,
                "signature": swap.signature,
                "trades": [trade],
                "reconciliation": True,
            }

        recorded = sum((to_decimal(t.entry_amount_tokens) or Decimal("0") for t in claimed), Decimal("0"))
        shares = split_proceeds(exit_sol, [to_decimal(t.entry_amount_tokens) or Decimal("0") for t in claimed])

        closed: List[Trade] = []
        async with self.session_maker() as session:
            db_wallet = await crud.get_ghost_wallet(session, ghost_wallet_id)
            for claimed_trade, share in zip(claimed, shares):
                trade = await crud.get_trade(session, claimed_trade.id, for_update=True)
                self._apply_exit(trade, db_wallet, ExitReason.MANUAL, swap.signature, share, None)
                closed.append(trade)
            await session.commit()

        if recorded != Decimal(balance):
            logger.warning(
                f"Balance mismatch for {token_address[:8]}... in wallet {ghost_wallet_id}: "
                f"records {recorded}, on-chain {balance}"
            )
            await self.audit.log(
                AuditAction.BALANCE_MISMATCH_DETECTED,
                user_id=user_id,
                resource_type="trade",
                details={
                    "token_address": token_address,
                    "ghost_wallet_id": ghost_wallet_id,
                    "recorded_tokens": str(recorded),
                    "actual_tokens": str(balance),
                    "difference": str(abs(recorded - Decimal(balance))),
                },
            )

        for trade in closed:
            await self.audit.log(
                AuditAction.TRADE_CLOSED,
                user_id=user_id,
                resource_type="trade",
                resource_id=trade.id,
                details={
                    "exit_reason": ExitReason.MANUAL.value,
                    "profit_loss_sol": str(trade.profit_loss_sol),
                    "signature": swap.signature,
                },
            )
        await self.audit.log(
            AuditAction.TRADES_CLOSED_BY_TOKEN,
            user_id=user_id,
            resource_type="trade",
            details={
                "token_address": token_address,
                "ghost_wallet_id": ghost_wallet_id,
                "trades_closed": len(closed),
                "exit_amount_sol": str(exit_sol),
                "signature": swap.signature,
            },
        )

        logger.info(f"Closed {len(closed)} trade(s) of {token_address[:8]}... for {exit_sol} SOL")
        return {
            "closed_count": len(closed),
            "total_sol_received": exit_sol,
            "tokens_sold": balance,
            "signature": swap.signature,
            "trades": closed,
            "reconciliation": False,
        }

    async def _record_reconciliation(
        self,
        user_id: int,
        ghost_wallet_id: int,
        token_address: str,
        signature: str,
        exit_amount_sol: Decimal,
        tokens_sold: int,
    ) -> Trade:
        """Closed trade row for tokens sold without a matching open trade"""
        now = self.clock()
        async with self.session_maker() as session:
            trade = Trade(
                user_id=user_id,
                ghost_wallet_id=ghost_wallet_id,
                token_address=token_address,
                entry_amount_sol=Decimal("0"),
                entry_amount_tokens=Decimal(tokens_sold),
                exit_tx_hash=signature,
                exit_timestamp=now,
                exit_amount_sol=exit_amount_sol,
                exit_reason=ExitReason.RECONCILIATION.value,
                status=TradeStatus.CLOSED.value,
            )
            session.add(trade)

            db_wallet = await crud.get_ghost_wallet(session, ghost_wallet_id)
            db_wallet.total_volume_sol = to_decimal(db_wallet.total_volume_sol or 0) + exit_amount_sol

            await session.commit()
            await session.refresh(trade)

        logger.info(f"Sold {tokens_sold} {token_address[:8]}... with no open trade, reconciliation trade {trade.id}")
        await self.audit.log(
            AuditAction.BALANCE_RECONCILIATION,
            user_id=user_id,
            resource_type="trade",
            resource_id=trade.id,
            details={
                "token_address": token_address,
                "ghost_wallet_id": ghost_wallet_id,
                "exit_amount_sol": str(exit_amount_sol),
                "exit_amount_tokens": str(tokens_sold),
                "signature": signature,
                "reason": "Sold tokens without corresponding buy record",
            },
        )
        return trade

    # ===========================
    # QUERIES
    # ===========================

    async def get_trade(self, trade_id: int, user_id: int) -> Trade:
        async with self.session_maker() as session:
            trade = await crud.get_trade(session, trade_id, user_id=user_id)
        if trade is None:
            raise NotFoundError("Trade not found")
        return trade

    async def list_user_trades(
        self, user_id: int, status: Optional[str] = None, limit: int = 50, offset: int = 0
    ) -> List[Trade]:
        async with self.session_maker() as session:
            return await crud.list_user_trades(session, user_id, status=status, limit=limit, offset=offset)

    async def get_trade_stats(self, user_id: int) -> dict:
        async with self.session_maker() as session:
            return await crud.get_trade_stats(session, user_id)
