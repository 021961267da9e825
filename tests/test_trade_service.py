"""
Unit tests for trade entry and exit execution
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from config.config import SOL_MINT
from src.core.enums import AuditAction, ExitReason, TradeStatus
from src.core.exceptions import (
    AuthenticationError,
    ConfirmationTimeoutError,
    ExchangeError,
    TradeCloseError,
    TradeNotOpenError,
    ValidationError,
)
from src.database.crud import get_audit_logs, get_ghost_wallet, get_trade
from src.services.schemas import CreateTradeRequest, ExitParams
from src.services.swap_service import SwapResult
from src.utils.time_utils import utcnow


TOKEN = "DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263"


def trade_request(wallet_id, credential, amount="1", **exit_overrides):
    params = {"take_profit_pct": "50", "stop_loss_pct": "10", "trailing_stop_pct": "5"}
    params.update(exit_overrides)
    return CreateTradeRequest(
        ghost_wallet_id=wallet_id,
        token_address=TOKEN,
        amount_sol=Decimal(amount),
        exit_params=ExitParams(**params),
        session_credential=credential,
    )


@pytest.fixture
async def open_trade(registered_user, funded_wallet, trade_service, fake_prices):
    user_id, _, credential = registered_user
    fake_prices.prices[TOKEN] = "100"
    return await trade_service.create_trade(user_id, trade_request(funded_wallet.id, credential))


# ===========================
# ENTRY
# ===========================


@pytest.mark.asyncio
async def test_create_trade(open_trade, funded_wallet, fake_swap, db_session):
    assert open_trade.status == TradeStatus.OPEN.value
    assert open_trade.entry_price_usd == Decimal("100")
    assert open_trade.highest_price_usd == Decimal("100")
    assert open_trade.entry_amount_tokens == Decimal(1_000_000)
    assert open_trade.entry_tx_hash == "sig1"
    assert open_trade.session_credential

    call = fake_swap.calls[0]
    assert call["input_mint"] == SOL_MINT
    assert call["output_mint"] == TOKEN
    assert call["amount"] == 1_000_000_000
    assert call["slippage_bps"] == 100
    assert call["public_key"] == funded_wallet.public_key

    wallet = await get_ghost_wallet(db_session, funded_wallet.id)
    assert wallet.total_trades == 1

    logs = await get_audit_logs(db_session, action=AuditAction.TRADE_CREATED.value)
    assert len(logs) == 1


@pytest.mark.asyncio
async def test_create_trade_insufficient_funds(
    registered_user, funded_wallet, trade_service, fake_solana, fake_swap
):
    user_id, _, credential = registered_user
    # Exactly the trade amount, nothing left for fees
    fake_solana.balances[funded_wallet.public_key] = 1_000_000_000

    with pytest.raises(ValidationError, match="Insufficient funds"):
        await trade_service.create_trade(user_id, trade_request(funded_wallet.id, credential))

    assert fake_swap.calls == []


@pytest.mark.asyncio
async def test_create_trade_invalid_credential(registered_user, funded_wallet, trade_service):
    user_id, _, _ = registered_user

    with pytest.raises(AuthenticationError):
        await trade_service.create_trade(user_id, trade_request(funded_wallet.id, "garbage"))


@pytest.mark.asyncio
async def test_failed_entry_recorded(registered_user, funded_wallet, trade_service, fake_swap, db_session):
    user_id, _, credential = registered_user
    fake_swap.script.append(ExchangeError("route not found"))

    with pytest.raises(ExchangeError):
        await trade_service.create_trade(user_id, trade_request(funded_wallet.id, credential))

    trades = await trade_service.list_user_trades(user_id)
    assert len(trades) == 1
    assert trades[0].status == TradeStatus.FAILED.value

    logs = await get_audit_logs(db_session, action=AuditAction.TRADE_ENTRY_FAILED.value)
    assert len(logs) == 1


@pytest.mark.asyncio
async def test_entry_without_price_has_no_reference(registered_user, funded_wallet, trade_service):
    user_id, _, credential = registered_user

    trade = await trade_service.create_trade(user_id, trade_request(funded_wallet.id, credential))

    assert trade.status == TradeStatus.OPEN.value
    assert trade.entry_price_usd is None
    assert not trade_service.evaluate(trade, 1).should_exit


# ===========================
# EXIT
# ===========================


@pytest.mark.asyncio
async def test_close_trade(open_trade, trade_service, fake_swap, fake_solana, funded_wallet, db_session):
    fake_solana.token_balances[(funded_wallet.public_key, TOKEN)] = 2_000_000
    fake_swap.script.append(SwapResult(signature="exit-sig", in_amount=2_000_000, out_amount=1_500_000_000))

    closed = await trade_service.close_trade(open_trade.id, ExitReason.TAKE_PROFIT, exit_price=Decimal("150"))

    assert closed.status == TradeStatus.CLOSED.value
    assert closed.exit_reason == ExitReason.TAKE_PROFIT.value
    assert closed.exit_tx_hash == "exit-sig"
    assert closed.exit_amount_sol == Decimal("1.5")
    assert closed.profit_loss_sol == Decimal("0.5")
    assert closed.profit_loss_pct == Decimal("50")
    assert closed.hold_time_seconds >= 0
    assert closed.session_credential is None

    sell = fake_swap.calls[-1]
    assert sell["input_mint"] == TOKEN
    assert sell["output_mint"] == SOL_MINT
    assert sell["amount"] == 2_000_000  # full on-chain balance
    assert sell["slippage_bps"] == 300

    wallet = await get_ghost_wallet(db_session, funded_wallet.id)
    assert wallet.profit_loss_sol == Decimal("0.5")
    assert wallet.total_volume_sol == Decimal("2.5")

    logs = await get_audit_logs(db_session, action=AuditAction.TRADE_CLOSED.value)
    assert len(logs) == 1


@pytest.mark.asyncio
async def test_close_sells_whole_balance_of_single_trade(open_trade, trade_service, fake_swap, fake_solana, funded_wallet):
    # Entry credited 1,000,000; an airdrop of the same token arrived since
    fake_solana.token_balances[(funded_wallet.public_key, TOKEN)] += 250_000

    await trade_service.close_trade(open_trade.id, ExitReason.MANUAL)

    assert fake_swap.calls[-1]["amount"] == 1_250_000
    assert fake_solana.token_balances[(funded_wallet.public_key, TOKEN)] == 0


@pytest.mark.asyncio
async def test_close_uses_recorded_amount_when_balance_unreadable(open_trade, trade_service, fake_swap, fake_solana):
    fake_solana.token_balance_error = ExchangeError("RPC node unavailable")

    closed = await trade_service.close_trade(open_trade.id, ExitReason.MANUAL)

    assert closed.status == TradeStatus.CLOSED.value
    assert fake_swap.calls[-1]["amount"] == 1_000_000


@pytest.mark.asyncio
async def test_close_with_empty_balance_fails_without_selling(
    open_trade, trade_service, fake_swap, fake_solana, funded_wallet, db_session
):
    fake_solana.token_balances[(funded_wallet.public_key, TOKEN)] = 0

    with pytest.raises(TradeCloseError, match="balance"):
        await trade_service.close_trade(open_trade.id, ExitReason.STOP_LOSS)

    assert len(fake_swap.calls) == 1  # entry only
    trade = await get_trade(db_session, open_trade.id)
    assert trade.status == TradeStatus.OPEN.value

    logs = await get_audit_logs(db_session, action=AuditAction.AUTO_CLOSE_FAILED.value)
    assert len(logs) == 1


@pytest.mark.asyncio
async def test_trades_sharing_a_token_each_sell_their_own_amount(
    registered_user, funded_wallet, trade_service, fake_swap, fake_solana, fake_prices
):
    user_id, _, credential = registered_user
    fake_prices.prices[TOKEN] = "100"
    first = await trade_service.create_trade(user_id, trade_request(funded_wallet.id, credential))
    second = await trade_service.create_trade(user_id, trade_request(funded_wallet.id, credential))
    assert fake_solana.token_balances[(funded_wallet.public_key, TOKEN)] == 2_000_000

    await trade_service.close_trade(first.id, ExitReason.TAKE_PROFIT)
    closed = await trade_service.close_trade(second.id, ExitReason.TAKE_PROFIT)

    assert closed.status == TradeStatus.CLOSED.value
    sells = [c["amount"] for c in fake_swap.calls if c["input_mint"] == TOKEN]
    assert sells == [1_000_000, 1_000_000]
    assert fake_solana.token_balances[(funded_wallet.public_key, TOKEN)] == 0


@pytest.mark.asyncio
async def test_closing_closed_trade_never_swaps_again(open_trade, trade_service, fake_swap):
    await trade_service.close_trade(open_trade.id, ExitReason.MANUAL)
    swaps = len(fake_swap.calls)

    with pytest.raises(TradeNotOpenError):
        await trade_service.close_trade(open_trade.id, ExitReason.MANUAL)

    assert len(fake_swap.calls) == swaps


@pytest.mark.asyncio
async def test_concurrent_close_rejected(open_trade, trade_service):
    trade_service._closing.add(open_trade.id)

    with pytest.raises(ValidationError, match="already in progress"):
        await trade_service.close_trade(open_trade.id, ExitReason.MANUAL)


@pytest.mark.asyncio
async def test_slippage_ladder(open_trade, trade_service, fake_swap):
    fake_swap.script.extend([
        ExchangeError("custom program error: 0x1788", is_slippage=True),
        ExchangeError("Slippage tolerance exceeded", is_slippage=True),
    ])

    closed = await trade_service.close_trade(open_trade.id, ExitReason.STOP_LOSS)

    assert closed.status == TradeStatus.CLOSED.value
    assert [c["slippage_bps"] for c in fake_swap.calls[1:]] == [300, 500, 1000]


@pytest.mark.asyncio
async def test_non_slippage_error_is_not_escalated(open_trade, trade_service, fake_swap):
    fake_swap.script.append(ExchangeError("RPC node unavailable"))

    with pytest.raises(TradeCloseError):
        await trade_service.close_trade(open_trade.id, ExitReason.STOP_LOSS)

    assert [c["slippage_bps"] for c in fake_swap.calls[1:]] == [300]


@pytest.mark.asyncio
async def test_failed_close_leaves_trade_open_and_audits(open_trade, trade_service, fake_swap, db_session):
    fake_swap.script.extend([ExchangeError("slippage", is_slippage=True)] * 4)

    with pytest.raises(TradeCloseError):
        await trade_service.close_trade(
            open_trade.id, ExitReason.STOP_LOSS, exit_price=Decimal("85"), pl_pct=Decimal("-15")
        )

    trade = await get_trade(db_session, open_trade.id)
    assert trade.status == TradeStatus.OPEN.value
    assert trade.session_credential

    logs = await get_audit_logs(db_session, action=AuditAction.AUTO_CLOSE_FAILED.value)
    assert len(logs) == 1
    details = logs[0].details
    assert details["reason"] == "stop_loss"
    assert details["current_price"] == "85"
    assert details["pl_pct"] == "-15"
    assert "slippage" in details["error"]
    assert details["timestamp"]


@pytest.mark.asyncio
async def test_confirmation_timeout_stores_pending_exit(open_trade, trade_service, fake_swap, db_session):
    fake_swap.script.append(ConfirmationTimeoutError("pending-sig", 60, out_amount=1_200_000_000))

    with pytest.raises(TradeCloseError):
        await trade_service.close_trade(open_trade.id, ExitReason.TAKE_PROFIT, exit_price=Decimal("150"))

    trade = await get_trade(db_session, open_trade.id)
    assert trade.status == TradeStatus.OPEN.value
    assert trade.pending_exit_tx_hash == "pending-sig"
    assert trade.pending_exit_amount_sol == Decimal("1.2")

    # A second exit is refused while the first is unresolved
    with pytest.raises(ValidationError, match="pending confirmation"):
        await trade_service.close_trade(open_trade.id, ExitReason.MANUAL)


@pytest.mark.asyncio
async def test_reconcile_pending_exit(open_trade, trade_service, fake_swap, fake_solana, session_maker):
    fake_swap.script.append(ConfirmationTimeoutError("pending-sig", 60, out_amount=1_200_000_000))
    with pytest.raises(TradeCloseError):
        await trade_service.close_trade(open_trade.id, ExitReason.TAKE_PROFIT)

    assert await trade_service.reconcile_pending_exit(open_trade.id) == "pending"

    fake_solana.statuses["pending-sig"] = "confirmed"
    assert await trade_service.reconcile_pending_exit(open_trade.id) == "closed"

    async with session_maker() as session:
        trade = await get_trade(session, open_trade.id)
    assert trade.status == TradeStatus.CLOSED.value
    assert trade.exit_tx_hash == "pending-sig"
    assert trade.exit_reason == ExitReason.TAKE_PROFIT.value
    assert trade.profit_loss_sol == Decimal("0.2")
    assert trade.pending_exit_tx_hash is None


@pytest.mark.asyncio
async def test_reconcile_failed_exit_clears_pending(open_trade, trade_service, fake_swap, fake_solana, session_maker):
    fake_swap.script.append(ConfirmationTimeoutError("dropped-sig", 60, out_amount=1))
    with pytest.raises(TradeCloseError):
        await trade_service.close_trade(open_trade.id, ExitReason.STOP_LOSS)

    fake_solana.statuses["dropped-sig"] = "failed"
    assert await trade_service.reconcile_pending_exit(open_trade.id) == "cleared"

    async with session_maker() as session:
        trade = await get_trade(session, open_trade.id)
    assert trade.status == TradeStatus.OPEN.value
    assert trade.pending_exit_tx_hash is None

    # The exit can be attempted again
    closed = await trade_service.close_trade(open_trade.id, ExitReason.STOP_LOSS)
    assert closed.status == TradeStatus.CLOSED.value


@pytest.mark.asyncio
async def test_close_automatically_requires_stored_credential(open_trade, trade_service, fake_swap, session_maker):
    async with session_maker() as session:
        trade = await get_trade(session, open_trade.id)
        trade.session_credential = None
        await session.commit()

    decision = trade_service.evaluate(trade, 50)
    with pytest.raises(ValidationError, match="no stored session credential"):
        await trade_service.close_trade_automatically(open_trade.id, decision)

    assert len(fake_swap.calls) == 1  # entry only
    async with session_maker() as session:
        logs = await get_audit_logs(session, action=AuditAction.AUTO_CLOSE_FAILED.value)
    assert len(logs) == 1
    assert logs[0].resource_id == str(open_trade.id)
    assert logs[0].details["reason"] == ExitReason.STOP_LOSS.value
    assert logs[0].details["current_price"] == "50"
    assert "no stored session credential" in logs[0].details["error"]

@pytest.mark.asyncio
async def test_trade_queries_and_stats(open_trade, registered_user, trade_service):
    user_id, _, _ = registered_user
    fake_result = SwapResult(signature="exit", in_amount=1, out_amount=1_100_000_000)
    trade_service.swap_executor.script.append(fake_result)
    await trade_service.close_trade(open_trade.id, ExitReason.TAKE_PROFIT)

    assert (await trade_service.get_trade(open_trade.id, user_id)).status == TradeStatus.CLOSED.value
    assert await trade_service.list_user_trades(user_id, status=TradeStatus.OPEN.value) == []

    stats = await trade_service.get_trade_stats(user_id)
    assert stats["closed_trades"] == 1
    assert stats["winning_trades"] == 1
    assert stats["win_rate"] == 100.0
    assert stats["total_profit_loss_sol"] == Decimal("0.1")




# ===========================
# CLOSE CLAIM
# ===========================


@pytest.mark.asyncio
async def test_claimed_trade_cannot_be_closed_twice(open_trade, trade_service, fake_swap, session_maker):
    # Another worker claimed the trade and is selling right now
    async with session_maker() as session:
        trade = await get_trade(session, open_trade.id)
        trade.closing_started_at = utcnow()
        await session.commit()

    with pytest.raises(ValidationError, match="already in progress"):
        await trade_service.close_trade(open_trade.id, ExitReason.MANUAL)

    assert len(fake_swap.calls) == 1  # entry only


@pytest.mark.asyncio
async def test_expired_claim_is_ignored(open_trade, trade_service, session_maker):
    async with session_maker() as session:
        trade = await get_trade(session, open_trade.id)
        trade.closing_started_at = utcnow() - timedelta(hours=1)
        await session.commit()

    closed = await trade_service.close_trade(open_trade.id, ExitReason.MANUAL)

    assert closed.status == TradeStatus.CLOSED.value
    assert closed.closing_started_at is None


@pytest.mark.asyncio
async def test_claim_is_committed_before_the_exit_swap(open_trade, trade_service, fake_swap, session_maker):
    seen = []
    swap = fake_swap.execute_swap

    async def observing_swap(keypair, input_mint, output_mint, amount, slippage_bps):
        # A fresh session sees the claim: no transaction is left open across the swap
        async with session_maker() as session:
            trade = await get_trade(session, open_trade.id)
            seen.append((trade.status, trade.closing_started_at is not None))
        return await swap(keypair, input_mint, output_mint, amount, slippage_bps)

    fake_swap.execute_swap = observing_swap

    await trade_service.close_trade(open_trade.id, ExitReason.MANUAL)

    assert seen == [(TradeStatus.OPEN.value, True)]


@pytest.mark.asyncio
async def test_failed_close_releases_claim(open_trade, trade_service, fake_swap, session_maker):
    fake_swap.script.append(ExchangeError("RPC node unavailable"))

    with pytest.raises(TradeCloseError):
        await trade_service.close_trade(open_trade.id, ExitReason.STOP_LOSS)

    async with session_maker() as session:
        trade = await get_trade(session, open_trade.id)
    assert trade.closing_started_at is None

    closed = await trade_service.close_trade(open_trade.id, ExitReason.STOP_LOSS)
    assert closed.status == TradeStatus.CLOSED.value


# ===========================
# PENDING ENTRY
# ===========================


@pytest.fixture
async def pending_trade(registered_user, funded_wallet, trade_service, fake_swap):
    user_id, _, credential = registered_user
    fake_swap.script.append(ConfirmationTimeoutError("entry-sig", 60, out_amount=2_500_000))
    return await trade_service.create_trade(
        user_id, trade_request(funded_wallet.id, credential, max_hold_time_minutes=30)
    )


@pytest.mark.asyncio
async def test_unconfirmed_entry_is_kept_pending(pending_trade, session_maker):
    assert pending_trade.status == TradeStatus.PENDING.value
    assert pending_trade.entry_tx_hash == "entry-sig"
    assert pending_trade.entry_amount_tokens == Decimal(2_500_000)
    assert pending_trade.take_profit_pct == Decimal("50")
    assert pending_trade.max_hold_time_minutes == 30
    assert pending_trade.session_credential

    async with session_maker() as session:
        assert await get_audit_logs(session, action=AuditAction.TRADE_ENTRY_FAILED.value) == []


@pytest.mark.asyncio
async def test_confirmed_pending_entry_opens_trade(
    pending_trade, trade_service, fake_solana, fake_prices, funded_wallet, session_maker
):
    fake_prices.prices[TOKEN] = "0.25"
    assert await trade_service.reconcile_pending_entry(pending_trade.id) == "pending"

    fake_solana.statuses["entry-sig"] = "confirmed"
    assert await trade_service.reconcile_pending_entry(pending_trade.id) == "opened"

    async with session_maker() as session:
        trade = await get_trade(session, pending_trade.id)
        wallet = await get_ghost_wallet(session, funded_wallet.id)
        logs = await get_audit_logs(session, action=AuditAction.TRADE_CREATED.value)
    assert trade.status == TradeStatus.OPEN.value
    assert trade.entry_price_usd == Decimal("0.25")
    assert trade.highest_price_usd == Decimal("0.25")
    assert trade.session_credential
    assert wallet.total_trades == 1
    assert logs[0].details["reconciled"] is True

    # Now monitored like any open trade
    assert trade_service.evaluate(trade, "0.2").reason == ExitReason.STOP_LOSS
    assert await trade_service.reconcile_pending_entry(pending_trade.id) == "none"


@pytest.mark.asyncio
async def test_failed_pending_entry_is_marked_failed(pending_trade, trade_service, fake_solana, session_maker):
    fake_solana.statuses["entry-sig"] = "failed"

    assert await trade_service.reconcile_pending_entry(pending_trade.id) == "failed"

    async with session_maker() as session:
        trade = await get_trade(session, pending_trade.id)
        logs = await get_audit_logs(session, action=AuditAction.TRADE_ENTRY_FAILED.value)
    assert trade.status == TradeStatus.FAILED.value
    assert trade.session_credential is None
    assert logs[0].details["signature"] == "entry-sig"


@pytest.mark.asyncio
async def test_pending_entry_cannot_be_closed(pending_trade, trade_service):
    with pytest.raises(TradeNotOpenError):
        await trade_service.close_trade(pending_trade.id, ExitReason.MANUAL)


# ===========================
# CLOSE BY TOKEN
# ===========================


@pytest.fixture
async def two_trades(registered_user, funded_wallet, trade_service, fake_prices):
    user_id, _, credential = registered_user
    fake_prices.prices[TOKEN] = "100"
    first = await trade_service.create_trade(user_id, trade_request(funded_wallet.id, credential))
    second = await trade_service.create_trade(user_id, trade_request(funded_wallet.id, credential, amount="3"))
    return first, second


@pytest.mark.asyncio
async def test_close_trades_by_token_sells_once(
    two_trades, registered_user, funded_wallet, trade_service, fake_swap, fake_solana, session_maker
):
    user_id, _, credential = registered_user
    fake_solana.token_balances[(funded_wallet.public_key, TOKEN)] = 4_000_000
    fake_swap.script.append(SwapResult(signature="batch-sig", in_amount=4_000_000, out_amount=6_000_000_000))
    # Records match the chain: 1,000,000 + 3,000,000
    async with session_maker() as session:
        second = await get_trade(session, two_trades[1].id)
        second.entry_amount_tokens = Decimal(3_000_000)
        await session.commit()

    result = await trade_service.close_trades_by_token(user_id, funded_wallet.id, TOKEN, credential)

    sells = [c for c in fake_swap.calls if c["input_mint"] == TOKEN]
    assert len(sells) == 1
    assert sells[0]["amount"] == 4_000_000
    assert result["closed_count"] == 2
    assert result["total_sol_received"] == Decimal("6")
    assert result["signature"] == "batch-sig"
    assert not result["reconciliation"]

    async with session_maker() as session:
        first = await get_trade(session, two_trades[0].id)
        second = await get_trade(session, two_trades[1].id)
        wallet = await get_ghost_wallet(session, funded_wallet.id)
        mismatches = await get_audit_logs(session, action=AuditAction.BALANCE_MISMATCH_DETECTED.value)
    assert first.status == second.status == TradeStatus.CLOSED.value
    assert first.exit_amount_sol == Decimal("1.5")
    assert second.exit_amount_sol == Decimal("4.5")
    assert first.exit_tx_hash == second.exit_tx_hash == "batch-sig"
    assert wallet.profit_loss_sol == Decimal("2")
    assert mismatches == []


@pytest.mark.asyncio
async def test_close_trades_by_token_audits_balance_mismatch(
    two_trades, registered_user, funded_wallet, trade_service, fake_solana, session_maker
):
    user_id, _, credential = registered_user
    fake_solana.token_balances[(funded_wallet.public_key, TOKEN)] = 1_500_000

    result = await trade_service.close_trades_by_token(user_id, funded_wallet.id, TOKEN, credential)

    assert result["closed_count"] == 2
    assert result["tokens_sold"] == 1_500_000

    async with session_maker() as session:
        logs = await get_audit_logs(session, action=AuditAction.BALANCE_MISMATCH_DETECTED.value)
    assert len(logs) == 1
    assert logs[0].details["recorded_tokens"] == "2000000"
    assert logs[0].details["actual_tokens"] == "1500000"
    assert logs[0].details["difference"] == "500000"


@pytest.mark.asyncio
async def test_close_trades_by_token_rejects_empty_balance(
    two_trades, registered_user, funded_wallet, trade_service, fake_swap, fake_solana, session_maker
):
    user_id, _, credential = registered_user
    fake_solana.token_balances[(funded_wallet.public_key, TOKEN)] = 0

    with pytest.raises(ValidationError, match="No tokens found"):
        await trade_service.close_trades_by_token(user_id, funded_wallet.id, TOKEN, credential)

    assert all(c["input_mint"] != TOKEN for c in fake_swap.calls)
    async with session_maker() as session:
        for claimed in two_trades:
            trade = await get_trade(session, claimed.id)
            assert trade.status == TradeStatus.OPEN.value
            assert trade.closing_started_at is None


@pytest.mark.asyncio
async def test_close_trades_by_token_without_open_trades_reconciles(
    registered_user, funded_wallet, trade_service, fake_solana, session_maker
):
    user_id, _, credential = registered_user
    fake_solana.token_balances[(funded_wallet.public_key, TOKEN)] = 700_000

    result = await trade_service.close_trades_by_token(user_id, funded_wallet.id, TOKEN, credential)

    assert result["closed_count"] == 0
    assert result["reconciliation"]
    record = result["trades"][0]
    assert record.status == TradeStatus.CLOSED.value
    assert record.exit_reason == ExitReason.RECONCILIATION.value
    assert record.entry_amount_tokens == Decimal(700_000)

    async with session_maker() as session:
        logs = await get_audit_logs(session, action=AuditAction.BALANCE_RECONCILIATION.value)
        stats = await trade_service.get_trade_stats(user_id)
    assert len(logs) == 1
    assert logs[0].details["signature"] == result["signature"]
    assert stats["closed_trades"] == 0


@pytest.mark.asyncio
async def test_close_trades_by_token_timeout_leaves_pending_exits(
    two_trades, registered_user, funded_wallet, trade_service, fake_swap, fake_solana, session_maker
):
    user_id, _, credential = registered_user
    fake_swap.script.append(ConfirmationTimeoutError("batch-sig", 60, out_amount=3_000_000_000))

    with pytest.raises(ConfirmationTimeoutError):
        await trade_service.close_trades_by_token(user_id, funded_wallet.id, TOKEN, credential)

    fake_solana.statuses["batch-sig"] = "confirmed"
    for trade in two_trades:
        assert await trade_service.reconcile_pending_exit(trade.id) == "closed"

    async with session_maker() as session:
        first = await get_trade(session, two_trades[0].id)
        second = await get_trade(session, two_trades[1].id)
    assert first.exit_amount_sol == second.exit_amount_sol == Decimal("1.5")
