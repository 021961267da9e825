"""
Ghost Trade Engine - trade monitor worker

Runs the trade monitor until SIGINT/SIGTERM. Configuration comes from the
environment / .env, no command line arguments.

    python worker.py
"""
import asyncio
import signal
import sys

from loguru import logger
import redis.asyncio as redis

from config.config import MonitorConfig, REDIS_URL, validate_config
from config.logging import setup_logging
from config.sentry import init_sentry
from src.database.engine import check_connection, dispose_engine, get_session_maker
from src.services.audit_service import AuditLogger
from src.services.dexscreener_service import DexScreenerService
from src.services.jupiter_service import JupiterService
from src.services.session_credential_service import SessionCredentialService
from src.services.solana_service import SolanaService
from src.services.swap_service import SwapExecutor
from src.services.trade_service import TradeService
from src.services.wallet_service import WalletService
from src.tasks.trade_monitor import TradeMonitorScheduler


def build_trade_monitor() -> TradeMonitorScheduler:
    """Wire the custody chain, external clients and the monitor"""
    session_maker = get_session_maker()
    audit = AuditLogger(session_maker)

    solana = SolanaService()
    jupiter = JupiterService()
    price_feed = DexScreenerService()

    trade_service = TradeService(
        session_maker=session_maker,
        wallet_service=WalletService(session_maker, audit=audit),
        swap_executor=SwapExecutor(jupiter=jupiter, solana=solana),
        solana=solana,
        price_feed=price_feed,
        credentials=SessionCredentialService(),
        audit=audit,
    )

    redis_client = redis.from_url(REDIS_URL) if REDIS_URL else None

    return TradeMonitorScheduler(
        trade_service=trade_service,
        session_maker=session_maker,
        config=MonitorConfig(),
        redis_client=redis_client,
        resources=[jupiter, solana, price_feed],
    )


async def main() -> None:
    setup_logging("worker")
    init_sentry()

    try:
        validate_config()
    except ValueError as e:
        logger.error(str(e))
        sys.exit(1)

    if not await check_connection():
        logger.error("Database is not reachable, exiting")
        await dispose_engine()
        sys.exit(1)

    monitor = build_trade_monitor()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    monitor.start()
    logger.info("Ghost Trade Engine worker started")

    try:
        await stop_event.wait()
        logger.info("Shutdown signal received")
    finally:
        await monitor.stop()
        await dispose_engine()
        logger.info("Worker stopped")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Worker stopped by user (KeyboardInterrupt)")
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        sys.exit(1)
