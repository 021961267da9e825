"""
Swap execution: quote -> swap transaction -> sign -> broadcast -> confirm
"""
import asyncio
import base64
from dataclasses import dataclass
from typing import Optional

from loguru import logger
from solders.keypair import Keypair
from solders.transaction import VersionedTransaction

from config.config import CONFIRMATION_TIMEOUT_SEC, EXCHANGE_TIMEOUT_SEC
from src.core.exceptions import ConfirmationTimeoutError, ExchangeError
from src.services.jupiter_service import JupiterService
from src.services.solana_service import SolanaService


@dataclass(frozen=True)
class SwapResult:
    signature: str
    in_amount: int  # base units of the input mint
    out_amount: int  # base units of the output mint (quoted)


class SwapExecutor:
    """
    One signed exchange through Jupiter

    The pre-broadcast phase (quote, build, sign, send) is bounded by
    exchange_timeout. Confirmation is bounded separately and raises
    ConfirmationTimeoutError carrying the signature, so the caller can
    reconcile a broadcast whose outcome is unknown.
    """

    def __init__(
        self,
        jupiter: Optional[JupiterService] = None,
        solana: Optional[SolanaService] = None,
        exchange_timeout: float = EXCHANGE_TIMEOUT_SEC,
        confirmation_timeout: float = CONFIRMATION_TIMEOUT_SEC,
    ):
        self.jupiter = jupiter or JupiterService()
        self.solana = solana or SolanaService()
        self.exchange_timeout = exchange_timeout
        self.confirmation_timeout = confirmation_timeout

    @staticmethod
    def sign_transaction(swap_tx_b64: str, keypair: Keypair) -> bytes:
        raw = VersionedTransaction.from_bytes(base64.b64decode(swap_tx_b64))
        signed = VersionedTransaction(raw.message, [keypair])
        return bytes(signed)

    async def _broadcast(
        self, keypair: Keypair, input_mint: str, output_mint: str, amount: int, slippage_bps: int
    ) -> tuple[str, dict]:
        quote = await self.jupiter.get_quote(input_mint, output_mint, amount, slippage_bps)
        swap_tx = await self.jupiter.get_swap_transaction(quote, str(keypair.pubkey()))
        try:
            signed = self.sign_transaction(swap_tx, keypair)
        except Exception as e:  # solders raises its own deserialization errors
            raise ExchangeError(f"Could not sign swap transaction: {e}") from e
        signature = await self.solana.send_transaction(signed)
        return signature, quote

    async def execute_swap(
        self,
        keypair: Keypair,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int,
    ) -> SwapResult:
        """
        Execute and confirm a swap

        Raises:
            ExchangeError: Quote / build / broadcast / on-chain failure
                (is_slippage set for slippage-exceeded errors)
            ConfirmationTimeoutError: Broadcast, outcome unknown
        """
        try:
            signature, quote = await asyncio.wait_for(
                self._broadcast(keypair, input_mint, output_mint, amount, slippage_bps),
                timeout=self.exchange_timeout,
            )
        except asyncio.TimeoutError as e:
            raise ExchangeError(f"Swap timed out before broadcast ({self.exchange_timeout:.0f}s)") from e

        try:
            await self.solana.confirm_transaction(signature, timeout=self.confirmation_timeout)
        except ConfirmationTimeoutError as e:
            raise ConfirmationTimeoutError(
                signature, self.confirmation_timeout, out_amount=int(quote["outAmount"])
            ) from e

        result = SwapResult(
            signature=signature,
            in_amount=int(quote.get("inAmount", amount)),
            out_amount=int(quote["outAmount"]),
        )
        logger.info(f"Swap confirmed {signature}: {result.in_amount} -> {result.out_amount}")
        return result

    async def close(self) -> None:
        await self.jupiter.close()
        await self.solana.close()
