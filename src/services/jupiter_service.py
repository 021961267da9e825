"""
Jupiter swap API client

Quote + serialized swap transaction. Routing itself is Jupiter's business.
"""
import logging
from typing import Any, Dict, Optional

import aiohttp
from loguru import logger
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    before_sleep_log,
)

from config.config import HTTP_TIMEOUT_SEC, JUPITER_API_URL, TradingDefaults
from src.core.exceptions import ExchangeError


std_logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = (502, 503, 504)


def is_slippage_error(message: str) -> bool:
    """Jupiter program error 0x1788 (6024) is slippage exceeded"""
    text = (message or "").lower()
    return "0x1788" in text or "slippage" in text


def _is_retryable(error: BaseException) -> bool:
    if isinstance(error, aiohttp.ClientResponseError):
        return error.status in RETRYABLE_STATUSES
    return isinstance(error, (aiohttp.ClientConnectionError, TimeoutError))


class JupiterService:
    BASE_URL = JUPITER_API_URL

    def __init__(self, base_url: Optional[str] = None):
        self.base_url = base_url or self.BASE_URL
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=HTTP_TIMEOUT_SEC)
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        before_sleep=before_sleep_log(std_logger, logging.WARNING),
        reraise=True,
    )
    async def _request(
        self, method: str, endpoint: str, **kwargs
    ) -> Dict[str, Any]:
        session = await self._get_session()
        async with session.request(method, f"{self.base_url}{endpoint}", **kwargs) as response:
            if response.status in RETRYABLE_STATUSES:
                response.raise_for_status()
            if response.status != 200:
                body = await response.text()
                raise ExchangeError(
                    f"Jupiter {endpoint} failed: {response.status} - {body}",
                    is_slippage=is_slippage_error(body),
                )
            return await response.json()

    async def _call(self, method: str, endpoint: str, **kwargs) -> Dict[str, Any]:
        try:
            return await self._request(method, endpoint, **kwargs)
        except (aiohttp.ClientError, TimeoutError) as e:
            raise ExchangeError(f"Jupiter {endpoint} unavailable: {e}") from e

    async def get_quote(
        self, input_mint: str, output_mint: str, amount: int, slippage_bps: int
    ) -> Dict[str, Any]:
        """
        Best route quote

        Args:
            input_mint: Mint sold
            output_mint: Mint bought
            amount: Input amount in base units
            slippage_bps: Slippage budget

        Returns:
            Raw quote response (inAmount, outAmount, routePlan, ...)
        """
        quote = await self._call(
            "GET",
            "/quote",
            params={
                "inputMint": input_mint,
                "outputMint": output_mint,
                "amount": str(amount),
                "slippageBps": str(slippage_bps),
            },
        )
        if not quote.get("outAmount"):
            raise ExchangeError(f"No route found: {input_mint} -> {output_mint}")

        logger.info(f"Jupiter quote: {quote.get('inAmount')} -> {quote.get('outAmount')} ({slippage_bps} bps)")
        return quote

    async def get_swap_transaction(self, quote: Dict[str, Any], user_public_key: str) -> str:
        """
        Serialized (base64) unsigned versioned transaction for a quote
        """
        result = await self._call(
            "POST",
            "/swap",
            json={
                "quoteResponse": quote,
                "userPublicKey": user_public_key,
                "wrapAndUnwrapSol": True,
                "dynamicComputeUnitLimit": True,
                "prioritizationFeeLamports": {
                    "priorityLevelWithMaxLamports": {
                        "priorityLevel": "high",
                        "maxLamports": TradingDefaults.PRIORITY_FEE_MAX_LAMPORTS,
                        "global": False,
                    }
                },
            },
        )
        swap_tx = result.get("swapTransaction")
        if not swap_tx:
            raise ExchangeError("Jupiter returned no swap transaction")
        return swap_tx
