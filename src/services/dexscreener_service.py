# coding: utf-8
"""
DexScreener API Service - USD price feed for Solana tokens

Free API, no authentication required.
Rate limit: 300 requests/minute
"""
import time
import logging
from decimal import Decimal, InvalidOperation
from typing import Optional, Dict, Any, List

import aiohttp
from loguru import logger
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log,
)

from config.config import CACHE_TTL_PRICE, DEXSCREENER_API_URL, HTTP_TIMEOUT_SEC, SOLANA_CHAIN_ID
from src.core.exceptions import PriceFeedError


# Create standard logger for tenacity
std_logger = logging.getLogger(__name__)


class DexScreenerService:
    """
    Market price feed backed by DexScreener

    Features:
    - Token pairs for a mint, filtered to Solana
    - USD price from the most liquid pair
    - Short in-memory cache (exit decisions need fresh prices)
    - Automatic retry with exponential backoff on network errors
    """

    BASE_URL = DEXSCREENER_API_URL

    def __init__(self, cache_ttl: float = CACHE_TTL_PRICE):
        self.cache: Dict[str, tuple[Any, float]] = {}
        self.cache_ttl = cache_ttl
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

    def _get_cached(self, cache_key: str) -> Optional[Any]:
        """Get cached data if not expired"""
        if cache_key in self.cache:
            data, timestamp = self.cache[cache_key]
            if time.monotonic() - timestamp < self.cache_ttl:
                logger.debug(f"Cache hit for {cache_key}")
                return data
            del self.cache[cache_key]
        return None

    def _set_cache(self, cache_key: str, data: Any) -> None:
        self.cache[cache_key] = (data, time.monotonic())

    @retry(
        retry=retry_if_exception_type((aiohttp.ClientConnectionError, TimeoutError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        before_sleep=before_sleep_log(std_logger, logging.WARNING),
        reraise=True,
    )
    async def _make_request(self, endpoint: str) -> Optional[Dict[str, Any]]:
        """
        GET a DexScreener endpoint with caching

        Retries up to 3 times for connection errors and timeouts.

        Returns:
            JSON response or None on HTTP error / rate limit
        """
        cached = self._get_cached(endpoint)
        if cached is not None:
            return cached

        session = await self._get_session()
        async with session.get(f"{self.BASE_URL}{endpoint}") as response:
            if response.status == 200:
                data = await response.json()
                self._set_cache(endpoint, data)
                return data
            if response.status == 429:
                logger.warning("DexScreener rate limit exceeded")
                return None
            logger.error(f"DexScreener API error: {response.status} - {await response.text()}")
            return None

    async def get_token_pairs(self, token_address: str) -> List[Dict[str, Any]]:
        """
        All Solana trading pairs for a token

        Example pair:
            {
                "chainId": "solana",
                "dexId": "raydium",
                "baseToken": {"address": "...", "symbol": "BONK"},
                "priceUsd": "0.0000123",
                "liquidity": {"usd": 50000}
            }
        """
        response = await self._make_request(f"/latest/dex/tokens/{token_address}")
        pairs = (response or {}).get("pairs") or []
        return [p for p in pairs if p.get("chainId") == SOLANA_CHAIN_ID]

    async def get_token_price_usd(self, token_address: str) -> Decimal:
        """
        USD price from the most liquid Solana pair

        Raises:
            PriceFeedError: No pairs, no usable price, or network failure
        """
        try:
            pairs = await self.get_token_pairs(token_address)
        except (aiohttp.ClientError, TimeoutError) as e:
            raise PriceFeedError(f"Price lookup failed for {token_address}: {e}") from e

        if not pairs:
            raise PriceFeedError(f"No Solana pairs found for {token_address}")

        best = max(pairs, key=lambda p: float((p.get("liquidity") or {}).get("usd") or 0))
        try:
            price = Decimal(str(best.get("priceUsd") or "0"))
        except InvalidOperation as e:
            raise PriceFeedError(f"Malformed price for {token_address}") from e

        if price <= 0:
            raise PriceFeedError(f"No price available for {token_address}")

        logger.debug(f"Price {token_address[:8]}...: ${price}")
        return price
