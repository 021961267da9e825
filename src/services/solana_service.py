"""
Solana JSON-RPC client

Balances, broadcast and confirmation polling over plain aiohttp.
"""
import asyncio
import base64
import logging
from typing import Any, List, Optional

import aiohttp
from loguru import logger
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    before_sleep_log,
)

from config.config import (
    CONFIRMATION_POLL_SEC,
    CONFIRMATION_TIMEOUT_SEC,
    HTTP_TIMEOUT_SEC,
    SOLANA_RPC_URL,
)
from src.core.exceptions import ConfirmationTimeoutError, ExchangeError, ExternalServiceError
from src.services.jupiter_service import is_slippage_error


std_logger = logging.getLogger(__name__)

TOKEN_PROGRAM_IDS = (
    "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA",
    "TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb",  # Token-2022
)

# getSignatureStatuses outcomes
STATUS_CONFIRMED = "confirmed"
STATUS_FAILED = "failed"


class SolanaRPCError(ExternalServiceError):
    def __init__(self, method: str, error: dict):
        message = error.get("message", "unknown error")
        logs = (error.get("data") or {}).get("logs") or []
        if logs:
            message = f"{message} | logs: {' '.join(logs[-5:])}"
        super().__init__(f"RPC {method} failed: {message}")
        self.rpc_error = error


class SolanaService:
    def __init__(
        self,
        rpc_url: str = SOLANA_RPC_URL,
        confirmation_timeout: float = CONFIRMATION_TIMEOUT_SEC,
        poll_interval: float = CONFIRMATION_POLL_SEC,
    ):
        self.rpc_url = rpc_url
        self.confirmation_timeout = confirmation_timeout
        self.poll_interval = poll_interval
        self._session: Optional[aiohttp.ClientSession] = None
        self._request_id = 0

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
        retry=retry_if_exception_type((aiohttp.ClientConnectionError, TimeoutError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        before_sleep=before_sleep_log(std_logger, logging.WARNING),
        reraise=True,
    )
    async def _rpc(self, method: str, params: List[Any]) -> Any:
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}

        session = await self._get_session()
        async with session.post(self.rpc_url, json=payload) as response:
            if response.status != 200:
                raise ExternalServiceError(f"RPC {method} HTTP {response.status}")
            data = await response.json()

        if data.get("error"):
            raise SolanaRPCError(method, data["error"])
        return data.get("result")

    async def get_balance(self, public_key: str) -> int:
        """SOL balance in lamports"""
        result = await self._rpc("getBalance", [public_key, {"commitment": "confirmed"}])
        return int((result or {}).get("value", 0))

    async def get_token_balance(self, owner: str, mint: str) -> int:
        """
        Token balance in base units, summed over every token account of the owner

        Returns:
            0 when the owner has no account for the mint
        """
        result = await self._rpc(
            "getTokenAccountsByOwner",
            [owner, {"mint": mint}, {"encoding": "jsonParsed", "commitment": "confirmed"}],
        )
        total = 0
        for account in (result or {}).get("value", []):
            info = account["account"]["data"]["parsed"]["info"]
            total += int(info["tokenAmount"]["amount"])
        return total

    async def send_transaction(self, signed_tx: bytes) -> str:
        """
        Broadcast a signed transaction

        Returns:
            Signature (base58)

        Raises:
            ExchangeError: Preflight / broadcast rejected
        """
        try:
            signature = await self._rpc(
                "sendTransaction",
                [
                    base64.b64encode(signed_tx).decode("ascii"),
                    {
                        "encoding": "base64",
                        "skipPreflight": False,
                        "preflightCommitment": "confirmed",
                        "maxRetries": 3,
                    },
                ],
            )
        except SolanaRPCError as e:
            raise ExchangeError(e.message, is_slippage=is_slippage_error(e.message)) from e

        logger.info(f"Transaction sent: {signature}")
        return signature

    async def _fetch_status(self, signature: str) -> Optional[dict]:
        result = await self._rpc(
            "getSignatureStatuses", [[signature], {"searchTransactionHistory": True}]
        )
        statuses = (result or {}).get("value") or [None]
        return statuses[0]

    async def get_signature_status(self, signature: str) -> Optional[str]:
        """
        Current status of a transaction

        Returns:
            "confirmed", "failed", or None when unknown / still processing
        """
        status = await self._fetch_status(signature)
        if status is None:
            return None
        if status.get("err"):
            return STATUS_FAILED
        if status.get("confirmationStatus") in ("confirmed", "finalized"):
            return STATUS_CONFIRMED
        return None

    async def confirm_transaction(self, signature: str, timeout: Optional[float] = None) -> None:
        """
        Poll until the transaction is confirmed

        Raises:
            ExchangeError: Transaction landed with an error
            ConfirmationTimeoutError: Outcome still unknown after the timeout
        """
        timeout = timeout or self.confirmation_timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while loop.time() < deadline:
            status = await self._fetch_status(signature)
            if status is not None and status.get("err"):
                err = str(status["err"])
                # Custom program error 6024 == 0x1788 (slippage exceeded)
                raise ExchangeError(
                    f"Transaction failed on-chain: {signature} ({err})",
                    is_slippage="6024" in err or is_slippage_error(err),
                )
            if status is not None and status.get("confirmationStatus") in ("confirmed", "finalized"):
                logger.info(f"Transaction confirmed: {signature}")
                return
            await asyncio.sleep(self.poll_interval)

        raise ConfirmationTimeoutError(signature, timeout)
