"""
Solana JSON-RPC client.

Implements ChainClient (submit / confirm) plus the read-only account
queries the signal provider needs. Every RPC failure surfaces as an
OperationalError subclass so callers can retry or skip.
"""
import asyncio
import base64
import itertools
import time
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from autotrader.domain.models import ConfirmStatus, TxRef
from autotrader.exceptions import ConfirmationTimeout, OperationalError, SubmitFailed
from autotrader.monitoring.logger import get_logger
from autotrader.utils.retry import retry_on_transient_errors

logger = get_logger(__name__)

# A blockhash stays valid for 150 blocks after it was fetched
BLOCKHASH_VALIDITY_BLOCKS = 150


class RpcError(OperationalError):
    """JSON-RPC transport failure or error response."""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class SolanaRpcClient:
    """Thin async JSON-RPC client over aiohttp."""

    def __init__(
        self,
        rpc_url: str,
        request_timeout: float = 10.0,
        poll_interval: float = 2.0,
        commitment: str = "confirmed",
    ):
        self.rpc_url = rpc_url
        self.request_timeout = request_timeout
        self.poll_interval = poll_interval
        self.commitment = commitment
        self._ids = itertools.count(1)

    async def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params or []}
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.request_timeout)) as session:
                async with session.post(self.rpc_url, json=payload) as response:
                    if response.status != 200:
                        text = await response.text()
                        raise RpcError(f"{method}: HTTP {response.status}: {text[:200]}")
                    data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise RpcError(f"{method}: {type(e).__name__}: {e}") from e

        if data.get("error"):
            err = data["error"]
            raise RpcError(f"{method}: {err.get('message')}", code=err.get("code"))
        return data.get("result")

    # ========== ChainClient ==========

    async def submit(self, signed: bytes) -> TxRef:
        """Broadcast a signed transaction. A definite RPC rejection raises SubmitFailed."""
        height = await self.get_block_height()
        encoded = base64.b64encode(signed).decode()
        try:
            signature = await self.call(
                "sendTransaction",
                [encoded, {"encoding": "base64", "preflightCommitment": self.commitment}],
            )
        except RpcError as e:
            raise SubmitFailed(str(e)) from e
        logger.info("Transaction submitted", signature=signature)
        return TxRef(signature=signature, last_valid_block_height=height + BLOCKHASH_VALIDITY_BLOCKS)

    async def confirm(self, tx_ref: TxRef, timeout: float) -> ConfirmStatus:
        """
        Poll until the signature confirms, errors, or its blockhash expires.

        Raises:
            ConfirmationTimeout: `timeout` elapsed with no verdict
        """
        deadline = time.monotonic() + timeout
        while True:
            status = await self._signature_status(tx_ref.signature)
            if status is not None:
                return status

            if tx_ref.last_valid_block_height is not None:
                height = await self.get_block_height()
                if height > tx_ref.last_valid_block_height:
                    # Expired blockhash: one final look in case it landed at the boundary
                    return await self._signature_status(tx_ref.signature) or ConfirmStatus.EXPIRED

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ConfirmationTimeout(
                    f"no confirmation for {tx_ref.signature} within {timeout}s",
                    signature=tx_ref.signature,
                )
            await asyncio.sleep(min(self.poll_interval, remaining))

    async def _signature_status(self, signature: str) -> Optional[ConfirmStatus]:
        result = await self.call(
            "getSignatureStatuses", [[signature], {"searchTransactionHistory": True}]
        )
        value = (result or {}).get("value") or [None]
        entry = value[0]
        if entry is None:
            return None
        if entry.get("err") is not None:
            return ConfirmStatus.FAILED
        if entry.get("confirmationStatus") in ("confirmed", "finalized"):
            return ConfirmStatus.CONFIRMED
        return None

    # ========== QUERIES ==========

    @retry_on_transient_errors(max_retries=2, base_delay=0.2, max_backoff=1.0, transient_errors=(RpcError,))
    async def get_block_height(self) -> int:
        return int(await self.call("getBlockHeight", [{"commitment": self.commitment}]))

    async def get_parsed_account(self, address: str) -> Optional[Dict[str, Any]]:
        result = await self.call("getAccountInfo", [address, {"encoding": "jsonParsed"}])
        return (result or {}).get("value")

    async def get_mint_info(self, mint: str) -> Dict[str, Any]:
        account = await self.get_parsed_account(mint)
        if not account:
            raise RpcError(f"mint account not found: {mint}")
        data = account.get("data") or {}
        parsed = data.get("parsed") if isinstance(data, dict) else None
        if not parsed or parsed.get("type") != "mint":
            raise RpcError(f"account {mint} is not a token mint")
        info = dict(parsed["info"])
        info["program"] = data.get("program")
        return info

    async def get_token_supply(self, mint: str) -> Decimal:
        result = await self.call("getTokenSupply", [mint])
        return Decimal(result["value"]["amount"])

    async def get_token_largest_accounts(self, mint: str) -> List[Decimal]:
        return [amount for _, amount in await self.get_token_largest_holders(mint)]

    async def get_token_largest_holders(self, mint: str) -> List[Tuple[str, Decimal]]:
        """(token account, raw amount) for the largest accounts of `mint`."""
        result = await self.call("getTokenLargestAccounts", [mint])
        return [(entry["address"], Decimal(entry["amount"])) for entry in (result or {}).get("value", [])]

    async def get_token_account_owner(self, token_account: str) -> Optional[str]:
        """Wallet that owns a token account, None if the account is gone."""
        account = await self.get_parsed_account(token_account)
        if not account:
            return None
        data = account.get("data") or {}
        parsed = data.get("parsed") if isinstance(data, dict) else None
        if not parsed or parsed.get("type") != "account":
            raise RpcError(f"account {token_account} is not a token account")
        return parsed["info"].get("owner")

    async def get_signatures_for_address(
        self, address: str, limit: int = 1000, before: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        options: Dict[str, Any] = {"limit": limit}
        if before:
            options["before"] = before
        return await self.call("getSignaturesForAddress", [address, options]) or []
