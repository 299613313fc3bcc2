"""
Jupiter aggregator client.

JupiterClient wraps the v6 quote/swap API and the price API.
JupiterSwapVenue adapts it to the SwapVenue protocol, converting between
UI amounts (Decimal) and raw integer amounts using each mint's decimals.
JupiterPriceSource adapts the price API to PriceSource.
"""
import asyncio
import base64
from decimal import Decimal
from typing import Any, Dict, Optional, Sequence

import aiohttp

from autotrader.domain.models import Quote, TradeSide
from autotrader.exceptions import OperationalError, PriceUnavailable, QuoteFailed, SubmitFailed
from autotrader.data.rpc_client import SolanaRpcClient
from autotrader.monitoring.logger import get_logger

logger = get_logger(__name__)

NO_ROUTE_ERRORS = ("COULD_NOT_FIND_ANY_ROUTE", "NO_ROUTES_FOUND", "TOKEN_NOT_TRADABLE")


class JupiterHttpError(OperationalError):
    def __init__(self, message: str, status: int = 0, error_code: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.error_code = error_code

    @property
    def no_route(self) -> bool:
        return self.error_code in NO_ROUTE_ERRORS


class JupiterClient:
    """Raw Jupiter HTTP API."""

    def __init__(self, api_url: str, price_api_url: str, request_timeout: float = 10.0):
        self.api_url = api_url.rstrip("/")
        self.price_api_url = price_api_url.rstrip("/")
        self.request_timeout = request_timeout

    async def _request_json(self, method: str, url: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.request_timeout)) as session:
                async with session.request(method, url, **kwargs) as response:
                    if response.status != 200:
                        error_code = None
                        try:
                            body = await response.json(content_type=None)
                            error_code = (body or {}).get("errorCode")
                            message = (body or {}).get("error") or str(body)
                        except ValueError:
                            message = await response.text()
                        raise JupiterHttpError(
                            f"{method} {url}: HTTP {response.status}: {str(message)[:200]}",
                            status=response.status,
                            error_code=error_code,
                        )
                    return await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise JupiterHttpError(f"{method} {url}: {type(e).__name__}: {e}") from e

    async def get_quote(self, input_mint: str, output_mint: str, amount: int, slippage_bps: int) -> Dict[str, Any]:
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(amount),
            "slippageBps": str(slippage_bps),
        }
        return await self._request_json("GET", f"{self.api_url}/quote", params=params)

    async def get_swap_transaction(self, quote_response: Dict[str, Any], user_public_key: str) -> Dict[str, Any]:
        body = {
            "quoteResponse": quote_response,
            "userPublicKey": user_public_key,
            "wrapAndUnwrapSol": True,
            "dynamicComputeUnitLimit": True,
        }
        return await self._request_json("POST", f"{self.api_url}/swap", json=body)

    async def get_prices(self, ids: Sequence[str], vs_token: str) -> Dict[str, Decimal]:
        if not ids:
            return {}
        data = await self._request_json(
            "GET", f"{self.price_api_url}/price", params={"ids": ",".join(ids), "vsToken": vs_token}
        )
        prices: Dict[str, Decimal] = {}
        for asset_id, entry in (data.get("data") or {}).items():
            price = entry.get("price") if isinstance(entry, dict) else None
            if price is not None:
                prices[asset_id] = Decimal(str(price))
        return prices


class JupiterSwapVenue:
    """SwapVenue over Jupiter, amounts in UI units of the quote mint and the asset."""

    def __init__(
        self,
        client: JupiterClient,
        rpc: SolanaRpcClient,
        quote_mint: str,
        quote_decimals: int,
        user_public_key: str,
    ):
        self.client = client
        self.rpc = rpc
        self.quote_mint = quote_mint
        self.quote_decimals = quote_decimals
        self.user_public_key = user_public_key
        self._decimals: Dict[str, int] = {quote_mint: quote_decimals}

    async def decimals(self, mint: str) -> int:
        if mint not in self._decimals:
            info = await self.rpc.get_mint_info(mint)
            self._decimals[mint] = int(info["decimals"])
        return self._decimals[mint]

    async def quote(self, asset_id: str, side: TradeSide, amount: Decimal, slippage_bps: int) -> Quote:
        try:
            asset_decimals = await self.decimals(asset_id)
            if side == TradeSide.BUY:
                input_mint, output_mint = self.quote_mint, asset_id
                in_decimals, out_decimals = self.quote_decimals, asset_decimals
            else:
                input_mint, output_mint = asset_id, self.quote_mint
                in_decimals, out_decimals = asset_decimals, self.quote_decimals

            raw_in = int(amount * (Decimal(10) ** in_decimals))
            response = await self.client.get_quote(input_mint, output_mint, raw_in, slippage_bps)
        except OperationalError as e:
            raise QuoteFailed(f"quote {side.value} {asset_id}: {e}") from e

        try:
            in_amount = Decimal(response["inAmount"]) / (Decimal(10) ** in_decimals)
            out_amount = Decimal(response["outAmount"]) / (Decimal(10) ** out_decimals)
            impact = Decimal(str(response.get("priceImpactPct") or "0")) * 100
        except (KeyError, ArithmeticError, ValueError) as e:
            raise QuoteFailed(f"malformed quote for {asset_id}: {e}") from e

        return Quote(
            asset_id=asset_id,
            side=side,
            in_amount=in_amount,
            out_amount=out_amount,
            price_impact_pct=impact,
            slippage_bps=slippage_bps,
            raw=response,
        )

    async def build(self, quote: Quote) -> bytes:
        try:
            response = await self.client.get_swap_transaction(quote.raw, self.user_public_key)
            return base64.b64decode(response["swapTransaction"])
        except OperationalError as e:
            raise SubmitFailed(f"swap build for {quote.asset_id}: {e}") from e
        except (KeyError, ValueError) as e:
            raise SubmitFailed(f"malformed swap response for {quote.asset_id}: {e}") from e


class JupiterPriceSource:
    """PriceSource quoting every asset in the quote mint."""

    def __init__(self, client: JupiterClient, quote_mint: str):
        self.client = client
        self.quote_mint = quote_mint

    async def get_prices(self, asset_ids: Sequence[str]) -> Dict[str, Decimal]:
        try:
            return await self.client.get_prices(list(asset_ids), self.quote_mint)
        except OperationalError as e:
            raise PriceUnavailable(str(e)) from e
