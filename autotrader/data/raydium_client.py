"""
Raydium pool lookup: which LP mint belongs to a token/quote pair.
"""
import asyncio
from typing import Any, Dict, Optional

import aiohttp

from autotrader.exceptions import SignalUnavailable
from autotrader.monitoring.logger import get_logger

logger = get_logger(__name__)


class RaydiumPoolClient:
    def __init__(self, api_url: str, request_timeout: float = 10.0):
        self.api_url = api_url.rstrip("/")
        self.request_timeout = request_timeout

    async def find_lp_mint(self, mint: str, quote_mint: str) -> Optional[str]:
        """LP mint of the deepest standard pool pairing `mint` with `quote_mint`, or None."""
        params = {
            "mint1": mint,
            "mint2": quote_mint,
            "poolType": "standard",
            "poolSortField": "liquidity",
            "sortType": "desc",
            "pageSize": "1",
            "page": "1",
        }
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.request_timeout)) as session:
                async with session.get(f"{self.api_url}/pools/info/mint", params=params) as response:
                    if response.status != 200:
                        raise SignalUnavailable(f"raydium pool lookup HTTP {response.status}")
                    payload = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise SignalUnavailable(f"raydium pool lookup failed: {e}") from e

        if not payload.get("success"):
            raise SignalUnavailable(f"raydium pool lookup rejected for {mint}")
        pools = (payload.get("data") or {}).get("data") or []
        for pool in pools:
            lp_mint = _lp_address(pool)
            if lp_mint:
                return lp_mint
        logger.debug("No Raydium pool for pair", mint=mint, quote_mint=quote_mint)
        return None


def _lp_address(pool: Dict[str, Any]) -> Optional[str]:
    lp = pool.get("lpMint")
    if isinstance(lp, dict):
        return lp.get("address")
    return lp or None
