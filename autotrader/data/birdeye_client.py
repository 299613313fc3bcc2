"""
Birdeye token overview client (liquidity and holder count).
"""
import asyncio
from typing import Any, Dict

import aiohttp

from autotrader.exceptions import SignalUnavailable


class BirdeyeClient:
    def __init__(self, api_url: str, api_key: str, request_timeout: float = 10.0):
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.request_timeout = request_timeout

    async def token_overview(self, address: str) -> Dict[str, Any]:
        headers = {"X-API-KEY": self.api_key, "x-chain": "solana", "accept": "application/json"}
        url = f"{self.api_url}/defi/token_overview"
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.request_timeout)) as session:
                async with session.get(url, params={"address": address}, headers=headers) as response:
                    if response.status != 200:
                        raise SignalUnavailable(f"birdeye overview HTTP {response.status}")
                    payload = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise SignalUnavailable(f"birdeye overview failed: {e}") from e

        if not payload.get("success") or not payload.get("data"):
            raise SignalUnavailable(f"birdeye overview empty for {address}")
        return payload["data"]
