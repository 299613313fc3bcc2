"""
Candidate discovery feeds.

HttpDiscoveryFeed polls a JSON endpoint returning either a list of mint
addresses or a list of objects with an "address"/"mint" field.
StaticDiscoveryFeed serves a fixed watchlist.
"""
import asyncio
from typing import Any, List, Optional, Sequence

import aiohttp

from autotrader.exceptions import DiscoveryUnavailable
from autotrader.monitoring.logger import get_logger

logger = get_logger(__name__)


def _extract_ids(payload: Any) -> List[str]:
    if isinstance(payload, dict):
        payload = payload.get("data") or payload.get("tokens") or []
    ids: List[str] = []
    for item in payload or []:
        if isinstance(item, str):
            ids.append(item)
        elif isinstance(item, dict):
            asset_id = item.get("address") or item.get("mint") or item.get("tokenAddress")
            if asset_id:
                ids.append(asset_id)
    return ids


class HttpDiscoveryFeed:
    def __init__(self, url: str, request_timeout: float = 10.0, limit: int = 50):
        self.url = url
        self.request_timeout = request_timeout
        self.limit = limit

    async def list_candidates(self, cursor: Optional[str] = None) -> List[str]:
        params = {"limit": str(self.limit)}
        if cursor:
            params["cursor"] = cursor
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.request_timeout)) as session:
                async with session.get(self.url, params=params) as response:
                    if response.status != 200:
                        raise DiscoveryUnavailable(f"discovery HTTP {response.status}")
                    payload = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise DiscoveryUnavailable(f"discovery request failed: {e}") from e

        ids = list(dict.fromkeys(_extract_ids(payload)))
        logger.debug("Discovery fetched", count=len(ids))
        return ids[: self.limit]


class StaticDiscoveryFeed:
    def __init__(self, asset_ids: Sequence[str]):
        self.asset_ids = list(dict.fromkeys(asset_ids))

    async def list_candidates(self, cursor: Optional[str] = None) -> List[str]:
        return list(self.asset_ids)
