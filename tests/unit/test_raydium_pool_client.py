from unittest.mock import patch

import aiohttp
import pytest

from autotrader.data.raydium_client import RaydiumPoolClient, _lp_address
from autotrader.exceptions import SignalUnavailable


def test_lp_address_from_v3_pool_object():
    assert _lp_address({"lpMint": {"address": "LP_MINT", "decimals": 9}}) == "LP_MINT"


def test_lp_address_from_flat_field():
    assert _lp_address({"lpMint": "LP_MINT"}) == "LP_MINT"
    assert _lp_address({"lpMint": ""}) is None
    assert _lp_address({}) is None


@pytest.mark.asyncio
async def test_pool_lookup_wraps_client_errors():
    client = RaydiumPoolClient("http://pools.invalid", request_timeout=0.1)

    with patch("autotrader.data.raydium_client.aiohttp.ClientSession.get", side_effect=aiohttp.ClientError("refused")):
        with pytest.raises(SignalUnavailable):
            await client.find_lp_mint("MINT_A", "So11111111111111111111111111111111111111112")
