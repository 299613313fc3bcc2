from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from autotrader.data.jupiter_client import JupiterHttpError
from autotrader.data.rpc_client import RpcError
from autotrader.data.signal_provider import ChainSignalProvider
from autotrader.exceptions import SignalUnavailable

QUOTE_MINT = "So11111111111111111111111111111111111111112"
BURN = "1nc1nerator11111111111111111111111111111111"


class TestChainSignalProvider:
    def setup_method(self):
        self.rpc = MagicMock()
        self.rpc.get_mint_info = AsyncMock(
            return_value={"decimals": 6, "mintAuthority": None, "freezeAuthority": None}
        )
        self.rpc.get_token_supply = AsyncMock(return_value=Decimal("1000"))
        self.rpc.get_token_largest_accounts = AsyncMock(return_value=[Decimal("100")] * 12)
        self.rpc.get_signatures_for_address = AsyncMock(return_value=[])
        self.jupiter = MagicMock()
        self.jupiter.get_quote = AsyncMock(return_value={"outAmount": "1500"})
        self.birdeye = MagicMock()
        self.birdeye.token_overview = AsyncMock(
            side_effect=lambda address: {"price": 150} if address == QUOTE_MINT else {"liquidity": 30000, "holder": 420}
        )
        self.provider = ChainSignalProvider(self.rpc, self.jupiter, self.birdeye, QUOTE_MINT, 9)

    @pytest.mark.asyncio
    async def test_liquidity_in_quote_units(self):
        assert await self.provider.liquidity("MINT_A") == Decimal("200")

    @pytest.mark.asyncio
    async def test_overview_is_cached(self):
        await self.provider.liquidity("MINT_A")
        await self.provider.holder_stats("MINT_A")

        addresses = [call.args[0] for call in self.birdeye.token_overview.await_args_list]
        assert addresses.count("MINT_A") == 1

    @pytest.mark.asyncio
    async def test_no_birdeye_key_means_unavailable(self):
        provider = ChainSignalProvider(self.rpc, self.jupiter, None, QUOTE_MINT, 9)

        with pytest.raises(SignalUnavailable):
            await provider.liquidity("MINT_A")

    @pytest.mark.asyncio
    async def test_holder_concentration_uses_top_ten(self):
        stats = await self.provider.holder_stats("MINT_A")

        assert stats.holder_count == 420
        assert stats.top_holder_concentration_pct == Decimal("100")

    @pytest.mark.asyncio
    async def test_authority(self):
        assert (await self.provider.authority_status("MINT_A")).revoked

        self.rpc.get_mint_info.return_value = {"decimals": 6, "mintAuthority": "Auth111", "freezeAuthority": None}
        status = await self.provider.authority_status("MINT_B")
        assert status.mint_authority_present
        assert not status.revoked

    @pytest.mark.asyncio
    async def test_mint_lookup_failure_is_unavailable(self):
        self.rpc.get_mint_info.side_effect = RpcError("timeout")

        with pytest.raises(SignalUnavailable):
            await self.provider.authority_status("MINT_A")

    def _lp_provider(self, holders, owners=None):
        pools = MagicMock()
        pools.find_lp_mint = AsyncMock(return_value="LP_MINT")
        self.rpc.get_token_supply = AsyncMock(return_value=Decimal("1000"))
        self.rpc.get_token_largest_holders = AsyncMock(return_value=holders)
        self.rpc.get_token_account_owner = AsyncMock(side_effect=lambda account: (owners or {}).get(account))
        return ChainSignalProvider(
            self.rpc,
            self.jupiter,
            self.birdeye,
            QUOTE_MINT,
            9,
            pools=pools,
            burn_addresses=[BURN],
            locker_owners=["Locker111"],
        )

    @pytest.mark.asyncio
    async def test_lock_status_counts_burned_and_locked_lp(self):
        provider = self._lp_provider(
            [(BURN, Decimal("900")), ("LockedAcc", Decimal("60")), ("DevAcc", Decimal("40"))],
            owners={"LockedAcc": "Locker111", "DevAcc": "Dev111"},
        )

        assert await provider.lock_status("MINT_A") is True
        provider.pools.find_lp_mint.assert_awaited_once_with("MINT_A", QUOTE_MINT)
        self.rpc.get_token_supply.assert_awaited_once_with("LP_MINT")

    @pytest.mark.asyncio
    async def test_lock_status_false_when_dev_holds_lp(self):
        provider = self._lp_provider(
            [(BURN, Decimal("900")), ("DevAcc", Decimal("100"))],
            owners={"DevAcc": "Dev111"},
        )

        assert await provider.lock_status("MINT_A") is False

    @pytest.mark.asyncio
    async def test_lock_status_burn_owner_counts(self):
        provider = self._lp_provider([("BurnOwned", Decimal("990"))], owners={"BurnOwned": BURN})

        assert await provider.lock_status("MINT_A") is True

    @pytest.mark.asyncio
    async def test_lock_status_skips_holders_it_cannot_resolve(self):
        provider = self._lp_provider([(BURN, Decimal("900")), ("Flaky", Decimal("100"))])
        self.rpc.get_token_account_owner.side_effect = RpcError("timeout")

        assert await provider.lock_status("MINT_A") is False

    @pytest.mark.asyncio
    async def test_lock_status_unknown_without_pool(self):
        with pytest.raises(SignalUnavailable):
            await self.provider.lock_status("MINT_A")

        provider = self._lp_provider([])
        provider.pools.find_lp_mint.return_value = None
        with pytest.raises(SignalUnavailable):
            await provider.lock_status("MINT_A")

    @pytest.mark.asyncio
    async def test_lock_status_unknown_when_lp_supply_unreadable(self):
        provider = self._lp_provider([])
        self.rpc.get_token_supply.side_effect = RpcError("node behind")

        with pytest.raises(SignalUnavailable):
            await provider.lock_status("MINT_A")

    @pytest.mark.asyncio
    async def test_transfer_tax_from_token_2022_extension(self):
        self.rpc.get_mint_info.return_value = {
            "decimals": 6,
            "extensions": [
                {"extension": "transferFeeConfig", "state": {"newerTransferFee": {"transferFeeBasisPoints": 250}}}
            ],
        }

        assert await self.provider.transfer_tax("MINT_A") == Decimal("2.5")

    @pytest.mark.asyncio
    async def test_classic_token_has_no_tax(self):
        assert await self.provider.transfer_tax("MINT_A") == Decimal("0")

    @pytest.mark.asyncio
    async def test_sellability(self):
        assert await self.provider.sellability_probe("MINT_A") is True
        self.jupiter.get_quote.assert_awaited_once_with("MINT_A", QUOTE_MINT, 1_000_000, slippage_bps=500)

        self.jupiter.get_quote.side_effect = JupiterHttpError("no route", status=400, error_code="NO_ROUTES_FOUND")
        assert await self.provider.sellability_probe("MINT_A") is False

        self.jupiter.get_quote.side_effect = JupiterHttpError("HTTP 502", status=502)
        with pytest.raises(SignalUnavailable):
            await self.provider.sellability_probe("MINT_A")

    @pytest.mark.asyncio
    async def test_created_at_from_oldest_signature(self):
        self.rpc.get_signatures_for_address.return_value = [
            {"signature": "newest", "blockTime": 1_800_000_000},
            {"signature": "oldest", "blockTime": 1_799_990_000},
        ]

        created = await self.provider.created_at("MINT_A")

        assert created == datetime.fromtimestamp(1_799_990_000, tz=timezone.utc)

    @pytest.mark.asyncio
    async def test_created_at_unknown_for_long_history(self):
        self.rpc.get_signatures_for_address.return_value = [{"signature": "s", "blockTime": 1}] * 1000

        with pytest.raises(SignalUnavailable):
            await self.provider.created_at("MINT_A")
