"""
Chain-backed SignalProvider.

Reads risk signals from Solana RPC, Birdeye, Jupiter and the Raydium pool
API. Anything that cannot be determined raises SignalUnavailable; nothing is guessed.
"""
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional, Sequence, Tuple

from autotrader.data.birdeye_client import BirdeyeClient
from autotrader.data.jupiter_client import JupiterClient, JupiterHttpError
from autotrader.data.raydium_client import RaydiumPoolClient
from autotrader.data.rpc_client import SolanaRpcClient
from autotrader.domain.models import AuthorityStatus, HolderStats
from autotrader.exceptions import OperationalError, SignalUnavailable
from autotrader.monitoring.logger import get_logger

logger = get_logger(__name__)

TOP_HOLDERS = 10
_OVERVIEW_TTL_SECONDS = 30.0
_MAX_SIGNATURE_PAGES = 3


class ChainSignalProvider:
    def __init__(
        self,
        rpc: SolanaRpcClient,
        jupiter: JupiterClient,
        birdeye: Optional[BirdeyeClient],
        quote_mint: str,
        quote_decimals: int,
        pools: Optional[RaydiumPoolClient] = None,
        burn_addresses: Sequence[str] = (),
        locker_owners: Sequence[str] = (),
        secured_min_pct: float = 95.0,
    ):
        self.rpc = rpc
        self.jupiter = jupiter
        self.birdeye = birdeye
        self.quote_mint = quote_mint
        self.quote_decimals = quote_decimals
        self.pools = pools
        self.burn_addresses = frozenset(burn_addresses)
        self.locker_owners = frozenset(locker_owners)
        self.secured_min_pct = Decimal(str(secured_min_pct))
        self._overviews: Dict[str, Tuple[float, Dict[str, Any]]] = {}

    async def _overview(self, address: str) -> Dict[str, Any]:
        if self.birdeye is None:
            raise SignalUnavailable("birdeye api key not configured")
        cached = self._overviews.get(address)
        if cached and time.monotonic() - cached[0] < _OVERVIEW_TTL_SECONDS:
            return cached[1]
        data = await self.birdeye.token_overview(address)
        self._overviews[address] = (time.monotonic(), data)
        return data

    async def _mint_info(self, asset_id: str) -> Dict[str, Any]:
        try:
            return await self.rpc.get_mint_info(asset_id)
        except OperationalError as e:
            raise SignalUnavailable(f"mint info for {asset_id}: {e}") from e

    async def liquidity(self, asset_id: str) -> Decimal:
        """Pool liquidity expressed in quote-mint units."""
        overview = await self._overview(asset_id)
        quote_overview = await self._overview(self.quote_mint)
        liquidity_usd = overview.get("liquidity")
        quote_price_usd = quote_overview.get("price")
        if not liquidity_usd or not quote_price_usd:
            raise SignalUnavailable(f"liquidity unknown for {asset_id}")
        return Decimal(str(liquidity_usd)) / Decimal(str(quote_price_usd))

    async def holder_stats(self, asset_id: str) -> HolderStats:
        overview = await self._overview(asset_id)
        holders = overview.get("holder")
        if holders is None:
            raise SignalUnavailable(f"holder count unknown for {asset_id}")
        try:
            supply = await self.rpc.get_token_supply(asset_id)
            largest = await self.rpc.get_token_largest_accounts(asset_id)
        except OperationalError as e:
            raise SignalUnavailable(f"holder distribution for {asset_id}: {e}") from e
        if supply <= 0:
            raise SignalUnavailable(f"zero supply for {asset_id}")
        top = sum(sorted(largest, reverse=True)[:TOP_HOLDERS], Decimal("0"))
        return HolderStats(
            holder_count=int(holders),
            top_holder_concentration_pct=top / supply * Decimal("100"),
        )

    async def authority_status(self, asset_id: str) -> AuthorityStatus:
        info = await self._mint_info(asset_id)
        return AuthorityStatus(
            mint_authority_present=bool(info.get("mintAuthority")),
            freeze_authority_present=bool(info.get("freezeAuthority")),
        )

    async def lock_status(self, asset_id: str) -> bool:
        """
        True when the quote pool's LP tokens are effectively burned or locked.

        Sums the LP supply held by burn addresses or by accounts owned by a
        burn address or a known locker, and requires more than
        `secured_min_pct` of the supply. A token with no findable pool is
        unknown, not unlocked.
        """
        if self.pools is None:
            raise SignalUnavailable("no pool lookup configured")
        lp_mint = await self.pools.find_lp_mint(asset_id, self.quote_mint)
        if lp_mint is None:
            raise SignalUnavailable(f"no pool found for {asset_id}")

        try:
            supply = await self.rpc.get_token_supply(lp_mint)
            holders = await self.rpc.get_token_largest_holders(lp_mint)
        except OperationalError as e:
            raise SignalUnavailable(f"LP distribution for {asset_id}: {e}") from e
        if supply <= 0:
            return False

        secured = Decimal("0")
        for account, amount in holders:
            if account in self.burn_addresses:
                secured += amount
                continue
            try:
                owner = await self.rpc.get_token_account_owner(account)
            except OperationalError as e:
                logger.warning("LP holder owner lookup failed", lp_mint=lp_mint, account=account, error=str(e))
                continue
            if owner in self.burn_addresses or owner in self.locker_owners:
                secured += amount

        secured_pct = secured / supply * Decimal("100")
        logger.debug("LP lock check", asset_id=asset_id, lp_mint=lp_mint, secured_pct=str(secured_pct))
        return secured_pct > self.secured_min_pct

    async def transfer_tax(self, asset_id: str) -> Decimal:
        """Token-2022 transfer fee in percent; classic SPL tokens have none."""
        info = await self._mint_info(asset_id)
        for extension in info.get("extensions") or []:
            if extension.get("extension") != "transferFeeConfig":
                continue
            state = extension.get("state") or {}
            fee = state.get("newerTransferFee") or state.get("olderTransferFee") or {}
            bps = fee.get("transferFeeBasisPoints")
            if bps is None:
                raise SignalUnavailable(f"unreadable transfer fee config for {asset_id}")
            return Decimal(bps) / Decimal("100")
        return Decimal("0")

    async def sellability_probe(self, asset_id: str) -> bool:
        """True when a route back to the quote mint exists for one token."""
        info = await self._mint_info(asset_id)
        raw_amount = 10 ** int(info.get("decimals", 0))
        try:
            quote = await self.jupiter.get_quote(asset_id, self.quote_mint, raw_amount, slippage_bps=500)
        except JupiterHttpError as e:
            if e.no_route:
                return False
            raise SignalUnavailable(f"sell probe for {asset_id}: {e}") from e
        return int(quote.get("outAmount") or 0) > 0

    async def created_at(self, asset_id: str) -> datetime:
        """Block time of the mint's oldest signature, when the full history is reachable."""
        before = None
        oldest = None
        complete = False
        for _ in range(_MAX_SIGNATURE_PAGES):
            try:
                page = await self.rpc.get_signatures_for_address(asset_id, limit=1000, before=before)
            except OperationalError as e:
                raise SignalUnavailable(f"signature history for {asset_id}: {e}") from e
            if page:
                oldest = page[-1]
                before = oldest["signature"]
            if len(page) < 1000:
                complete = True
                break

        if not complete:
            raise SignalUnavailable(f"history of {asset_id} too long to date")

        if oldest is None or oldest.get("blockTime") is None:
            raise SignalUnavailable(f"creation time unknown for {asset_id}")
        return datetime.fromtimestamp(oldest["blockTime"], tz=timezone.utc)
