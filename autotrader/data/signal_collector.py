"""
Signal collector.

Fetches every signal for one asset concurrently, each under its own
timeout. A provider that fails or times out leaves its signal missing;
the collector itself never raises for provider errors.
"""
import asyncio
from typing import Any, Awaitable, Callable, Dict

from autotrader.domain.models import AssetSignals
from autotrader.domain.protocols import SignalProvider
from autotrader.exceptions import InvariantError
from autotrader.monitoring.logger import get_logger

logger = get_logger(__name__)

# AssetSignals field -> SignalProvider method
SIGNAL_METHODS: Dict[str, str] = {
    "liquidity": "liquidity",
    "holder_stats": "holder_stats",
    "authority": "authority_status",
    "liquidity_locked": "lock_status",
    "transfer_tax_pct": "transfer_tax",
    "sellable": "sellability_probe",
    "created_at": "created_at",
}


class SignalCollector:
    def __init__(self, provider: SignalProvider, timeout: float = 8.0):
        self.provider = provider
        self.timeout = timeout

    async def collect(self, asset_id: str) -> AssetSignals:
        fields = list(SIGNAL_METHODS)
        results = await asyncio.gather(
            *(self._fetch(asset_id, field_name, getattr(self.provider, SIGNAL_METHODS[field_name]))
              for field_name in fields)
        )
        values = {name: value for name, value in zip(fields, results) if value is not None}
        missing = [name for name, value in zip(fields, results) if value is None]
        if missing:
            logger.debug("Signals missing", asset_id=asset_id, missing=missing)
        return AssetSignals(asset_id=asset_id, **values)

    async def _fetch(self, asset_id: str, field_name: str, method: Callable[[str], Awaitable[Any]]) -> Any:
        try:
            return await asyncio.wait_for(method(asset_id), timeout=self.timeout)
        except InvariantError:
            raise
        except asyncio.TimeoutError:
            logger.info("Signal timed out", asset_id=asset_id, signal=field_name, timeout=self.timeout)
        except Exception as e:
            # Any provider failure is a missing signal, scored as UNKNOWN downstream
            logger.info(
                "Signal unavailable",
                asset_id=asset_id,
                signal=field_name,
                error=str(e),
                error_type=type(e).__name__,
            )
        return None
