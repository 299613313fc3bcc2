"""
Strategy registry.

Holds every StrategyConfig keyed by id and persists the whole set to a
JSON file after each change. Writes are atomic (temp file + rename) and
guarded with an flock so a concurrent CLI invocation never reads a
half-written file.
"""
import fcntl
import json
import threading
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from autotrader.exceptions import ConfigurationError, StrategyValidationError
from autotrader.domain.models import utcnow
from autotrader.monitoring.logger import get_logger
from autotrader.strategy.strategy_config import PresetKind, StrategyConfig

logger = get_logger(__name__)


class StrategyRegistry:
    """Thread-safe, file-backed set of strategies."""

    def __init__(self, path: Optional[Path | str] = None):
        self._path = Path(path) if path is not None else None
        self._strategies: Dict[str, StrategyConfig] = {}
        self._lock = threading.Lock()
        if self._path is not None:
            self._path.parent.mkdir(parents=True, exist_ok=True)

    # ========== PERSISTENCE ==========

    def load(self) -> int:
        """Load strategies from disk, replacing what is in memory. Returns the count."""
        if self._path is None or not self._path.exists():
            return 0

        try:
            with open(self._path, "r") as f:
                fcntl.flock(f, fcntl.LOCK_SH)
                try:
                    raw = json.load(f)
                finally:
                    fcntl.flock(f, fcntl.LOCK_UN)
            strategies = [StrategyConfig(**item) for item in raw]
        except (json.JSONDecodeError, TypeError, PydanticValidationError) as e:
            logger.critical("STRATEGIES_FILE_CORRUPT", error=str(e), path=str(self._path))
            raise ConfigurationError(f"Cannot read strategies from {self._path}: {e}") from e

        with self._lock:
            self._strategies = {s.id: s for s in strategies}
        logger.info("Strategies loaded", count=len(strategies), path=str(self._path))
        return len(strategies)

    def _save_locked(self) -> None:
        if self._path is None:
            return
        tmp_path = self._path.with_suffix(".tmp")
        payload = [s.model_dump(mode="json") for s in self._strategies.values()]
        try:
            with open(tmp_path, "w") as f:
                fcntl.flock(f, fcntl.LOCK_EX)
                try:
                    json.dump(payload, f, indent=2)
                finally:
                    fcntl.flock(f, fcntl.LOCK_UN)
            tmp_path.rename(self._path)
        except OSError as e:
            logger.critical("STRATEGIES_WRITE_FAILED", error=str(e), path=str(self._path))
            raise

    # ========== QUERIES ==========

    def list_strategies(self) -> List[StrategyConfig]:
        with self._lock:
            return sorted(self._strategies.values(), key=lambda s: s.name)

    def get(self, strategy_id: str) -> Optional[StrategyConfig]:
        with self._lock:
            return self._strategies.get(strategy_id)

    def get_by_name(self, name: str) -> Optional[StrategyConfig]:
        with self._lock:
            for s in self._strategies.values():
                if s.name == name:
                    return s
        return None

    def snapshot_enabled(self) -> List[StrategyConfig]:
        """Enabled strategies as of now. Safe to hold for a whole scan cycle."""
        with self._lock:
            return [s for s in self._strategies.values() if s.enabled]

    # ========== MUTATIONS ==========

    def upsert(self, strategy: StrategyConfig) -> StrategyConfig:
        """
        Insert or replace a strategy.

        A replacement keeps `created_at`, bumps `version` and refreshes
        `updated_at`. Names are unique across the registry.

        Raises:
            StrategyValidationError: name clash
        """
        with self._lock:
            for other in self._strategies.values():
                if other.name == strategy.name and other.id != strategy.id:
                    raise StrategyValidationError(f"Strategy name already in use: {strategy.name}")

            existing = self._strategies.get(strategy.id)
            if existing is not None:
                stored = strategy.evolve(
                    created_at=existing.created_at,
                    version=existing.version + 1,
                    updated_at=utcnow(),
                )
            else:
                stored = strategy

            self._strategies[stored.id] = stored
            self._save_locked()

        logger.info(
            "Strategy saved",
            strategy_id=stored.id,
            name=stored.name,
            version=stored.version,
            enabled=stored.enabled,
        )
        return stored

    def toggle(self, strategy_id: str, enabled: Optional[bool] = None) -> StrategyConfig:
        """Enable/disable a strategy; flips the current value when `enabled` is None."""
        with self._lock:
            existing = self._strategies.get(strategy_id)
            if existing is None:
                raise KeyError(strategy_id)
            target = (not existing.enabled) if enabled is None else enabled
            stored = existing.evolve(enabled=target).touch()
            self._strategies[strategy_id] = stored
            self._save_locked()

        logger.info("Strategy toggled", strategy_id=strategy_id, enabled=stored.enabled)
        return stored

    def delete(self, strategy_id: str) -> bool:
        with self._lock:
            if self._strategies.pop(strategy_id, None) is None:
                return False
            self._save_locked()
        logger.info("Strategy deleted", strategy_id=strategy_id)
        return True

    def ensure_default(self, name: str = "default", kind: PresetKind = "default") -> Optional[StrategyConfig]:
        """Seed a stock strategy when the registry is empty."""
        with self._lock:
            if self._strategies:
                return None
        return self.upsert(StrategyConfig.preset(name, kind))
