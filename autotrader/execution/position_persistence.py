"""
Position State Persistence.

SQLite-backed PositionStore. The positions table holds one row per
position with the indexed identity columns broken out and the full record
as JSON (Decimals as strings, datetimes as ISO-8601 UTC), so a
save/load round trip reproduces every field exactly.
"""
import json
import sqlite3
import threading
from pathlib import Path
from typing import List, Optional

from autotrader.domain.models import Position, utcnow
from autotrader.monitoring.logger import get_logger

logger = get_logger(__name__)


class PositionPersistence:
    """
    SQLite persistence for the position ledger.
    """

    def __init__(self, db_path: str = "data/positions.db"):
        """Initialize persistence with database path."""
        self.db_path = db_path
        self._local = threading.local()

        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self._init_schema()

    @property
    def _conn(self) -> sqlite3.Connection:
        """Get thread-local connection."""
        if getattr(self._local, "conn", None) is None:
            self._local.conn = sqlite3.connect(self.db_path)
            self._local.conn.row_factory = sqlite3.Row
        return self._local.conn

    def _init_schema(self) -> None:
        """Initialize database schema."""
        with self._conn:
            self._conn.executescript("""
                CREATE TABLE IF NOT EXISTS positions (
                    position_id TEXT PRIMARY KEY,
                    asset_id TEXT NOT NULL,
                    strategy_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    entry_size TEXT NOT NULL,
                    opened_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    record_json TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_positions_status ON positions(status);
                CREATE INDEX IF NOT EXISTS idx_positions_strategy ON positions(strategy_id);
                CREATE INDEX IF NOT EXISTS idx_positions_asset ON positions(asset_id);
            """)

    # ========== POSITION STORE ==========

    def save_positions(self, positions: List[Position]) -> None:
        """Replace the stored set with `positions` in one transaction."""
        now = utcnow().isoformat()
        with self._conn:
            self._conn.execute("DELETE FROM positions")
            self._conn.executemany(
                """
                INSERT INTO positions (
                    position_id, asset_id, strategy_id, status,
                    entry_size, opened_at, updated_at, record_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        p.position_id,
                        p.asset_id,
                        p.strategy_id,
                        p.status.value,
                        str(p.entry_size),
                        p.opened_at.isoformat(),
                        now,
                        json.dumps(p.to_dict()),
                    )
                    for p in positions
                ],
            )

    def load_positions(self) -> List[Position]:
        rows = self._conn.execute(
            "SELECT position_id, record_json FROM positions ORDER BY opened_at, position_id"
        ).fetchall()
        positions = []
        for row in rows:
            try:
                positions.append(Position.from_dict(json.loads(row["record_json"])))
            except (KeyError, ValueError, TypeError) as e:
                logger.critical(
                    "POSITION_RECORD_CORRUPT",
                    position_id=row["position_id"],
                    error=str(e),
                )
                raise
        return positions

    def load_position(self, position_id: str) -> Optional[Position]:
        row = self._conn.execute(
            "SELECT record_json FROM positions WHERE position_id = ?",
            (position_id,),
        ).fetchone()
        if row is None:
            return None
        return Position.from_dict(json.loads(row["record_json"]))

    def close(self) -> None:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None
