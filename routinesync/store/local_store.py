"""SQLite-backed persistence for snapshots, sync cursors and signals.

Snapshots are plain JSON documents keyed by name and overwritten last-write
wins. Cursors are stored per (account, purpose) so independent views never
share a watermark.
"""

import json
import logging
import sqlite3
import time
import uuid
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

SCHEMA = """
-- Named JSON snapshots that survive reloads
CREATE TABLE IF NOT EXISTS snapshots (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at INTEGER NOT NULL
);

-- Incremental pull watermark per account and purpose
CREATE TABLE IF NOT EXISTS cursors (
    account TEXT NOT NULL,
    purpose TEXT NOT NULL,
    since_ms INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    PRIMARY KEY (account, purpose)
);

-- Latest cross-context signal of each type
CREATE TABLE IF NOT EXISTS signals (
    signal_type TEXT PRIMARY KEY,
    payload TEXT NOT NULL,
    emitted_at INTEGER NOT NULL
);
"""

DEVICE_ID_KEY = "device-id"


def _now_ms() -> int:
    return int(time.time() * 1000)


class LocalStore:
    """Persistent local store for one client instance."""

    def __init__(self, db_path: str | Path):
        """Initialize the local store.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
        """
        self.db_path = db_path if db_path == ":memory:" else Path(db_path).expanduser()
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Initialize database connection and schema."""
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(SCHEMA)
        self._conn.commit()

        logger.info(f"LocalStore connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def _ensure_connected(self) -> sqlite3.Connection:
        """Ensure database connection exists."""
        if self._conn is None:
            self.connect()
        return self._conn

    # ==================== Snapshots ====================

    def get_snapshot(self, key: str) -> Any | None:
        """Load a JSON snapshot, or None if missing or unreadable."""
        conn = self._ensure_connected()
        row = conn.execute(
            "SELECT value FROM snapshots WHERE key = ?", (key,)
        ).fetchone()
        if row is None:
            return None

        try:
            return json.loads(row["value"])
        except json.JSONDecodeError as e:
            logger.warning(f"Discarding unreadable snapshot {key}: {e}")
            return None

    def set_snapshot(self, key: str, value: Any) -> None:
        """Store a JSON-serializable snapshot, replacing any previous one."""
        conn = self._ensure_connected()
        conn.execute(
            """
            INSERT INTO snapshots (key, value, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value, updated_at = excluded.updated_at
            """,
            (key, json.dumps(value), _now_ms()),
        )
        conn.commit()

    def delete_snapshot(self, key: str) -> bool:
        conn = self._ensure_connected()
        cursor = conn.execute("DELETE FROM snapshots WHERE key = ?", (key,))
        conn.commit()
        return cursor.rowcount > 0

    # ==================== Cursors ====================

    def get_cursor(self, account: str, purpose: str) -> int:
        """Get the pull watermark for a view, 0 when never pulled."""
        conn = self._ensure_connected()
        row = conn.execute(
            "SELECT since_ms FROM cursors WHERE account = ? AND purpose = ?",
            (account, purpose),
        ).fetchone()
        return row["since_ms"] if row else 0

    def set_cursor(self, account: str, purpose: str, since_ms: int) -> None:
        conn = self._ensure_connected()
        conn.execute(
            """
            INSERT INTO cursors (account, purpose, since_ms, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(account, purpose) DO UPDATE SET
                since_ms = excluded.since_ms, updated_at = excluded.updated_at
            """,
            (account, purpose, int(since_ms), _now_ms()),
        )
        conn.commit()
        logger.debug(f"Cursor {account}/{purpose} set to {since_ms}")

    def list_cursors(self, account: str) -> dict[str, int]:
        conn = self._ensure_connected()
        cursor = conn.execute(
            "SELECT purpose, since_ms FROM cursors WHERE account = ?", (account,)
        )
        return {row["purpose"]: row["since_ms"] for row in cursor}

    # ==================== Device identity ====================

    def get_or_create_device_id(self) -> str:
        """Return this installation's writer id, creating it on first use."""
        device_id = self.get_snapshot(DEVICE_ID_KEY)
        if isinstance(device_id, str) and device_id:
            return device_id

        device_id = str(uuid.uuid4())
        self.set_snapshot(DEVICE_ID_KEY, device_id)
        logger.info(f"Generated device id {device_id}")
        return device_id

    # ==================== Signals ====================

    def put_signal(self, signal_type: str, payload: dict[str, Any]) -> None:
        """Record the latest signal of a type for sibling processes to see."""
        conn = self._ensure_connected()
        conn.execute(
            """
            INSERT INTO signals (signal_type, payload, emitted_at) VALUES (?, ?, ?)
            ON CONFLICT(signal_type) DO UPDATE SET
                payload = excluded.payload, emitted_at = excluded.emitted_at
            """,
            (signal_type, json.dumps(payload), _now_ms()),
        )
        conn.commit()

    def get_signals(self) -> list[dict[str, Any]]:
        """All latest signals, oldest first."""
        conn = self._ensure_connected()
        cursor = conn.execute(
            "SELECT payload FROM signals ORDER BY emitted_at ASC, signal_type ASC"
        )
        signals = []
        for row in cursor:
            try:
                signals.append(json.loads(row["payload"]))
            except json.JSONDecodeError:
                logger.warning("Skipping unreadable signal payload")
        return signals

    def get_stats(self) -> dict[str, Any]:
        """Get store statistics."""
        conn = self._ensure_connected()

        stats: dict[str, Any] = {}
        stats["snapshots"] = conn.execute("SELECT COUNT(*) FROM snapshots").fetchone()[0]
        stats["cursors"] = conn.execute("SELECT COUNT(*) FROM cursors").fetchone()[0]

        if isinstance(self.db_path, Path) and self.db_path.exists():
            stats["db_size_mb"] = round(self.db_path.stat().st_size / (1024 * 1024), 2)

        return stats
