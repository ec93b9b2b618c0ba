import aiosqlite
import logging
import asyncio
import json
import time
from typing import Dict, Any, List, Iterable, Optional

logger = logging.getLogger("DatabaseManager")

SCHEMAS = (
    """
    CREATE TABLE IF NOT EXISTS provisions (
        id TEXT PRIMARY KEY,
        owner TEXT,
        phase TEXT NOT NULL,
        payload TEXT NOT NULL, -- Provision.to_dict() as JSON
        updated_at REAL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS dismissed_bots (
        bot_id TEXT PRIMARY KEY,
        dismissed_at REAL
    );
    """,
)


class DatabaseManager:
    """SQLite persistence for the Local Intent Store (provisions + dismissed bots)."""

    def __init__(self, config, logger: Optional[logging.Logger] = None):
        self.db_path = getattr(config, "DATABASE_PATH", "arena_intents.db")
        self.lock_retries = 3
        self.lock_delay = 0.2
        self._conn: Optional[aiosqlite.Connection] = None
        self.logger = logger or logging.getLogger("DatabaseManager")

    @property
    def connected(self) -> bool:
        return self._conn is not None

    async def connect(self):
        if self._conn is not None:
            return
        try:
            conn = await aiosqlite.connect(self.db_path, timeout=10)
            conn.row_factory = aiosqlite.Row
            await conn.execute("PRAGMA journal_mode=WAL;")
            for ddl in SCHEMAS:
                await conn.execute(ddl)
            await conn.commit()
        except Exception:
            self.logger.critical("Cannot open intent store at %s", self.db_path, exc_info=True)
            raise
        self._conn = conn
        self.logger.info("🗄️ Intent store ready: %s", self.db_path)

    async def close(self):
        conn, self._conn = self._conn, None
        if conn is not None:
            await conn.close()
            self.logger.info("Intent store closed.")

    async def _execute_query(self, query: str, params: tuple = ()):
        """Run one statement; SELECTs return rows. Retries while SQLite reports a lock."""
        if self._conn is None:
            self.logger.warning("⚠️ Intent store not connected; skipping %s", query.split()[0])
            return None

        for attempt in range(1, self.lock_retries + 1):
            try:
                async with self._conn.execute(query, params) as cursor:
                    if query.lstrip().upper().startswith("SELECT"):
                        return await cursor.fetchall()
                    await self._conn.commit()
                    return cursor.rowcount
            except aiosqlite.OperationalError as e:
                if "database is locked" not in str(e).lower():
                    await self._conn.rollback()
                    raise
                self.logger.warning("🔒 Intent store locked (%d/%d)", attempt, self.lock_retries)
                await asyncio.sleep(self.lock_delay * attempt)
        raise aiosqlite.OperationalError("database is locked")

    # ---------------- provisions ----------------

    async def load_provisions(self) -> List[Dict[str, Any]]:
        """Newest first (insertion order)."""
        rows = await self._execute_query("SELECT payload FROM provisions ORDER BY rowid DESC")
        out = []
        for row in rows or []:
            try:
                out.append(json.loads(row["payload"]))
            except (TypeError, ValueError):
                self.logger.warning("Skipping unreadable provision row.")
        return out

    async def insert_provision(self, data: Dict[str, Any]):
        await self._execute_query(
            "INSERT OR IGNORE INTO provisions (id, owner, phase, payload, updated_at) VALUES (?, ?, ?, ?, ?)",
            (data["id"], data.get("owner"), data.get("phase"), json.dumps(data), data.get("updated_at")),
        )

    async def update_provision(self, data: Dict[str, Any]):
        await self._execute_query(
            "UPDATE provisions SET owner = ?, phase = ?, payload = ?, updated_at = ? WHERE id = ?",
            (data.get("owner"), data.get("phase"), json.dumps(data), data.get("updated_at"), data["id"]),
        )

    async def delete_provisions(self, ids: Iterable[str]):
        for pid in ids:
            await self._execute_query("DELETE FROM provisions WHERE id = ?", (pid,))

    # ---------------- dismissed bots ----------------

    async def load_dismissed_bots(self) -> List[str]:
        """Oldest first."""
        rows = await self._execute_query("SELECT bot_id FROM dismissed_bots ORDER BY dismissed_at ASC, rowid ASC")
        return [row["bot_id"] for row in rows or []]

    async def insert_dismissed_bot(self, bot_id: str):
        await self._execute_query(
            "INSERT OR IGNORE INTO dismissed_bots (bot_id, dismissed_at) VALUES (?, ?)",
            (bot_id, time.time()),
        )

    async def delete_dismissed_bots(self, bot_ids: Iterable[str]):
        for bid in bot_ids:
            await self._execute_query("DELETE FROM dismissed_bots WHERE bot_id = ?", (bid,))
