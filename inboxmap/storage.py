"""
Storage - SQLite persistence for fetched records and sync metadata
"""

import asyncio
import json
import logging
import sqlite3
from contextlib import closing
from pathlib import Path
from typing import Any, List, Optional

from inboxmap.models import MessageRecord, StoreConfig


logger = logging.getLogger(__name__)

# Recognized metadata keys
META_MESSAGE_IDS = 'messageIds'
META_LAST_FETCH = 'lastFetch'
META_HIERARCHY = 'hierarchy'
META_DOMAIN_COLORS = 'domainColors'
META_PROFILE = 'profile'

SCHEMA = """
CREATE TABLE IF NOT EXISTS records (
    id INTEGER PRIMARY KEY,
    sender TEXT NOT NULL,
    name TEXT NOT NULL,
    unread INTEGER NOT NULL,
    message_id TEXT
);
CREATE TABLE IF NOT EXISTS meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


class RecordStore:
    """Two collections: the record list (replaced wholesale) and a JSON key/value table"""

    def __init__(self, config: Optional[StoreConfig] = None):
        self.config = config or StoreConfig()
        self.path = Path(self.config.path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with closing(self._connect()) as conn:
            conn.executescript(SCHEMA)

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self.path))

    # === Records ===

    async def save_records(self, records: List[MessageRecord]) -> None:
        """Replace every stored record with the given list"""
        rows = [
            (index, record.sender, record.name, int(record.unread), record.message_id)
            for index, record in enumerate(records)
        ]

        def write():
            with closing(self._connect()) as conn, conn:
                conn.execute("DELETE FROM records")
                conn.executemany(
                    "INSERT INTO records (id, sender, name, unread, message_id) VALUES (?, ?, ?, ?, ?)",
                    rows
                )

        await asyncio.to_thread(write)
        logger.debug(f"Saved {len(rows)} records")

    async def load_records(self) -> List[MessageRecord]:
        def read():
            with closing(self._connect()) as conn:
                return conn.execute("SELECT sender, name, unread, message_id FROM records ORDER BY id").fetchall()

        rows = await asyncio.to_thread(read)
        return [
            MessageRecord(sender=sender, name=name, unread=bool(unread), message_id=message_id)
            for sender, name, unread, message_id in rows
        ]

    async def has_any_records(self) -> bool:
        def count():
            with closing(self._connect()) as conn:
                return conn.execute("SELECT COUNT(*) FROM records").fetchone()[0]

        return await asyncio.to_thread(count) > 0

    # === Metadata ===

    async def save_meta(self, key: str, value: Any) -> None:
        payload = json.dumps(value)

        def write():
            with closing(self._connect()) as conn, conn:
                conn.execute("INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)", (key, payload))

        await asyncio.to_thread(write)

    async def load_meta(self, key: str) -> Any:
        """Stored value for key, or None"""
        def read():
            with closing(self._connect()) as conn:
                return conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()

        row = await asyncio.to_thread(read)
        return json.loads(row[0]) if row else None

    # === Reset ===

    async def clear_all(self) -> None:
        def clear():
            with closing(self._connect()) as conn, conn:
                conn.execute("DELETE FROM records")
                conn.execute("DELETE FROM meta")

        await asyncio.to_thread(clear)
        logger.info("Cleared all stored data")
