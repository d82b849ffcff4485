from __future__ import annotations

import logging
from typing import Callable, Optional, Protocol

import aiosqlite

from .proto import now_ms

log = logging.getLogger("callrelay.directory")

NowFn = Callable[[], int]

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    user_id        TEXT PRIMARY KEY,
    is_online      INTEGER NOT NULL DEFAULT 0,
    last_seen_ms   INTEGER,
    last_active_ms INTEGER
);
"""


class UserDirectory(Protocol):
    """Presence fields of the external user store.

    The relay only ever calls these fire-and-forget; implementations may raise
    and the failure is logged by the caller's background task set.
    """

    async def open(self) -> None: ...

    async def close(self) -> None: ...

    async def set_online(self, user_id: str) -> None: ...

    async def set_offline(self, user_id: str) -> None: ...

    async def touch_last_active(self, user_id: str) -> None: ...


class NullUserDirectory:
    """Used when no database is configured; presence lives in memory only."""

    async def open(self) -> None:
        log.info("No user database configured; presence changes are not persisted")

    async def close(self) -> None:
        pass

    async def set_online(self, user_id: str) -> None:
        log.debug("online: %s", user_id)

    async def set_offline(self, user_id: str) -> None:
        log.debug("offline: %s", user_id)

    async def touch_last_active(self, user_id: str) -> None:
        log.debug("active: %s", user_id)


class SqliteUserDirectory:
    def __init__(self, path: str, now: NowFn = now_ms) -> None:
        self.path = path
        self.now = now
        self._db: Optional[aiosqlite.Connection] = None

    async def open(self) -> None:
        self._db = await aiosqlite.connect(self.path)
        await self._db.executescript(SCHEMA)
        await self._db.commit()
        log.info("User directory at %s", self.path)

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("user directory is not open")
        return self._db

    async def set_online(self, user_id: str) -> None:
        await self._upsert_status(user_id, True)

    async def set_offline(self, user_id: str) -> None:
        await self._upsert_status(user_id, False)

    async def touch_last_active(self, user_id: str) -> None:
        ts = self.now()
        await self.db.execute(
            "INSERT INTO users(user_id, last_active_ms) VALUES(?, ?) "
            "ON CONFLICT(user_id) DO UPDATE SET last_active_ms=excluded.last_active_ms",
            (user_id, ts),
        )
        await self.db.commit()

    async def get(self, user_id: str) -> Optional[dict]:
        cur = await self.db.execute(
            "SELECT user_id, is_online, last_seen_ms, last_active_ms FROM users WHERE user_id=?",
            (user_id,),
        )
        row = await cur.fetchone()
        await cur.close()
        if row is None:
            return None
        return {
            "user_id": row[0],
            "is_online": bool(row[1]),
            "last_seen_ms": row[2],
            "last_active_ms": row[3],
        }

    async def _upsert_status(self, user_id: str, online: bool) -> None:
        ts = self.now()
        await self.db.execute(
            "INSERT INTO users(user_id, is_online, last_seen_ms) VALUES(?, ?, ?) "
            "ON CONFLICT(user_id) DO UPDATE SET is_online=excluded.is_online, "
            "last_seen_ms=excluded.last_seen_ms",
            (user_id, int(online), ts),
        )
        await self.db.commit()
