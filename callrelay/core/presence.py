from __future__ import annotations

import logging
from typing import Callable

from callrelay.utils.background import BackgroundTasks

from .directory import UserDirectory
from .proto import build_frame, now_ms
from .sessions import SessionRegistry


"""
Presence
--------
Online/offline announcements for locally connected users:
  • user_status frames go to every OTHER reachable session, best effort
  • the external user directory is updated fire-and-forget; a failed write is
    logged by the background task set and never blocks signaling
  • presence is advisory, never authoritative (no retries, no confirmation)
"""


log = logging.getLogger("callrelay.presence")

NowFn = Callable[[], int]


class PresenceBroadcaster:
    def __init__(
        self,
        sessions: SessionRegistry,
        directory: UserDirectory,
        tasks: BackgroundTasks,
        *,
        now: NowFn = now_ms,
    ) -> None:
        self.sessions = sessions
        self.directory = directory
        self.tasks = tasks
        self.now = now

    async def broadcast(self, identity: str, is_online: bool) -> int:
        frame = build_frame("user_status", userId=identity, isOnline=is_online, timestamp=self.now())
        delivered = await self.sessions.broadcast(frame, exclude=identity)
        log.debug("user_status %s online=%s reached %d session(s)", identity, is_online, delivered)
        return delivered

    async def online(self, identity: str) -> None:
        self.tasks.spawn(self.directory.set_online(identity), what=f"set_online({identity})")
        await self.broadcast(identity, True)
        log.info("User %s online (%d connected)", identity, self.sessions.count())

    async def offline(self, identity: str) -> None:
        self.tasks.spawn(self.directory.set_offline(identity), what=f"set_offline({identity})")
        await self.broadcast(identity, False)
        log.info("User %s offline (%d connected)", identity, self.sessions.count())

    def touch(self, identity: str) -> None:
        self.tasks.spawn(self.directory.touch_last_active(identity), what=f"touch_last_active({identity})")
