from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional, Protocol

from websockets.exceptions import ConnectionClosed

log = logging.getLogger("callrelay.sessions")


class Handle(Protocol):
    """What the registry needs from a connection (see ``ws.Link``)."""

    identity: Optional[str]
    released: bool

    @property
    def is_open(self) -> bool: ...

    async def send(self, frame: Dict[str, Any]) -> None: ...


class SessionRegistry:
    """identity -> live connection handle, one handle per identity."""

    def __init__(self) -> None:
        self._sessions: Dict[str, Handle] = {}

    # --- binding ---
    def register(self, identity: str, handle: Handle) -> Optional[Handle]:
        """Bind ``identity`` to ``handle``; last writer wins.

        Returns the superseded handle, if any. It is not closed here.
        """
        previous = self._sessions.get(identity)
        self._sessions[identity] = handle
        if previous is not None and previous is not handle:
            log.info("User %s re-registered, replacing previous connection", identity)
            return previous
        return None

    def unregister(self, identity: str, handle: Optional[Handle] = None) -> bool:
        current = self._sessions.get(identity)
        if current is None:
            return False
        if handle is not None and current is not handle:
            # a newer connection owns this identity now
            return False
        del self._sessions[identity]
        return True

    # --- queries ---
    def lookup(self, identity: str) -> Optional[Handle]:
        return self._sessions.get(identity)

    def is_reachable(self, identity: Optional[str]) -> bool:
        if not identity:
            return False
        handle = self._sessions.get(identity)
        return handle is not None and handle.is_open

    def is_bound(self, identity: Optional[str], handle: Handle) -> bool:
        return identity is not None and self._sessions.get(identity) is handle

    def count(self) -> int:
        return len(self._sessions)

    def identities(self) -> List[str]:
        return list(self._sessions)

    # --- delivery ---
    async def send(self, identity: Optional[str], frame: Dict[str, Any]) -> bool:
        """Deliver ``frame`` to ``identity`` if reachable. Never raises on transport errors."""
        if not self.is_reachable(identity):
            return False
        handle = self._sessions[identity]
        try:
            await handle.send(frame)
        except (ConnectionClosed, OSError) as exc:
            log.debug("Delivery of %s to %s failed: %s", frame.get("type"), identity, exc)
            return False
        log.debug("Sent %s to %s", frame.get("type"), identity)
        return True

    async def send_many(self, identities: Iterable[str], frame: Dict[str, Any]) -> int:
        """Concurrent best-effort delivery; returns how many recipients got it."""
        results = await asyncio.gather(*(self.send(i, frame) for i in identities))
        return sum(1 for ok in results if ok)

    async def broadcast(self, frame: Dict[str, Any], *, exclude: Optional[str] = None) -> int:
        targets = [i for i in self.identities() if i != exclude]
        return await self.send_many(targets, frame)

    def __len__(self) -> int:
        return len(self._sessions)
