from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from websockets.asyncio.server import ServerConnection
from websockets.protocol import State

from callrelay.utils import canonical

log = logging.getLogger("callrelay.ws")


class Link:
    """One client connection as seen by the relay.

    ``identity`` is filled in by the router once the client registers.
    ``released`` guards the disconnect path so it runs once per connection.
    """

    def __init__(self, websocket: ServerConnection) -> None:
        self.ws = websocket
        self.identity: Optional[str] = None
        self.released = False
        self._send_lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        return self.ws.state is State.OPEN

    async def send(self, frame: Dict[str, Any]) -> None:
        text = canonical.dumps(frame)
        async with self._send_lock:
            await self.ws.send(text)

    @property
    def remote(self) -> str:
        peer = self.ws.remote_address
        if isinstance(peer, tuple):
            return f"{peer[0]}:{peer[1]}"
        return str(peer)

    def __repr__(self) -> str:
        return f"<Link {self.identity or '?'} {self.remote}>"
