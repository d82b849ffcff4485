from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, Optional

from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from callrelay.core import directory, router, ws
from callrelay.server.config import RelayConfig

log = logging.getLogger("callrelay.server.runtime")


class RelayRuntime:
    """Websocket front end for the signaling router.

    Also exposes the push-style helpers other backend components use to reach
    connected users (new message, new match, ...).
    """

    def __init__(self, config: RelayConfig, user_directory: Optional[directory.UserDirectory] = None) -> None:
        self.cfg = config
        self.listen_host, self.listen_port = config.host_port
        if user_directory is None:
            if config.db_path:
                user_directory = directory.SqliteUserDirectory(config.db_path)
            else:
                user_directory = directory.NullUserDirectory()
        self.directory = user_directory
        self.router = router.SignalingRouter(directory=self.directory)

        self._links: set[ws.Link] = set()
        self._ws_server: Optional[Server] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self.directory.open()
        self._ws_server = await serve(
            self._handle_connection,
            self.listen_host,
            self.listen_port,
            max_size=self.cfg.max_message_bytes,
            ping_interval=self.cfg.ping_interval,
            ping_timeout=self.cfg.ping_timeout,
        )
        log.info("Relay listening on ws://%s:%d", self.listen_host, self.bound_port)

    @property
    def bound_port(self) -> int:
        """Actual listening port (differs from the configured one when that is 0)."""
        if self._ws_server is None:
            return self.listen_port
        return self._ws_server.sockets[0].getsockname()[1]

    async def stop(self) -> None:
        if self._ws_server is not None:
            self._ws_server.close()
            await self._ws_server.wait_closed()
            self._ws_server = None

        for link in list(self._links):
            await self.router.disconnect(link)
        self._links.clear()

        await self.router.tasks.drain()
        await self.directory.close()
        log.info("Relay stopped")

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        link = ws.Link(websocket)
        self._links.add(link)
        log.debug("Accepted connection from %s", link.remote)
        try:
            async for raw in websocket:
                await self.router.handle_raw(link, raw)
        except ConnectionClosed:
            pass
        finally:
            self._links.discard(link)
            await self.router.disconnect(link)
            log.debug("Connection from %s closed", link.remote)

    # ------------------------------------------------------------------
    # Notification API
    # ------------------------------------------------------------------

    async def send_notification(self, user_id: str, notification: Dict[str, Any]) -> bool:
        delivered = await self.router.sessions.send(user_id, notification)
        if delivered:
            log.info("Sent notification to %s: %s", user_id, notification.get("type"))
        return delivered

    async def broadcast_to_chat_participants(self, user_ids: Iterable[str], data: Dict[str, Any]) -> int:
        return await self.router.sessions.send_many(user_ids, data)

    def is_user_online(self, user_id: str) -> bool:
        return self.router.sessions.is_reachable(user_id)

    def online_user_count(self) -> int:
        return self.router.sessions.count()


async def run_forever(runtime: RelayRuntime, stop_event: asyncio.Event) -> None:
    await runtime.start()
    try:
        await stop_event.wait()
    finally:
        await runtime.stop()


__all__ = ["RelayRuntime", "run_forever"]
