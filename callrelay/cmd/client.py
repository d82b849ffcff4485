from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import sys
import uuid
from typing import Any, Dict, Optional

import websockets
from websockets.asyncio.client import ClientConnection

from callrelay.utils import canonical

log = logging.getLogger("callrelay.cmd.client")

HELP = (
    "Commands: /call <user> [video], /accept, /reject, /end, /typing <chat> [on|off], "
    "/ping, /raw <json>, /quit"
)


class ClientApp:
    """Line-oriented client for poking a relay by hand."""

    def __init__(self, server_url: str, user_id: str, display_name: str) -> None:
        self.server_url = server_url
        self.user_id = user_id
        self.display_name = display_name
        self.ws: Optional[ClientConnection] = None
        self.peer: Optional[str] = None
        self.call_id: Optional[str] = None
        self.stop_event = asyncio.Event()

    async def run(self) -> None:
        async with websockets.connect(self.server_url) as ws:
            self.ws = ws
            await self._send({"type": "register", "userId": self.user_id})
            receiver = asyncio.create_task(self._rx_loop())
            try:
                await self._command_loop()
            finally:
                self.stop_event.set()
                receiver.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await receiver

    async def _command_loop(self) -> None:
        loop = asyncio.get_running_loop()
        print(f"Connected as {self.user_id}. {HELP}")
        while not self.stop_event.is_set():
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            line = line.strip()
            if line:
                await self._handle_command(line)

    async def _handle_command(self, line: str) -> None:
        parts = line.split()
        cmd = parts[0]
        if cmd == "/call" and len(parts) >= 2:
            self.peer = parts[1]
            await self._send(
                {
                    "type": "call_incoming",
                    "to": self.peer,
                    "fromName": self.display_name,
                    "isVideo": len(parts) > 2 and parts[2] == "video",
                }
            )
        elif cmd == "/accept":
            await self._send({"type": "call_accepted", "to": self.peer, "callId": self.call_id})
        elif cmd == "/reject":
            await self._send({"type": "call_rejected", "to": self.peer, "callId": self.call_id})
            self.peer = self.call_id = None
        elif cmd == "/end":
            await self._send({"type": "call_end", "to": self.peer, "callId": self.call_id})
            self.peer = self.call_id = None
        elif cmd == "/typing" and len(parts) >= 2:
            on = len(parts) < 3 or parts[2] != "off"
            await self._send({"type": "typing_status", "chatId": parts[1], "isTyping": on})
        elif cmd == "/ping":
            await self._send({"type": "ping"})
        elif cmd == "/raw" and len(parts) >= 2:
            try:
                frame = canonical.loads(line.split(" ", 1)[1])
            except ValueError as exc:
                print(f"invalid JSON: {exc}")
                return
            await self._send(frame)
        elif cmd in {"/quit", "/exit"}:
            self.stop_event.set()
        else:
            print(HELP)

    async def _rx_loop(self) -> None:
        assert self.ws is not None
        try:
            async for raw in self.ws:
                try:
                    frame = canonical.loads(raw)
                except ValueError:
                    log.warning("Dropped invalid frame: %s", raw)
                    continue
                self._handle_incoming(frame)
        except websockets.ConnectionClosed:
            pass
        finally:
            self.stop_event.set()

    def _handle_incoming(self, frame: Dict[str, Any]) -> None:
        typ = frame.get("type")
        if typ == "call_incoming":
            self.peer = frame.get("from")
            self.call_id = frame.get("callId")
            kind = "video" if frame.get("isVideo") else "audio"
            print(f"[call] incoming {kind} call from {frame.get('fromName') or self.peer} (/accept or /reject)")
        elif typ in {"call_rejected", "call_end"}:
            print(f"[call] {typ} from {frame.get('from')} {frame.get('reason') or ''} {frame.get('duration') or ''}")
            self.peer = self.call_id = None
        elif typ in {"call_busy", "call_unavailable"}:
            print(f"[call] {frame.get('to')}: {typ}")
            self.peer = None
        elif typ == "user_status":
            state = "online" if frame.get("isOnline") else "offline"
            print(f"[presence] {frame.get('userId')} is {state}")
        elif typ == "typing_status":
            print(f"[typing] {frame.get('userId')} in {frame.get('chatId')}: {frame.get('isTyping')}")
        else:
            print(f"[{typ}] {frame}")

    async def _send(self, frame: Dict[str, Any]) -> None:
        assert self.ws is not None
        await self.ws.send(canonical.dumps(frame))


async def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Relay test client")
    parser.add_argument("--server", required=True, help="ws://host:port of the relay")
    parser.add_argument("--user", dest="user_id", default=None, help="User id (random if omitted)")
    parser.add_argument("--name", default=None, help="Display name sent with calls")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    user_id = args.user_id or str(uuid.uuid4())
    app = ClientApp(args.server, user_id, args.name or user_id)
    await app.run()


def cli() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    cli()
