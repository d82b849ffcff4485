from __future__ import annotations

import logging
from typing import Awaitable, Callable, Dict, Optional

from websockets.exceptions import ConnectionClosed

from callrelay.utils.background import BackgroundTasks

from . import proto
from .calls import CallStatus, CallTable, ParticipantBusy
from .directory import NullUserDirectory, UserDirectory
from .presence import PresenceBroadcaster
from .sessions import Handle, SessionRegistry

log = logging.getLogger("callrelay.router")

NowFn = Callable[[], int]
HandlerFn = Callable[[Handle, proto.InboundEnvelope], Awaitable[None]]


class SignalingRouter:
    """Dispatches inbound envelopes, owning sessions, calls and presence.

    State is injected rather than global so tests (and a future sharded
    deployment) get their own tables. Handlers mutate the tables before their
    first ``await``; everything after that point only delivers frames.
    """

    def __init__(
        self,
        sessions: Optional[SessionRegistry] = None,
        calls: Optional[CallTable] = None,
        directory: Optional[UserDirectory] = None,
        *,
        tasks: Optional[BackgroundTasks] = None,
        now: NowFn = proto.now_ms,
    ) -> None:
        self.now = now
        self.sessions = sessions if sessions is not None else SessionRegistry()
        self.calls = calls if calls is not None else CallTable(now=now)
        self.tasks = tasks if tasks is not None else BackgroundTasks()
        self.presence = PresenceBroadcaster(
            self.sessions,
            directory if directory is not None else NullUserDirectory(),
            self.tasks,
            now=now,
        )
        self._handlers: Dict[str, HandlerFn] = {
            "register": self._on_register,
            "ping": self._on_ping,
            "typing_status": self._on_typing_status,
            "call_incoming": self._on_call_incoming,
            "user_joined_call": self._on_user_joined_call,
            "call_offer": self._on_negotiation,
            "call_answer": self._on_negotiation,
            "ice_candidate": self._on_negotiation,
            "call_accepted": self._on_call_accepted,
            "call_rejected": self._on_call_rejected,
            "call_end": self._on_call_end,
        }

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def handle_raw(self, handle: Handle, raw: str | bytes) -> None:
        """Parse and dispatch one frame; bad frames are logged and dropped."""
        try:
            env = proto.parse_envelope(raw)
        except proto.UnknownKind as exc:
            log.warning("Dropped envelope of unknown kind %r from %s", exc.kind, handle.identity or "unregistered")
            return
        except proto.MalformedEnvelope as exc:
            log.warning("Dropped malformed envelope from %s: %s", handle.identity or "unregistered", exc)
            return
        await self.dispatch(handle, env)

    async def dispatch(self, handle: Handle, env: proto.InboundEnvelope) -> None:
        handler = self._handlers.get(env.kind)
        if handler is None:
            log.warning("No handler for %s", env.kind)
            return
        if env.kind != "register" and not self.sessions.is_bound(handle.identity, handle):
            log.warning("Dropped %s from unregistered connection %r", env.kind, handle)
            return
        try:
            await handler(handle, env)
        except Exception:
            log.exception("Handler for %s from %s failed", env.kind, handle.identity)

    async def disconnect(self, handle: Handle) -> None:
        """Terminal path for a closed connection. Runs once, never raises."""
        if handle.released:
            return
        handle.released = True
        try:
            await self._release(handle, reason="disconnected")
        except Exception:
            log.exception("Cleanup after disconnect of %s failed", handle.identity)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def _on_register(self, handle: Handle, env: proto.Register) -> None:
        identity = env.user_id
        if handle.identity and handle.identity != identity:
            # same connection switching identity: let the old one go first
            await self._release(handle, reason="disconnected")
        handle.identity = identity
        superseded = self.sessions.register(identity, handle)
        if superseded is not None:
            log.info("Connection %r superseded by %r", superseded, handle)
        await self._reply(handle, proto.build_frame("registered", success=True))
        await self.presence.online(identity)

    async def _release(self, handle: Handle, *, reason: str) -> None:
        identity = handle.identity
        if identity is None:
            return
        if not self.sessions.is_bound(identity, handle):
            log.debug("Stale connection for %s closed; newer session kept", identity)
            return

        pointer = self.calls.get_call_for(identity)
        ended = None
        if pointer is not None:
            self.calls.transition(pointer.call_id, CallStatus.ENDED)
            ended = self.calls.remove_call(pointer.call_id)
        self.sessions.unregister(identity, handle)
        log.info("User %s disconnected", identity)

        if ended is not None:
            peer = ended.peer_of(identity)
            duration = ended.duration_secs(self.now())
            self._log_call_end(ended.call_id, duration, reason)
            frame = proto.build_frame(
                "call_end",
                **{"from": identity, "callId": ended.call_id, "reason": reason, "duration": duration},
            )
            await self.sessions.send(peer, frame)
        if self.sessions.lookup(identity) is not None:
            # re-registered while the peer was being told; still online
            log.info("User %s reconnected during cleanup; offline skipped", identity)
            return
        await self.presence.offline(identity)

    # ------------------------------------------------------------------
    # Simple relays
    # ------------------------------------------------------------------

    async def _on_ping(self, handle: Handle, env: proto.Ping) -> None:
        self.presence.touch(handle.identity)
        await self._reply(handle, proto.build_frame("pong"))

    async def _on_typing_status(self, handle: Handle, env: proto.TypingStatus) -> None:
        frame = proto.build_frame(
            "typing_status",
            userId=handle.identity,
            chatId=env.chat_id,
            isTyping=env.is_typing,
        )
        await self.sessions.broadcast(frame, exclude=handle.identity)

    async def _on_negotiation(self, handle: Handle, env: proto.InboundEnvelope) -> None:
        # offer / answer / candidate blobs are opaque: forward as received
        body = env.model_dump(by_alias=True, exclude={"type", "to"})
        body.pop("from", None)
        frame = {"type": env.kind, "from": handle.identity, **body}
        if not await self.sessions.send(env.to, frame):
            log.debug("%s from %s to %s dropped (peer unreachable)", env.kind, handle.identity, env.to)

    async def _on_user_joined_call(self, handle: Handle, env: proto.UserJoinedCall) -> None:
        self.calls.mark_joined(handle.identity)
        body = env.model_dump(by_alias=True, exclude={"type", "to"}, exclude_none=True)
        body.pop("from", None)
        frame = {"type": env.kind, "from": handle.identity, **body}
        await self.sessions.send(env.to, frame)

    # ------------------------------------------------------------------
    # Call state machine
    # ------------------------------------------------------------------

    async def _on_call_incoming(self, handle: Handle, env: proto.CallIncoming) -> None:
        caller, target = handle.identity, env.to
        if caller == target:
            log.warning("%s tried to call themselves; dropped", caller)
            return

        pointer = self.calls.get_call_for(target)
        if pointer is not None and pointer.status is not CallStatus.ENDED:
            log.info("Call from %s to %s refused: target busy in %s", caller, target, pointer.call_id)
            await self._reply(handle, proto.build_frame("call_busy", to=target))
            return

        if not self.sessions.is_reachable(target):
            log.info("Call from %s to %s refused: target unavailable", caller, target)
            await self._reply(handle, proto.build_frame("call_unavailable", to=target))
            return

        try:
            call = self.calls.create_call(caller, target, env.is_video, chat_id=env.chat_id)
        except ParticipantBusy as exc:
            # only the caller can still be busy here
            log.warning("Call from %s to %s refused: caller already in %s", caller, target, exc.call_id)
            await self._reply(handle, proto.build_frame("call_busy", to=target, reason="caller_in_call"))
            return

        frame = proto.build_frame(
            "call_incoming",
            **{
                "from": caller,
                "fromName": env.from_name,
                "toName": env.to_name,
                "isVideo": env.is_video,
                "chatId": env.chat_id,
                "callId": call.call_id,
            },
        )
        await self.sessions.send(target, frame)

    async def _on_call_accepted(self, handle: Handle, env: proto.CallAccepted) -> None:
        pointer = self.calls.get_call_for(handle.identity)
        if pointer is None:
            log.info("call_accepted from %s without a call; dropped", handle.identity)
            return
        if not self.calls.transition(pointer.call_id, CallStatus.ACTIVE):
            return
        frame = proto.build_frame("call_accepted", **{"from": handle.identity, "callId": pointer.call_id})
        await self.sessions.send(pointer.peer, frame)

    async def _on_call_rejected(self, handle: Handle, env: proto.CallRejected) -> None:
        pointer = self.calls.get_call_for(handle.identity)
        if pointer is None:
            log.info("call_rejected from %s without a call; dropped", handle.identity)
            return
        self.calls.transition(pointer.call_id, CallStatus.ENDED)
        self.calls.remove_call(pointer.call_id)
        log.info("Call %s rejected by %s", pointer.call_id, handle.identity)
        frame = proto.build_frame("call_rejected", **{"from": handle.identity, "callId": pointer.call_id})
        await self.sessions.send(pointer.peer, frame)

    async def _on_call_end(self, handle: Handle, env: proto.CallEnd) -> None:
        pointer = self.calls.get_call_for(handle.identity)
        if pointer is None:
            log.info("call_end from %s without a call; dropped", handle.identity)
            return
        self.calls.transition(pointer.call_id, CallStatus.ENDED)
        call = self.calls.remove_call(pointer.call_id)
        duration = call.duration_secs(self.now()) if call is not None else None
        if duration is None:
            duration = env.duration
        self._log_call_end(pointer.call_id, duration, "hangup")
        frame = proto.build_frame(
            "call_end",
            **{"from": handle.identity, "callId": pointer.call_id, "duration": duration},
        )
        await self.sessions.send(pointer.peer, frame)

    async def _reply(self, handle: Handle, frame: dict) -> None:
        try:
            await handle.send(frame)
        except (ConnectionClosed, OSError) as exc:
            log.debug("Reply %s to %r not delivered: %s", frame.get("type"), handle, exc)

    @staticmethod
    def _log_call_end(call_id: str, duration: Optional[float], reason: str) -> None:
        if duration is None:
            log.info("Call %s ended before it was answered (%s)", call_id, reason)
        else:
            log.info("Call %s ended after %ss (%s)", call_id, duration, reason)
