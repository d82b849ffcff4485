from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Optional

from .proto import now_ms

log = logging.getLogger("callrelay.calls")

NowFn = Callable[[], int]


class CallStatus(str, Enum):
    RINGING = "ringing"
    ACTIVE = "active"
    ENDED = "ended"


_TRANSITIONS = {
    (CallStatus.RINGING, CallStatus.ACTIVE),
    (CallStatus.RINGING, CallStatus.ENDED),
    (CallStatus.ACTIVE, CallStatus.ENDED),
}


class ParticipantBusy(Exception):
    """Raised by create_call when a participant already has a call."""

    def __init__(self, identity: str, call_id: str) -> None:
        super().__init__(f"{identity} is already in call {call_id}")
        self.identity = identity
        self.call_id = call_id


@dataclass
class Call:
    call_id: str
    initiator: str
    recipient: str
    is_video: bool
    created_ms: int
    status: CallStatus = CallStatus.RINGING
    active_since_ms: Optional[int] = None
    chat_id: Optional[str] = None
    joined: Dict[str, bool] = field(default_factory=dict)

    def peer_of(self, identity: str) -> str:
        return self.recipient if identity == self.initiator else self.initiator

    def duration_secs(self, now: int) -> Optional[int]:
        if self.active_since_ms is None:
            return None
        return max(0, now - self.active_since_ms) // 1000


@dataclass
class CallPointer:
    call_id: str
    status: CallStatus
    peer: str
    started_ms: int


class CallTable:
    """Call Table and User-Call Index, mutated together.

    Every method is synchronous: callers mutate both maps in one step before
    awaiting anything, so other connection handlers never see a half update.
    """

    def __init__(self, now: NowFn = now_ms) -> None:
        self.now = now
        self._calls: Dict[str, Call] = {}
        self._by_user: Dict[str, CallPointer] = {}
        self._seq = itertools.count(1)

    def create_call(
        self,
        initiator: str,
        recipient: str,
        is_video: bool,
        *,
        chat_id: Optional[str] = None,
    ) -> Call:
        if initiator == recipient:
            raise ValueError("a call needs two distinct participants")
        for identity in (recipient, initiator):
            pointer = self._by_user.get(identity)
            if pointer is not None:
                raise ParticipantBusy(identity, pointer.call_id)

        created = self.now()
        call_id = f"{initiator}-{recipient}-{created}-{next(self._seq)}"
        call = Call(
            call_id=call_id,
            initiator=initiator,
            recipient=recipient,
            is_video=is_video,
            created_ms=created,
            chat_id=chat_id,
            joined={initiator: False, recipient: False},
        )
        self._calls[call_id] = call
        self._by_user[initiator] = CallPointer(call_id, call.status, recipient, created)
        self._by_user[recipient] = CallPointer(call_id, call.status, initiator, created)
        log.info("Call %s created: %s -> %s (%s)", call_id, initiator, recipient, "video" if is_video else "audio")
        return call

    def transition(self, call_id: str, new_status: CallStatus) -> bool:
        call = self._calls.get(call_id)
        if call is None:
            log.warning("Transition to %s for unknown call %s ignored", new_status.value, call_id)
            return False
        if (call.status, new_status) not in _TRANSITIONS:
            log.warning(
                "Invalid transition %s -> %s for call %s ignored",
                call.status.value,
                new_status.value,
                call_id,
            )
            return False

        call.status = new_status
        if new_status is CallStatus.ACTIVE:
            call.active_since_ms = self.now()
        for identity in (call.initiator, call.recipient):
            pointer = self._by_user.get(identity)
            if pointer is not None and pointer.call_id == call_id:
                pointer.status = new_status
                if new_status is CallStatus.ACTIVE:
                    pointer.started_ms = call.active_since_ms
        log.debug("Call %s is now %s", call_id, new_status.value)
        return True

    def remove_call(self, call_id: str) -> Optional[Call]:
        call = self._calls.pop(call_id, None)
        if call is None:
            return None
        for identity in (call.initiator, call.recipient):
            pointer = self._by_user.get(identity)
            if pointer is not None and pointer.call_id == call_id:
                del self._by_user[identity]
        return call

    def mark_joined(self, identity: str) -> bool:
        pointer = self._by_user.get(identity)
        if pointer is None:
            return False
        call = self._calls[pointer.call_id]
        call.joined[identity] = True
        return True

    def get_call_for(self, identity: str) -> Optional[CallPointer]:
        return self._by_user.get(identity)

    def get(self, call_id: str) -> Optional[Call]:
        return self._calls.get(call_id)

    def pointer_count(self) -> int:
        return len(self._by_user)

    def __len__(self) -> int:
        return len(self._calls)
