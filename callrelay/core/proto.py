from __future__ import annotations

import logging
import time
from typing import Annotated, Any, ClassVar, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from callrelay.utils import canonical

log = logging.getLogger("callrelay.proto")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class EnvelopeError(ValueError):
    """Inbound frame could not be turned into a known envelope."""


class MalformedEnvelope(EnvelopeError):
    pass


class UnknownKind(EnvelopeError):
    def __init__(self, kind: str) -> None:
        super().__init__(f"unknown envelope kind: {kind!r}")
        self.kind = kind


# ---------------------------------------------------------------------------
# Inbound envelope models (one per kind, discriminated on "type")
# ---------------------------------------------------------------------------

class _Inbound(BaseModel):
    """Common base: wire names are camelCase, unknown keys are kept."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    KIND: ClassVar[str]

    @property
    def kind(self) -> str:
        return self.KIND


class Register(_Inbound):
    KIND: ClassVar[str] = "register"
    type: Literal["register"]
    user_id: str = Field(alias="userId", min_length=1)


class Ping(_Inbound):
    KIND: ClassVar[str] = "ping"
    type: Literal["ping"]


class TypingStatus(_Inbound):
    KIND: ClassVar[str] = "typing_status"
    type: Literal["typing_status"]
    chat_id: Optional[str] = Field(default=None, alias="chatId")
    is_typing: bool = Field(default=False, alias="isTyping")


class CallIncoming(_Inbound):
    KIND: ClassVar[str] = "call_incoming"
    type: Literal["call_incoming"]
    to: str = Field(min_length=1)
    from_name: Optional[str] = Field(default=None, alias="fromName")
    to_name: Optional[str] = Field(default=None, alias="toName")
    is_video: bool = Field(default=False, alias="isVideo")
    chat_id: Optional[str] = Field(default=None, alias="chatId")


class UserJoinedCall(_Inbound):
    KIND: ClassVar[str] = "user_joined_call"
    type: Literal["user_joined_call"]
    to: str = Field(min_length=1)
    call_id: Optional[str] = Field(default=None, alias="callId")


class CallOffer(_Inbound):
    KIND: ClassVar[str] = "call_offer"
    type: Literal["call_offer", "send_call_offer"]
    to: str = Field(min_length=1)
    offer: Any


class CallAnswer(_Inbound):
    KIND: ClassVar[str] = "call_answer"
    type: Literal["call_answer", "send_call_answer"]
    to: str = Field(min_length=1)
    answer: Any


class IceCandidate(_Inbound):
    KIND: ClassVar[str] = "ice_candidate"
    type: Literal["ice_candidate", "send_ice_candidate"]
    to: str = Field(min_length=1)
    candidate: Any


class _CallControl(_Inbound):
    """accept / reject / end act on the sender's own call pointer.

    ``to`` and ``callId`` are informational only, so a value of the wrong type
    is discarded rather than failing the whole envelope and leaving the call
    stuck.
    """

    to: Optional[str] = None
    call_id: Optional[str] = Field(default=None, alias="callId")

    @field_validator("to", "call_id", mode="before")
    @classmethod
    def _drop_non_string(cls, value: Any) -> Optional[str]:
        if value is None or isinstance(value, str):
            return value
        log.debug("Ignoring non-string %r in %s", value, cls.KIND)
        return None


class CallAccepted(_CallControl):
    KIND: ClassVar[str] = "call_accepted"
    type: Literal["call_accepted"]


class CallRejected(_CallControl):
    KIND: ClassVar[str] = "call_rejected"
    type: Literal["call_rejected"]


class CallEnd(_CallControl):
    KIND: ClassVar[str] = "call_end"
    type: Literal["call_end", "send_call_end"]
    duration: Optional[float] = None

    @field_validator("duration", mode="before")
    @classmethod
    def _drop_bad_duration(cls, value: Any) -> Optional[float]:
        # bool is an int subclass but never a duration
        if isinstance(value, (int, float)) and not isinstance(value, bool) and value >= 0:
            return value
        if value is not None:
            log.debug("Ignoring client duration %r", value)
        return None


InboundEnvelope = Annotated[
    Union[
        Register,
        Ping,
        TypingStatus,
        CallIncoming,
        UserJoinedCall,
        CallOffer,
        CallAnswer,
        IceCandidate,
        CallAccepted,
        CallRejected,
        CallEnd,
    ],
    Field(discriminator="type"),
]

_ADAPTER: TypeAdapter = TypeAdapter(InboundEnvelope)

# Wire "type" values the relay accepts, aliases included.
KINDS = frozenset(
    {
        "register",
        "ping",
        "typing_status",
        "call_incoming",
        "user_joined_call",
        "call_offer",
        "send_call_offer",
        "call_answer",
        "send_call_answer",
        "ice_candidate",
        "send_ice_candidate",
        "call_accepted",
        "call_rejected",
        "call_end",
        "send_call_end",
    }
)


def parse_envelope(raw: Union[str, bytes, Dict[str, Any]]) -> InboundEnvelope:
    """Decode one inbound frame.

    Raises MalformedEnvelope when the payload is not a JSON object or its
    fields do not fit the kind, UnknownKind when ``type`` is not recognised.
    """
    if isinstance(raw, dict):
        obj: Any = raw
    else:
        try:
            obj = canonical.loads(raw)
        except ValueError as exc:
            raise MalformedEnvelope(f"invalid JSON: {exc}") from exc

    if not isinstance(obj, dict):
        raise MalformedEnvelope("envelope must be a JSON object")
    kind = obj.get("type")
    if not isinstance(kind, str) or not kind:
        raise MalformedEnvelope("missing field: type")
    if kind not in KINDS:
        raise UnknownKind(kind)

    try:
        return _ADAPTER.validate_python(obj)
    except ValidationError as exc:
        raise MalformedEnvelope(f"invalid {kind} envelope: {exc.error_count()} error(s)") from exc


# ---------------------------------------------------------------------------
# Outbound frames
# ---------------------------------------------------------------------------

def now_ms() -> int:
    """Milliseconds since the Unix epoch."""

    return int(time.time() * 1000)


def build_frame(type: str, **fields: Any) -> Dict[str, Any]:
    """Create an outbound envelope dict; ``None`` fields are left out."""

    frame: Dict[str, Any] = {"type": type}
    for key, value in fields.items():
        if value is not None:
            frame[key] = value
    return frame


__all__ = [
    "EnvelopeError",
    "MalformedEnvelope",
    "UnknownKind",
    "InboundEnvelope",
    "Register",
    "Ping",
    "TypingStatus",
    "CallIncoming",
    "UserJoinedCall",
    "CallOffer",
    "CallAnswer",
    "IceCandidate",
    "CallAccepted",
    "CallRejected",
    "CallEnd",
    "KINDS",
    "parse_envelope",
    "now_ms",
    "build_frame",
]
