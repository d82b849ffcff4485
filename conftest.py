from __future__ import annotations

from typing import Any, Dict, List, Optional

import pytest

from callrelay.core import proto
from callrelay.core.router import SignalingRouter
from callrelay.utils import canonical


class FakeLink:
    """Stands in for ws.Link; records every frame it is asked to send."""

    def __init__(self, name: str = "link") -> None:
        self.name = name
        self.identity: Optional[str] = None
        self.released = False
        self.is_open = True
        self.sent: List[Dict[str, Any]] = []

    async def send(self, frame: Dict[str, Any]) -> None:
        self.sent.append(frame)

    def of_type(self, type_: str) -> List[Dict[str, Any]]:
        return [f for f in self.sent if f.get("type") == type_]

    def __repr__(self) -> str:
        return f"<FakeLink {self.name}>"


class RecordingDirectory:
    def __init__(self) -> None:
        self.events: List[tuple] = []
        self.fail = False

    async def open(self) -> None:
        self.events.append(("open",))

    async def close(self) -> None:
        self.events.append(("close",))

    async def set_online(self, user_id: str) -> None:
        self._record("online", user_id)

    async def set_offline(self, user_id: str) -> None:
        self._record("offline", user_id)

    async def touch_last_active(self, user_id: str) -> None:
        self._record("touch", user_id)

    def _record(self, what: str, user_id: str) -> None:
        if self.fail:
            raise RuntimeError("directory unavailable")
        self.events.append((what, user_id))


class Clock:
    def __init__(self, start: int = 1_700_000_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def user_directory():
    return RecordingDirectory()


@pytest.fixture
def make_link():
    return FakeLink


@pytest.fixture
def router(user_directory, clock):
    return SignalingRouter(directory=user_directory, now=clock)


@pytest.fixture
def connect(router):
    """Register a fake client: ``link = await connect("alice")``."""

    async def _connect(user_id: str) -> FakeLink:
        link = FakeLink(user_id)
        await router.dispatch(link, proto.parse_envelope({"type": "register", "userId": user_id}))
        return link

    return _connect


@pytest.fixture
def send(router):
    """Dispatch a raw frame dict from ``link``."""

    async def _send(link: FakeLink, frame: Dict[str, Any]) -> None:
        await router.handle_raw(link, canonical.dumps(frame))

    return _send
