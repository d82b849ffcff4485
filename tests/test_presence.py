from __future__ import annotations

import logging

import pytest

from callrelay.core.presence import PresenceBroadcaster
from callrelay.core.sessions import SessionRegistry
from callrelay.utils.background import BackgroundTasks


# -----------------------------
# Fixtures
# -----------------------------

@pytest.fixture
def sessions(make_link):
    reg = SessionRegistry()
    for uid in ("alice", "bob", "carol"):
        reg.register(uid, make_link(uid))
    return reg


@pytest.fixture
def tasks():
    return BackgroundTasks()


@pytest.fixture
def presence(sessions, user_directory, tasks, clock):
    return PresenceBroadcaster(sessions, user_directory, tasks, now=clock)


# -----------------------------
# Broadcast
# -----------------------------

@pytest.mark.asyncio
async def test_broadcast_reaches_every_other_session(presence, sessions, clock):
    delivered = await presence.broadcast("alice", True)

    assert delivered == 2
    assert sessions.lookup("alice").sent == []
    for uid in ("bob", "carol"):
        assert sessions.lookup(uid).sent == [
            {"type": "user_status", "userId": "alice", "isOnline": True, "timestamp": clock.now}
        ]


@pytest.mark.asyncio
async def test_broadcast_skips_unreachable(presence, sessions):
    sessions.lookup("carol").is_open = False

    assert await presence.broadcast("alice", False) == 1
    assert sessions.lookup("carol").sent == []


# -----------------------------
# Persistence is fire-and-forget
# -----------------------------

@pytest.mark.asyncio
async def test_online_and_offline_persist(presence, user_directory, tasks):
    await presence.online("alice")
    await presence.offline("alice")
    presence.touch("alice")
    await tasks.drain()

    assert user_directory.events == [("online", "alice"), ("offline", "alice"), ("touch", "alice")]


@pytest.mark.asyncio
async def test_directory_failure_is_logged_not_raised(presence, user_directory, tasks, sessions, caplog):
    user_directory.fail = True

    with caplog.at_level(logging.WARNING, logger="callrelay.background"):
        await presence.online("alice")
        await tasks.drain()

    # the broadcast still went out
    assert sessions.lookup("bob").sent[0]["isOnline"] is True
    assert len(tasks) == 0
    assert any("set_online(alice)" in r.getMessage() for r in caplog.records)
