from __future__ import annotations

import asyncio

import pytest
import websockets
from pydantic import ValidationError

from callrelay.core import directory
from callrelay.server.config import RelayConfig, load_config
from callrelay.server.runtime import RelayRuntime
from callrelay.utils import canonical


# -----------------------------
# Config
# -----------------------------

def test_defaults():
    cfg = RelayConfig()
    assert cfg.host_port == ("0.0.0.0", 8080)
    assert cfg.db_path is None
    assert cfg.max_message_bytes == 65536


def test_load_yaml_with_overrides(tmp_path):
    path = tmp_path / "relay.yaml"
    path.write_text("listen: '127.0.0.1:9000'\ndb_path: presence.db\nlog_level: debug\nunknown: 1\n")

    cfg = load_config(path, {"listen": "127.0.0.1:9100", "db_path": None})

    assert cfg.host_port == ("127.0.0.1", 9100)
    assert cfg.db_path == "presence.db"
    assert cfg.log_level == "DEBUG"


def test_bad_listen_rejected():
    with pytest.raises(ValidationError):
        RelayConfig(listen="nowhere")


def test_non_mapping_yaml_rejected(tmp_path):
    path = tmp_path / "relay.yaml"
    path.write_text("- a\n- b\n")
    with pytest.raises(ValueError):
        load_config(path)


def test_directory_choice(tmp_path):
    assert isinstance(RelayRuntime(RelayConfig()).directory, directory.NullUserDirectory)
    rt = RelayRuntime(RelayConfig(db_path=str(tmp_path / "u.db")))
    assert isinstance(rt.directory, directory.SqliteUserDirectory)


# -----------------------------
# Notification API
# -----------------------------

@pytest.mark.asyncio
async def test_notification_helpers(make_link, user_directory):
    rt = RelayRuntime(RelayConfig(), user_directory=user_directory)
    alice, bob = make_link("alice"), make_link("bob")
    rt.router.sessions.register("alice", alice)
    rt.router.sessions.register("bob", bob)
    bob.is_open = False

    assert rt.online_user_count() == 2
    assert rt.is_user_online("alice") is True
    assert rt.is_user_online("bob") is False

    assert await rt.send_notification("alice", {"type": "new_match", "matchId": "m1"}) is True
    assert await rt.send_notification("carol", {"type": "new_match"}) is False
    assert await rt.broadcast_to_chat_participants(["alice", "bob"], {"type": "new_message"}) == 1
    assert alice.sent == [{"type": "new_match", "matchId": "m1"}, {"type": "new_message"}]


# -----------------------------
# Sqlite user directory
# -----------------------------

@pytest.mark.asyncio
async def test_sqlite_directory(tmp_path, clock):
    d = directory.SqliteUserDirectory(str(tmp_path / "users.db"), now=clock)
    await d.open()
    try:
        await d.set_online("alice")
        row = await d.get("alice")
        assert row == {"user_id": "alice", "is_online": True, "last_seen_ms": clock.now, "last_active_ms": None}

        clock.advance(5000)
        await d.touch_last_active("alice")
        await d.set_offline("alice")
        row = await d.get("alice")
        assert row["is_online"] is False
        assert row["last_active_ms"] == clock.now
        assert await d.get("bob") is None
    finally:
        await d.close()


# -----------------------------
# End to end over real websockets
# -----------------------------

async def _recv(ws, type_):
    while True:
        frame = canonical.loads(await asyncio.wait_for(ws.recv(), timeout=5))
        if frame["type"] == type_:
            return frame


@pytest.mark.asyncio
async def test_call_over_websockets(user_directory):
    rt = RelayRuntime(RelayConfig(listen="127.0.0.1:0"), user_directory=user_directory)
    await rt.start()
    try:
        url = f"ws://127.0.0.1:{rt.bound_port}"
        async with websockets.connect(url) as alice, websockets.connect(url) as bob:
            await alice.send(canonical.dumps({"type": "register", "userId": "alice"}))
            assert (await _recv(alice, "registered"))["success"] is True
            await bob.send(canonical.dumps({"type": "register", "userId": "bob"}))
            await _recv(bob, "registered")
            assert (await _recv(alice, "user_status"))["userId"] == "bob"

            await alice.send("garbage")
            await alice.send(canonical.dumps({"type": "call_incoming", "to": "bob", "isVideo": True}))
            incoming = await _recv(bob, "call_incoming")
            assert incoming["from"] == "alice"

            await bob.send(canonical.dumps({"type": "call_accepted", "callId": incoming["callId"]}))
            assert (await _recv(alice, "call_accepted"))["callId"] == incoming["callId"]

            await alice.close()
            end = await _recv(bob, "call_end")
            assert end["reason"] == "disconnected"
            status = await _recv(bob, "user_status")
            assert status == {"type": "user_status", "userId": "alice", "isOnline": False, "timestamp": status["timestamp"]}
            assert rt.online_user_count() == 1
    finally:
        await rt.stop()

    assert ("open",) in user_directory.events
    assert ("close",) in user_directory.events
    assert ("offline", "bob") in user_directory.events
