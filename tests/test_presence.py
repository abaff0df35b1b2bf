import pytest

from services import identity_service as identity
from services import presence_service as presence
from services.errors import NotFound
from services.fanout import USERS_TOPIC


def test_heartbeat_announces_only_the_transition(alice, listen):
    watcher = listen("observer", USERS_TOPIC)
    presence.heartbeat(alice["id"], now=1_000)
    presence.heartbeat(alice["id"], now=2_000)
    events = watcher.of_type("presence")
    assert events == [{"type": "presence", "account_id": alice["id"], "is_online": True, "last_seen": None}]
    assert identity.get_account(alice["id"])["last_activity"] == 2_000


def test_sweep_takes_idle_accounts_offline(alice, bob, listen):
    presence.heartbeat(alice["id"], now=1_000)
    presence.heartbeat(bob["id"], now=250_000)
    watcher = listen("observer", USERS_TOPIC)

    offline = presence.sweep_idle(now=302_000, timeout_seconds=300)
    assert offline == [alice["id"]]
    account = identity.get_account(alice["id"])
    assert account["is_online"] is False
    assert account["last_seen"] == 1_000
    assert identity.get_account(bob["id"])["is_online"] is True
    assert watcher.of_type("presence")[0]["account_id"] == alice["id"]

    assert presence.sweep_idle(now=302_000, timeout_seconds=300) == []


def test_mark_offline(alice, listen):
    watcher = listen("observer", USERS_TOPIC)
    presence.mark_offline(alice["id"], now=5_000)
    assert watcher.events == []

    presence.heartbeat(alice["id"], now=6_000)
    event = presence.mark_offline(alice["id"], now=7_000)
    assert event == {"type": "presence", "account_id": alice["id"], "is_online": False, "last_seen": 7_000}
    assert watcher.events[-1] == event


def test_unknown_account():
    with pytest.raises(NotFound):
        presence.heartbeat("ghost")
