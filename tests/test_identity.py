import pytest

from services import identity_service as identity
from services.errors import AuthError, Conflict, InvalidInput, NotFound
from services.fanout import USERS_TOPIC


def test_register_normalizes_email_and_hides_hash():
    account = identity.register("  Dana@Example.COM ", "dana", "hunter22")
    assert account["email"] == "dana@example.com"
    assert "password_hash" not in account
    assert account["is_online"] is False


def test_register_rejects_duplicate_email_case_insensitively(alice):
    with pytest.raises(Conflict):
        identity.register("ALICE@example.com", "alice2", "secret-x")


@pytest.mark.parametrize("email,username,password", [
    ("not-an-email", "x", "secret1"),
    ("x@example.com", "   ", "secret1"),
    ("x@example.com", "x", "short"),
    ("x@example.com", "x" * 65, "secret1"),
])
def test_register_validates_input(email, username, password):
    with pytest.raises(InvalidInput):
        identity.register(email, username, password)


def test_register_announces_new_account(listen):
    watcher = listen("someone", USERS_TOPIC)
    account = identity.register("erin@example.com", "erin", "secret-e")
    created = watcher.of_type("account_created")
    assert [e["account"]["id"] for e in created] == [account["id"]]


def test_authenticate_and_resolve(alice):
    account, token = identity.authenticate("alice@example.com", "secret-a")
    assert account["id"] == alice["id"]
    resolved, session_id = identity.resolve_session(token)
    assert resolved["id"] == alice["id"]
    assert session_id


@pytest.mark.parametrize("email,password", [
    ("alice@example.com", "wrong-password"),
    ("nobody@example.com", "secret-a"),
])
def test_authenticate_failures_share_one_message(alice, email, password):
    with pytest.raises(AuthError) as exc:
        identity.authenticate(email, password)
    assert exc.value.detail == "Invalid email or password"


def test_tampered_token_is_rejected(alice):
    _, token = identity.authenticate("alice@example.com", "secret-a")
    with pytest.raises(AuthError):
        identity.resolve_token(token[:-2] + ("A" if token[-2] != "A" else "B") + token[-1])


def test_sign_out_revokes_only_that_session(alice):
    _, first = identity.authenticate("alice@example.com", "secret-a")
    _, second = identity.authenticate("alice@example.com", "secret-a")

    assert identity.sign_out(first) is not None
    with pytest.raises(AuthError):
        identity.resolve_token(first)
    assert identity.resolve_token(second)["id"] == alice["id"]

    # signing out again changes nothing
    assert identity.sign_out(first) is None


def test_list_accounts_excludes_caller_and_filters(alice, bob, carol):
    others = identity.list_accounts(exclude=alice["id"])
    assert [a["username"] for a in others] == ["bob", "carol"]
    assert [a["username"] for a in identity.list_accounts(query="CAR")] == ["carol"]


def test_update_username(alice, listen):
    watcher = listen("someone", USERS_TOPIC)
    updated = identity.update_username(alice["id"], "  alicia ")
    assert updated["username"] == "alicia"
    assert watcher.of_type("account_updated")[0]["account"]["username"] == "alicia"
    with pytest.raises(InvalidInput):
        identity.update_username(alice["id"], "")


def test_get_account_unknown():
    with pytest.raises(NotFound):
        identity.get_account("missing")
