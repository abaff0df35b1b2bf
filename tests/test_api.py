from conftest import bearer, login

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


def _signup(client, name):
    resp = client.post("/auth/register", json={
        "email": f"{name}@example.com", "username": name, "password": f"pw-{name}-123",
    })
    assert resp.status_code == 201, resp.text
    account = resp.json()
    token = login(client, f"{name}@example.com", f"pw-{name}-123")
    return account, bearer(token)


def test_health_and_ready(client):
    assert client.get("/health").json() == {"status": "healthy"}
    assert client.get("/ready").json()["status"] == "ready"


def test_auth_flow(client):
    account, headers = _signup(client, "dana")

    dup = client.post("/auth/register", json={"email": "DANA@example.com", "username": "d2", "password": "whatever1"})
    assert dup.status_code == 409

    bad = client.post("/auth/login", json={"email": "dana@example.com", "password": "nope-nope"})
    assert bad.status_code == 401
    assert bad.headers["www-authenticate"] == "Bearer"
    assert bad.json() == {"detail": "Invalid email or password"}

    assert client.get("/auth/me").status_code == 401
    me = client.get("/auth/me", headers=headers)
    assert me.status_code == 200
    assert me.json()["id"] == account["id"]

    renamed = client.patch("/auth/me", json={"username": "danielle"}, headers=headers)
    assert renamed.json()["username"] == "danielle"

    assert client.post("/auth/logout", headers=headers).json() == {"status": "ok"}
    assert client.get("/auth/me", headers=headers).status_code == 401


def test_register_validation_error(client):
    resp = client.post("/auth/register", json={"email": "x@example.com", "username": "x", "password": "1"})
    assert resp.status_code == 400
    assert "Password" in resp.json()["detail"]


def test_users_listing(client):
    dana, dana_h = _signup(client, "dana")
    eli, _ = _signup(client, "eli")
    listed = client.get("/users", headers=dana_h).json()
    assert [u["id"] for u in listed] == [eli["id"]]
    assert client.get(f"/users/{eli['id']}", headers=dana_h).json()["username"] == "eli"
    assert client.get("/users/ghost", headers=dana_h).status_code == 404


def test_direct_messages_and_unread(client):
    dana, dana_h = _signup(client, "dana")
    eli, eli_h = _signup(client, "eli")

    sent = client.post(f"/conversations/direct/{eli['id']}/messages", json={"text": "hello eli"}, headers=dana_h)
    assert sent.status_code == 201
    key = sent.json()["conversation_id"]

    empty = client.post(f"/conversations/direct/{eli['id']}/messages", json={"text": " "}, headers=dana_h)
    assert empty.status_code == 400

    history = client.get(f"/conversations/direct/{dana['id']}/messages", headers=eli_h).json()
    assert [m["text"] for m in history] == ["hello eli"]
    assert client.get(f"/conversations/{key}/messages", headers=eli_h).json() == history

    summary = client.get("/unread", headers=eli_h).json()
    assert summary == {"conversations": [{"conversation_id": key, "kind": "direct", "unread": 1}], "total": 1}

    read = client.post(f"/unread/{key}/read", headers=eli_h).json()
    assert read["unread"] == 0
    assert client.get("/unread", headers=eli_h).json()["total"] == 0

    listed = client.get("/conversations", headers=eli_h).json()
    assert listed[0]["participant"]["id"] == dana["id"]
    assert listed[0]["last_message"]["text"] == "hello eli"


def test_opening_a_direct_chat_before_any_message(client):
    dana, dana_h = _signup(client, "dana")
    eli, _ = _signup(client, "eli")
    key = "_".join(sorted([dana["id"], eli["id"]]))
    resp = client.post(f"/unread/{key}/read", headers=dana_h)
    assert resp.status_code == 200
    assert resp.json()["unread"] == 0


def test_outsiders_cannot_read_or_delete(client):
    dana, dana_h = _signup(client, "dana")
    eli, _ = _signup(client, "eli")
    _, fay_h = _signup(client, "fay")
    msg = client.post(f"/conversations/direct/{eli['id']}/messages", json={"text": "psst"}, headers=dana_h).json()
    key = msg["conversation_id"]

    assert client.get(f"/conversations/{key}/messages", headers=fay_h).status_code == 403
    assert client.delete(f"/conversations/{key}/messages/{msg['id']}", headers=fay_h).status_code == 403
    assert client.post(f"/unread/{key}/read", headers=fay_h).status_code == 403

    assert client.delete(f"/conversations/{key}/messages/{msg['id']}", headers=dana_h).status_code == 200


def test_private_group_flow(client):
    dana, dana_h = _signup(client, "dana")
    eli, eli_h = _signup(client, "eli")

    created = client.post("/groups", json={"name": "vault", "visibility": "private", "password": "opensesame"},
                          headers=dana_h)
    assert created.status_code == 201
    gid = created.json()["id"]

    assert client.post(f"/groups/{gid}/join", json={"password": "wrong-one"}, headers=eli_h).status_code == 403
    assert client.post(f"/groups/{gid}/join", headers=eli_h).status_code == 403
    assert client.get(f"/groups/{gid}/messages", headers=eli_h).status_code == 403

    joined = client.post(f"/groups/{gid}/join", json={"password": "opensesame"}, headers=eli_h)
    assert joined.status_code == 200
    assert joined.json()["member_count"] == 2

    client.post(f"/groups/{gid}/messages", json={"text": "welcome"}, headers=dana_h)
    assert [m["text"] for m in client.get(f"/groups/{gid}/messages", headers=eli_h).json()] == ["welcome"]
    assert client.get("/unread", headers=eli_h).json()["total"] == 1
    assert client.post("/unread/mark-all-read", headers=eli_h).json()["status"] == "ok"

    assert client.delete(f"/groups/{gid}/members/{dana['id']}", headers=eli_h).status_code == 403
    left = client.post(f"/groups/{gid}/leave", headers=dana_h).json()
    assert left["promoted"] == eli["id"]
    assert client.post(f"/groups/{gid}/leave", headers=eli_h).json()["group_deleted"] is True
    assert client.get(f"/groups/{gid}", headers=eli_h).status_code == 404


def test_upload_and_fetch(client):
    _, headers = _signup(client, "dana")
    resp = client.post("/uploads", files={"file": ("pic.png", PNG, "image/png")}, headers=headers)
    assert resp.status_code == 201
    url = resp.json()["url"]
    fetched = client.get(url)
    assert fetched.status_code == 200
    assert fetched.content == PNG

    wrong = client.post("/uploads", files={"file": ("notes.txt", b"hi", "text/plain")}, headers=headers)
    assert wrong.status_code == 400
    assert client.post("/uploads", files={"file": ("pic.png", PNG, "image/png")}).status_code == 401
    assert client.get("/files/../secret.png").status_code == 404


def test_uploads_are_served_as_images_only(client):
    _, headers = _signup(client, "dana")
    resp = client.post("/uploads", files={"file": ("x.html", b"<script>alert(1)</script>", "image/png")},
                       headers=headers)
    assert resp.status_code == 201
    assert resp.json()["url"].endswith(".png")
    fetched = client.get(resp.json()["url"])
    assert fetched.headers["content-type"] == "image/png"


def test_sweep_presence_endpoint(client):
    _, headers = _signup(client, "dana")
    resp = client.post("/admin/sweep-presence", headers=headers)
    assert resp.json() == {"status": "ok", "offline": []}
