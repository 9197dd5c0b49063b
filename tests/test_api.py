def test_register_and_login(client):
    r = client.post("/api/register", json={"username": "alice", "password": "secret123", "publicKey": "pk"})
    assert r.status_code == 200
    assert r.json() == {"ok": True}

    r = client.post("/api/login", json={"username": "alice", "password": "secret123"})
    assert r.status_code == 200
    body = r.json()
    assert body["username"] == "alice"
    assert body["token_type"] == "bearer"

    me = client.get("/api/me", params={"token": body["access_token"]})
    assert me.status_code == 200
    assert me.json()["username"] == "alice"
    assert me.json()["public_key"] == "pk"


def test_register_duplicate_and_invalid(client):
    client.post("/api/register", json={"username": "alice", "password": "secret123"})
    assert client.post("/api/register", json={"username": "alice", "password": "x"}).status_code == 409
    assert client.post("/api/register", json={"username": "a b", "password": "x"}).status_code == 400
    assert client.post("/api/register", json={"username": "settings_bot", "password": "x"}).status_code == 400
    assert client.post("/api/register", json={"username": "Admin01", "password": "x"}).status_code == 400
    assert client.post("/api/register", json={"username": "bob", "password": ""}).status_code == 400


def test_login_wrong_password(client):
    client.post("/api/register", json={"username": "alice", "password": "secret123"})
    r = client.post("/api/login", json={"username": "alice", "password": "nope"})
    assert r.status_code == 401
    assert client.post("/api/login", json={"username": "ghost", "password": "nope"}).status_code == 401


def test_admin_created_on_startup(client, login):
    token = login("Admin01")
    assert client.get("/api/me", params={"token": token}).json()["is_admin"] is True


def test_messages_require_token(client):
    assert client.get("/api/messages/settings").status_code == 401
    assert client.get("/api/messages/settings", params={"token": "garbage"}).status_code == 401


def test_tickets_history_is_admin_only(client, login):
    alice = login("alice")
    admin = login("Admin01")
    assert client.get("/api/messages/tickets", params={"token": alice}).status_code == 403
    r = client.get("/api/messages/tickets", params={"token": admin})
    assert r.status_code == 200
    assert r.json() == []


def test_groups_listing(client, login):
    token = login("alice")
    with client.websocket_connect(f"/ws?token={token}") as ws:
        ws.send_json({"type": "send_message", "chat": "settings", "text": "/create_group devs"})
        ws.receive_json()
        ws.receive_json()
    assert client.get("/api/groups").json() == [{"name": "devs"}]


def test_health(client):
    assert client.get("/health").json() == {"ok": True}
