import os

# muss vor dem ersten Import von settings/db passieren
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["JWT_SECRET"] = "test-secret-not-for-production-use"
os.environ["CALL_RING_TIMEOUT"] = "0"
os.environ["ADMIN_USERNAME"] = "Admin01"
os.environ["ADMIN_PASSWORD"] = "adminpass"

import pytest
from fastapi.testclient import TestClient

from db import Base, SessionLocal, engine, init_db
from models import User


@pytest.fixture()
def db():
    Base.metadata.drop_all(bind=engine)
    init_db()
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def make_user(db):
    def _make(username, is_admin=False):
        user = User(username=username, password_hash="x", public_key="", is_admin=is_admin)
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture()
def client():
    import main
    from calls import CallRelay

    Base.metadata.drop_all(bind=engine)
    main.gateway.calls = CallRelay()
    main.manager.active_connections.clear()
    with TestClient(main.app) as c:
        yield c


@pytest.fixture()
def login(client):
    def _login(username, password="secret123"):
        if username != os.environ["ADMIN_USERNAME"]:
            client.post("/api/register", json={"username": username, "password": password})
        else:
            password = os.environ["ADMIN_PASSWORD"]
        r = client.post("/api/login", json={"username": username, "password": password})
        assert r.status_code == 200, r.text
        return r.json()["access_token"]

    return _login
