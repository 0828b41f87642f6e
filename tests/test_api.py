import pytest
from fastapi.testclient import TestClient
from sqlalchemy import func, select

from conftest import MemoryStorage, ScriptedInvoker, rate_limit_error
from snapkit.db import get_db
from snapkit.main import app, get_invoker
from snapkit.models import Generation, Image, Profile
from snapkit.services.ledger import UsageLedger
from snapkit.storage import get_storage


@pytest.fixture
def wiring(session_factory, kit):
    state = {"storage": MemoryStorage(), "invoker": ScriptedInvoker(kit)}

    def _db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _db
    app.dependency_overrides[get_storage] = lambda: state["storage"]
    app.dependency_overrides[get_invoker] = lambda: state["invoker"]
    yield state
    app.dependency_overrides.clear()


@pytest.fixture
def client(wiring):
    return TestClient(app)


def signup(client, username="ana"):
    r = client.post("/register", data={"username": username, "password": "pw-123456"})
    assert r.status_code == 200, r.text
    return r.json()["id"]


def upload(client, png_bytes, **form):
    data = {"tone": "playful", "platforms": "Instagram,TikTok", "include_emoji": "true", "language": "English"}
    data.update(form)
    return client.post("/generate", data=data, files={"file": ("latte.png", png_bytes, "image/png")})


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_requires_login(client, png_bytes):
    assert client.get("/history").status_code == 401
    assert upload(client, png_bytes).status_code == 401


def test_register_login_logout(client):
    signup(client)
    client.post("/logout")
    assert client.get("/me/stats").status_code == 401

    bad = client.post("/login", data={"username": "ana", "password": "wrong"})
    assert bad.status_code == 401

    good = client.post("/login", data={"username": "ana", "password": "pw-123456"})
    assert good.status_code == 200
    assert client.get("/me/stats").json()["remaining"] == 3


def test_duplicate_username(client):
    signup(client)
    r = client.post("/register", data={"username": "ana", "password": "other"})
    assert r.status_code == 409


def test_generate_on_free_tier(client, db, pool_keys, png_bytes, wiring):
    uid = signup(client)

    r = upload(client, png_bytes)

    assert r.status_code == 200, r.text
    body = r.json()
    assert body["api_key_source"] == "pool"
    assert body["free_generations_remaining"] == 2
    assert body["result"]["analysis"]["mood"] == "cozy"
    assert UsageLedger(db).snapshot(uid).used == 1
    assert len(wiring["storage"].files) == 1


def test_quota_exhausted_response(client, db, pool_keys, png_bytes, wiring):
    signup(client)
    for _ in range(3):
        assert upload(client, png_bytes).status_code == 200

    r = upload(client, png_bytes)

    assert r.status_code == 403
    body = r.json()
    assert body["error"] == "free_tier_exhausted"
    assert body["free_generations_used"] == 3
    assert len(wiring["invoker"].calls) == 3


def test_own_key_route(client, png_bytes, wiring):
    signup(client)
    assert client.put("/me/api-key", json={"api_key": "my-gemini-key-42"}).json() == {"has_own_key": True}

    r = upload(client, png_bytes)
    assert r.json()["api_key_source"] == "own"
    assert wiring["invoker"].calls == ["my-gemini-key-42"]

    stats = client.get("/me/stats").json()
    assert stats["used"] == 0
    assert stats["has_own_key"] is True

    client.delete("/me/api-key")
    assert client.get("/me/stats").json()["has_own_key"] is False


def test_exhausted_rotation_is_transient_error(client, pool_keys, png_bytes, wiring):
    signup(client)
    wiring["invoker"] = ScriptedInvoker(rate_limit_error())

    r = upload(client, png_bytes)

    assert r.status_code == 503
    assert r.json()["error"] == "rate_limited"
    assert len(wiring["invoker"].calls) == 3


def test_no_pool_is_service_busy(client, png_bytes):
    signup(client)
    r = upload(client, png_bytes)
    assert r.status_code == 503
    assert r.json()["error"] == "service_busy"


def test_rejects_non_image(client, pool_keys):
    signup(client)
    r = client.post("/generate", data={"tone": "playful"}, files={"file": ("notes.txt", b"hello", "text/plain")})
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_upload"


def test_rejects_unknown_tone(client, pool_keys, png_bytes, wiring):
    signup(client)
    r = upload(client, png_bytes, tone="angry")
    assert r.status_code == 422
    assert wiring["invoker"].calls == []


def test_history_and_delete(client, pool_keys, png_bytes, wiring):
    signup(client)
    first = upload(client, png_bytes).json()["id"]
    second = upload(client, png_bytes).json()["id"]

    history = client.get("/history").json()
    assert [h["id"] for h in history] == [second, first]
    assert history[0]["inputs"]["platforms"] == ["Instagram", "TikTok"]
    assert client.get(f"/generation/{first}").json()["api_key_source"] == "pool"

    assert client.delete(f"/generation/{first}").json() == {"success": True}
    assert [h["id"] for h in client.get("/history").json()] == [second]
    assert len(wiring["storage"].deleted) == 1
    assert client.delete(f"/generation/{first}").status_code == 404


def test_cannot_delete_someone_elses_generation(client, pool_keys, png_bytes):
    signup(client, "owner")
    record_id = upload(client, png_bytes).json()["id"]
    client.post("/logout")

    signup(client, "intruder")
    r = client.delete(f"/generation/{record_id}")
    assert r.status_code == 403
    assert client.get(f"/generation/{record_id}").status_code == 403

    client.post("/logout")
    client.post("/login", data={"username": "owner", "password": "pw-123456"})
    assert [h["id"] for h in client.get("/history").json()] == [record_id]


def test_delete_account(client, db, pool_keys, png_bytes, wiring):
    uid = signup(client)
    upload(client, png_bytes)
    upload(client, png_bytes)

    assert client.delete("/me").json() == {"success": True}

    assert sorted(wiring["storage"].deleted) == ["img-1", "img-2"]
    assert wiring["storage"].files == {}
    assert client.get("/me/stats").status_code == 401
    assert db.scalar(select(func.count()).select_from(Generation)) == 0
    assert db.scalar(select(func.count()).select_from(Image)) == 0
    assert db.get(Profile, uid) is None
    bad = client.post("/login", data={"username": "ana", "password": "pw-123456"})
    assert bad.status_code == 401
    assert client.delete("/me").status_code == 401
