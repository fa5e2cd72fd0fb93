import time

import pytest
import requests

from client import PortfolioClient, QueryCache, RelayClient, TokenStore, apply_relay_event, detail_key, list_key
from config import Settings
from conftest import ADMIN_EMAIL, ADMIN_PASSWORD, USER_EMAIL, USER_PASSWORD, auth, free_port
from errors import (
    AuthenticationError,
    AuthorizationError,
    NetworkError,
    NotFoundError,
    RequestTimeout,
    ServerError,
    ValidationError,
)
from relay import RelayEvent
from security import create_access_token

PROJECT = {
    "title": "Client",
    "description": "Made through the client",
    "imageUrl": "https://img.portfolio.dev/c.png",
    "technologies": ["Python"],
}


@pytest.fixture
def store(tmp_path):
    return TokenStore(str(tmp_path / "tokens.json"))


@pytest.fixture
def api(client, store):
    return PortfolioClient("http://testserver", session=client, token_store=store)


class FakeResponse:
    def __init__(self, status_code, body=None):
        self.status_code = status_code
        self.body = body if body is not None else {}

    def json(self):
        return self.body


class ScriptedSession:
    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url))
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


# ======
# Tokens
# ======
def test_login_persists_tokens(api, store):
    user = api.login(ADMIN_EMAIL, ADMIN_PASSWORD)
    assert user["role"] == "admin"

    reloaded = TokenStore(store.path)
    assert reloaded.access_token == store.access_token
    assert reloaded.refresh_token
    assert reloaded.is_authenticated
    assert reloaded.current_role == "admin"


def test_token_store_reports_expired_tokens():
    settings = Settings(access_token_expire_minutes=-1)
    store = TokenStore(access_key="jwt", refresh_key="jwtRefresh")
    store.save(create_access_token(settings, {"_id": "5f0000000000000000000000", "role": "admin"}))
    assert store.access_token
    assert not store.is_authenticated
    assert store.current_role is None

    store.save("not-a-jwt")
    assert not store.is_authenticated

    store.clear()
    assert store.access_token is None


def test_logout_clears_tokens(api, store):
    api.login(ADMIN_EMAIL, ADMIN_PASSWORD)
    api.logout()
    assert store.access_token is None
    assert not TokenStore(store.path).is_authenticated


# =====
# Cache
# =====
def test_reads_are_cached_until_a_write(api, db):
    api.login(ADMIN_EMAIL, ADMIN_PASSWORD)
    assert api.list("skills") == []

    db["skills"].insert_one({"name": "Sneaky", "category": "other"})
    assert api.list("skills") == []

    created = api.create("skills", {"name": "Go", "category": "backend"})
    names = [s["name"] for s in api.list("skills")]
    assert sorted(names) == ["Go", "Sneaky"]

    assert api.get("skills", created["id"])["name"] == "Go"
    api.update("skills", created["id"], {"level": "Expert"})
    assert api.get("skills", created["id"])["level"] == "Expert"

    api.delete("skills", created["id"])
    assert [s["name"] for s in api.list("skills")] == ["Sneaky"]


def test_cache_entries_go_stale():
    now = [0.0]
    cache = QueryCache(stale_after=300, clock=lambda: now[0])
    cache.set(list_key("skills"), [1])
    now[0] = 299
    assert cache.get(list_key("skills")) == [1]
    now[0] = 300
    assert cache.get(list_key("skills")) is None


def test_unknown_resource_is_refused(api):
    with pytest.raises(ValueError):
        api.list("posts")


# ======
# Errors
# ======
def test_status_codes_map_to_error_types(api, client, user):
    with pytest.raises(NotFoundError):
        api.get("projects", "5f0000000000000000000000")
    with pytest.raises(AuthenticationError):
        api.create("projects", PROJECT)

    api.login(USER_EMAIL, USER_PASSWORD)
    with pytest.raises(AuthorizationError):
        api.create("projects", PROJECT)

    api.login(ADMIN_EMAIL, ADMIN_PASSWORD)
    with pytest.raises(ValidationError) as exc:
        api.create("skills", {"name": "Go", "category": "cooking"})
    assert exc.value.status_code == 422
    assert "category" in exc.value.errors


def test_wrong_password_raises_authentication_error(api, store):
    with pytest.raises(AuthenticationError) as exc:
        api.login(ADMIN_EMAIL, "Wrong1234!")
    assert exc.value.message == "Invalid credentials"
    assert store.access_token is None


def test_silent_refresh_after_401(api, store):
    api.login(ADMIN_EMAIL, ADMIN_PASSWORD)
    store.save("expired-or-forged", store.refresh_token)

    assert api.me()["email"] == ADMIN_EMAIL
    assert store.access_token != "expired-or-forged"


def test_failed_refresh_logs_out(api, store):
    api.login(ADMIN_EMAIL, ADMIN_PASSWORD)
    store.save("expired-or-forged", "not-a-refresh-token")

    with pytest.raises(AuthenticationError):
        api.me()
    assert store.access_token is None
    assert store.refresh_token is None


def test_reads_retry_on_timeouts_then_give_up():
    session = ScriptedSession(requests.Timeout(), requests.Timeout(), requests.Timeout())
    api = PortfolioClient("http://api.local", session=session, read_retries=2)
    with pytest.raises(RequestTimeout):
        api.list("projects")
    assert len(session.calls) == 3


def test_reads_retry_on_server_errors():
    session = ScriptedSession(FakeResponse(503), FakeResponse(200, {"success": True, "data": [{"id": "1"}]}))
    api = PortfolioClient("http://api.local", session=session)
    assert api.list("projects") == [{"id": "1"}]
    assert len(session.calls) == 2


def test_writes_are_never_retried():
    session = ScriptedSession(requests.ConnectionError("refused"))
    api = PortfolioClient("http://api.local", session=session)
    with pytest.raises(NetworkError):
        api.create("skills", {"name": "Go", "category": "backend"})
    assert len(session.calls) == 1

    session = ScriptedSession(FakeResponse(500, {"success": False, "message": "boom"}))
    api = PortfolioClient("http://api.local", session=session)
    with pytest.raises(ServerError) as exc:
        api.delete("skills", "1")
    assert exc.value.message == "boom"
    assert len(session.calls) == 1


def test_upload_returns_relative_url(api):
    api.login(ADMIN_EMAIL, ADMIN_PASSWORD)
    url = api.upload("images", "a.png", b"\x89PNG\r\n\x1a\n", "image/png")
    assert url.startswith("/uploads/images/")
    assert api.file_url(url) == f"http://testserver{url}"


# ============
# Relay events
# ============
def relay_payload(event, data):
    return {"type": event, "data": data, "timestamp": "t", "userId": "u"}


def test_relay_events_patch_the_project_cache():
    cache = QueryCache()
    cache.set(list_key("projects"), [{"id": "a", "title": "A"}])
    cache.set(list_key("projects", {"featured": True}), [])
    cache.set(detail_key("projects", "a"), {"id": "a", "title": "A"})

    assert apply_relay_event(cache, "project:created", relay_payload("project:created", {"id": "b", "title": "B"}))
    assert [p["id"] for p in cache.get(list_key("projects"))] == ["b", "a"]
    assert cache.get(list_key("projects", {"featured": True})) is None

    update = {"old": {"id": "a"}, "new": {"id": "a", "title": "A2"}}
    apply_relay_event(cache, RelayEvent.PROJECT_UPDATED, relay_payload("project:updated", update))
    assert cache.get(list_key("projects"))[1]["title"] == "A2"
    assert cache.get(detail_key("projects", "a"))["title"] == "A2"

    apply_relay_event(cache, RelayEvent.PROJECT_DELETED, relay_payload("project:deleted", {"id": "a"}))
    assert [p["id"] for p in cache.get(list_key("projects"))] == ["b"]
    assert cache.get(detail_key("projects", "a")) is None

    apply_relay_event(cache, "project:archived", relay_payload("project:archived", {"id": "b"}))
    assert cache.get(list_key("projects")) is None

    assert not apply_relay_event(cache, RelayEvent.ROOM_JOINED, {"room": "projects"})


def test_created_event_keeps_the_server_order(api, client, admin_token):
    first = client.post("/api/v1/projects", json=dict(PROJECT, title="First"), headers=auth(admin_token)).json()
    api.list("projects")
    time.sleep(0.01)  # createdAt has millisecond resolution

    second = client.post("/api/v1/projects", json=dict(PROJECT, title="Second"), headers=auth(admin_token)).json()
    apply_relay_event(api.cache, RelayEvent.PROJECT_CREATED, relay_payload("project:created", second["data"]))

    server = [p["id"] for p in client.get("/api/v1/projects").json()["data"]]
    assert [p["id"] for p in api.cache.get(list_key("projects"))] == server
    assert server == [second["data"]["id"], first["data"]["id"]]


def test_handlers_are_checked_against_known_events():
    relay = RelayClient("http://api.local")
    with pytest.raises(ValueError):
        relay.on("project:archived", print)
    relay.on(RelayEvent.PROJECT_CREATED, print)
    relay.off("project:created", print)


def test_lifecycle_handlers_are_dispatched():
    relay = RelayClient("http://api.local")
    seen = []
    relay.on("connect_error", lambda data: seen.append(("connect_error", data)))
    relay.on("disconnect", lambda data: seen.append(("disconnect", data)))

    relay._on_connect_error({"message": "Relay is reserved to administrators"})
    relay._on_connect_error()
    relay._on_disconnect("io server disconnect")

    assert seen == [
        ("connect_error", {"message": "Relay is reserved to administrators"}),
        ("connect_error", {"message": "Connection failed"}),
        ("disconnect", {"reason": "io server disconnect"}),
    ]


def test_reconnection_is_bounded():
    relay = RelayClient("http://api.local")
    assert relay.sio.reconnection is True
    assert relay.sio.reconnection_attempts == 5
    assert relay.sio.reconnection_delay == 1.0
    assert relay.sio.reconnection_delay_max == 5.0


def test_rooms_are_remembered_while_offline():
    relay = RelayClient("http://api.local")
    relay.join_room("projects")
    relay.join_room("drafts")
    relay.leave_room("drafts")
    assert relay.rooms == {"projects"}
    assert not relay.connected


def test_connect_to_a_dead_server_retries_then_raises_network_error():
    relay = RelayClient(
        f"http://127.0.0.1:{free_port()}", reconnection_attempts=2, reconnection_delay=0.05, reconnection_delay_max=0.1
    )
    errors = []
    relay.on("connect_error", errors.append)
    with pytest.raises(NetworkError):
        relay.connect()
    assert errors
    assert all(e["message"] for e in errors)
    assert not relay.connected
