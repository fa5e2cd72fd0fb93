import re
import socket
import threading
import time
from types import SimpleNamespace

import mongomock
import pytest
import uvicorn
from fastapi.testclient import TestClient

from config import Settings
from database import create_document
from mailer import Mailer
from main import create_app
from relay import asgi_app
from security import create_access_token, hash_password

ADMIN_EMAIL = "admin@portfolio.dev"
ADMIN_PASSWORD = "Admin123!"
USER_EMAIL = "jane@mail.com"
USER_PASSWORD = "Jane1234!"


class RecordingMailer(Mailer):
    """Keeps messages in memory instead of talking to an SMTP server."""

    def __init__(self, settings):
        super().__init__(settings)
        self.outbox = []
        self.fail = False

    @property
    def configured(self):
        return True

    def deliver(self, message):
        if self.fail:
            return False
        self.outbox.append(message)
        return True

    def last_token(self):
        body = self.outbox[-1].get_body(("plain",)).get_content()
        return re.search(r"token=([0-9a-f]+)", body).group(1)


def auth(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def settings(tmp_path):
    return Settings(
        environment="test",
        log_level="WARNING",
        upload_dir=str(tmp_path / "uploads"),
        max_upload_size=1024 * 1024,
        admin_email=ADMIN_EMAIL,
        admin_password=ADMIN_PASSWORD,
        contact_recipient="owner@portfolio.dev",
        client_url="http://client.local",
    )


@pytest.fixture
def db():
    return mongomock.MongoClient()["portfolio_test"]


@pytest.fixture
def mailer(settings):
    return RecordingMailer(settings)


@pytest.fixture
def app(settings, db, mailer):
    return create_app(settings, db=db, mailer=mailer)


@pytest.fixture
def client(app):
    # entering the client runs the lifespan (indexes, admin seed) and keeps one
    # event loop for HTTP and WebSocket sessions
    with TestClient(app) as c:
        yield c


@pytest.fixture
def admin(client, db):
    return db["users"].find_one({"email": ADMIN_EMAIL})


@pytest.fixture
def admin_token(settings, admin):
    return create_access_token(settings, admin)


@pytest.fixture
def user(db):
    return create_document(
        db,
        "users",
        {
            "firstName": "Jane",
            "lastName": "Doe",
            "email": USER_EMAIL,
            "password": hash_password(USER_PASSWORD),
            "role": "user",
            "status": "active",
            "isEmailVerified": True,
            "loginAttempts": 0,
        },
    )


@pytest.fixture
def user_token(settings, user):
    return create_access_token(settings, user)


def free_port():
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def live_server(settings, db, mailer):
    """API and relay served by uvicorn on a real port; the relay needs a real socket."""
    port = free_port()
    url = f"http://127.0.0.1:{port}"
    app = create_app(settings.model_copy(update={"api_url": url}), db=db, mailer=mailer)
    config = uvicorn.Config(asgi_app(app), host="127.0.0.1", port=port, log_level="warning", lifespan="on")
    server = uvicorn.Server(config)
    thread = threading.Thread(target=server.run, daemon=True)
    thread.start()
    deadline = time.monotonic() + 10
    while not server.started:
        if time.monotonic() > deadline:
            raise RuntimeError("uvicorn did not start")
        time.sleep(0.05)
    yield SimpleNamespace(url=url, app=app, relay=app.state.context.relay)
    server.should_exit = True
    thread.join(timeout=10)
