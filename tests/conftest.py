import threading
import time

import pytest

from auth_service import create_app
from auth_service.models import db
from auth_service.notifier import Notifier

ACCESS_SECRET = "test-access-secret"
REFRESH_SECRET = "test-refresh-secret"

TEST_CONFIG = {
    "TESTING": True,
    "SQLALCHEMY_DATABASE_URI": "sqlite://",
    "JWT_SECRET_KEY": ACCESS_SECRET,
    "JWT_REFRESH_SECRET": REFRESH_SECRET,
    "PASSWORD_HASH_METHOD": "pbkdf2:sha256:1000",
    "APP_ENV": "testing",
    "REFRESH_COOKIE_SECURE": False,
    "EMAIL_PROVIDER": "log",
}


class RecordingNotifier(Notifier):
    """Keeps every notification instead of sending it."""

    def __init__(self):
        super().__init__("http://frontend.test")
        self.sent = []
        self.failing = set()
        self._lock = threading.Lock()

    def _record(self, kind, to, token=None):
        with self._lock:
            self.sent.append({"kind": kind, "to": to, "token": token})
        return kind not in self.failing

    def send_verification_email(self, to, token, name="User"):
        return self._record("verification", to, token)

    def send_reset_email(self, to, token, name="User"):
        return self._record("reset", to, token)

    def send_login_success_email(self, to, name="User"):
        return self._record("login", to)

    def send_password_reset_success_email(self, to, name="User"):
        return self._record("reset_success", to)

    def of_kind(self, kind, to=None):
        with self._lock:
            return [m for m in self.sent
                    if m["kind"] == kind and (to is None or m["to"] == to)]

    def last_token(self, kind, to=None):
        return self.of_kind(kind, to)[-1]["token"]

    def wait_for(self, kind, to=None, timeout=2.0):
        """Login and reset-success emails go out on a background thread."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if self.of_kind(kind, to):
                return True
            time.sleep(0.01)
        return False


@pytest.fixture(autouse=True)
def no_admin_env(monkeypatch):
    monkeypatch.delenv("ADMIN_EMAIL", raising=False)
    monkeypatch.delenv("ADMIN_PASSWORD", raising=False)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def app(notifier):
    app = create_app(dict(TEST_CONFIG), notifier=notifier)
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def ctx(app):
    with app.app_context():
        yield app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth(ctx):
    return ctx.extensions["auth_service"]


@pytest.fixture
def register(client):
    def _register(name="Ann", email="ann@x.com", password="secret1"):
        return client.post("/auth/register", json={
            "name": name, "email": email, "password": password
        })
    return _register


@pytest.fixture
def login(client):
    def _login(email="ann@x.com", password="secret1"):
        return client.post("/auth/login", json={"email": email, "password": password},
                           headers={"User-Agent": "pytest-browser"})
    return _login
