"""
tests/conftest.py
"""
from __future__ import annotations

import datetime as _dt
import itertools
from pathlib import Path
from typing import Generator

import pytest
from flask.testing import FlaskClient
from pytest import MonkeyPatch

# The single-file app lives here:
from opsmanual.manual import _create_user, app, get_db, init_db

CSRF = "test-token"


@pytest.fixture(scope="session")
def _tmp_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    """One temp file for the whole test session (faster than per-test)."""
    return tmp_path_factory.mktemp("data") / "test.sqlite3"


@pytest.fixture(scope="session", autouse=True)
def _configure_app(_tmp_db_path: Path) -> None:
    """
    Configure the Flask app *once* before the first test is collected.
    """
    app.config.update(
        TESTING=True,
        DATABASE=str(_tmp_db_path),
        # the test client talks plain http
        SESSION_COOKIE_SECURE=False,
    )
    with app.app_context():
        init_db()


@pytest.fixture(scope="session")
def users(_configure_app) -> dict[str, int]:
    """An admin and a plain reader, created once: ``{"admin": id, "reader": id}``."""
    with app.app_context():
        db = get_db()
        _create_user(db, username="boss", role="admin")
        _create_user(db, username="reader", role="user")
        ids = {
            r["username"]: r["id"]
            for r in db.execute("SELECT id, username FROM user")
        }
        return {"admin": ids["boss"], "reader": ids["reader"]}


@pytest.fixture(autouse=True)
def _no_r2(tmp_path: Path, monkeypatch: MonkeyPatch) -> None:
    """Object storage starts unconfigured; the real .env is never touched."""
    from opsmanual import manual

    monkeypatch.setattr(manual, "ENV_FILE", tmp_path / ".env")
    for key in manual.R2_ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def client() -> Generator[FlaskClient, None, None]:
    """
    Gives each test an isolated application context *and* test client.
    """
    with app.test_client() as client:
        with app.app_context():
            yield client


def sign_in(client: FlaskClient, user_id: int, role: str) -> None:
    with client.session_transaction() as sess:
        sess["user_id"] = user_id
        sess["role"] = role
        sess["csrf"] = CSRF


@pytest.fixture
def admin_client(client, users) -> FlaskClient:
    sign_in(client, users["admin"], "admin")
    return client


@pytest.fixture
def reader_client(client, users) -> FlaskClient:
    sign_in(client, users["reader"], "user")
    return client


@pytest.fixture(autouse=True, scope="session")
def _ticking_clock():
    """
    Patch opsmanual.manual.utc_now for the whole test session so every call
    returns an ever-increasing timestamp.
    """
    from opsmanual import manual  # import here to avoid early import

    counter = itertools.count()  # 0, 1, 2, …

    base = _dt.datetime(2099, 1, 1, tzinfo=_dt.timezone.utc)

    def _fake_now():
        return base + _dt.timedelta(seconds=next(counter))

    mp = MonkeyPatch()
    mp.setattr(manual, "utc_now", _fake_now)

    yield  # tests run here

    mp.undo()
