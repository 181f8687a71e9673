"""
tests/test_auth.py
"""
from __future__ import annotations

import itertools
import time
from contextlib import contextmanager
from typing import Iterator

from flask.testing import FlaskClient

from opsmanual.manual import (
    _create_user,
    _rotate_token,
    app,
    get_db,
    signer,
    validate_token,
)

USERNAME = "token-tester"


# ───────────────────────── helpers ────────────────────────────────────
def _fresh_token() -> str:
    """Return a valid one-time login token, creating the account if needed."""
    with app.app_context():
        db = get_db()
        if not db.execute("SELECT 1 FROM user WHERE username=?", (USERNAME,)).fetchone():
            return _create_user(db, username=USERNAME, role="user")
        return _rotate_token(db, USERNAME)


_ip_counter = itertools.count(1)


@contextmanager
def _new_client() -> Iterator[FlaskClient]:
    """
    A brand-new test client with its own REMOTE_ADDR, so the rate limit
    (keyed by IP) never bleeds between tests.
    """
    ip = f"10.0.0.{next(_ip_counter)}"
    with app.test_client() as c, app.app_context():
        c.environ_base["REMOTE_ADDR"] = ip
        yield c


def _login(client, token: str, follow=True):
    return client.post("/login", data={"token": token}, follow_redirects=follow)


def _signed_in(client) -> bool:
    with client.session_transaction() as sess:
        return "user_id" in sess


# ───────────────────────── tests ──────────────────────────────────────
def test_successful_login_sets_session():
    token = _fresh_token()
    with _new_client() as c:
        rv = _login(c, token, follow=False)
        assert rv.status_code == 302
        with c.session_transaction() as sess:
            assert sess["role"] == "user"
            assert sess["csrf"]
        row = get_db().execute(
            "SELECT id, last_signed_in FROM user WHERE username=?", (USERNAME,)
        ).fetchone()
        assert row["last_signed_in"]
        with c.session_transaction() as sess:
            assert sess["user_id"] == row["id"]


def test_token_expired(monkeypatch):
    tok = _fresh_token()

    # jump 70 s into the future (tokens live for 60 s)
    later = time.time() + 70
    monkeypatch.setattr(time, "time", lambda: later)

    with _new_client() as c:
        rv = _login(c, tok, follow=False)
        assert rv.status_code == 200
        assert not _signed_in(c)


def test_token_forged():
    bad = signer.sign("1:evil-handle").decode()[:-1] + "x"  # break the sig

    with _new_client() as c:
        rv = _login(c, bad, follow=False)
        assert rv.status_code == 200
        assert not _signed_in(c)


def test_validly_signed_but_unknown_handle_is_rejected():
    good = _fresh_token()
    uid = signer.unsign(good).decode().split(":", 1)[0]
    with app.app_context():
        assert validate_token(good) is not None
        assert validate_token(signer.sign(f"{uid}:not-the-handle").decode()) is None


def test_token_is_burned_after_login():
    tok = _fresh_token()

    with _new_client() as c1:
        assert _login(c1, tok, follow=False).status_code == 302

    with _new_client() as c2:
        rv2 = _login(c2, tok, follow=False)
        assert rv2.status_code == 200
        assert not _signed_in(c2)


def test_rotate_token_invalidates_old_one():
    old = _fresh_token()
    new = _fresh_token()

    with _new_client() as c:
        _login(c, old, follow=False)
        assert not _signed_in(c)

    with _new_client() as c:
        _login(c, new, follow=False)
        assert _signed_in(c)


def test_login_rate_limit():
    forged = signer.sign("nope").decode()[:-1] + "x"

    with _new_client() as c:
        # 5 bogus attempts are allowed
        for _ in range(5):
            assert _login(c, forged, follow=False).status_code == 200

        # 6th → 429 Too Many Requests
        resp = _login(c, forged, follow=False)
        assert resp.status_code == 429
        assert "Retry-After" in resp.headers
        assert b"Too many requests" in resp.data


def test_logout_clears_session():
    tok = _fresh_token()
    with _new_client() as c:
        _login(c, tok, follow=False)
        assert _signed_in(c)
        c.get("/logout")
        assert not _signed_in(c)


def test_csrf_required_for_signed_in_posts(reader_client):
    rv = reader_client.post(
        "/api/files.delete", json={"fileId": 1}
    )
    assert rv.status_code == 403
    assert rv.get_json()["error"]["code"] == "FORBIDDEN"


# ───────────────────────── CLI ────────────────────────────────────────
def test_cli_add_user_prints_token():
    runner = app.test_cli_runner()
    result = runner.invoke(args=["add-user", "--username", "cli-reader", "--role", "user"])
    assert result.exit_code == 0
    assert "One-time login token" in result.output

    again = runner.invoke(args=["add-user", "--username", "cli-reader"])
    assert again.exit_code != 0
    assert "already exists" in again.output


def test_cli_token_for_unknown_user_fails():
    runner = app.test_cli_runner()
    result = runner.invoke(args=["token", "--username", "nobody-here"])
    assert result.exit_code != 0
    assert "No such user" in result.output
