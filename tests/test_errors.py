"""
tests/test_errors.py
"""
from __future__ import annotations

from opsmanual.manual import PROCEDURES, app


def test_404_custom_page(client):
    """
    Any unknown URL yields the themed “Page not found” template.
    """
    resp = client.get("/this/route/does/not/exist")
    assert resp.status_code == 404
    # sanity-check that we really rendered *our* template, not Werkzeug’s
    assert b"Page not found" in resp.data
    assert b"opsmanual v" in resp.data


def test_404_under_api_is_json(client):
    resp = client.get("/api/too/deep")
    assert resp.status_code == 404
    assert resp.get_json() == {"error": {"code": "NOT_FOUND", "message": "Not found."}}


def test_500_handler_renders_friendly_page(client, monkeypatch):
    """
    Temporarily replace ``index`` with a view that crashes, but disable
    exception propagation so the global 500-handler can render the page.
    """

    def _boom():
        raise RuntimeError("kaboom!")

    # ➊ monkey-patch the failing view
    monkeypatch.setitem(app.view_functions, "index", _boom)

    # ➋ turn *off* propagation just for this test
    monkeypatch.setitem(app.config, "PROPAGATE_EXCEPTIONS", False)

    resp = client.get("/")
    assert resp.status_code == 500
    assert b"Internal Server Error" in resp.data


def test_500_inside_procedure_is_json(client, monkeypatch):
    def _boom():
        raise RuntimeError("kaboom!")

    monkeypatch.setitem(
        PROCEDURES,
        "manual.getCategories",
        dict(PROCEDURES["manual.getCategories"], fn=_boom),
    )
    monkeypatch.setitem(app.config, "PROPAGATE_EXCEPTIONS", False)

    resp = client.get("/api/manual.getCategories")
    assert resp.status_code == 500
    assert resp.get_json()["error"]["code"] == "INTERNAL_SERVER_ERROR"


def test_security_headers(client):
    resp = client.get("/robots.txt")
    assert resp.headers["X-Frame-Options"] == "DENY"
    assert resp.headers["X-Content-Type-Options"] == "nosniff"
    assert b"Disallow: /api/" in resp.data


def test_validation_details_are_listed(client):
    resp = client.get("/api/manual.getItem", query_string={"id": "seven"})
    assert resp.status_code == 400
    err = resp.get_json()["error"]
    assert err["message"] == "Invalid input."
    assert err["details"][0]["loc"] == ["id"]
    assert err["details"][0]["type"] == "int_parsing"
