"""
tests/test_auth_redirect.py -- Integration tests for the authentication gate.

These tests exercise the gate middleware end-to-end through the real ASGI
stack using the web_client fixture (follow_redirects=False). We assert on
redirect Location headers directly -- following the redirect would hide them.

Coverage:
  - Public allow-set: served without any credential check
  - Unauthenticated browser requests -> 302 /login?next={path}
  - Unauthenticated API requests -> 401 JSON envelope
  - Idle session -> 302 /login?next=&expired=true, only once
  - Authenticated requests pass through (200, no redirect)
  - Store outage -> 503, never a login redirect
  - Security: next= param is always a relative path (open-redirect prevention)
"""

from __future__ import annotations

from typing import TYPE_CHECKING
from urllib.parse import parse_qs, urlparse

from sqlalchemy import text

if TYPE_CHECKING:
    from conftest import WebHarness


def _query(location: str) -> dict[str, list[str]]:
    return parse_qs(urlparse(location).query)


class TestPublicPaths:
    def test_login_page_is_public(self, web_client: WebHarness) -> None:
        resp = web_client.client.get("/login")
        assert resp.status_code == 200
        assert 'name="username"' in resp.text

    def test_register_page_is_public(self, web_client: WebHarness) -> None:
        assert web_client.client.get("/register").status_code == 200

    def test_static_assets_are_public(self, web_client: WebHarness) -> None:
        resp = web_client.client.get("/static/site.css")
        assert resp.status_code == 200

    def test_unrouted_public_path_is_not_redirected(self, web_client: WebHarness) -> None:
        """/favicon.ico is in the allow-set; with no route behind it the answer is 404, not a login redirect."""
        resp = web_client.client.get("/favicon.ico")
        assert resp.status_code == 404

    def test_public_path_ignores_garbage_remember_me_cookie(self, web_client: WebHarness) -> None:
        browser = web_client.browser()
        browser.cookies.set("remember-me", "not-a-real-token")
        resp = browser.get("/login")
        assert resp.status_code == 200


class TestAuthRedirectChain:
    def test_unauthenticated_redirects_to_login(self, web_client: WebHarness) -> None:
        """GET /user with no cookies must redirect 302 to /login?next=/user."""
        resp = web_client.client.get("/user")
        assert resp.status_code == 302
        location = resp.headers["location"]
        assert location.startswith("/login?")
        assert _query(location) == {"next": ["/user"]}

    def test_unknown_protected_path_redirects(self, web_client: WebHarness) -> None:
        """Anything outside the allow-set is protected, routed or not."""
        resp = web_client.client.get("/admin/settings")
        assert resp.status_code == 302
        assert _query(resp.headers["location"])["next"] == ["/admin/settings"]

    def test_root_is_protected(self, web_client: WebHarness) -> None:
        resp = web_client.client.get("/")
        assert resp.status_code == 302
        assert resp.headers["location"].startswith("/login")

    def test_api_unauthenticated_gets_401(self, web_client: WebHarness) -> None:
        resp = web_client.client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_authenticated_no_redirect(self, web_client: WebHarness) -> None:
        web_client.login()
        resp = web_client.client.get("/user")
        assert resp.status_code == 200
        assert "Hello, alice" in resp.text

    def test_expired_session_redirects_with_expired_flag(self, web_client: WebHarness) -> None:
        web_client.login()
        web_client.clock.advance(seconds=1801)
        resp = web_client.client.get("/user")
        assert resp.status_code == 302
        assert _query(resp.headers["location"]) == {"next": ["/user"], "expired": ["true"]}

    def test_expired_flag_only_once(self, web_client: WebHarness) -> None:
        """The expired session is cleared on the first redirect; the next request is plain anonymous."""
        web_client.login()
        web_client.clock.advance(hours=1)
        web_client.client.get("/user")
        resp = web_client.client.get("/user")
        assert resp.status_code == 302
        assert "expired" not in _query(resp.headers["location"])

    def test_expired_notice_shown_on_login_page(self, web_client: WebHarness) -> None:
        resp = web_client.client.get("/login?next=/user&expired=true")
        assert "Your session has expired" in resp.text

    def test_login_page_redirects_when_already_logged_in(self, web_client: WebHarness) -> None:
        web_client.login()
        resp = web_client.client.get("/login")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/user"


class TestStoreOutage:
    def test_protected_request_during_outage_is_503(self, web_client: WebHarness) -> None:
        web_client.login()
        with web_client.user_store.engine.begin() as conn:
            conn.execute(text("DROP TABLE users"))
        resp = web_client.client.get("/user")
        assert resp.status_code == 503
        assert resp.headers["retry-after"] == "5"
        assert resp.json()["error"]["code"] == "store_unavailable"

    def test_login_during_outage_is_503_not_bad_credentials(self, web_client: WebHarness) -> None:
        with web_client.user_store.engine.begin() as conn:
            conn.execute(text("DROP TABLE users"))
        resp = web_client.login()
        assert resp.status_code == 503


class TestSafeNextValidation:
    """Verify the next= redirect parameter cannot be used for open redirect attacks."""

    def test_next_param_is_path_only(self, web_client: WebHarness) -> None:
        resp = web_client.client.get("/user")
        next_values = _query(resp.headers["location"]).get("next", [])
        assert len(next_values) == 1, f"Expected exactly one 'next' param, got: {next_values}"
        assert next_values[0].startswith("/")
        assert not next_values[0].startswith("//")

    def test_login_honours_relative_next(self, web_client: WebHarness) -> None:
        resp = web_client.client.post(
            "/login",
            data={"username": "alice", "password": "correct horse battery", "next": "/api/v1/auth/me"},
        )
        assert resp.status_code == 302
        assert resp.headers["location"] == "/api/v1/auth/me"

    def test_login_ignores_offsite_next(self, web_client: WebHarness) -> None:
        for target in ("//evil.example", "https://evil.example/"):
            browser = web_client.browser()
            resp = browser.post(
                "/login",
                data={"username": "alice", "password": "correct horse battery", "next": target},
            )
            assert resp.headers["location"] == "/user", target

    def test_failed_login_keeps_next(self, web_client: WebHarness) -> None:
        resp = web_client.client.post(
            "/login",
            data={"username": "alice", "password": "wrong", "next": "/user"},
        )
        assert _query(resp.headers["location"]) == {"error": ["bad_credentials"], "next": ["/user"]}
