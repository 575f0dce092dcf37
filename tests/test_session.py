"""Tests for the login handshake and session snapshots."""

import httpx
import pytest

from compasspy.exceptions import AuthenticationFailed, NotAuthenticated
from compasspy.http import HttpSession
from compasspy.session import (
    Session,
    SessionManager,
    SessionSnapshot,
    Tracer,
    assemble_cookie,
    extract_user_id,
    handshake,
)

HOME = "<html><script>Compass.organisationUserId = 12345;Compass.x = 1;</script></html>"

LOGIN_COOKIES = [
    ("set-cookie", "ASP.NET_SessionId=abc123; path=/; HttpOnly; SameSite=Lax"),
    ("set-cookie", "cpssid_school=def456; path=/; secure"),
]


def portal(login_headers=None, home=HOME, seen=None, login_status=302):
    """Mock portal: login form sets cookies, root page embeds the user id."""
    if login_headers is None:
        login_headers = LOGIN_COOKIES

    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        if request.method == "POST" and request.url.path == "/login.aspx":
            return httpx.Response(
                login_status,
                headers=[("location", "/")] + list(login_headers),
            )
        if request.method == "GET" and request.url.path == "/":
            return httpx.Response(200, text=home)
        return httpx.Response(404)

    return httpx.MockTransport(handler)


# ═══════════════════════════════════════════════════════════
#  assemble_cookie
# ═══════════════════════════════════════════════════════════


class TestAssembleCookie:
    def test_first_pair_of_each_header(self):
        headers = [
            "a=1; path=/; HttpOnly",
            "b=2",
            "c=3; expires=Wed, 21 Oct 2026 07:28:00 GMT; secure; samesite=strict",
        ]
        assert assemble_cookie(headers) == "a=1; b=2; c=3; "

    def test_header_order_kept(self):
        assert assemble_cookie(["z=26", "a=1"]) == "z=26; a=1; "

    def test_no_equals_skipped(self):
        assert assemble_cookie(["garbage; path=/", "a=1"]) == "a=1; "

    def test_value_with_equals(self):
        assert assemble_cookie(["token=YWJj==; path=/"]) == "token=YWJj==; "

    def test_empty(self):
        assert assemble_cookie([]) == ""


# ═══════════════════════════════════════════════════════════
#  extract_user_id
# ═══════════════════════════════════════════════════════════


class TestExtractUserId:
    def test_found(self):
        assert extract_user_id(HOME) == "12345"

    def test_no_marker(self):
        assert extract_user_id("<html>login page</html>") is None

    def test_no_terminator(self):
        assert extract_user_id("Compass.organisationUserId = 12345") is None

    def test_empty_value(self):
        assert extract_user_id("Compass.organisationUserId = ;") is None


# ═══════════════════════════════════════════════════════════
#  Session values
# ═══════════════════════════════════════════════════════════


class TestSessionValue:
    def test_blank(self):
        s = Session("school")
        assert s.is_authenticated is False
        with pytest.raises(NotAuthenticated):
            s.require_authenticated()

    def test_base_url(self):
        assert Session("myschool-vic").base_url == "https://myschool-vic.compass.education"

    def test_authenticated_needs_cookie_and_user(self):
        with pytest.raises(ValueError):
            Session("school", cookie="a=1; ", user_id=None, is_authenticated=True)
        with pytest.raises(ValueError):
            Session("school", cookie="", user_id="1", is_authenticated=True)

    def test_frozen(self):
        s = Session("school")
        with pytest.raises(AttributeError):
            s.cookie = "x"  # type: ignore[misc]


class TestSnapshot:
    def test_json_round_trip(self):
        snap = SessionSnapshot("school", "a=1; ", "42")
        assert SessionSnapshot.from_json(snap.to_json()) == snap

    def test_from_dict_missing_key(self):
        with pytest.raises(ValueError):
            SessionSnapshot.from_dict({"school_prefix": "school"})

    def test_restore_is_authenticated(self):
        manager = SessionManager.from_snapshot(SessionSnapshot("school", "a=1; ", "42"))
        assert manager.is_authenticated
        assert manager.session == Session("school", "a=1; ", "42", True)
        assert manager.get_snapshot() == SessionSnapshot("school", "a=1; ", "42")

    def test_snapshot_before_login(self):
        with pytest.raises(NotAuthenticated):
            SessionManager("school").get_snapshot()


# ═══════════════════════════════════════════════════════════
#  handshake / SessionManager.authenticate
# ═══════════════════════════════════════════════════════════


class TestHandshake:
    @pytest.mark.asyncio
    async def test_success(self):
        seen = []
        async with HttpSession(
            "https://school.compass.education", transport=portal(seen=seen),
        ) as http:
            session = await handshake(http, "school", "user", "pass")

        assert session.is_authenticated
        assert session.cookie == "ASP.NET_SessionId=abc123; cpssid_school=def456; "
        assert session.user_id == "12345"

        login, home = seen
        form = login.content.decode()
        assert "username=user" in form
        assert "password=pass" in form
        assert "__EVENTTARGET=button1" in form
        assert login.url.params["sessionstate"] == "disabled"
        assert home.headers["cookie"] == "ASP.NET_SessionId=abc123; cpssid_school=def456;"

    @pytest.mark.asyncio
    async def test_missing_marker(self):
        async with HttpSession(
            "https://school.compass.education",
            transport=portal(home="<html>Please log in</html>"),
        ) as http:
            with pytest.raises(AuthenticationFailed):
                await handshake(http, "school", "user", "wrong")

    @pytest.mark.asyncio
    async def test_no_cookie_is_not_a_session(self):
        seen = []
        async with HttpSession(
            "https://school.compass.education",
            transport=portal(login_headers=[], seen=seen),
        ) as http:
            with pytest.raises(AuthenticationFailed):
                await handshake(http, "school", "user", "pass")
        # the home page is still requested, without a cookie
        assert len(seen) == 2
        assert "cookie" not in seen[1].headers


class TestSessionManager:
    @pytest.mark.asyncio
    async def test_authenticate(self):
        manager = SessionManager("school", transport=portal())
        assert await manager.authenticate("user", "pass") is True
        assert manager.is_authenticated
        snap = manager.get_snapshot()
        assert snap.user_id == "12345"
        assert snap.cookie.startswith("ASP.NET_SessionId=abc123; ")

    @pytest.mark.asyncio
    async def test_bad_credentials(self):
        manager = SessionManager("school", transport=portal(home="<html></html>"))
        assert await manager.authenticate("user", "wrong") is False
        assert not manager.is_authenticated

    @pytest.mark.asyncio
    async def test_server_error_is_soft(self):
        manager = SessionManager("school", transport=portal(login_status=500))
        assert await manager.authenticate("user", "pass") is False

    @pytest.mark.asyncio
    async def test_network_error_is_soft(self):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        manager = SessionManager("school", transport=httpx.MockTransport(handler))
        assert await manager.authenticate("user", "pass") is False

    @pytest.mark.asyncio
    async def test_failed_login_keeps_previous_session(self):
        snap = SessionSnapshot("school", "old=1; ", "7")
        manager = SessionManager.from_snapshot(
            snap, transport=portal(home="<html></html>"),
        )
        assert await manager.authenticate("user", "wrong") is False
        assert manager.get_snapshot() == snap

    @pytest.mark.asyncio
    async def test_log_sink_receives_trace(self):
        messages = []
        manager = SessionManager("school", transport=portal(), log_sink=messages.append)
        await manager.authenticate("user", "secret-password")
        assert any("User ID: 12345" in m for m in messages)
        assert not any("secret-password" in m for m in messages)


class TestTracer:
    @pytest.mark.asyncio
    async def test_async_sink(self):
        got = []

        async def sink(msg):
            got.append(msg)

        await Tracer(sink)("hello")
        assert got == ["hello"]

    @pytest.mark.asyncio
    async def test_failing_sink_is_ignored(self):
        def sink(msg):
            raise RuntimeError("boom")

        await Tracer(sink)("hello")
