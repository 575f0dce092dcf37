"""Authentication against the Compass portal.

The portal has no token API: a session is the ASP.NET cookie handed out
by the login form plus the numeric user id that the home page embeds in
an inline script.  Both must be obtained for a session to be usable.

Example::

    manager = SessionManager("myschool-vic")
    if await manager.authenticate("user", "pass"):
        snapshot = manager.get_snapshot()
        Path("session.json").write_text(snapshot.to_json())
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

import httpx

from compasspy import endpoints, exceptions
from compasspy.http import HttpSession

__all__ = [
    "Session",
    "SessionSnapshot",
    "SessionManager",
    "Tracer",
    "assemble_cookie",
    "extract_user_id",
    "handshake",
]

log = logging.getLogger(__name__)

USER_ID_MARKER = "Compass.organisationUserId = "
EVENT_TARGET = "button1"


class Tracer:
    """Forwards trace messages to ``logging`` and to an optional sink.

    The sink may be a plain function or a coroutine function taking one
    string.  Errors raised by the sink are logged and dropped.
    """

    def __init__(self, sink: Optional[Callable[[str], Any]] = None, logger: logging.Logger = log):
        self._sink = sink
        self._log = logger

    async def __call__(self, message: str) -> None:
        self._log.debug("%s", message)
        if self._sink is None:
            return
        try:
            result = self._sink(message)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            self._log.warning("Trace sink failed", exc_info=True)


# ─────────────────────────── Session values ───────────────────────

@dataclass(frozen=True)
class Session:
    """Authenticated (or blank) context for one school portal."""
    school_prefix: str
    cookie: Optional[str] = None
    user_id: Optional[str] = None
    is_authenticated: bool = False

    def __post_init__(self) -> None:
        if self.is_authenticated and not (self.cookie and self.user_id):
            raise ValueError("An authenticated session needs a cookie and a user id")

    @property
    def base_url(self) -> str:
        return endpoints.portal_url(self.school_prefix)

    def require_authenticated(self) -> None:
        if not self.is_authenticated:
            raise exceptions.NotAuthenticated("Not logged in")


@dataclass(frozen=True)
class SessionSnapshot:
    """Portable ``(school_prefix, cookie, user_id)`` triple.

    How it is stored is up to the host application; ``to_json`` /
    ``from_json`` are provided for convenience.
    """
    school_prefix: str
    cookie: str
    user_id: str

    def to_dict(self) -> dict[str, str]:
        return {
            "school_prefix": self.school_prefix,
            "cookie": self.cookie,
            "user_id": self.user_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> SessionSnapshot:
        try:
            return cls(
                school_prefix=str(data["school_prefix"]),
                cookie=str(data["cookie"]),
                user_id=str(data["user_id"]),
            )
        except (KeyError, TypeError) as exc:
            raise ValueError(f"Invalid session snapshot: {exc}") from None

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)

    @classmethod
    def from_json(cls, data: str) -> SessionSnapshot:
        return cls.from_dict(json.loads(data))

    def to_session(self) -> Session:
        return Session(
            school_prefix=self.school_prefix,
            cookie=self.cookie,
            user_id=self.user_id,
            is_authenticated=True,
        )


# ─────────────────────────── Handshake helpers ────────────────────

def assemble_cookie(set_cookie_headers: Iterable[str]) -> str:
    """Join the leading ``key=value`` of each ``Set-Cookie`` header.

    ``["a=1; path=/", "b=2; HttpOnly"]`` gives ``"a=1; b=2; "``.
    Headers whose first segment has no ``=`` are skipped.
    """
    cookie = ""
    for header in set_cookie_headers:
        first = header.split(";", 1)[0]
        key, sep, value = first.partition("=")
        key = key.strip()
        if not sep or not key:
            log.debug("Skipping malformed Set-Cookie header: %r", header)
            continue
        cookie += f"{key}={value.strip()}; "
    return cookie


def extract_user_id(html: str) -> Optional[str]:
    """Read the user id from ``Compass.organisationUserId = <id>;``."""
    start = html.find(USER_ID_MARKER)
    if start < 0:
        return None
    start += len(USER_ID_MARKER)
    end = html.find(";", start)
    if end < 0:
        return None
    user_id = html[start:end].strip()
    return user_id or None


async def handshake(
    http: HttpSession,
    school_prefix: str,
    username: str,
    password: str,
    *,
    trace: Optional[Tracer] = None,
    timeout: int | None = None,
) -> Session:
    """Log in and return an authenticated :class:`Session`.

    1. POST the login form without following the redirect and collect
       the ``Set-Cookie`` headers.
    2. GET the portal root with that cookie and read the user id from
       the page.

    :raises AuthenticationFailed: when either step does not produce
        its half of the session.
    """
    trace = trace or Tracer()

    try:
        resp = await http.post(
            endpoints.LOGIN,
            data={
                "username": username,
                "password": password,
                "__EVENTTARGET": EVENT_TARGET,
            },
            timeout=timeout,
        )
    except (httpx.HTTPError, exceptions.CompassError) as exc:
        raise exceptions.AuthenticationFailed(f"Login request failed: {exc}") from exc

    await trace(f"Authentication response: {resp.status_code}")

    set_cookie = resp.headers.get_list("set-cookie")
    if not set_cookie:
        await trace("No Set-Cookie header found")
    cookie = assemble_cookie(set_cookie)

    http.set_cookie_header(cookie)
    try:
        resp = await http.get("/", timeout=timeout)
    except (httpx.HTTPError, exceptions.CompassError) as exc:
        raise exceptions.AuthenticationFailed(f"Home page request failed: {exc}") from exc

    user_id = extract_user_id(resp.text)
    if user_id is None:
        raise exceptions.AuthenticationFailed("User id not found on the home page")
    if not cookie:
        raise exceptions.AuthenticationFailed("Portal did not hand out a session cookie")

    await trace(f"User ID: {user_id}")
    return Session(
        school_prefix=school_prefix,
        cookie=cookie,
        user_id=user_id,
        is_authenticated=True,
    )


# ─────────────────────────── Manager ──────────────────────────────

class SessionManager:
    """Owns the authentication state for one school.

    Example::

        manager = SessionManager("myschool-vic")
        ok = await manager.authenticate("user", "pass")

        # later, in another process
        manager = SessionManager.from_snapshot(SessionSnapshot.from_json(raw))
    """

    def __init__(
        self,
        school_prefix: str,
        *,
        timeout: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        log_sink: Optional[Callable[[str], Any]] = None,
    ):
        self._session = Session(school_prefix=school_prefix)
        self._timeout = timeout
        self._transport = transport
        self._trace = Tracer(log_sink)

    def __repr__(self) -> str:
        return (
            f"<SessionManager school={self._session.school_prefix!r} "
            f"authenticated={self._session.is_authenticated}>"
        )

    @classmethod
    def from_snapshot(
        cls,
        snapshot: SessionSnapshot,
        *,
        timeout: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        log_sink: Optional[Callable[[str], Any]] = None,
    ) -> SessionManager:
        """Restore straight into the authenticated state.

        The snapshot is trusted; nothing is sent to the portal.
        """
        manager = cls(
            snapshot.school_prefix,
            timeout=timeout, transport=transport, log_sink=log_sink,
        )
        manager._session = snapshot.to_session()
        return manager

    @property
    def session(self) -> Session:
        return self._session

    @property
    def is_authenticated(self) -> bool:
        return self._session.is_authenticated

    async def authenticate(self, username: str, password: str) -> bool:
        """Run the login handshake.

        Returns ``False`` instead of raising when the portal cannot be
        reached or does not accept the credentials; the current session
        is kept as is in that case.
        """
        async with HttpSession(
            self._session.base_url,
            timeout=self._timeout,
            transport=self._transport,
        ) as http:
            try:
                self._session = await handshake(
                    http,
                    self._session.school_prefix,
                    username,
                    password,
                    trace=self._trace,
                    timeout=self._timeout,
                )
            except exceptions.AuthenticationFailed as exc:
                log.info("Authentication failed: %s", exc)
                await self._trace(f"Authentication failed: {exc}")
                return False
        return True

    def get_snapshot(self) -> SessionSnapshot:
        """Export the session for later :meth:`from_snapshot`.

        :raises NotAuthenticated: before a successful login.
        """
        self._session.require_authenticated()
        return SessionSnapshot(
            school_prefix=self._session.school_prefix,
            cookie=self._session.cookie or "",
            user_id=self._session.user_id or "",
        )
