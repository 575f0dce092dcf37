"""HTTP wrapper over httpx with a per-request timeout."""

from __future__ import annotations

import asyncio
from typing import Any

import httpx

from compasspy.exceptions import ServerUnavailable, UpstreamRequestFailed

_DEFAULT_TIMEOUT = 5  # seconds

_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)


class HttpSession:
    """Thin wrapper around ``httpx.AsyncClient``.

    • Redirects are never followed and never raise here; the login flow
      reads them itself, every other caller rejects them with
      :func:`reject_redirect`.
    • Non-success statuses (other than redirects) raise ``UpstreamRequestFailed``.
    • When the overall ``timeout`` runs out, ``ServerUnavailable`` is raised.
    • No retries: a failed call surfaces once.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: int | None = None,
        cookie: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        url = base_url.rstrip("/")
        headers = {
            "user-agent": _USER_AGENT,
            "referer": url,
        }
        if cookie and cookie.strip():
            headers["cookie"] = cookie.strip()
        self._client = httpx.AsyncClient(
            base_url=url,
            headers=headers,
            follow_redirects=False,
            transport=transport,
            event_hooks={"response": [self._check_status]},
        )
        self._timeout = timeout if timeout is not None else _DEFAULT_TIMEOUT

    # ── public properties ────────────────────────────────────

    @property
    def base_url(self) -> str:
        return str(self._client.base_url).rstrip("/")

    @property
    def client(self) -> httpx.AsyncClient:
        """Direct access to the underlying ``httpx.AsyncClient``."""
        return self._client

    # ── mutators ─────────────────────────────────────────────

    def set_cookie_header(self, cookie: str) -> None:
        """Attach a raw ``Cookie`` header to every following request.

        The portal hands out cookies in a way the jar does not keep
        (redirect-only responses), so it is sent as a raw header.
        """
        if cookie and cookie.strip():
            # header values may not end in whitespace
            self._client.headers["cookie"] = cookie.strip()
        else:
            self._client.headers.pop("cookie", None)

    # ── HTTP methods ─────────────────────────────────────────

    async def get(
        self,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        timeout: int | None = None,
        send_cookie: bool = True,
    ) -> httpx.Response:
        return await self._send(
            "GET", path, params=params, timeout=timeout, send_cookie=send_cookie,
        )

    async def post(
        self,
        path: str,
        *,
        data: Any | None = None,
        json: Any | None = None,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        timeout: int | None = None,
    ) -> httpx.Response:
        return await self._send(
            "POST", path, data=data, json=json,
            params=params, headers=headers, timeout=timeout,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> HttpSession:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    # ── internals ────────────────────────────────────────────

    async def _send(
        self,
        method: str,
        path: str,
        *,
        timeout: int | None = None,
        send_cookie: bool = True,
        **kwargs: Any,
    ) -> httpx.Response:
        effective = timeout if timeout is not None else self._timeout
        request = self._client.build_request(
            method, path,
            **{k: v for k, v in kwargs.items() if v is not None},
        )
        if not send_cookie and "cookie" in request.headers:
            del request.headers["cookie"]
        try:
            if effective and effective > 0:
                return await asyncio.wait_for(
                    self._client.send(request), effective,
                )
            return await self._client.send(request)
        except httpx.HTTPStatusError as exc:
            raise UpstreamRequestFailed(
                exc.response.status_code, str(exc.request.url),
            ) from None
        except asyncio.TimeoutError:
            raise ServerUnavailable("Server did not respond") from None

    @staticmethod
    async def _check_status(response: httpx.Response) -> None:
        if not response.is_redirect:
            response.raise_for_status()


def reject_redirect(response: httpx.Response) -> httpx.Response:
    """Raise ``UpstreamRequestFailed`` for a 3xx answer.

    An expired session makes the portal redirect to the login page
    instead of answering with an error status.
    """
    if response.is_redirect:
        raise UpstreamRequestFailed(response.status_code, str(response.request.url))
    return response
