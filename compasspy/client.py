"""Asynchronous Compass resource client."""

from __future__ import annotations

import asyncio
import datetime
import json
import logging
from dataclasses import replace
from io import BytesIO
from typing import Any, Callable, List, Optional

import httpx

from compasspy import endpoints, exceptions
from compasspy.http import HttpSession, reject_redirect
from compasspy.models import (
    UTC,
    ClassDetail,
    ClassEntry,
    LearningTask,
    Lesson,
    NewsItem,
    UserProfile,
    build_name_lookup,
    pick_instance,
    rewrite_relative_links,
)
from compasspy.ordering import sort_tasks
from compasspy.session import Session, SessionManager, Tracer

__all__ = ["Compass", "parse_learning_tasks"]

log = logging.getLogger(__name__)

_TASK_SORT = json.dumps(
    [
        {"property": "groupName", "direction": "ASC"},
        {"property": "dueDateTimestamp", "direction": "ASC"},
    ],
    separators=(",", ":"),
)


def parse_learning_tasks(
    payload: Any,
    user_id: str,
    base_url: str,
    now: datetime.datetime | None = None,
) -> List[LearningTask]:
    """Turn a learning-task payload into tasks, most urgent first.

    Shared by :meth:`Compass.fetch_learning_tasks` and
    :meth:`Compass.fetch_learning_tasks_by_class`.
    """
    if now is None:
        now = datetime.datetime.now(UTC)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=UTC)
    rows = _unwrap(payload, "data")
    tasks = [LearningTask.from_raw(row, user_id, base_url, now) for row in rows]
    return sort_tasks(tasks)


def _unwrap(payload: Any, key: str | None = None) -> Any:
    """Strip the ``{"d": ...}`` envelope the portal wraps every answer in."""
    if not isinstance(payload, dict) or "d" not in payload:
        raise exceptions.MalformedPayload("Response has no 'd' envelope")
    data = payload["d"]
    if key is None:
        return data
    if not isinstance(data, dict) or not isinstance(data.get(key), list):
        raise exceptions.MalformedPayload(f"Response has no 'd.{key}' array")
    return data[key]


def _json(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError as exc:
        raise exceptions.MalformedPayload(f"Response is not JSON: {exc}") from None


class Compass:
    """Asynchronous client for the Compass portal.

    Example::

        manager = SessionManager("myschool-vic")
        if await manager.authenticate("user", "pass"):
            async with Compass(manager.session) as compass:
                classes = await compass.fetch_classes(include_detail=True)

    Non-success HTTP statuses raise :class:`UpstreamRequestFailed`; an
    empty list always means the portal returned zero items.
    """

    def __init__(
        self,
        session: Session | SessionManager,
        *,
        timeout: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        log_sink: Optional[Callable[[str], Any]] = None,
        enrichment_concurrency: int = 4,
    ):
        if isinstance(session, SessionManager):
            session = session.session
        self._session = session
        self._http = HttpSession(
            session.base_url,
            timeout=timeout,
            cookie=session.cookie,
            transport=transport,
        )
        self._trace = Tracer(log_sink, log)
        self._enrichment_concurrency = max(1, enrichment_concurrency)

    def __repr__(self) -> str:
        return (
            f"<Compass url={self._http.base_url!r} "
            f"user={self._session.user_id}>"
        )

    @property
    def session(self) -> Session:
        return self._session

    @property
    def base_url(self) -> str:
        return self._session.base_url

    # ── context manager ──────────────────────────────────────

    async def __aenter__(self) -> Compass:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self._http.close()

    # ── internals ────────────────────────────────────────────

    async def _authed_post(
        self, path: str, body: dict, *, timeout: int | None = None,
    ) -> Any:
        """POST a JSON body and decode the JSON answer."""
        self._session.require_authenticated()
        await self._trace(f"POST {path} {json.dumps(body)}")
        resp = await self._http.post(path, json=body, timeout=timeout)
        await self._trace(f"Response {resp.status_code} from {path}")
        return _json(reject_redirect(resp))

    async def _class_detail(
        self, lesson_id: str, semaphore: asyncio.Semaphore,
    ) -> ClassDetail:
        """Teacher, photo and room of one occurrence; never raises."""
        async with semaphore:
            try:
                payload = await self._authed_post(
                    endpoints.LESSON, {"instanceId": lesson_id},
                )
                instance = pick_instance(_unwrap(payload), lesson_id)
            except (exceptions.CompassError, httpx.HTTPError) as exc:
                await self._trace(f"Detail for {lesson_id} unavailable: {exc}")
                return ClassDetail()
        return ClassDetail.from_raw(instance, self.base_url)

    async def _lesson_plan(self, instance: dict) -> Optional[str]:
        """Download the lesson plan of an instance; ``None`` when there is none."""
        plan = instance.get("lp")
        if not isinstance(plan, dict) or not plan.get("fileAssetId"):
            return None
        params = {"sessionstate": "readonly", "id": plan["fileAssetId"]}
        if plan.get("wnid"):
            params["nodeId"] = plan["wnid"]
        try:
            resp = reject_redirect(
                await self._http.get(endpoints.FILE_DOWNLOAD, params=params),
            )
        except (exceptions.CompassError, httpx.HTTPError) as exc:
            await self._trace(f"Lesson plan unavailable: {exc}")
            return None

        text = resp.text
        try:
            placeholder = json.loads(text)
        except ValueError:
            placeholder = None
        if isinstance(placeholder, dict) and "h" in placeholder:
            # the portal answers {"h": ...} when no plan is published
            return None
        return rewrite_relative_links(text, self.base_url)

    # ═══════════════════════════════════════════════════════════
    #  Timetable
    # ═══════════════════════════════════════════════════════════

    async def fetch_classes(
        self,
        start: datetime.date | None = None,
        end: datetime.date | None = None,
        *,
        limit: int = 25,
        page: int = 1,
        include_detail: bool = False,
        timeout: int | None = None,
    ) -> List[ClassEntry]:
        """Timetable entries between ``start`` and ``end`` (default: today).

        With ``include_detail`` every entry that has a lesson id is
        enriched with its teacher, teacher photo and authoritative room.
        Enrichment is best-effort: missing data becomes ``"Unknown"``.

        Entries are returned in ascending start order.
        """
        self._session.require_authenticated()
        today = datetime.date.today()
        start = start or today
        end = end or today

        payload = await self._authed_post(
            endpoints.CLASSES,
            {
                "userId": self._session.user_id,
                "homePage": False,
                "activityId": None,
                "locationId": None,
                "staffIds": None,
                "startDate": start.strftime("%Y-%m-%d"),
                "endDate": end.strftime("%Y-%m-%d"),
                "page": page,
                "start": 0,
                "limit": limit,
            },
            timeout=timeout,
        )
        rows = _unwrap(payload)
        if not isinstance(rows, list):
            raise exceptions.MalformedPayload("Calendar response 'd' is not an array")

        names = await self._class_names(timeout=timeout)
        classes = [ClassEntry.from_raw(row, names) for row in rows]

        if include_detail:
            semaphore = asyncio.Semaphore(self._enrichment_concurrency)
            details = await asyncio.gather(
                *(
                    self._class_detail(c.lesson_id, semaphore) if c.lesson_id else _no_detail()
                    for c in classes
                ),
                return_exceptions=True,
            )
            enriched = []
            for c, d in zip(classes, details):
                if isinstance(d, BaseException):
                    if not isinstance(d, Exception):
                        raise d
                    await self._trace(f"Detail for {c.lesson_id} failed: {d!r}")
                    d = ClassDetail()
                enriched.append(_apply_detail(c, d) if d is not None else c)
            classes = enriched

        return sorted(classes, key=lambda c: c.start)

    async def _class_names(self, *, timeout: int | None = None) -> dict[int, str]:
        """Subject names keyed by class id; empty when the lookup fails."""
        try:
            payload = await self._authed_post(
                endpoints.CLASS_NAMES,
                {
                    "userId": self._session.user_id,
                    "page": 1,
                    "start": 0,
                    "limit": 25,
                },
                timeout=timeout,
            )
            rows = _unwrap(payload)
        except (exceptions.CompassError, httpx.HTTPError) as exc:
            await self._trace(f"Class names unavailable: {exc}")
            return {}
        names = build_name_lookup(rows)
        if isinstance(rows, list) and len(names) < len(rows):
            await self._trace(f"Class name lookup: {len(rows) - len(names)} rows ignored")
        return names

    # ═══════════════════════════════════════════════════════════
    #  Lessons
    # ═══════════════════════════════════════════════════════════

    async def fetch_lesson(
        self, instance_id: str, *, timeout: int | None = None,
    ) -> Lesson:
        """Detail and lesson plan of one timetable occurrence."""
        payload = await self._authed_post(
            endpoints.LESSON, {"instanceId": instance_id}, timeout=timeout,
        )
        data = _unwrap(payload)
        instance = pick_instance(data, instance_id)
        plan = await self._lesson_plan(instance)
        return Lesson.from_raw(data, instance, self.base_url, plan)

    # ═══════════════════════════════════════════════════════════
    #  News
    # ═══════════════════════════════════════════════════════════

    async def fetch_news(
        self,
        offset: int = 0,
        limit: int = 25,
        *,
        timeout: int | None = None,
    ) -> List[NewsItem]:
        """News feed, newest first."""
        payload = await self._authed_post(
            endpoints.NEWS,
            {"activityId": None, "start": offset, "limit": limit},
            timeout=timeout,
        )
        items = [NewsItem.from_raw(n, self.base_url) for n in _unwrap(payload, "data")]
        return sorted(items, key=lambda n: n.post_date, reverse=True)

    # ═══════════════════════════════════════════════════════════
    #  User
    # ═══════════════════════════════════════════════════════════

    async def fetch_user_profile(self, *, timeout: int | None = None) -> UserProfile:
        """Profile and today's attendance timeline of the logged-in user."""
        user_id = self._session.user_id
        body_id: Any = int(user_id) if user_id and user_id.isdigit() else user_id
        payload = await self._authed_post(
            endpoints.USER_DETAILS,
            {"id": body_id, "targetUserId": body_id},
            timeout=timeout,
        )
        return UserProfile.from_raw(_unwrap(payload), self.base_url, user_id or "")

    # ═══════════════════════════════════════════════════════════
    #  Learning tasks
    # ═══════════════════════════════════════════════════════════

    async def fetch_learning_tasks(
        self,
        *,
        limit: int = 500,
        page: int = 1,
        now: datetime.datetime | None = None,
        timeout: int | None = None,
    ) -> List[LearningTask]:
        """All learning tasks of the user, most urgent first."""
        payload = await self._authed_post(
            endpoints.LEARNING_TASKS,
            {
                "userId": self._session.user_id,
                "forceTaskId": 0,
                "showHiddenTasks": False,
                "page": page,
                "start": 0,
                "limit": limit,
                "sort": _TASK_SORT,
            },
            timeout=timeout,
        )
        return parse_learning_tasks(payload, self._session.user_id or "", self.base_url, now)

    async def fetch_learning_tasks_by_class(
        self,
        activity_id: int,
        *,
        limit: int = 500,
        page: int = 1,
        now: datetime.datetime | None = None,
        timeout: int | None = None,
    ) -> List[LearningTask]:
        """Learning tasks of one class (``Lesson.activity_id``), most urgent first."""
        payload = await self._authed_post(
            endpoints.LEARNING_TASKS_BY_CLASS,
            {
                "activityId": activity_id,
                "page": page,
                "start": 0,
                "limit": limit,
            },
            timeout=timeout,
        )
        return parse_learning_tasks(payload, self._session.user_id or "", self.base_url, now)

    # ═══════════════════════════════════════════════════════════
    #  Files
    # ═══════════════════════════════════════════════════════════

    async def download(
        self,
        url: str,
        buffer: BytesIO,
        *,
        timeout: int | None = None,
    ) -> None:
        """Download an attachment, submission or photo into ``buffer``.

        ``url`` may be absolute or relative to the portal.  The session
        cookie is only sent to the portal itself; links to other hosts
        (URL submissions) are fetched without it.
        """
        self._session.require_authenticated()
        target = endpoints.absolute_url(self.base_url, url)
        own_host = httpx.URL(target).host == httpx.URL(self.base_url).host
        if not own_host:
            await self._trace(f"Downloading {target} without session cookie")
        resp = await self._http.get(target, timeout=timeout, send_cookie=own_host)
        buffer.write(reject_redirect(resp).content)


async def _no_detail() -> None:
    return None


def _apply_detail(entry: ClassEntry, detail: ClassDetail) -> ClassEntry:
    return replace(
        entry,
        teacher=detail.teacher,
        teacher_photo_url=detail.teacher_photo_url,
        room=detail.room,
    )
