"""compasspy data models: plain dataclasses with manual JSON parsing.

Each record validates its upstream dict once in ``from_raw``.  Fields
are read through two helpers only:

* ``_required`` raises :class:`MalformedPayload` when the key is absent,
  ``null`` or cannot be parsed;
* ``_optional`` falls back to a default in the same situations.

All timestamps are normalised to aware UTC datetimes at ingestion.
"""

from __future__ import annotations

import datetime
import enum
import re
from dataclasses import dataclass, field, replace
from typing import Any, Callable, List, Optional

from compasspy.endpoints import FILE_DOWNLOAD, absolute_url
from compasspy.exceptions import MalformedPayload

UTC = datetime.timezone.utc

# Due date used when a learning task has none.
FAR_FUTURE = datetime.datetime(9999, 12, 31, 23, 59, 59, tzinfo=UTC)

UNKNOWN = "Unknown"

_MISSING = object()
_FRACTION_RE = re.compile(r"\.(\d+)")
_TAG_RE = re.compile(r"<[^>]+>")
_STRUCK_RE = re.compile(r"<(strike|s|del)\b[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL)


def parse_timestamp(value: Any) -> datetime.datetime:
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    The portal sends fractional seconds with a varying number of digits
    (``10:51:34.99``) and sometimes a trailing ``Z``; both are normalised
    before ``fromisoformat``.

    Naive values are taken as UTC: the JSON services serialise their
    instants in UTC, and every timestamp leaving this module is aware
    UTC so comparisons (due dates against ``now``, start ordering) never
    mix local and UTC clocks.  Convert with ``.astimezone()`` for display.
    """
    if isinstance(value, datetime.datetime):
        dt = value
    else:
        s = str(value).strip()
        if s.endswith(("Z", "z")):
            s = s[:-1] + "+00:00"
        s = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), s, count=1)
        dt = datetime.datetime.fromisoformat(s)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def _required(data: dict, key: str, parse: Callable[[Any], Any] | None = None) -> Any:
    value = data.get(key, _MISSING) if isinstance(data, dict) else _MISSING
    if value is _MISSING or value is None:
        raise MalformedPayload(f"Required field {key!r} is missing")
    if parse is None:
        return value
    try:
        return parse(value)
    except (TypeError, ValueError) as exc:
        raise MalformedPayload(f"Field {key!r} has unexpected value {value!r}") from exc


def _optional(
    data: dict,
    key: str,
    default: Any = None,
    parse: Callable[[Any], Any] | None = None,
) -> Any:
    value = data.get(key) if isinstance(data, dict) else None
    if value is None:
        return default
    if parse is None:
        return value
    try:
        return parse(value)
    except (TypeError, ValueError):
        return default


def _as_str(value: Any) -> str:
    if isinstance(value, (dict, list)):
        raise TypeError("expected a scalar")
    return str(value)


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        raise TypeError("expected an integer")
    return int(value)


def _as_bool(value: Any) -> bool:
    if not isinstance(value, bool):
        raise TypeError("expected a boolean")
    return value


def _as_list(value: Any) -> list:
    if not isinstance(value, list):
        raise TypeError("expected an array")
    return value


def rewrite_relative_links(html: str, base_url: str) -> str:
    """Make ``src="/..."`` and ``href="/..."`` references absolute."""
    base = base_url.rstrip("/")
    return (
        html.replace('src="/', f'src="{base}/')
        .replace('href="/', f'href="{base}/')
    )


def parse_room(long_title: str) -> tuple[str, str]:
    """Split the room out of a calendar ``longTitleWithoutTime``.

    The title looks like ``"Period 1 - 7MAT1 - B12 - JSM"``: the room is
    the next-to-last ``-`` segment.  A changed room arrives as HTML, e.g.
    ``<strike>B12</strike>&nbsp; C14``; the display form drops the struck
    room and any other markup.

    Returns ``(display, raw)``.
    """
    parts = long_title.split("-")
    if len(parts) < 2:
        return UNKNOWN, ""
    raw = parts[-2].strip()
    display = _STRUCK_RE.sub("", raw)
    display = _TAG_RE.sub("", display).replace("&nbsp;", " ").strip()
    return display or UNKNOWN, raw


# ──────────────────────────── Enums ──────────────────────────────

class ActivityType(enum.Enum):
    """Classification of calendar entries."""

    NORMAL = 1
    EVENT = 2
    EXEMPT = 5
    WEEK_NUMBER = 7
    DUE_TASK = 10
    UNKNOWN = -1

    @classmethod
    def from_code(cls, code: Any) -> ActivityType:
        try:
            return cls(int(code))
        except (TypeError, ValueError):
            return cls.UNKNOWN


class SubmissionKind(enum.Enum):
    FILE = 1
    URL = 2
    UNKNOWN = -1

    @classmethod
    def from_code(cls, code: Any) -> SubmissionKind:
        try:
            return cls(int(code))
        except (TypeError, ValueError):
            return cls.UNKNOWN


class SubmissionStatus(enum.Enum):
    ON_TIME = "OnTime"
    LATE = "Late"
    NOT_SUBMITTED = "NotSubmitted"
    OVERDUE = "Overdue"
    UNKNOWN = "Unknown"

    @property
    def is_completed(self) -> bool:
        return self in (SubmissionStatus.ON_TIME, SubmissionStatus.LATE)


# ──────────────────────────── Timetable ──────────────────────────

@dataclass(frozen=True)
class ClassEntry:
    """One timetable occurrence."""
    id: str
    name: str
    start: datetime.datetime
    end: datetime.datetime
    roll_marked: bool
    room: str
    room_raw: str
    activity_type: ActivityType
    activity_id: Optional[int] = None
    lesson_id: Optional[str] = None
    manager_id: Optional[int] = None
    teacher: Optional[str] = None
    teacher_photo_url: Optional[str] = None

    @classmethod
    def from_raw(cls, data: dict, names: dict[int, str] | None = None) -> ClassEntry:
        """Build a ``ClassEntry`` from a ``GetCalendarEventsByUser`` row.

        ``names`` is the class-name lookup keyed by manager id; entries
        whose manager id is absent or unknown get ``"Unknown"``.
        """
        manager_id = _optional(data, "managerId", parse=_as_int)
        room, room_raw = parse_room(_optional(data, "longTitleWithoutTime", "", _as_str))
        lesson_id = _optional(data, "instanceId", parse=_as_str)
        return cls(
            id=_required(data, "title", _as_str),
            name=(names or {}).get(manager_id, UNKNOWN) if manager_id is not None else UNKNOWN,
            start=_required(data, "start", parse_timestamp),
            end=_required(data, "finish", parse_timestamp),
            roll_marked=_optional(data, "rollMarked", False, _as_bool),
            room=room,
            room_raw=room_raw,
            activity_type=ActivityType.from_code(data.get("activityType")),
            activity_id=_optional(data, "activityId", parse=_as_int),
            lesson_id=lesson_id or None,
            manager_id=manager_id,
        )


def build_name_lookup(rows: Any) -> dict[int, str]:
    """Map class ids to subject names from ``GetClassTeacherDetailsByStudent``.

    Rows list their ids in ``ids``; the first id is the key.  When two
    rows share an id, the first one seen wins.  Rows without ids or a
    name are skipped.
    """
    lookup: dict[int, str] = {}
    if not isinstance(rows, list):
        return lookup
    for row in rows:
        ids = _optional(row, "ids", [], _as_list)
        name = _optional(row, "subjectName", parse=_as_str)
        if not ids or name is None:
            continue
        try:
            key = _as_int(ids[0])
        except (TypeError, ValueError):
            continue
        lookup.setdefault(key, name)
    return lookup


@dataclass(frozen=True)
class ClassDetail:
    """Best-effort enrichment for a ``ClassEntry``; every field may be ``"Unknown"``."""
    teacher: str = UNKNOWN
    teacher_photo_url: str = UNKNOWN
    room: str = UNKNOWN

    @classmethod
    def from_raw(cls, instance: Any, base_url: str) -> ClassDetail:
        location = _optional(instance, "LocationDetails", {})
        photo = _optional(instance, "ManagerPhotoPath", parse=_as_str)
        return cls(
            teacher=_optional(instance, "ManagerTextReadable", UNKNOWN, _as_str),
            teacher_photo_url=absolute_url(base_url, photo) if photo else UNKNOWN,
            room=_optional(location, "longName", UNKNOWN, _as_str),
        )


# ──────────────────────────── Lessons ────────────────────────────

def pick_instance(lesson_data: dict, instance_id: str) -> dict:
    """Return the instance matching ``instance_id`` from a lesson payload.

    ``Instances`` is required; when no instance matches, the first one is used.
    """
    instances = _required(lesson_data, "Instances", _as_list)
    if not instances:
        raise MalformedPayload("Lesson payload has no instances")
    for inst in instances:
        if isinstance(inst, dict) and str(inst.get("id")) == str(instance_id):
            return inst
    if not isinstance(instances[0], dict):
        raise MalformedPayload("Lesson instance is not an object")
    return instances[0]


@dataclass(frozen=True)
class Lesson:
    lesson_id: str
    activity_id: Optional[int]
    name: str
    start: datetime.datetime
    end: datetime.datetime
    room: str
    teacher: str
    teacher_photo_url: str
    lesson_plan: Optional[str] = None

    @classmethod
    def from_raw(
        cls,
        data: dict,
        instance: dict,
        base_url: str,
        lesson_plan: Optional[str] = None,
    ) -> Lesson:
        detail = ClassDetail.from_raw(instance, base_url)
        return cls(
            lesson_id=_required(instance, "id", _as_str),
            activity_id=_optional(data, "ActivityId", parse=_as_int),
            name=_optional(data, "SubjectName", UNKNOWN, _as_str),
            start=_required(instance, "st", parse_timestamp),
            end=_required(instance, "fn", parse_timestamp),
            room=detail.room,
            teacher=detail.teacher,
            teacher_photo_url=detail.teacher_photo_url,
            lesson_plan=lesson_plan,
        )


# ──────────────────────────── News ───────────────────────────────

@dataclass(frozen=True)
class NewsAttachment:
    name: str
    url: str
    is_image: bool
    original_file_name: str

    @classmethod
    def from_raw(cls, data: dict, base_url: str) -> NewsAttachment:
        return cls(
            name=_optional(data, "Name", "", _as_str),
            url=absolute_url(base_url, _required(data, "UiLink", _as_str)),
            is_image=_optional(data, "IsImage", False, _as_bool),
            original_file_name=_optional(data, "OriginalFileName", "", _as_str),
        )


@dataclass(frozen=True)
class NewsItem:
    title: str
    content: str
    content2: str
    post_date: datetime.datetime
    sender_username: str
    sender_photo_url: str
    priority: bool = False
    locked: bool = False
    created_by_admin: bool = False
    email_sent_date: Optional[datetime.datetime] = None
    finish: Optional[datetime.datetime] = None
    attachments: List[NewsAttachment] = field(default_factory=list)

    @classmethod
    def from_raw(cls, data: dict, base_url: str) -> NewsItem:
        photo = _optional(data, "UserImageUrl", parse=_as_str)
        return cls(
            title=_required(data, "Title", _as_str),
            content=_optional(data, "Content1", "", _as_str),
            content2=_optional(data, "Content2", "", _as_str),
            post_date=_required(data, "PostDateTime", parse_timestamp),
            sender_username=_optional(data, "UserName", "", _as_str),
            sender_photo_url=absolute_url(base_url, photo),
            priority=_optional(data, "Priority", False, _as_bool),
            locked=_optional(data, "Locked", False, _as_bool),
            created_by_admin=_optional(data, "CreatedByAdmin", False, _as_bool),
            email_sent_date=_optional(data, "EmailSentDate", parse=parse_timestamp),
            finish=_optional(data, "Finish", parse=parse_timestamp),
            attachments=[
                NewsAttachment.from_raw(a, base_url)
                for a in _optional(data, "Attachments", [], _as_list)
            ],
        )


# ──────────────────────────── User ───────────────────────────────

@dataclass(frozen=True)
class PresenceEntry:
    name: str
    start: datetime.datetime
    end: datetime.datetime
    status: int
    status_name: str
    teaching_time: bool
    attendance_override: bool

    @property
    def present(self) -> bool:
        # 1 is the only "present" code
        return self.status == 1

    @classmethod
    def from_raw(cls, data: dict) -> PresenceEntry:
        return cls(
            name=_optional(data, "name", "", _as_str),
            start=_required(data, "start", parse_timestamp),
            end=_required(data, "finish", parse_timestamp),
            status=_optional(data, "status", -1, _as_int),
            status_name=_optional(data, "statusName", "", _as_str),
            teaching_time=_optional(data, "teachingTime", False, _as_bool),
            attendance_override=_optional(data, "attendanceOverride", False, _as_bool),
        )


@dataclass(frozen=True)
class UserProfile:
    id: int
    student_code: str
    full_name: str
    email: str
    house: str
    home_group: str
    photo_url: str
    square_photo_url: str
    preferred_first_name: str
    preferred_last_name: str
    school_website: str
    school_compass_url: str
    year_level: str
    year_level_id: int
    presence: List[PresenceEntry] = field(default_factory=list)

    @classmethod
    def from_raw(cls, data: dict, base_url: str, user_id: str = "") -> UserProfile:
        """Build a ``UserProfile`` from ``GetUserDetailsBlobByUserId``.

        The blob carries no id of its own on older portals, so the
        session user id is used as a fallback.
        """
        fallback_id = int(user_id) if str(user_id).isdigit() else -1
        return cls(
            id=_optional(data, "userId", fallback_id, _as_int),
            student_code=_optional(data, "userDisplayCode", "", _as_str),
            full_name=_required(data, "userFullName", _as_str),
            email=_optional(data, "userEmail", "", _as_str),
            house=_optional(data, "userHouse", "", _as_str),
            home_group=_optional(data, "userFormGroup", "", _as_str),
            photo_url=absolute_url(base_url, _optional(data, "userPhotoPath", parse=_as_str)),
            square_photo_url=absolute_url(
                base_url, _optional(data, "userSquarePhotoPath", parse=_as_str),
            ),
            preferred_first_name=_optional(data, "userPreferredName", "", _as_str),
            preferred_last_name=_optional(data, "userPreferredLastName", "", _as_str),
            school_website=_optional(data, "userSchoolId", "", _as_str),
            school_compass_url=_optional(data, "userSchoolURL", "", _as_str),
            year_level=_optional(data, "userYearLevel", "", _as_str),
            year_level_id=_optional(data, "userYearLevelId", -1, _as_int),
            presence=[
                PresenceEntry.from_raw(p)
                for p in _optional(data, "userTimeLinePeriods", [], _as_list)
            ],
        )


# ─────────────────────────── Learning tasks ──────────────────────

def file_download_url(base_url: str, file_id: str, file_name: str = "") -> str:
    url = f"{base_url.rstrip('/')}{FILE_DOWNLOAD}?id={file_id}"
    if file_name:
        url += f"&originalFileName={file_name}"
    return url


@dataclass(frozen=True)
class TaskAttachment:
    id: str
    name: str
    file_name: str
    url: str

    @classmethod
    def from_raw(cls, data: dict, base_url: str) -> TaskAttachment:
        file_id = _required(data, "id", _as_str)
        file_name = _optional(data, "fileName", "", _as_str)
        return cls(
            id=file_id,
            name=_optional(data, "name", file_name, _as_str),
            file_name=file_name,
            url=file_download_url(base_url, file_id, file_name),
        )


@dataclass(frozen=True)
class Submission:
    kind: SubmissionKind
    file_name: str
    timestamp: datetime.datetime
    url: str

    @classmethod
    def from_raw(cls, data: dict, base_url: str) -> Submission:
        kind = SubmissionKind.from_code(data.get("submissionFileType"))
        file_name = _optional(data, "fileName", "", _as_str)
        if kind is SubmissionKind.URL:
            url = _optional(data, "url", file_name, _as_str)
        else:
            file_id = _optional(data, "fileId", parse=_as_str)
            url = file_download_url(base_url, file_id, file_name) if file_id else ""
        return cls(
            kind=kind,
            file_name=file_name,
            timestamp=_required(data, "timestamp", parse_timestamp),
            url=url,
        )


@dataclass(frozen=True)
class LearningTask:
    id: int
    class_id: int
    class_short_name: str
    class_name: str
    name: str
    description: str
    created: datetime.datetime
    due: datetime.datetime = FAR_FUTURE
    attachments: List[TaskAttachment] = field(default_factory=list)
    submissions: List[Submission] = field(default_factory=list)
    status: SubmissionStatus = SubmissionStatus.UNKNOWN

    @property
    def is_completed(self) -> bool:
        return len(self.submissions) > 0

    @property
    def is_late(self) -> bool:
        """Every submission is after the due date.

        Vacuously true without submissions; read it together with
        :attr:`is_completed`.
        """
        return all(s.timestamp > self.due for s in self.submissions)

    @classmethod
    def from_raw(
        cls,
        data: dict,
        user_id: str,
        base_url: str,
        now: datetime.datetime,
    ) -> LearningTask:
        student = _find_student(data, user_id)
        submissions = (
            [
                Submission.from_raw(s, base_url)
                for s in _optional(student, "submissions", [], _as_list)
            ]
            if student is not None
            else []
        )
        task = cls(
            id=_required(data, "id", _as_int),
            class_id=_optional(data, "activityId", -1, _as_int),
            class_short_name=_optional(data, "activityName", "", _as_str),
            class_name=_optional(data, "subjectName", "", _as_str),
            name=_required(data, "name", _as_str),
            description=_optional(data, "description", "", _as_str),
            created=_required(data, "createdTimestamp", parse_timestamp),
            due=_optional(data, "dueDateTimestamp", FAR_FUTURE, parse_timestamp),
            attachments=[
                TaskAttachment.from_raw(a, base_url)
                for a in _optional(data, "attachments", [], _as_list)
            ],
            submissions=submissions,
        )
        status = derive_status(task, now) if student is not None else SubmissionStatus.UNKNOWN
        return replace(task, status=status)


def _find_student(data: dict, user_id: str) -> Optional[dict]:
    students = _optional(data, "students", [], _as_list)
    for student in students:
        if isinstance(student, dict) and str(student.get("userId")) == str(user_id):
            return student
    return None


def derive_status(task: LearningTask, now: datetime.datetime) -> SubmissionStatus:
    """Classify a task against its due date.

    Completed tasks are ``LATE`` when every submission came after the due
    date, ``ON_TIME`` otherwise.  Open tasks are ``OVERDUE`` once ``now``
    has passed the due date.
    """
    if task.is_completed:
        return SubmissionStatus.LATE if task.is_late else SubmissionStatus.ON_TIME
    if task.due < now:
        return SubmissionStatus.OVERDUE
    return SubmissionStatus.NOT_SUBMITTED
