"""Compass portal URL layout.

Every school has its own host, ``https://{prefix}.compass.education``;
the JSON services live under ``/Services/*.svc``.  Paths below are
relative to that host::

    from compasspy.endpoints import portal_url, CLASSES

    base = portal_url("myschool-vic")   # "https://myschool-vic.compass.education"
"""

from __future__ import annotations

__all__ = [
    "PORTAL_URL_TEMPLATE",
    "portal_url",
    "absolute_url",
    "LOGIN",
    "CLASSES",
    "CLASS_NAMES",
    "LESSON",
    "FILE_DOWNLOAD",
    "NEWS",
    "USER_DETAILS",
    "LEARNING_TASKS",
    "LEARNING_TASKS_BY_CLASS",
]


PORTAL_URL_TEMPLATE = "https://{school}.compass.education"

LOGIN = "/login.aspx?sessionstate=disabled"

CLASSES = (
    "/Services/Calendar.svc/GetCalendarEventsByUser"
    "?sessionstate=readonly"
    "&includeEvents=false"
    "&includeAllPd=false"
    "&includeExams=false"
    "&includeVolunteeringEvent=false"
)
CLASS_NAMES = (
    "/Services/Communications.svc/GetClassTeacherDetailsByStudent"
    "?sessionstate=readonly"
)
LESSON = "/Services/Activity.svc/GetLessonsByInstanceIdQuick?sessionstate=readonly"
FILE_DOWNLOAD = "/Services/FileAssets.svc/DownloadFile"
NEWS = "/Services/NewsFeed.svc/GetMyNewsFeedPaged?sessionstate=readonly"
USER_DETAILS = "/Services/User.svc/GetUserDetailsBlobByUserId?sessionstate=readonly"
LEARNING_TASKS = (
    "/Services/LearningTasks.svc/GetAllLearningTasksByUserId"
    "?sessionstate=readonly"
)
LEARNING_TASKS_BY_CLASS = (
    "/Services/LearningTasks.svc/GetAllLearningTasksByActivityId"
    "?sessionstate=readonly"
)


def portal_url(school_prefix: str) -> str:
    """Base URL of the portal for ``school_prefix``."""
    prefix = school_prefix.strip()
    if not prefix:
        raise ValueError("School prefix must not be empty")
    return PORTAL_URL_TEMPLATE.format(school=prefix)


def absolute_url(base_url: str, path: str | None) -> str:
    """Turn a root-relative portal path into an absolute URL.

    Already absolute URLs are returned untouched, empty paths give ``""``.
    """
    if not path:
        return ""
    if path.startswith(("http://", "https://")):
        return path
    return base_url.rstrip("/") + "/" + path.lstrip("/")
