"""compasspy: asynchronous client for the Compass school portal."""

from .client import Compass, parse_learning_tasks
from .exceptions import (
    AuthenticationFailed,
    CompassError,
    MalformedPayload,
    NotAuthenticated,
    ServerUnavailable,
    UpstreamRequestFailed,
)
from .models import (
    FAR_FUTURE,
    ActivityType,
    ClassEntry,
    LearningTask,
    Lesson,
    NewsAttachment,
    NewsItem,
    PresenceEntry,
    Submission,
    SubmissionKind,
    SubmissionStatus,
    TaskAttachment,
    UserProfile,
)
from .ordering import sort_tasks
from .session import Session, SessionManager, SessionSnapshot

__version__ = "1.0.0"

__all__ = [
    "Compass",
    "SessionManager",
    "Session",
    "SessionSnapshot",
    "parse_learning_tasks",
    "sort_tasks",
    "ActivityType",
    "ClassEntry",
    "Lesson",
    "NewsItem",
    "NewsAttachment",
    "UserProfile",
    "PresenceEntry",
    "LearningTask",
    "TaskAttachment",
    "Submission",
    "SubmissionKind",
    "SubmissionStatus",
    "FAR_FUTURE",
    "CompassError",
    "NotAuthenticated",
    "AuthenticationFailed",
    "UpstreamRequestFailed",
    "MalformedPayload",
    "ServerUnavailable",
]
