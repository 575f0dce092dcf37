"""Learning-task ordering by submission status, then due date.

Priority, most urgent first::

    Overdue  <  NotSubmitted  <  OnTime == Late  <  Unknown

Tasks with equal priority are ordered by due date; tasks that also share
a due date keep their input order (``sorted`` is stable).
"""

from __future__ import annotations

import functools
from typing import Iterable, List

from compasspy.models import LearningTask, SubmissionStatus

__all__ = ["compare_status", "compare_tasks", "status_rank", "task_sort_key", "sort_tasks"]


_RANKS = {
    SubmissionStatus.OVERDUE: 0,
    SubmissionStatus.NOT_SUBMITTED: 1,
    SubmissionStatus.ON_TIME: 2,
    SubmissionStatus.LATE: 2,
    SubmissionStatus.UNKNOWN: 3,
}


def status_rank(status: SubmissionStatus) -> int:
    """Lower is more urgent."""
    return _RANKS[status]


def compare_status(a: SubmissionStatus, b: SubmissionStatus) -> int:
    """Three-way comparison of two statuses (negative: ``a`` first)."""
    if a is b:
        return 0
    if a is SubmissionStatus.UNKNOWN:
        return 1
    if b is SubmissionStatus.UNKNOWN:
        return -1
    if a.is_completed and b.is_completed:
        return 0
    if a.is_completed != b.is_completed:
        return 1 if a.is_completed else -1
    # both open: overdue comes first
    return -1 if a is SubmissionStatus.OVERDUE else 1


def compare_tasks(a: LearningTask, b: LearningTask) -> int:
    by_status = compare_status(a.status, b.status)
    if by_status:
        return by_status
    if a.due < b.due:
        return -1
    if a.due > b.due:
        return 1
    return 0


def task_sort_key(task: LearningTask) -> tuple:
    return (status_rank(task.status), task.due)


def sort_tasks(tasks: Iterable[LearningTask]) -> List[LearningTask]:
    """Most urgent first."""
    return sorted(tasks, key=functools.cmp_to_key(compare_tasks))
