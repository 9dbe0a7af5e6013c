"""Gantt timeline layout.

Pure date arithmetic used by the timeline views: the visible window, the
week column headers and each task bar's horizontal placement, all expressed
as percentages of the window so the template can position elements with
plain CSS.
"""

import datetime
from collections import namedtuple

from dateutil.relativedelta import relativedelta, weekday, MO, TU, WE, TH, FR, SA, SU
from dateutil.rrule import WEEKLY, rrule
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from django.utils import timezone

DEFAULT_WINDOW_DAYS = 30
WINDOW_PADDING_DAYS = 7
MIN_BAR_WIDTH = 5

_WEEKDAYS = {"MO": MO, "TU": TU, "WE": WE, "TH": TH, "FR": FR, "SA": SA, "SU": SU}

TimelineWindow = namedtuple("TimelineWindow", ["start", "end"])
BarPosition = namedtuple("BarPosition", ["left", "width"])


class DegenerateWindowError(ValueError):
    """The window has zero or negative duration, so no percentage exists."""


def _has_both_dates(task):
    return task.start_date is not None and task.end_date is not None


def derive_window(tasks, today=None):
    """Return the TimelineWindow covering *tasks*.

    Only tasks with both a start and an end date count. The range is padded
    by a week on either side; with nothing to measure the window is the next
    30 days.
    """
    if today is None:
        today = timezone.localdate()

    dates = []
    for task in tasks:
        if _has_both_dates(task):
            dates.append(task.start_date)
            dates.append(task.end_date)

    if not dates:
        return TimelineWindow(today, today + datetime.timedelta(days=DEFAULT_WINDOW_DAYS))

    padding = datetime.timedelta(days=WINDOW_PADDING_DAYS)
    return TimelineWindow(min(dates) - padding, max(dates) + padding)


def _resolve_week_start(week_start):
    if week_start is None:
        week_start = getattr(settings, "TIMELINE_WEEK_START", "SU")
    if isinstance(week_start, weekday):
        return week_start
    try:
        return _WEEKDAYS[str(week_start).upper()[:2]]
    except KeyError:
        raise ImproperlyConfigured(
            f"TIMELINE_WEEK_START must be one of {', '.join(_WEEKDAYS)}, got {week_start!r}"
        ) from None


def generate_week_buckets(start, end, week_start=None):
    """Return one date per week column, from the week containing *start*.

    The first bucket is the week-start day on or before *start*; each
    following bucket is 7 days later and never past *end*.
    """
    if start > end:
        return []
    first = start + relativedelta(weekday=_resolve_week_start(week_start)(-1))
    dtstart = datetime.datetime.combine(first, datetime.time.min)
    until = datetime.datetime.combine(end, datetime.time.min)
    return [dt.date() for dt in rrule(WEEKLY, dtstart=dtstart, until=until)]


def compute_bar_position(task_start, task_end, window_start, window_end):
    """Return the bar's left offset and width as percentages of the window.

    Width has a floor of MIN_BAR_WIDTH so one-day tasks stay clickable.
    Nothing caps left + width; a task ending after the window overflows it.
    """
    total = window_end - window_start
    if total <= datetime.timedelta(0):
        raise DegenerateWindowError(
            f"timeline window {window_start}..{window_end} has no duration"
        )
    left = (task_start - window_start) / total * 100
    width = (task_end - task_start) / total * 100
    return BarPosition(max(0, left), max(MIN_BAR_WIDTH, width))


def progress_overlay_width(progress):
    """Width of the progress overlay as a percentage of its bar."""
    if not progress:
        return 0
    return min(max(progress, 0), 100)


def build_timeline(tasks, window=None, today=None, week_start=None):
    """Lay out *tasks* for the Gantt template.

    Returns ``{"window", "weeks", "rows"}`` where each row carries the task,
    its BarPosition (None for undated tasks) and the overlay width.
    """
    tasks = list(tasks)
    if window is None:
        window = derive_window(tasks, today=today)

    rows = []
    for task in tasks:
        bar = None
        if _has_both_dates(task):
            bar = compute_bar_position(
                task.start_date, task.end_date, window.start, window.end,
            )
        rows.append({
            "task": task,
            "bar": bar,
            "progress_width": progress_overlay_width(task.progress),
        })

    return {
        "window": window,
        "weeks": generate_week_buckets(window.start, window.end, week_start),
        "rows": rows,
    }
