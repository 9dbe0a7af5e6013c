"""Service helpers for the projects app."""

import datetime
import logging

from django.db import transaction
from django.utils import timezone

from . import events
from .models import Phase, Pillar, Task, TaskActivity

logger = logging.getLogger(__name__)

# Default SEO masterplan: one starter task per (pillar, phase) pairing.
MASTERPLAN = [
    (Pillar.TECHNICAL, Phase.FOUNDATION, "Technical site audit"),
    (Pillar.TECHNICAL, Phase.GROWTH, "Core Web Vitals optimization"),
    (Pillar.TECHNICAL, Phase.AUTHORITY, "Structured data rollout"),
    (Pillar.ON_PAGE, Phase.FOUNDATION, "Keyword research and mapping"),
    (Pillar.ON_PAGE, Phase.GROWTH, "Content calendar execution"),
    (Pillar.ON_PAGE, Phase.AUTHORITY, "Topic cluster expansion"),
    (Pillar.OFF_PAGE, Phase.FOUNDATION, "Backlink profile review"),
    (Pillar.OFF_PAGE, Phase.GROWTH, "Digital PR outreach"),
    (Pillar.OFF_PAGE, Phase.AUTHORITY, "Thought leadership placements"),
    (Pillar.ANALYTICS, Phase.FOUNDATION, "Analytics and Search Console setup"),
    (Pillar.ANALYTICS, Phase.GROWTH, "Conversion tracking"),
    (Pillar.ANALYTICS, Phase.AUTHORITY, "Executive reporting dashboard"),
]

MASTERPLAN_PHASE_WEEKS = {
    Phase.FOUNDATION: (0, 4),
    Phase.GROWTH: (4, 12),
    Phase.AUTHORITY: (12, 24),
}


def project_stats(tasks, today=None):
    """Return the summary counters shown above a project's timeline."""
    if today is None:
        today = timezone.localdate()
    tasks = list(tasks)
    total = len(tasks)
    return {
        "total_tasks": total,
        "completed_tasks": sum(1 for t in tasks if t.status == Task.Status.COMPLETED),
        "in_progress_tasks": sum(1 for t in tasks if t.status == Task.Status.IN_PROGRESS),
        "overdue_tasks": sum(
            1 for t in tasks
            if t.end_date and t.end_date < today and t.status != Task.Status.COMPLETED
        ),
        "average_progress": (
            round(sum(t.progress or 0 for t in tasks) / total) if total else 0
        ),
    }


def filter_tasks(tasks, pillars=None, phases=None, assignees=None, show_completed=True):
    """Apply the timeline sidebar filters.

    Tasks without a pillar or phase always pass those filters, and the
    assignee filter only applies to assigned tasks.
    """
    pillars = set(pillars) if pillars else None
    phases = set(phases) if phases else None
    assignees = {int(a) for a in assignees} if assignees else None

    result = []
    for task in tasks:
        if pillars is not None and task.pillar and task.pillar not in pillars:
            continue
        if phases is not None and task.phase and task.phase not in phases:
            continue
        if assignees is not None and task.assigned_to_id and task.assigned_to_id not in assignees:
            continue
        if not show_completed and task.status == Task.Status.COMPLETED:
            continue
        result.append(task)
    return result


def create_task(project, user, **fields):
    task = Task.objects.create(project=project, created_by=user, **fields)
    TaskActivity.objects.create(
        task=task, user=user, activity_type=TaskActivity.ActivityType.CREATED,
        new_value=task.task_name,
    )
    logger.info("Task %s created in project %s by %s", task.pk, project.pk, user)
    events.task_created.send(sender=Task, task=task, user=user)
    if task.assigned_to_id:
        events.task_assigned.send(sender=Task, task=task, user=user)
    return task


def update_task(task, user, **changes):
    """Apply *changes* to *task*, logging one activity row per changed field.

    Completing a task pins progress to 100. Sends task_assigned when the
    assignee changes and task_completed on the transition to Completed.
    """
    if changes.get("status") == Task.Status.COMPLETED:
        changes["progress"] = 100

    was_completed = task.is_completed
    old_assignee = task.assigned_to_id

    changed = []
    for field, value in changes.items():
        old = getattr(task, field)
        if old == value:
            continue
        setattr(task, field, value)
        changed.append((field, old, value))

    if not changed:
        return task

    with transaction.atomic():
        task.save(update_fields=[f for f, _, _ in changed] + ["updated_at"])
        TaskActivity.objects.bulk_create([
            TaskActivity(
                task=task,
                user=user,
                activity_type=_activity_type(field, new),
                field_name=field,
                old_value="" if old is None else str(getattr(old, "pk", old)),
                new_value="" if new is None else str(getattr(new, "pk", new)),
            )
            for field, old, new in changed
        ])

    if task.assigned_to_id and task.assigned_to_id != old_assignee:
        events.task_assigned.send(sender=Task, task=task, user=user)
    if task.is_completed and not was_completed:
        events.task_completed.send(sender=Task, task=task, user=user)
    return task


def _activity_type(field, new):
    if field == "assigned_to":
        return TaskActivity.ActivityType.ASSIGNED
    if field == "status" and new == Task.Status.COMPLETED:
        return TaskActivity.ActivityType.COMPLETED
    return TaskActivity.ActivityType.UPDATED


def mark_overdue_tasks(today=None):
    """Flag past-due open tasks as Overdue.

    Completed and On Hold tasks are left alone. Idempotent: tasks already
    marked Overdue are not returned again.
    """
    if today is None:
        today = timezone.localdate()
    stale = list(
        Task.objects
        .filter(end_date__lt=today)
        .exclude(status__in=[
            Task.Status.COMPLETED, Task.Status.ON_HOLD, Task.Status.OVERDUE,
        ])
        .select_related("project")
        .order_by("end_date", "pk")
    )
    now = timezone.now()
    with transaction.atomic():
        TaskActivity.objects.bulk_create([
            TaskActivity(
                task=task,
                activity_type=TaskActivity.ActivityType.UPDATED,
                field_name="status",
                old_value=task.status,
                new_value=Task.Status.OVERDUE,
            )
            for task in stale
        ])
        Task.objects.filter(pk__in=[t.pk for t in stale]).update(
            status=Task.Status.OVERDUE, updated_at=now,
        )
    for task in stale:
        task.status = Task.Status.OVERDUE
        task.updated_at = now
    return stale


def seed_masterplan(project, user=None, start=None):
    """Create the default masterplan tasks for *project*.

    Tasks already present by name are left untouched. Returns the list of
    newly created tasks.
    """
    if start is None:
        start = timezone.localdate()
    existing = set(project.tasks.values_list("task_name", flat=True))

    created = []
    for pillar, phase, name in MASTERPLAN:
        if name in existing:
            continue
        first_week, last_week = MASTERPLAN_PHASE_WEEKS[phase]
        created.append(create_task(
            project,
            user,
            task_name=name,
            pillar=pillar,
            phase=phase,
            start_date=start + datetime.timedelta(weeks=first_week),
            end_date=start + datetime.timedelta(weeks=last_week),
        ))
    return created
