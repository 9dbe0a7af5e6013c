import datetime
import json
from io import StringIO
from types import SimpleNamespace
from unittest import mock

from django.contrib.auth.models import AnonymousUser, User
from django.core import mail
from django.core.exceptions import ImproperlyConfigured, PermissionDenied
from django.core.management import call_command
from django.core.management.base import CommandError
from django.db import IntegrityError
from django.test import Client, TestCase, override_settings
from django.urls import reverse
from dateutil.relativedelta import MO
from openai import OpenAIError

from . import events
from .models import Phase, Pillar, Profile, Project, ProjectMember, Role, Task, TaskActivity
from .permissions import (
    ALL_CAPABILITIES, Capability, capabilities_for, has_capability,
    require_capability, visible_projects,
)
from .services import (
    MASTERPLAN, create_task, filter_tasks, mark_overdue_tasks, project_stats,
    seed_masterplan, update_task,
)
from .suggestions import (
    SuggestionError, SuggestionsNotConfigured, analyze_project_gaps,
    generate_task_suggestions,
)
from .timeline import (
    BarPosition, DegenerateWindowError, TimelineWindow, build_timeline,
    compute_bar_position, derive_window, generate_week_buckets,
    progress_overlay_width,
)

D = datetime.date


def _make_user(username, role=None, email=None, **kwargs):
    """Helper: create a user, with a Profile only when *role* is given."""
    user = User.objects.create_user(
        username=username,
        password="testpass",
        email=email if email is not None else f"{username}@example.com",
        **kwargs,
    )
    if role is not None:
        Profile.objects.create(user=user, role=role)
    return user


def _task(name="Task", start=None, end=None, progress=0, **kwargs):
    """Unsaved Task for the pure timeline functions."""
    return Task(task_name=name, start_date=start, end_date=end, progress=progress, **kwargs)


def _fake_openai(content):
    client = mock.Mock()
    client.chat.completions.create.return_value = SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
    )
    return client


# ---------------------------------------------------------------------------
# Timeline layout
# ---------------------------------------------------------------------------

class DeriveWindowTests(TestCase):

    def test_empty_input_is_thirty_days_from_today(self):
        today = D(2024, 3, 5)
        window = derive_window([], today=today)
        self.assertEqual(window, TimelineWindow(today, D(2024, 4, 4)))
        self.assertEqual((window.end - window.start).days, 30)

    def test_pads_a_week_around_task_dates(self):
        tasks = [
            _task("A", D(2024, 1, 10), D(2024, 1, 20)),
            _task("B", D(2024, 1, 15), D(2024, 2, 1)),
        ]
        window = derive_window(tasks, today=D(2030, 1, 1))
        self.assertEqual(window.start, D(2024, 1, 3))
        self.assertEqual(window.end, D(2024, 2, 8))

    def test_partial_dates_are_ignored(self):
        """A task with only a start date does not move the window."""
        full = _task("A", D(2024, 1, 10), D(2024, 1, 20))
        start_only = _task("B", D(2024, 1, 1))
        end_only = _task("C", end=D(2024, 6, 1))
        window = derive_window([full, start_only, end_only])
        self.assertEqual(window, derive_window([full]))
        self.assertEqual(window, TimelineWindow(D(2024, 1, 3), D(2024, 1, 27)))

    def test_only_undated_tasks_fall_back_to_default(self):
        today = D(2024, 3, 5)
        window = derive_window([_task("A"), _task("B", D(2024, 1, 1))], today=today)
        self.assertEqual(window, TimelineWindow(today, D(2024, 4, 4)))


class WeekBucketTests(TestCase):

    def test_january_2024(self):
        weeks = generate_week_buckets(D(2024, 1, 1), D(2024, 1, 31), "SU")
        # 2024-01-01 is a Monday; the first bucket is the Sunday before.
        self.assertEqual(weeks[0], D(2023, 12, 31))
        self.assertEqual(weeks[-1], D(2024, 1, 28))
        self.assertEqual(len(weeks), 5)
        for prev, nxt in zip(weeks, weeks[1:]):
            self.assertEqual(nxt - prev, datetime.timedelta(days=7))
        self.assertTrue(all(w.weekday() == 6 for w in weeks))

    def test_start_on_week_boundary_is_first_bucket(self):
        weeks = generate_week_buckets(D(2024, 1, 7), D(2024, 1, 20), "SU")
        self.assertEqual(weeks, [D(2024, 1, 7), D(2024, 1, 14)])

    def test_last_bucket_never_passes_end(self):
        weeks = generate_week_buckets(D(2024, 1, 3), D(2024, 1, 27), "SU")
        self.assertEqual(weeks, [D(2023, 12, 31), D(2024, 1, 7), D(2024, 1, 14), D(2024, 1, 21)])

    def test_reversed_range_is_empty(self):
        self.assertEqual(generate_week_buckets(D(2024, 1, 31), D(2024, 1, 1)), [])

    def test_reversed_range_within_one_week_is_empty(self):
        self.assertEqual(generate_week_buckets(D(2024, 1, 3), D(2024, 1, 1), "SU"), [])

    def test_monday_week_start(self):
        weeks = generate_week_buckets(D(2024, 1, 3), D(2024, 1, 20), "MO")
        self.assertEqual(weeks, [D(2024, 1, 1), D(2024, 1, 8), D(2024, 1, 15)])

    def test_accepts_dateutil_weekday(self):
        self.assertEqual(
            generate_week_buckets(D(2024, 1, 3), D(2024, 1, 20), MO),
            generate_week_buckets(D(2024, 1, 3), D(2024, 1, 20), "MO"),
        )

    @override_settings(TIMELINE_WEEK_START="MO")
    def test_week_start_from_settings(self):
        weeks = generate_week_buckets(D(2024, 1, 3), D(2024, 1, 10))
        self.assertEqual(weeks[0], D(2024, 1, 1))

    @override_settings(TIMELINE_WEEK_START="XX")
    def test_unknown_week_start_setting(self):
        with self.assertRaises(ImproperlyConfigured):
            generate_week_buckets(D(2024, 1, 3), D(2024, 1, 10))


class BarPositionTests(TestCase):

    def test_task_at_window_start(self):
        start = D(2024, 1, 1)
        bar = compute_bar_position(
            start, start + datetime.timedelta(days=1),
            start, start + datetime.timedelta(days=10),
        )
        self.assertEqual(bar.left, 0)
        self.assertAlmostEqual(bar.width, 10)

    def test_minimum_width_floor(self):
        start = D(2024, 1, 1)
        bar = compute_bar_position(
            D(2024, 2, 1), D(2024, 2, 2),
            start, start + datetime.timedelta(days=100),
        )
        self.assertEqual(bar.width, 5)

    def test_offset_and_width(self):
        bar = compute_bar_position(D(2024, 1, 10), D(2024, 1, 20), D(2024, 1, 3), D(2024, 1, 27))
        self.assertAlmostEqual(bar.left, 7 / 24 * 100)
        self.assertAlmostEqual(bar.width, 10 / 24 * 100)

    def test_task_before_window_clamps_left(self):
        bar = compute_bar_position(D(2023, 12, 1), D(2024, 1, 5), D(2024, 1, 1), D(2024, 1, 11))
        self.assertEqual(bar.left, 0)

    def test_overflow_past_window_is_not_clamped(self):
        bar = compute_bar_position(D(2024, 1, 6), D(2024, 1, 21), D(2024, 1, 1), D(2024, 1, 11))
        self.assertGreater(bar.left + bar.width, 100)

    def test_degenerate_window_raises(self):
        day = D(2024, 1, 1)
        with self.assertRaises(DegenerateWindowError):
            compute_bar_position(day, day, day, day)
        with self.assertRaises(ValueError):
            compute_bar_position(day, day, day, D(2023, 12, 1))

    def test_pure_functions_are_repeatable(self):
        args = (D(2024, 1, 10), D(2024, 1, 20), D(2024, 1, 3), D(2024, 1, 27))
        self.assertEqual(compute_bar_position(*args), compute_bar_position(*args))
        self.assertEqual(
            generate_week_buckets(D(2024, 1, 1), D(2024, 3, 1), "SU"),
            generate_week_buckets(D(2024, 1, 1), D(2024, 3, 1), "SU"),
        )
        tasks = [_task("A", D(2024, 1, 10), D(2024, 1, 20))]
        self.assertEqual(derive_window(tasks), derive_window(tasks))


class ProgressOverlayTests(TestCase):

    def test_falsy_progress_is_zero(self):
        self.assertEqual(progress_overlay_width(None), 0)
        self.assertEqual(progress_overlay_width(0), 0)

    def test_clamped_to_percentage(self):
        self.assertEqual(progress_overlay_width(45), 45)
        self.assertEqual(progress_overlay_width(150), 100)
        self.assertEqual(progress_overlay_width(-5), 0)


class BuildTimelineTests(TestCase):

    def test_rows_and_weeks(self):
        dated = _task("Dated", D(2024, 1, 10), D(2024, 1, 20), progress=40)
        undated = _task("Undated")
        timeline = build_timeline([dated, undated], week_start="SU")

        self.assertEqual(timeline["window"], TimelineWindow(D(2024, 1, 3), D(2024, 1, 27)))
        self.assertEqual(timeline["weeks"][0], D(2023, 12, 31))
        self.assertEqual(len(timeline["rows"]), 2)
        self.assertIsInstance(timeline["rows"][0]["bar"], BarPosition)
        self.assertEqual(timeline["rows"][0]["progress_width"], 40)
        self.assertIsNone(timeline["rows"][1]["bar"])

    def test_caller_supplied_window(self):
        window = TimelineWindow(D(2024, 1, 1), D(2024, 1, 11))
        timeline = build_timeline([_task("A", D(2024, 1, 1), D(2024, 1, 2))], window=window)
        self.assertEqual(timeline["window"], window)
        self.assertEqual(timeline["rows"][0]["bar"].left, 0)


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class TaskConstraintTests(TestCase):

    def setUp(self):
        self.owner = _make_user("owner")
        self.project = Project.objects.create(name="Acme", owner=self.owner)

    def test_progress_above_100_raises(self):
        with self.assertRaises(IntegrityError):
            Task.objects.create(project=self.project, task_name="Bad", progress=101)

    def test_end_before_start_raises(self):
        with self.assertRaises(IntegrityError):
            Task.objects.create(
                project=self.project, task_name="Bad",
                start_date=D(2024, 2, 1), end_date=D(2024, 1, 1),
            )

    def test_partial_dates_ok(self):
        task = Task.objects.create(project=self.project, task_name="Open", start_date=D(2024, 2, 1))
        self.assertIsNone(task.end_date)

    def test_member_unique_per_project(self):
        user = _make_user("member")
        ProjectMember.objects.create(project=self.project, user=user)
        with self.assertRaises(IntegrityError):
            ProjectMember.objects.create(project=self.project, user=user)


# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------

class CapabilityTests(TestCase):

    def setUp(self):
        self.owner = _make_user("owner")
        self.editor = _make_user("editor")
        self.viewer = _make_user("viewer")
        self.stranger = _make_user("stranger")
        self.manager = _make_user("manager", role=Role.MANAGER)
        self.admin = _make_user("admin", role=Role.ADMIN)
        self.project = Project.objects.create(name="Acme", owner=self.owner)
        ProjectMember.objects.create(
            project=self.project, user=self.editor,
            permission_level=ProjectMember.Permission.EDIT,
        )
        ProjectMember.objects.create(
            project=self.project, user=self.viewer,
            permission_level=ProjectMember.Permission.VIEW,
        )

    def test_anonymous_has_nothing(self):
        self.assertEqual(capabilities_for(AnonymousUser(), self.project), frozenset())
        self.assertEqual(capabilities_for(None), frozenset())

    def test_superuser_has_everything(self):
        root = User.objects.create_superuser("root", "root@example.com", "pw")
        self.assertEqual(capabilities_for(root, self.project), ALL_CAPABILITIES)

    def test_owner(self):
        caps = capabilities_for(self.owner, self.project)
        self.assertIn(Capability.DELETE_PROJECT, caps)
        self.assertIn(Capability.MANAGE_MEMBERS, caps)
        self.assertIn(Capability.EDIT_TASKS, caps)
        self.assertNotIn(Capability.MANAGE_USERS, caps)

    def test_edit_member(self):
        caps = capabilities_for(self.editor, self.project)
        self.assertIn(Capability.EDIT_TASKS, caps)
        self.assertNotIn(Capability.DELETE_PROJECT, caps)
        self.assertNotIn(Capability.MANAGE_MEMBERS, caps)

    def test_view_member(self):
        self.assertEqual(
            capabilities_for(self.viewer, self.project),
            frozenset({Capability.VIEW_PROJECT}),
        )

    def test_stranger_cannot_view(self):
        self.assertFalse(has_capability(self.stranger, Capability.VIEW_PROJECT, self.project))
        with self.assertRaises(PermissionDenied):
            require_capability(self.stranger, Capability.VIEW_PROJECT, self.project)

    def test_manager_views_every_project_but_cannot_edit(self):
        self.assertTrue(has_capability(self.manager, Capability.VIEW_PROJECT, self.project))
        self.assertFalse(has_capability(self.manager, Capability.EDIT_TASKS, self.project))

    def test_admin_role(self):
        self.assertTrue(has_capability(self.admin, Capability.MANAGE_USERS))
        self.assertTrue(has_capability(self.admin, Capability.DELETE_PROJECT, self.project))

    def test_visible_projects(self):
        other = Project.objects.create(name="Other", owner=self.stranger)
        self.assertEqual(list(visible_projects(self.viewer)), [self.project])
        self.assertEqual(set(visible_projects(self.manager)), {self.project, other})
        self.assertEqual(list(visible_projects(self.stranger)), [other])


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------

class ProjectStatsTests(TestCase):

    def test_counts(self):
        today = D(2024, 2, 1)
        tasks = [
            _task("A", D(2024, 1, 1), D(2024, 1, 10), progress=100, status=Task.Status.COMPLETED),
            _task("B", D(2024, 1, 1), D(2024, 1, 10), progress=20, status=Task.Status.IN_PROGRESS),
            _task("C", D(2024, 1, 1), D(2024, 3, 1), progress=0),
        ]
        stats = project_stats(tasks, today=today)
        self.assertEqual(stats["total_tasks"], 3)
        self.assertEqual(stats["completed_tasks"], 1)
        self.assertEqual(stats["in_progress_tasks"], 1)
        self.assertEqual(stats["overdue_tasks"], 1)
        self.assertEqual(stats["average_progress"], 40)

    def test_empty(self):
        self.assertEqual(project_stats([])["average_progress"], 0)


class FilterTasksTests(TestCase):

    def setUp(self):
        self.tech = _task("Tech", pillar=Pillar.TECHNICAL, phase=Phase.FOUNDATION)
        self.content = _task("Content", pillar=Pillar.ON_PAGE, phase=Phase.GROWTH)
        self.loose = _task("Loose")
        self.done = _task("Done", pillar=Pillar.TECHNICAL, status=Task.Status.COMPLETED)
        self.tasks = [self.tech, self.content, self.loose, self.done]

    def test_no_filters(self):
        self.assertEqual(filter_tasks(self.tasks), self.tasks)

    def test_pillar_filter_keeps_unclassified(self):
        result = filter_tasks(self.tasks, pillars=[Pillar.TECHNICAL])
        self.assertEqual(result, [self.tech, self.loose, self.done])

    def test_phase_filter(self):
        result = filter_tasks(self.tasks, phases=[Phase.GROWTH])
        self.assertNotIn(self.tech, result)
        self.assertIn(self.content, result)

    def test_hide_completed(self):
        self.assertNotIn(self.done, filter_tasks(self.tasks, show_completed=False))

    def test_assignee_filter(self):
        self.tech.assigned_to_id = 1
        self.content.assigned_to_id = 2
        result = filter_tasks(self.tasks, assignees=["1"])
        self.assertIn(self.tech, result)
        self.assertNotIn(self.content, result)
        self.assertIn(self.loose, result)


class TaskServiceTests(TestCase):

    def setUp(self):
        self.owner = _make_user("owner")
        self.worker = _make_user("worker")
        self.project = Project.objects.create(name="Acme", owner=self.owner)

    def test_create_logs_activity_and_fires_event(self):
        received = []

        def listener(sender, task, user, **kwargs):
            received.append((task.task_name, user))

        events.task_created.connect(listener)
        self.addCleanup(events.task_created.disconnect, listener)

        task = create_task(self.project, self.owner, task_name="Audit")
        self.assertEqual(task.created_by, self.owner)
        self.assertEqual(received, [("Audit", self.owner)])
        activity = task.activities.get()
        self.assertEqual(activity.activity_type, TaskActivity.ActivityType.CREATED)

    def test_create_assigned_sends_email(self):
        create_task(self.project, self.owner, task_name="Audit", assigned_to=self.worker)
        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].to, ["worker@example.com"])
        self.assertIn("Audit", mail.outbox[0].subject)

    def test_update_logs_changed_fields_only(self):
        task = create_task(self.project, self.owner, task_name="Audit", progress=10)
        update_task(task, self.owner, progress=50, task_name="Audit")
        activity = task.activities.get(activity_type=TaskActivity.ActivityType.UPDATED)
        self.assertEqual(activity.field_name, "progress")
        self.assertEqual((activity.old_value, activity.new_value), ("10", "50"))
        self.assertEqual(task.activities.count(), 2)

    def test_update_without_changes_is_noop(self):
        task = create_task(self.project, self.owner, task_name="Audit")
        update_task(task, self.owner, task_name="Audit")
        self.assertEqual(task.activities.count(), 1)

    def test_assignment_logged_and_notified(self):
        task = create_task(self.project, self.owner, task_name="Audit")
        update_task(task, self.owner, assigned_to=self.worker)
        activity = task.activities.get(activity_type=TaskActivity.ActivityType.ASSIGNED)
        self.assertEqual(activity.new_value, str(self.worker.pk))
        self.assertEqual(len(mail.outbox), 1)

    def test_completion_pins_progress_and_notifies_owner(self):
        task = create_task(self.project, self.owner, task_name="Audit", progress=30)
        update_task(task, self.worker, status=Task.Status.COMPLETED)
        task.refresh_from_db()
        self.assertEqual(task.progress, 100)
        self.assertTrue(task.activities.filter(
            activity_type=TaskActivity.ActivityType.COMPLETED,
        ).exists())
        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].to, ["owner@example.com"])
        self.assertIn("Completed", mail.outbox[0].subject)

    def test_owner_completing_own_task_sends_no_email(self):
        task = create_task(self.project, self.owner, task_name="Audit")
        update_task(task, self.owner, status=Task.Status.COMPLETED)
        self.assertEqual(len(mail.outbox), 0)

    def test_completed_event_fires_once(self):
        received = []

        def listener(sender, task, **kwargs):
            received.append(task.pk)

        events.task_completed.connect(listener)
        self.addCleanup(events.task_completed.disconnect, listener)

        task = create_task(self.project, self.owner, task_name="Audit")
        update_task(task, self.owner, status=Task.Status.COMPLETED)
        update_task(task, self.owner, description="Follow-up notes")
        self.assertEqual(received, [task.pk])

    def test_recipient_without_email_is_skipped(self):
        silent = _make_user("silent", email="")
        create_task(self.project, self.owner, task_name="Audit", assigned_to=silent)
        self.assertEqual(len(mail.outbox), 0)


class MarkOverdueTests(TestCase):

    def setUp(self):
        owner = _make_user("owner")
        self.project = Project.objects.create(name="Acme", owner=owner)
        self.today = D(2024, 2, 1)

        def make(name, status=Task.Status.NOT_STARTED, end=D(2024, 1, 15)):
            return Task.objects.create(
                project=self.project, task_name=name, status=status,
                start_date=D(2024, 1, 1), end_date=end,
            )

        self.late = make("Late", Task.Status.IN_PROGRESS)
        self.done = make("Done", Task.Status.COMPLETED)
        self.held = make("Held", Task.Status.ON_HOLD)
        self.future = make("Future", end=D(2024, 3, 1))

    def test_flags_only_open_past_due_tasks(self):
        flagged = mark_overdue_tasks(self.today)
        self.assertEqual(flagged, [self.late])
        self.assertEqual(flagged[0].status, Task.Status.OVERDUE)
        self.late.refresh_from_db()
        self.assertEqual(self.late.status, Task.Status.OVERDUE)
        self.done.refresh_from_db()
        self.assertEqual(self.done.status, Task.Status.COMPLETED)
        self.held.refresh_from_db()
        self.assertEqual(self.held.status, Task.Status.ON_HOLD)
        self.future.refresh_from_db()
        self.assertEqual(self.future.status, Task.Status.NOT_STARTED)

    def test_idempotent(self):
        mark_overdue_tasks(self.today)
        self.assertEqual(mark_overdue_tasks(self.today), [])
        self.assertEqual(
            self.late.activities.filter(new_value=Task.Status.OVERDUE).count(), 1,
        )

    def test_command(self):
        out = StringIO()
        call_command("mark_overdue", "--date", "2024-02-01", stdout=out)
        self.assertIn("Marked 1 task(s) overdue", out.getvalue())
        self.assertIn("Late", out.getvalue())


class SeedMasterplanTests(TestCase):

    def setUp(self):
        self.owner = _make_user("owner")

    def test_seed_creates_every_pairing(self):
        project = Project.objects.create(name="Acme", owner=self.owner)
        created = seed_masterplan(project, self.owner, start=D(2024, 1, 1))
        self.assertEqual(len(created), len(MASTERPLAN))
        audit = project.tasks.get(task_name="Technical site audit")
        self.assertEqual((audit.start_date, audit.end_date), (D(2024, 1, 1), D(2024, 1, 29)))

    def test_seed_is_idempotent(self):
        project = Project.objects.create(name="Acme", owner=self.owner)
        seed_masterplan(project, self.owner)
        self.assertEqual(seed_masterplan(project, self.owner), [])
        self.assertEqual(project.tasks.count(), len(MASTERPLAN))

    def test_command(self):
        out = StringIO()
        call_command("seed_project", "owner", "Acme", "--start", "2024-01-01", stdout=out)
        project = Project.objects.get(name="Acme")
        self.assertEqual(project.owner, self.owner)
        self.assertEqual(project.tasks.count(), len(MASTERPLAN))
        self.assertIn("created", out.getvalue())

    def test_command_unknown_owner(self):
        with self.assertRaises(CommandError):
            call_command("seed_project", "nobody", "Acme", stdout=StringIO())


# ---------------------------------------------------------------------------
# AI suggestions
# ---------------------------------------------------------------------------

class SuggestionServiceTests(TestCase):

    def setUp(self):
        owner = _make_user("owner")
        self.project = Project.objects.create(name="Acme", owner=owner)
        Task.objects.create(project=self.project, task_name="Technical site audit", pillar=Pillar.TECHNICAL)

    def test_suggestions_are_normalized(self):
        client = _fake_openai(json.dumps({"suggestions": [
            {
                "taskName": "Build FAQ hub", "pillar": "On-Page & Content",
                "phase": "Growth", "description": "Answer buyer questions.",
                "estimatedHours": 6, "priority": "High", "reasoning": "Gap in content.",
            },
            {"taskName": "   ", "pillar": "Technical"},
            "garbage",
        ]}))
        suggestions = generate_task_suggestions(
            self.project, target_audience="SMBs", client=client,
        )
        self.assertEqual(len(suggestions), 1)
        self.assertEqual(suggestions[0]["task_name"], "Build FAQ hub")
        self.assertEqual(suggestions[0]["estimated_hours"], 6)

        kwargs = client.chat.completions.create.call_args.kwargs
        self.assertEqual(kwargs["response_format"], {"type": "json_object"})
        prompt = kwargs["messages"][1]["content"]
        self.assertIn("Technical site audit", prompt)
        self.assertIn("Target audience: SMBs", prompt)

    def test_gap_analysis(self):
        client = _fake_openai(json.dumps({
            "gaps": ["No link building"],
            "recommendations": ["Start outreach"],
            "priorityActions": ["Audit backlinks"],
        }))
        analysis = analyze_project_gaps(self.project, client=client)
        self.assertEqual(analysis, {
            "gaps": ["No link building"],
            "recommendations": ["Start outreach"],
            "priority_actions": ["Audit backlinks"],
        })

    def test_invalid_json_raises(self):
        with self.assertRaises(SuggestionError):
            generate_task_suggestions(self.project, client=_fake_openai("not json"))

    def test_api_error_raises(self):
        client = mock.Mock()
        client.chat.completions.create.side_effect = OpenAIError("boom")
        with self.assertRaises(SuggestionError):
            analyze_project_gaps(self.project, client=client)

    @override_settings(OPENAI_API_KEY="")
    def test_missing_key(self):
        with self.assertRaises(SuggestionsNotConfigured):
            generate_task_suggestions(self.project)


# ---------------------------------------------------------------------------
# Views
# ---------------------------------------------------------------------------

class ApiTestCase(TestCase):

    def setUp(self):
        self.owner = _make_user("owner")
        self.editor = _make_user("editor")
        self.viewer = _make_user("viewer")
        self.stranger = _make_user("stranger")
        self.project = Project.objects.create(name="Acme", owner=self.owner)
        ProjectMember.objects.create(
            project=self.project, user=self.editor,
            permission_level=ProjectMember.Permission.EDIT,
        )
        ProjectMember.objects.create(
            project=self.project, user=self.viewer,
            permission_level=ProjectMember.Permission.VIEW,
        )
        self.task = Task.objects.create(
            project=self.project, task_name="Technical site audit",
            start_date=D(2024, 1, 10), end_date=D(2024, 1, 20),
            pillar=Pillar.TECHNICAL, phase=Phase.FOUNDATION, progress=40,
        )
        self.client = Client()

    def login(self, user):
        self.client.force_login(user)

    def send_json(self, method, url, data):
        return getattr(self.client, method)(
            url, data=json.dumps(data), content_type="application/json",
        )


class ProjectApiTests(ApiTestCase):

    def test_requires_login(self):
        response = self.client.get(reverse("projects:project_list"))
        self.assertEqual(response.status_code, 302)

    def test_list_shows_visible_projects_with_stats(self):
        Project.objects.create(name="Hidden", owner=self.stranger)
        self.login(self.viewer)
        response = self.client.get(reverse("projects:project_list"))
        self.assertEqual(response.status_code, 200)
        projects = response.json()["projects"]
        self.assertEqual([p["name"] for p in projects], ["Acme"])
        self.assertEqual(projects[0]["total_tasks"], 1)
        self.assertEqual(projects[0]["average_progress"], 40)

    def test_create_project(self):
        self.login(self.stranger)
        response = self.send_json("post", reverse("projects:project_list"), {"name": "New"})
        self.assertEqual(response.status_code, 201)
        project = Project.objects.get(name="New")
        self.assertEqual(project.owner, self.stranger)
        self.assertEqual(response.json()["total_tasks"], 0)

    def test_create_project_requires_name(self):
        self.login(self.owner)
        response = self.send_json("post", reverse("projects:project_list"), {})
        self.assertEqual(response.status_code, 400)
        self.assertIn("name", response.json()["errors"])

    def test_malformed_json(self):
        self.login(self.owner)
        response = self.client.post(
            reverse("projects:project_list"), data="{nope", content_type="application/json",
        )
        self.assertEqual(response.status_code, 400)

    def test_body_that_is_not_utf8(self):
        self.login(self.owner)
        response = self.client.post(
            reverse("projects:project_list"), data=b'{"name": "\xff"}', content_type="application/json",
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(Project.objects.count(), 1)

    def test_detail_includes_members_and_capabilities(self):
        self.login(self.editor)
        response = self.client.get(reverse("projects:project_detail", args=[self.project.pk]))
        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(len(data["members"]), 2)
        self.assertIn("edit_tasks", data["capabilities"])
        self.assertNotIn("delete_project", data["capabilities"])

    def test_detail_forbidden_for_stranger(self):
        self.login(self.stranger)
        response = self.client.get(reverse("projects:project_detail", args=[self.project.pk]))
        self.assertEqual(response.status_code, 403)

    def test_manager_sees_any_project(self):
        manager = _make_user("manager", role=Role.MANAGER)
        self.login(manager)
        response = self.client.get(reverse("projects:project_detail", args=[self.project.pk]))
        self.assertEqual(response.status_code, 200)

    def test_only_owner_deletes(self):
        self.login(self.editor)
        url = reverse("projects:project_detail", args=[self.project.pk])
        self.assertEqual(self.client.delete(url).status_code, 403)
        self.login(self.owner)
        self.assertEqual(self.client.delete(url).status_code, 200)
        self.assertFalse(Project.objects.filter(pk=self.project.pk).exists())

    def test_admin_deletes_any_project(self):
        admin = _make_user("admin", role=Role.ADMIN)
        self.login(admin)
        response = self.client.delete(reverse("projects:project_detail", args=[self.project.pk]))
        self.assertEqual(response.status_code, 200)


class TaskApiTests(ApiTestCase):

    def test_list_tasks(self):
        self.login(self.viewer)
        response = self.client.get(reverse("projects:project_tasks", args=[self.project.pk]))
        self.assertEqual(response.status_code, 200)
        tasks = response.json()["tasks"]
        self.assertEqual(tasks[0]["task_name"], "Technical site audit")
        self.assertEqual(tasks[0]["start_date"], "2024-01-10")

    def test_editor_creates_task(self):
        self.login(self.editor)
        response = self.send_json("post", reverse("projects:project_tasks", args=[self.project.pk]), {
            "task_name": "Keyword research",
            "start_date": "2024-01-15",
            "end_date": "2024-02-15",
            "pillar": "On-Page & Content",
            "assigned_to": self.viewer.pk,
        })
        self.assertEqual(response.status_code, 201)
        task = Task.objects.get(task_name="Keyword research")
        self.assertEqual(task.created_by, self.editor)
        self.assertEqual(task.assigned_to, self.viewer)
        self.assertEqual(task.status, Task.Status.NOT_STARTED)
        self.assertEqual(response.json()["assigned_to"]["username"], "viewer")

    def test_viewer_cannot_create_task(self):
        self.login(self.viewer)
        response = self.send_json("post", reverse("projects:project_tasks", args=[self.project.pk]), {
            "task_name": "Nope",
        })
        self.assertEqual(response.status_code, 403)

    def test_end_before_start_rejected(self):
        self.login(self.owner)
        response = self.send_json("post", reverse("projects:project_tasks", args=[self.project.pk]), {
            "task_name": "Backwards",
            "start_date": "2024-02-15",
            "end_date": "2024-01-15",
        })
        self.assertEqual(response.status_code, 400)
        self.assertIn("end_date", response.json()["errors"])

    def test_cannot_assign_outsider(self):
        self.login(self.owner)
        response = self.send_json("post", reverse("projects:project_tasks", args=[self.project.pk]), {
            "task_name": "Outsourced",
            "assigned_to": self.stranger.pk,
        })
        self.assertEqual(response.status_code, 400)
        self.assertIn("assigned_to", response.json()["errors"])

    def test_get_task(self):
        self.login(self.viewer)
        response = self.client.get(reverse("projects:task_detail", args=[self.task.pk]))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["progress"], 40)

    def test_patch_partial_update(self):
        self.login(self.editor)
        response = self.send_json("patch", reverse("projects:task_detail", args=[self.task.pk]), {
            "progress": 75,
        })
        self.assertEqual(response.status_code, 200)
        self.task.refresh_from_db()
        self.assertEqual(self.task.progress, 75)
        self.assertEqual(self.task.task_name, "Technical site audit")
        self.assertEqual(self.task.pillar, Pillar.TECHNICAL)

    def test_patch_complete(self):
        self.login(self.editor)
        response = self.send_json("patch", reverse("projects:task_detail", args=[self.task.pk]), {
            "status": "Completed",
        })
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["progress"], 100)
        self.assertEqual(mail.outbox[0].to, ["owner@example.com"])

    def test_patch_end_before_existing_start(self):
        self.login(self.owner)
        response = self.send_json("patch", reverse("projects:task_detail", args=[self.task.pk]), {
            "end_date": "2024-01-01",
        })
        self.assertEqual(response.status_code, 400)

    def test_patch_out_of_range_progress(self):
        self.login(self.owner)
        response = self.send_json("patch", reverse("projects:task_detail", args=[self.task.pk]), {
            "progress": 140,
        })
        self.assertEqual(response.status_code, 400)

    def test_viewer_cannot_patch(self):
        self.login(self.viewer)
        response = self.send_json("patch", reverse("projects:task_detail", args=[self.task.pk]), {
            "progress": 75,
        })
        self.assertEqual(response.status_code, 403)

    def test_manager_cannot_patch(self):
        self.login(_make_user("manager", role=Role.MANAGER))
        response = self.send_json("patch", reverse("projects:task_detail", args=[self.task.pk]), {
            "progress": 75,
        })
        self.assertEqual(response.status_code, 403)

    def test_other_methods_not_allowed(self):
        self.login(self.owner)
        response = self.client.delete(reverse("projects:task_detail", args=[self.task.pk]))
        self.assertEqual(response.status_code, 405)


class MemberApiTests(ApiTestCase):

    def test_owner_adds_member_and_invites(self):
        newcomer = _make_user("newcomer")
        self.login(self.owner)
        response = self.send_json("post", reverse("projects:project_members", args=[self.project.pk]), {
            "user": newcomer.pk,
            "permission_level": "edit",
        })
        self.assertEqual(response.status_code, 201)
        member = ProjectMember.objects.get(project=self.project, user=newcomer)
        self.assertEqual(member.permission_level, ProjectMember.Permission.EDIT)
        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].subject, "You've been invited to join Acme")

    def test_readding_updates_permission(self):
        self.login(self.owner)
        response = self.send_json("post", reverse("projects:project_members", args=[self.project.pk]), {
            "user": self.viewer.pk,
            "permission_level": "edit",
        })
        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(mail.outbox), 0)
        self.assertEqual(
            ProjectMember.objects.get(project=self.project, user=self.viewer).permission_level,
            ProjectMember.Permission.EDIT,
        )

    def test_default_permission_is_view(self):
        newcomer = _make_user("newcomer")
        self.login(self.owner)
        self.send_json("post", reverse("projects:project_members", args=[self.project.pk]), {
            "user": newcomer.pk,
        })
        member = ProjectMember.objects.get(project=self.project, user=newcomer)
        self.assertEqual(member.permission_level, ProjectMember.Permission.VIEW)

    def test_owner_cannot_be_added(self):
        self.login(self.owner)
        response = self.send_json("post", reverse("projects:project_members", args=[self.project.pk]), {
            "user": self.owner.pk,
        })
        self.assertEqual(response.status_code, 400)

    def test_editor_cannot_manage_members(self):
        self.login(self.editor)
        response = self.send_json("post", reverse("projects:project_members", args=[self.project.pk]), {
            "user": self.stranger.pk,
        })
        self.assertEqual(response.status_code, 403)

    def test_remove_member(self):
        self.login(self.owner)
        response = self.client.delete(
            reverse("projects:project_member_remove", args=[self.project.pk, self.viewer.pk])
        )
        self.assertEqual(response.status_code, 200)
        self.assertFalse(ProjectMember.objects.filter(project=self.project, user=self.viewer).exists())

    def test_list_members(self):
        self.login(self.viewer)
        response = self.client.get(reverse("projects:project_members", args=[self.project.pk]))
        usernames = [m["user"]["username"] for m in response.json()["members"]]
        self.assertEqual(usernames, ["editor", "viewer"])


class TimelineViewTests(ApiTestCase):

    def test_html_renders_weeks_and_bars(self):
        self.login(self.viewer)
        response = self.client.get(reverse("projects:project_timeline", args=[self.project.pk]))
        self.assertEqual(response.status_code, 200)
        self.assertTemplateUsed(response, "projects/timeline.html")
        self.assertContains(response, 'data-week="2023-12-31"')
        self.assertContains(response, 'data-week="2024-01-21"')
        self.assertNotContains(response, 'data-week="2024-01-28"')
        self.assertContains(response, "left: 29.1667%; width: 41.6667%;")
        self.assertContains(response, "width: 40%;")
        self.assertContains(response, '<span class="overall-progress">40%</span>')

    def test_html_forbidden_for_stranger(self):
        self.login(self.stranger)
        response = self.client.get(reverse("projects:project_timeline", args=[self.project.pk]))
        self.assertEqual(response.status_code, 403)

    def test_empty_project(self):
        empty = Project.objects.create(name="Empty", owner=self.owner)
        self.login(self.owner)
        response = self.client.get(reverse("projects:project_timeline", args=[empty.pk]))
        self.assertContains(response, "No tasks found")

    def test_json(self):
        self.login(self.viewer)
        response = self.client.get(reverse("projects:project_timeline_json", args=[self.project.pk]))
        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data["window"], {"start": "2024-01-03", "end": "2024-01-27"})
        self.assertEqual(data["weeks"], ["2023-12-31", "2024-01-07", "2024-01-14", "2024-01-21"])
        bar = data["rows"][0]["bar"]
        self.assertAlmostEqual(bar["left"], 7 / 24 * 100)
        self.assertAlmostEqual(bar["width"], 10 / 24 * 100)
        self.assertEqual(data["rows"][0]["progress_width"], 40)

    def test_json_filters(self):
        Task.objects.create(
            project=self.project, task_name="Finished", status=Task.Status.COMPLETED,
            progress=100, start_date=D(2024, 1, 1), end_date=D(2024, 1, 5),
        )
        Task.objects.create(
            project=self.project, task_name="Outreach", pillar=Pillar.OFF_PAGE,
            start_date=D(2024, 1, 1), end_date=D(2024, 1, 5),
        )
        self.login(self.viewer)
        url = reverse("projects:project_timeline_json", args=[self.project.pk])

        names = [r["task"]["task_name"] for r in self.client.get(url, {"show_completed": "0"}).json()["rows"]]
        self.assertNotIn("Finished", names)
        self.assertIn("Outreach", names)

        data = self.client.get(url, {"pillar": "Technical"}).json()
        names = [r["task"]["task_name"] for r in data["rows"]]
        self.assertIn("Technical site audit", names)
        self.assertNotIn("Outreach", names)
        self.assertEqual(data["stats"]["total_tasks"], 3)


class SuggestionViewTests(ApiTestCase):

    @override_settings(OPENAI_API_KEY="")
    def test_not_configured(self):
        self.login(self.owner)
        response = self.client.post(reverse("projects:project_suggestions", args=[self.project.pk]))
        self.assertEqual(response.status_code, 503)

    def test_upstream_failure(self):
        self.login(self.owner)
        with mock.patch("projects.views.analyze_project_gaps", side_effect=SuggestionError("bad")):
            response = self.client.post(reverse("projects:project_gaps", args=[self.project.pk]))
        self.assertEqual(response.status_code, 502)

    def test_suggestions(self):
        suggestion = {"task_name": "Build FAQ hub", "pillar": "On-Page & Content"}
        self.login(self.editor)
        with mock.patch("projects.views.generate_task_suggestions", return_value=[suggestion]) as gen:
            response = self.send_json(
                "post", reverse("projects:project_suggestions", args=[self.project.pk]),
                {"target_audience": "SMBs", "website_type": "SaaS"},
            )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"suggestions": [suggestion]})
        self.assertEqual(gen.call_args.kwargs["website_type"], "SaaS")

    def test_viewer_cannot_request(self):
        self.login(self.viewer)
        response = self.client.post(reverse("projects:project_suggestions", args=[self.project.pk]))
        self.assertEqual(response.status_code, 403)


class UserRoleViewTests(ApiTestCase):

    def test_admin_sets_role(self):
        self.login(_make_user("admin", role=Role.ADMIN))
        response = self.send_json("patch", reverse("projects:user_role", args=[self.stranger.pk]), {
            "role": "manager",
        })
        self.assertEqual(response.status_code, 200)
        self.assertEqual(Profile.objects.get(user=self.stranger).role, Role.MANAGER)

    def test_invalid_role(self):
        self.login(_make_user("admin", role=Role.ADMIN))
        response = self.send_json("patch", reverse("projects:user_role", args=[self.stranger.pk]), {
            "role": "overlord",
        })
        self.assertEqual(response.status_code, 400)

    def test_non_admin_forbidden(self):
        self.login(self.owner)
        response = self.send_json("patch", reverse("projects:user_role", args=[self.stranger.pk]), {
            "role": "admin",
        })
        self.assertEqual(response.status_code, 403)


class TaskAdminTests(ApiTestCase):

    def test_mark_completed_action_goes_through_services(self):
        root = User.objects.create_superuser("root", "root@example.com", "pw")
        self.login(root)
        response = self.client.post(reverse("admin:projects_task_changelist"), {
            "action": "mark_completed",
            "_selected_action": [self.task.pk],
        })
        self.assertEqual(response.status_code, 302)
        self.task.refresh_from_db()
        self.assertEqual(self.task.status, Task.Status.COMPLETED)
        self.assertEqual(self.task.progress, 100)
        self.assertTrue(self.task.activities.filter(
            activity_type=TaskActivity.ActivityType.COMPLETED,
        ).exists())
