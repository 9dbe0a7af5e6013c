from datetime import date, timedelta
from io import StringIO

from django.contrib.auth.models import User
from django.core.management import call_command
from django.test import Client, TestCase
from django.urls import reverse
from django.utils import timezone

from projects import events
from projects.models import Project, ProjectMember, Task
from projects.services import create_task, update_task

from .models import ActivityLog, Badge, PlayerStats, UserBadge
from .services import (
    ACTIVITY_POINTS, BADGE_DEFINITIONS, award_experience, calculate_level,
    check_achievements, get_stats, leaderboard, sync_badges, update_streak,
)


def _badge_types(user):
    return set(UserBadge.objects.filter(user=user).values_list("badge__badge_type", flat=True))


class CalculateLevelTests(TestCase):

    def test_first_levels(self):
        self.assertEqual(calculate_level(0), 1)
        self.assertEqual(calculate_level(99), 1)
        self.assertEqual(calculate_level(100), 2)
        self.assertEqual(calculate_level(299), 2)
        self.assertEqual(calculate_level(300), 3)

    def test_level_ten_boundary(self):
        self.assertEqual(calculate_level(5499), 10)
        self.assertEqual(calculate_level(5500), 11)

    def test_beyond_table_every_thousand(self):
        self.assertEqual(calculate_level(6499), 11)
        self.assertEqual(calculate_level(6500), 12)
        self.assertEqual(calculate_level(15500), 21)


class BadgeSyncTests(TestCase):

    def test_sync_is_idempotent(self):
        sync_badges()
        results = sync_badges()
        self.assertEqual(len(results), len(BADGE_DEFINITIONS))
        self.assertFalse(any(created for _, created in results))
        self.assertEqual(Badge.objects.count(), len(BADGE_DEFINITIONS))

    def test_sync_restores_edited_definition(self):
        sync_badges()
        Badge.objects.filter(badge_type="first_task").update(required_value=99)
        sync_badges()
        self.assertEqual(Badge.objects.get(badge_type="first_task").required_value, 1)

    def test_every_category_has_a_badge(self):
        self.assertEqual(
            {definition["category"] for definition in BADGE_DEFINITIONS}, set(Badge.Category.values),
        )

    def test_points_table_matches_emitted_events(self):
        self.assertEqual(set(ACTIVITY_POINTS), {"task_completed", "project_created", "login_streak"})

    def test_seed_badges_command(self):
        Badge.objects.all().delete()
        out = StringIO()
        call_command("seed_badges", stdout=out)
        self.assertEqual(Badge.objects.count(), len(BADGE_DEFINITIONS))
        self.assertIn(f"Created {len(BADGE_DEFINITIONS)} new badges", out.getvalue())


class AwardExperienceTests(TestCase):

    def setUp(self):
        sync_badges()
        self.user = User.objects.create_user(username="testuser", password="testpass")

    def test_points_and_log(self):
        stats = award_experience(self.user, "task_completed", related_id=7)
        self.assertEqual(stats.experience_points, ACTIVITY_POINTS["task_completed"])
        log = ActivityLog.objects.get(user=self.user)
        self.assertEqual((log.activity_type, log.points, log.related_id), ("task_completed", 50, 7))

    def test_unknown_activity_ignored(self):
        self.assertIsNone(award_experience(self.user, "juggling"))
        self.assertFalse(ActivityLog.objects.exists())

    def test_level_up(self):
        PlayerStats.objects.create(user=self.user, experience_points=90)
        stats = award_experience(self.user, "task_completed")
        self.assertEqual(stats.experience_points, 140)
        self.assertEqual(stats.level, 2)
        self.assertEqual(PlayerStats.objects.get(user=self.user).level, 2)

    def test_first_task_badge(self):
        award_experience(self.user, "task_completed")
        self.assertIn("first_task", _badge_types(self.user))
        self.assertNotIn("task_master", _badge_types(self.user))

    def test_badges_awarded_once(self):
        award_experience(self.user, "task_completed")
        award_experience(self.user, "task_completed")
        self.assertEqual(
            UserBadge.objects.filter(user=self.user, badge__badge_type="first_task").count(), 1,
        )

    def test_rising_star_on_level_five(self):
        PlayerStats.objects.create(user=self.user, experience_points=1490, level=4)
        award_experience(self.user, "task_completed")
        self.assertIn("rising_star", _badge_types(self.user))

    def test_check_achievements_returns_new_badges_only(self):
        award_experience(self.user, "task_completed")
        self.assertEqual(check_achievements(self.user), [])


class StreakTests(TestCase):

    def setUp(self):
        sync_badges()
        self.user = User.objects.create_user(username="testuser", password="testpass")
        self.day = date(2026, 3, 2)

    def test_first_day(self):
        stats = update_streak(self.user, today=self.day)
        self.assertEqual((stats.current_streak, stats.longest_streak), (1, 1))
        self.assertEqual(stats.experience_points, 0)

    def test_same_day_is_noop(self):
        update_streak(self.user, today=self.day)
        stats = update_streak(self.user, today=self.day)
        self.assertEqual(stats.current_streak, 1)

    def test_consecutive_day_extends_and_awards(self):
        update_streak(self.user, today=self.day)
        stats = update_streak(self.user, today=self.day + timedelta(days=1))
        self.assertEqual(stats.current_streak, 2)
        self.assertEqual(stats.experience_points, ACTIVITY_POINTS["login_streak"])

    def test_gap_resets(self):
        update_streak(self.user, today=self.day)
        update_streak(self.user, today=self.day + timedelta(days=1))
        stats = update_streak(self.user, today=self.day + timedelta(days=5))
        self.assertEqual((stats.current_streak, stats.longest_streak), (1, 2))

    def test_week_long_streak_badge(self):
        for offset in range(7):
            update_streak(self.user, today=self.day + timedelta(days=offset))
        self.assertEqual(get_stats(self.user).longest_streak, 7)
        self.assertIn("streak_warrior", _badge_types(self.user))


class LeaderboardTests(TestCase):

    def setUp(self):
        self.alice = User.objects.create_user(username="alice", password="pw")
        self.bob = User.objects.create_user(username="bob", password="pw")
        self.carol = User.objects.create_user(username="carol", password="pw")
        PlayerStats.objects.create(user=self.alice, experience_points=500, level=3, longest_streak=2)
        PlayerStats.objects.create(user=self.bob, experience_points=900, level=4, longest_streak=9)
        PlayerStats.objects.create(user=self.carol, experience_points=50, level=1, longest_streak=4)

    def test_experience(self):
        rows = leaderboard("experience")
        self.assertEqual([r["username"] for r in rows], ["bob", "alice", "carol"])
        self.assertEqual(rows[0]["score"], 900)

    def test_streak(self):
        rows = leaderboard("streak", limit=2)
        self.assertEqual([r["username"] for r in rows], ["bob", "carol"])

    def test_tasks(self):
        for _ in range(2):
            ActivityLog.objects.create(user=self.carol, activity_type="task_completed", points=50)
        ActivityLog.objects.create(user=self.alice, activity_type="task_completed", points=50)
        ActivityLog.objects.create(user=self.bob, activity_type="project_created", points=40)
        rows = leaderboard("tasks")
        self.assertEqual([(r["username"], r["score"]) for r in rows], [("carol", 2), ("alice", 1)])

    def test_unknown_category(self):
        with self.assertRaises(ValueError):
            leaderboard("karma")


class SignalTests(TestCase):
    """Project events feed the gamification ledger."""

    def setUp(self):
        sync_badges()
        self.owner = User.objects.create_user(username="owner", password="pw")
        self.worker = User.objects.create_user(username="worker", password="pw")
        self.project = Project.objects.create(name="Acme", owner=self.owner)

    def test_completion_credits_assignee(self):
        task = create_task(self.project, self.owner, task_name="Audit", assigned_to=self.worker)
        update_task(task, self.owner, status=Task.Status.COMPLETED)
        self.assertEqual(get_stats(self.worker).experience_points, 50)
        self.assertEqual(get_stats(self.owner).experience_points, 0)
        self.assertEqual(
            ActivityLog.objects.get(user=self.worker).related_id, task.pk,
        )

    def test_reopened_task_is_credited_once(self):
        task = create_task(self.project, self.owner, task_name="Audit", assigned_to=self.worker)
        for _ in range(3):
            update_task(task, self.owner, status=Task.Status.COMPLETED)
            update_task(task, self.owner, status=Task.Status.IN_PROGRESS)
        self.assertEqual(get_stats(self.worker).experience_points, 50)
        self.assertEqual(
            ActivityLog.objects.filter(user=self.worker, activity_type="task_completed").count(), 1,
        )

    def test_completion_credits_closer_when_unassigned(self):
        task = create_task(self.project, self.owner, task_name="Audit")
        update_task(task, self.worker, status=Task.Status.COMPLETED)
        self.assertEqual(get_stats(self.worker).experience_points, 50)

    def test_project_created(self):
        events.project_created.send(sender=Project, project=self.project, user=self.owner)
        self.assertEqual(get_stats(self.owner).experience_points, ACTIVITY_POINTS["project_created"])

    def test_team_player_after_five_projects(self):
        for i in range(5):
            project = Project.objects.create(name=f"P{i}", owner=self.owner)
            member = ProjectMember.objects.create(project=project, user=self.worker)
            events.member_added.send(sender=ProjectMember, member=member, user=self.owner)
        self.assertIn("team_player", _badge_types(self.worker))


class GamificationViewTests(TestCase):

    def setUp(self):
        sync_badges()
        self.user = User.objects.create_user(username="testuser", password="testpass")
        self.client = Client()
        self.client.login(username="testuser", password="testpass")

    def test_my_stats(self):
        award_experience(self.user, "task_completed")
        response = self.client.get(reverse("gamification:my_stats"))
        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data["experience_points"], 50)
        self.assertEqual(data["level"], 1)
        self.assertEqual(data["next_level_at"], 100)
        self.assertEqual(data["current_streak"], 1)
        self.assertEqual([b["badge_type"] for b in data["badges"]], ["first_task"])

    def test_next_level_beyond_table(self):
        PlayerStats.objects.filter(user=self.user).update(experience_points=6000, level=11)
        response = self.client.get(reverse("gamification:my_stats"))
        self.assertEqual(response.json()["next_level_at"], 6500)

    def test_login_starts_streak(self):
        stats = get_stats(self.user)
        self.assertEqual(stats.current_streak, 1)
        self.assertEqual(stats.last_active_date, timezone.localdate())

    def test_viewing_stats_changes_nothing(self):
        PlayerStats.objects.filter(user=self.user).update(
            current_streak=3, longest_streak=3,
            last_active_date=timezone.localdate() - timedelta(days=1),
        )
        self.client.get(reverse("gamification:my_stats"))
        response = self.client.get(reverse("gamification:my_stats"))
        self.assertEqual(response.json()["current_streak"], 3)
        self.assertEqual(response.json()["experience_points"], 0)
        self.assertFalse(ActivityLog.objects.filter(user=self.user).exists())

    def test_requires_login(self):
        self.client.logout()
        response = self.client.get(reverse("gamification:my_stats"))
        self.assertEqual(response.status_code, 302)

    def test_leaderboard(self):
        award_experience(self.user, "project_created")
        response = self.client.get(reverse("gamification:leaderboard", args=["experience"]))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["leaders"][0]["username"], "testuser")

    def test_leaderboard_unknown_category(self):
        response = self.client.get(reverse("gamification:leaderboard", args=["karma"]))
        self.assertEqual(response.status_code, 400)


class RecomputeLevelsCommandTests(TestCase):

    def setUp(self):
        sync_badges()
        self.user = User.objects.create_user(username="testuser", password="testpass")

    def test_fixes_stale_level(self):
        PlayerStats.objects.create(user=self.user, experience_points=700, level=1)
        out = StringIO()
        call_command("recompute_levels", stdout=out)
        self.assertEqual(PlayerStats.objects.get(user=self.user).level, 4)
        self.assertIn("level 1 -> 4", out.getvalue())
        self.assertIn("1 level change(s)", out.getvalue())

    def test_idempotent(self):
        PlayerStats.objects.create(user=self.user, experience_points=700, level=1)
        call_command("recompute_levels", "--quiet", stdout=StringIO())
        out = StringIO()
        call_command("recompute_levels", stdout=out)
        self.assertIn("0 level change(s)", out.getvalue())

    def test_no_players(self):
        out = StringIO()
        call_command("recompute_levels", stdout=out)
        self.assertIn("No players found.", out.getvalue())
