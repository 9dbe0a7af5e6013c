"""Experience points, levels, streaks, badges and leaderboards."""

import datetime
import logging

from django.contrib.auth import get_user_model
from django.db import transaction
from django.db.models import Count, F, Q
from django.utils import timezone

from projects.models import ProjectMember

from .models import ActivityLog, Badge, PlayerStats, UserBadge

logger = logging.getLogger(__name__)

ACTIVITY_POINTS = {
    "task_completed": 50,
    "project_created": 40,
    "login_streak": 10,
}

# Upper XP bound (exclusive) for levels 1..10; beyond the last one each
# additional 1000 XP is one more level.
LEVEL_THRESHOLDS = [100, 300, 600, 1000, 1500, 2100, 2800, 3600, 4500, 5500]
POINTS_PER_LEVEL_AFTER_10 = 1000

BADGE_DEFINITIONS = [
    {
        "badge_type": "first_task",
        "name": "First Steps",
        "description": "Complete your first task",
        "icon_name": "target",
        "color": "green",
        "required_value": 1,
        "category": Badge.Category.TASKS,
    },
    {
        "badge_type": "task_master",
        "name": "Task Master",
        "description": "Complete 10 tasks",
        "icon_name": "trophy",
        "color": "gold",
        "required_value": 10,
        "category": Badge.Category.TASKS,
    },
    {
        "badge_type": "seo_expert",
        "name": "SEO Expert",
        "description": "Complete 50 tasks",
        "icon_name": "crown",
        "color": "gold",
        "required_value": 50,
        "category": Badge.Category.TASKS,
    },
    {
        "badge_type": "streak_warrior",
        "name": "Streak Warrior",
        "description": "Maintain a 7-day login streak",
        "icon_name": "flame",
        "color": "orange",
        "required_value": 7,
        "category": Badge.Category.STREAKS,
    },
    {
        "badge_type": "team_player",
        "name": "Team Player",
        "description": "Be added to 5 projects",
        "icon_name": "users",
        "color": "indigo",
        "required_value": 5,
        "category": Badge.Category.PROJECTS,
    },
    {
        "badge_type": "rising_star",
        "name": "Rising Star",
        "description": "Reach level 5",
        "icon_name": "trending-up",
        "color": "pink",
        "required_value": 5,
        "category": Badge.Category.LEVELS,
    },
]

LEADERBOARD_CATEGORIES = ("experience", "level", "streak", "tasks")


def calculate_level(experience_points):
    """Return the level reached with *experience_points*."""
    for level, upper in enumerate(LEVEL_THRESHOLDS, start=1):
        if experience_points < upper:
            return level
    return (experience_points - LEVEL_THRESHOLDS[-1]) // POINTS_PER_LEVEL_AFTER_10 + 11


def get_stats(user):
    stats, _ = PlayerStats.objects.get_or_create(user=user)
    return stats


def sync_badges():
    """Create or update the Badge rows from BADGE_DEFINITIONS.

    Returns a list of (Badge, created) tuples.
    """
    results = []
    for definition in BADGE_DEFINITIONS:
        fields = dict(definition)
        badge_type = fields.pop("badge_type")
        results.append(
            Badge.objects.update_or_create(badge_type=badge_type, defaults=fields)
        )
    return results


def _activity_count(user, activity_type):
    return ActivityLog.objects.filter(user=user, activity_type=activity_type).count()


def _category_metrics(user, stats):
    return {
        Badge.Category.TASKS: _activity_count(user, "task_completed"),
        Badge.Category.STREAKS: stats.longest_streak,
        Badge.Category.LEVELS: stats.level,
        Badge.Category.PROJECTS: ProjectMember.objects.filter(user=user).count(),
    }


def check_achievements(user):
    """Award every badge *user* now qualifies for.

    Returns the list of newly awarded Badge objects.
    """
    stats = get_stats(user)
    metrics = _category_metrics(user, stats)
    owned = set(UserBadge.objects.filter(user=user).values_list("badge_id", flat=True))

    awarded = []
    for badge in Badge.objects.exclude(pk__in=owned):
        if metrics.get(badge.category, 0) >= badge.required_value:
            _, created = UserBadge.objects.get_or_create(user=user, badge=badge)
            if created:
                awarded.append(badge)
                logger.info("Badge %s awarded to %s", badge.badge_type, user)
    return awarded


def award_experience(user, activity_type, related_id=None):
    """Log *activity_type* for *user*, add its points and refresh the level.

    Unknown activity types are ignored and return None; otherwise the
    updated PlayerStats is returned.
    """
    points = ACTIVITY_POINTS.get(activity_type)
    if not points:
        logger.warning("Ignoring unknown activity type %r", activity_type)
        return None

    with transaction.atomic():
        ActivityLog.objects.create(
            user=user,
            activity_type=activity_type,
            points=points,
            related_id=related_id,
        )
        stats = get_stats(user)
        PlayerStats.objects.filter(pk=stats.pk).update(
            experience_points=F("experience_points") + points,
        )
        stats.refresh_from_db()
        level = calculate_level(stats.experience_points)
        if level != stats.level:
            logger.info("%s reached level %d", user, level)
            stats.level = level
            stats.save(update_fields=["level", "updated_at"])

    check_achievements(user)
    return stats


def update_streak(user, today=None):
    """Record activity on *today* and maintain the daily streak.

    Same-day repeats change nothing; the next consecutive day extends the
    streak and earns login_streak points; any gap restarts it at 1.
    """
    if today is None:
        today = timezone.localdate()
    stats = get_stats(user)

    if stats.last_active_date == today:
        return stats

    extended = (
        stats.last_active_date is not None
        and stats.last_active_date == today - datetime.timedelta(days=1)
    )
    stats.current_streak = stats.current_streak + 1 if extended else 1
    stats.longest_streak = max(stats.longest_streak, stats.current_streak)
    stats.last_active_date = today
    stats.save(update_fields=[
        "current_streak", "longest_streak", "last_active_date", "updated_at",
    ])

    if extended:
        stats = award_experience(user, "login_streak")
    else:
        check_achievements(user)
    return stats


def leaderboard(category, limit=10):
    """Return the top *limit* users for *category* as a list of dicts."""
    if category not in LEADERBOARD_CATEGORIES:
        raise ValueError(f"Unknown leaderboard category: {category}")

    if category == "tasks":
        users = (
            get_user_model().objects
            .annotate(
                score=Count(
                    "gamification_activities",
                    filter=Q(gamification_activities__activity_type="task_completed"),
                ),
            )
            .filter(score__gt=0)
            .order_by("-score", "username")[:limit]
        )
        return [
            {"user_id": u.pk, "username": u.get_username(), "score": u.score}
            for u in users
        ]

    order_field = {
        "experience": "experience_points",
        "level": "level",
        "streak": "longest_streak",
    }[category]
    rows = (
        PlayerStats.objects
        .select_related("user")
        .order_by(f"-{order_field}", "-experience_points", "user__username")[:limit]
    )
    return [
        {
            "user_id": s.user_id,
            "username": s.user.get_username(),
            "score": getattr(s, order_field),
            "level": s.level,
        }
        for s in rows
    ]
