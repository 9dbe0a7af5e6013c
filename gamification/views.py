"""
Gamification views.

Read-only JSON endpoints. Points and streaks are updated by signal
receivers (task events and logins), never by these requests.
"""
from django.contrib.auth.decorators import login_required
from django.http import JsonResponse

from . import services
from .models import UserBadge


def _badge_json(user_badge):
    badge = user_badge.badge
    return {
        "badge_type": badge.badge_type,
        "name": badge.name,
        "description": badge.description,
        "icon_name": badge.icon_name,
        "color": badge.color,
        "category": badge.category,
        "earned_at": user_badge.earned_at.isoformat(),
    }


@login_required
def my_stats(request):
    """Current user's level, XP, streak and badges."""
    stats = services.get_stats(request.user)
    badges = UserBadge.objects.filter(user=request.user).select_related("badge")
    next_level_at = next(
        (t for t in services.LEVEL_THRESHOLDS if t > stats.experience_points),
        None,
    )
    if next_level_at is None:
        step = services.POINTS_PER_LEVEL_AFTER_10
        base = services.LEVEL_THRESHOLDS[-1]
        next_level_at = base + ((stats.experience_points - base) // step + 1) * step
    return JsonResponse({
        "experience_points": stats.experience_points,
        "level": stats.level,
        "next_level_at": next_level_at,
        "current_streak": stats.current_streak,
        "longest_streak": stats.longest_streak,
        "badges": [_badge_json(b) for b in badges],
    })


@login_required
def leaderboard(request, category):
    try:
        limit = max(1, min(int(request.GET.get("limit", 10)), 100))
    except ValueError:
        limit = 10
    try:
        rows = services.leaderboard(category, limit=limit)
    except ValueError as exc:
        return JsonResponse({"error": str(exc)}, status=400)
    return JsonResponse({"category": category, "leaders": rows})
