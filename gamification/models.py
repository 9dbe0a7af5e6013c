from django.conf import settings
from django.db import models


class Badge(models.Model):
    class Category(models.TextChoices):
        TASKS = "tasks", "Tasks"
        STREAKS = "streaks", "Streaks"
        PROJECTS = "projects", "Projects"
        LEVELS = "levels", "Levels"

    badge_type = models.SlugField(max_length=50, unique=True)
    name = models.CharField(max_length=100)
    description = models.CharField(max_length=255, blank=True, default="")
    icon_name = models.CharField(max_length=50, blank=True, default="")
    color = models.CharField(max_length=20, blank=True, default="")
    category = models.CharField(max_length=20, choices=Category.choices)
    required_value = models.PositiveIntegerField(default=1)

    class Meta:
        ordering = ["category", "required_value", "name"]

    def __str__(self):
        return self.name


class PlayerStats(models.Model):
    """Denormalized gamification counters for one user."""

    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="player_stats",
    )
    experience_points = models.PositiveIntegerField(default=0)
    level = models.PositiveIntegerField(default=1)
    current_streak = models.PositiveIntegerField(default=0)
    longest_streak = models.PositiveIntegerField(default=0)
    last_active_date = models.DateField(null=True, blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name_plural = "player stats"
        indexes = [
            models.Index(fields=["-experience_points"], name="playerstats_xp_idx"),
        ]

    def __str__(self):
        return f"{self.user}: level {self.level} ({self.experience_points} XP)"


class UserBadge(models.Model):
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="badges",
    )
    badge = models.ForeignKey(
        Badge,
        on_delete=models.CASCADE,
        related_name="awards",
    )
    earned_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["user", "badge"],
                name="unique_user_badge",
            ),
        ]
        ordering = ["-earned_at"]

    def __str__(self):
        return f"{self.badge} for {self.user}"


class ActivityLog(models.Model):
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="gamification_activities",
    )
    activity_type = models.CharField(max_length=50)
    points = models.IntegerField(default=0)
    related_id = models.IntegerField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [
            models.Index(fields=["user", "activity_type"], name="activitylog_user_type_idx"),
        ]

    def __str__(self):
        return f"{self.user} {self.activity_type} +{self.points}"
