from django.contrib import admin

from .models import ActivityLog, Badge, PlayerStats, UserBadge


@admin.register(Badge)
class BadgeAdmin(admin.ModelAdmin):
    list_display = ["name", "badge_type", "category", "required_value"]
    list_filter = ["category"]
    search_fields = ["name", "badge_type"]


@admin.register(PlayerStats)
class PlayerStatsAdmin(admin.ModelAdmin):
    list_display = ["user", "level", "experience_points", "current_streak", "longest_streak", "last_active_date"]
    readonly_fields = ["user", "level", "experience_points", "current_streak", "longest_streak", "last_active_date", "updated_at"]
    actions = ["recompute_levels"]

    @admin.action(description="Recompute level from XP")
    def recompute_levels(self, request, queryset):
        from .services import calculate_level

        updated = 0
        for stats in queryset:
            level = calculate_level(stats.experience_points)
            if level != stats.level:
                stats.level = level
                stats.save(update_fields=["level", "updated_at"])
                updated += 1
        self.message_user(request, f"{updated} level(s) corrected.")


@admin.register(UserBadge)
class UserBadgeAdmin(admin.ModelAdmin):
    list_display = ["user", "badge", "earned_at"]
    list_filter = ["badge"]


@admin.register(ActivityLog)
class ActivityLogAdmin(admin.ModelAdmin):
    list_display = ["user", "activity_type", "points", "related_id", "created_at"]
    list_filter = ["activity_type"]
    date_hierarchy = "created_at"
