from django.contrib import admin

from .models import Profile, Project, ProjectMember, Task, TaskActivity
from .services import update_task


class ProjectMemberInline(admin.TabularInline):
    model = ProjectMember
    extra = 0


@admin.register(Project)
class ProjectAdmin(admin.ModelAdmin):
    list_display = ["name", "owner", "created_at"]
    search_fields = ["name", "owner__username"]
    inlines = [ProjectMemberInline]


@admin.register(Task)
class TaskAdmin(admin.ModelAdmin):
    list_display = ["task_name", "project", "pillar", "phase", "status", "progress", "start_date", "end_date"]
    list_filter = ["pillar", "phase", "status", "priority"]
    search_fields = ["task_name"]
    date_hierarchy = "start_date"
    actions = ["mark_completed"]

    @admin.action(description="Mark selected tasks completed")
    def mark_completed(self, request, queryset):
        updated = 0
        for task in queryset.exclude(status=Task.Status.COMPLETED).select_related("project"):
            update_task(task, request.user, status=Task.Status.COMPLETED)
            updated += 1
        self.message_user(request, f"{updated} task(s) marked completed.")


@admin.register(TaskActivity)
class TaskActivityAdmin(admin.ModelAdmin):
    list_display = ["task", "activity_type", "field_name", "user", "created_at"]
    list_filter = ["activity_type"]
    readonly_fields = ["task", "user", "activity_type", "field_name", "old_value", "new_value", "created_at"]


@admin.register(Profile)
class ProfileAdmin(admin.ModelAdmin):
    list_display = ["user", "role", "created_at"]
    list_filter = ["role"]
