from django.contrib.auth.signals import user_logged_in
from django.dispatch import receiver

from projects import events


@receiver(events.task_completed)
def on_task_completed(sender, task, user=None, **kwargs):
    """Credit the assignee (or whoever closed the task) with the completion.

    A task reopened and completed again earns nothing the second time.
    """
    from .models import ActivityLog
    from .services import award_experience

    credited = task.assigned_to or user
    if credited is None:
        return
    already = ActivityLog.objects.filter(
        user=credited, activity_type="task_completed", related_id=task.pk,
    ).exists()
    if not already:
        award_experience(credited, "task_completed", related_id=task.pk)


@receiver(events.project_created)
def on_project_created(sender, project, user=None, **kwargs):
    from .services import award_experience

    award_experience(project.owner, "project_created", related_id=project.pk)


@receiver(events.member_added)
def on_member_added(sender, member, user=None, **kwargs):
    """Joining projects counts towards the Team Player badge."""
    from .services import check_achievements

    check_achievements(member.user)


@receiver(user_logged_in)
def on_user_logged_in(sender, request, user, **kwargs):
    """A login is the day's activity for the streak."""
    from .services import update_streak

    update_streak(user)
