"""Email notifications for task and membership events."""

import logging
from smtplib import SMTPException

from django.conf import settings
from django.core.mail import send_mail
from django.dispatch import receiver

from . import events

logger = logging.getLogger(__name__)

SITE_NAME = "SEO Timeline"


def _display_name(user):
    return user.get_full_name() or user.get_username()


def _send(recipient, subject, body):
    """Send one message; return False instead of failing the request."""
    if recipient is None or not recipient.email:
        logger.debug("Skipping %r: recipient has no email address", subject)
        return False
    try:
        send_mail(
            subject,
            body,
            settings.DEFAULT_FROM_EMAIL,
            [recipient.email],
        )
    except (SMTPException, OSError):
        logger.exception("Failed to send %r to %s", subject, recipient.email)
        return False
    logger.info("Sent %r to %s", subject, recipient.email)
    return True


def send_task_assigned(task, assigned_by=None):
    assigner = _display_name(assigned_by) if assigned_by else "Someone"
    body = (
        f"Hi {_display_name(task.assigned_to)},\n\n"
        f"{assigner} assigned you the task \"{task.task_name}\" "
        f"in project \"{task.project.name}\".\n"
    )
    if task.end_date:
        body += f"It is due on {task.end_date:%b %d, %Y}.\n"
    return _send(task.assigned_to, f"New Task Assigned: {task.task_name}", body)


def send_task_completed(task, completed_by=None):
    owner = task.project.owner
    finisher = _display_name(completed_by) if completed_by else "A team member"
    body = (
        f"Hi {_display_name(owner)},\n\n"
        f"{finisher} completed \"{task.task_name}\" "
        f"in project \"{task.project.name}\".\n"
    )
    return _send(owner, f"Task Completed: {task.task_name}", body)


def send_project_invitation(member, invited_by=None):
    inviter = _display_name(invited_by) if invited_by else SITE_NAME
    body = (
        f"Hi {_display_name(member.user)},\n\n"
        f"{inviter} added you to \"{member.project.name}\" "
        f"with {member.permission_level} access.\n"
    )
    return _send(
        member.user,
        f"You've been invited to join {member.project.name}",
        body,
    )


@receiver(events.task_assigned)
def on_task_assigned(sender, task, user=None, **kwargs):
    send_task_assigned(task, assigned_by=user)


@receiver(events.task_completed)
def on_task_completed(sender, task, user=None, **kwargs):
    if task.project.owner_id != getattr(user, "pk", None):
        send_task_completed(task, completed_by=user)


@receiver(events.member_added)
def on_member_added(sender, member, user=None, **kwargs):
    send_project_invitation(member, invited_by=user)
