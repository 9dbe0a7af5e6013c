"""Project lifecycle signals.

Views and services send these; gamification and email notifications
subscribe. Receivers connect and disconnect explicitly, so a test can
attach its own receiver in place of the real ones.
"""

from django.dispatch import Signal

# sender=Project, kwargs: project, user
project_created = Signal()
project_deleted = Signal()

# sender=Task, kwargs: task, user
task_created = Signal()
task_assigned = Signal()
task_completed = Signal()

# sender=ProjectMember, kwargs: member, user
member_added = Signal()
