"""Capability-based authorization.

Every access check goes through ``capabilities_for``: a user's global role
grants one set of capabilities, and their relationship to a project
(owner, edit member, view member) grants another. Views ask for a
capability rather than comparing role strings.
"""

from django.core.exceptions import PermissionDenied
from django.db import models
from django.db.models import Q

from .models import Project, ProjectMember, Role


class Capability(models.TextChoices):
    VIEW_PROJECT = "view_project", "View project"
    EDIT_PROJECT = "edit_project", "Edit project"
    DELETE_PROJECT = "delete_project", "Delete project"
    MANAGE_MEMBERS = "manage_members", "Manage members"
    EDIT_TASKS = "edit_tasks", "Edit tasks"
    VIEW_ALL_PROJECTS = "view_all_projects", "View all projects"
    MANAGE_USERS = "manage_users", "Manage users"
    REQUEST_SUGGESTIONS = "request_suggestions", "Request AI suggestions"


ALL_CAPABILITIES = frozenset(Capability)

ROLE_CAPABILITIES = {
    Role.ADMIN: ALL_CAPABILITIES,
    Role.MANAGER: frozenset({
        Capability.VIEW_ALL_PROJECTS,
        Capability.REQUEST_SUGGESTIONS,
    }),
    Role.CLIENT: frozenset(),
}

# Relationship of a user to one project.
OWNER = "owner"

PROJECT_CAPABILITIES = {
    OWNER: frozenset({
        Capability.VIEW_PROJECT,
        Capability.EDIT_PROJECT,
        Capability.DELETE_PROJECT,
        Capability.MANAGE_MEMBERS,
        Capability.EDIT_TASKS,
        Capability.REQUEST_SUGGESTIONS,
    }),
    ProjectMember.Permission.EDIT: frozenset({
        Capability.VIEW_PROJECT,
        Capability.EDIT_TASKS,
        Capability.REQUEST_SUGGESTIONS,
    }),
    ProjectMember.Permission.VIEW: frozenset({
        Capability.VIEW_PROJECT,
    }),
}

# Global grants that imply project-level ones on every project.
_IMPLIED = {
    Capability.VIEW_ALL_PROJECTS: frozenset({Capability.VIEW_PROJECT}),
}


def user_role(user):
    """Return the user's Role; users without a profile are clients."""
    profile = getattr(user, "profile", None)
    if profile is None:
        return Role.CLIENT
    return Role(profile.role)


def _relationship(user, project):
    if project.owner_id == user.pk:
        return OWNER
    return (
        ProjectMember.objects
        .filter(project=project, user=user)
        .values_list("permission_level", flat=True)
        .first()
    )


def capabilities_for(user, project=None):
    if user is None or not user.is_authenticated:
        return frozenset()
    if user.is_superuser:
        return ALL_CAPABILITIES

    granted = set(ROLE_CAPABILITIES[user_role(user)])
    for capability, implied in _IMPLIED.items():
        if capability in granted:
            granted |= implied

    if project is not None:
        relationship = _relationship(user, project)
        if relationship is not None:
            granted |= PROJECT_CAPABILITIES[relationship]
    return frozenset(granted)


def has_capability(user, capability, project=None):
    return capability in capabilities_for(user, project)


def require_capability(user, capability, project=None):
    """Raise PermissionDenied unless *user* holds *capability*."""
    if not has_capability(user, capability, project):
        raise PermissionDenied(f"Missing capability: {capability}")


def visible_projects(user):
    """Projects the user may open: all of them, or owned plus joined."""
    if has_capability(user, Capability.VIEW_ALL_PROJECTS):
        return Project.objects.all()
    return Project.objects.filter(
        Q(owner=user) | Q(members__user=user)
    ).distinct()
