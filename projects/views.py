import json
import logging

from django.contrib.auth import get_user_model
from django.contrib.auth.decorators import login_required
from django.http import HttpResponseNotAllowed, JsonResponse
from django.shortcuts import get_object_or_404, render
from django.utils import timezone
from django.views.decorators.http import require_http_methods, require_POST

from . import events, services
from .forms import MemberForm, ProjectForm, RoleForm, TaskForm, TaskUpdateForm
from .models import Pillar, Phase, Profile, Project, ProjectMember, Task
from .permissions import Capability, capabilities_for, require_capability, visible_projects
from .suggestions import (
    SuggestionError, SuggestionsNotConfigured, analyze_project_gaps,
    generate_task_suggestions,
)
from .timeline import build_timeline

logger = logging.getLogger(__name__)


def _json_body(request):
    """Decode a JSON request body, falling back to form-encoded POST data."""
    if request.content_type == "application/json":
        try:
            payload = json.loads(request.body or b"{}")
        except ValueError:
            # JSONDecodeError or a body that is not UTF-8
            return None
        return payload if isinstance(payload, dict) else None
    return request.POST


def _bad_request(errors):
    return JsonResponse({"errors": errors}, status=400)


def _user_json(user):
    if user is None:
        return None
    return {
        "id": user.pk,
        "username": user.get_username(),
        "email": user.email,
        "first_name": user.first_name,
        "last_name": user.last_name,
    }


def _task_json(task):
    return {
        "id": task.pk,
        "project_id": task.project_id,
        "task_name": task.task_name,
        "assigned_to": _user_json(task.assigned_to),
        "start_date": task.start_date.isoformat() if task.start_date else None,
        "end_date": task.end_date.isoformat() if task.end_date else None,
        "progress": task.progress,
        "pillar": task.pillar or None,
        "phase": task.phase or None,
        "status": task.status,
        "priority": task.priority,
        "description": task.description,
        "guideline_doc_link": task.guideline_doc_link,
        "created_at": task.created_at.isoformat(),
        "updated_at": task.updated_at.isoformat(),
    }


def _member_json(member):
    return {
        "id": member.pk,
        "project_id": member.project_id,
        "permission_level": member.permission_level,
        "user": _user_json(member.user),
    }


def _project_json(project, tasks=None, today=None):
    data = {
        "id": project.pk,
        "name": project.name,
        "owner": _user_json(project.owner),
        "created_at": project.created_at.isoformat(),
    }
    if tasks is not None:
        data.update(services.project_stats(tasks, today=today))
    return data


def _project_tasks(project):
    return list(
        Task.objects
        .filter(project=project)
        .select_related("assigned_to")
        .order_by("start_date", "pk")
    )


def _submitted(form, payload):
    """Cleaned values for the fields the client actually sent."""
    return {
        name: value
        for name, value in form.cleaned_data.items()
        if name in payload
    }


@login_required
@require_http_methods(["GET", "POST"])
def project_list(request):
    if request.method == "POST":
        payload = _json_body(request)
        if payload is None:
            return _bad_request({"__all__": ["Malformed JSON body."]})
        form = ProjectForm(payload)
        if not form.is_valid():
            return _bad_request(form.errors)
        project = form.save(commit=False)
        project.owner = request.user
        project.save()
        logger.info("Project %s created by %s", project.pk, request.user)
        events.project_created.send(sender=Project, project=project, user=request.user)
        return JsonResponse(_project_json(project, tasks=[]), status=201)

    today = timezone.localdate()
    projects = (
        visible_projects(request.user)
        .select_related("owner")
        .prefetch_related("tasks")
        .order_by("-created_at", "name")
    )
    return JsonResponse({
        "projects": [
            _project_json(p, tasks=p.tasks.all(), today=today) for p in projects
        ],
    })


@login_required
@require_http_methods(["GET", "DELETE"])
def project_detail(request, pk):
    project = get_object_or_404(Project.objects.select_related("owner"), pk=pk)

    if request.method == "DELETE":
        require_capability(request.user, Capability.DELETE_PROJECT, project)
        events.project_deleted.send(sender=Project, project=project, user=request.user)
        project.delete()
        logger.info("Project %s deleted by %s", pk, request.user)
        return JsonResponse({"success": True})

    require_capability(request.user, Capability.VIEW_PROJECT, project)
    data = _project_json(project, tasks=_project_tasks(project))
    data["members"] = [
        _member_json(m)
        for m in project.members.select_related("user").order_by("pk")
    ]
    data["capabilities"] = sorted(capabilities_for(request.user, project))
    return JsonResponse(data)


@login_required
@require_http_methods(["GET", "POST"])
def project_tasks(request, pk):
    project = get_object_or_404(Project, pk=pk)

    if request.method == "POST":
        require_capability(request.user, Capability.EDIT_TASKS, project)
        payload = _json_body(request)
        if payload is None:
            return _bad_request({"__all__": ["Malformed JSON body."]})
        form = TaskForm(payload, project=project)
        if not form.is_valid():
            return _bad_request(form.errors)
        task = services.create_task(project, request.user, **_submitted(form, payload))
        return JsonResponse(_task_json(task), status=201)

    require_capability(request.user, Capability.VIEW_PROJECT, project)
    return JsonResponse({"tasks": [_task_json(t) for t in _project_tasks(project)]})


@login_required
def task_detail(request, task_id):
    if request.method not in ("GET", "PATCH"):
        return HttpResponseNotAllowed(["GET", "PATCH"])
    task = get_object_or_404(
        Task.objects.select_related("project", "assigned_to"), pk=task_id,
    )

    if request.method == "GET":
        require_capability(request.user, Capability.VIEW_PROJECT, task.project)
        return JsonResponse(_task_json(task))

    require_capability(request.user, Capability.EDIT_TASKS, task.project)
    payload = _json_body(request)
    if payload is None:
        return _bad_request({"__all__": ["Malformed JSON body."]})
    form = TaskUpdateForm(payload, instance=task, project=task.project)
    if not form.is_valid():
        return _bad_request(form.errors)
    services.update_task(task, request.user, **_submitted(form, payload))
    return JsonResponse(_task_json(task))


@login_required
@require_http_methods(["GET", "POST"])
def project_members(request, pk):
    project = get_object_or_404(Project, pk=pk)

    if request.method == "POST":
        require_capability(request.user, Capability.MANAGE_MEMBERS, project)
        payload = _json_body(request)
        if payload is None:
            return _bad_request({"__all__": ["Malformed JSON body."]})
        form = MemberForm(payload)
        if not form.is_valid():
            return _bad_request(form.errors)
        user = form.cleaned_data["user"]
        if user.pk == project.owner_id:
            return _bad_request({"user": ["The owner is already on the project."]})
        member, created = ProjectMember.objects.update_or_create(
            project=project,
            user=user,
            defaults={
                "permission_level": (
                    form.cleaned_data["permission_level"] or ProjectMember.Permission.VIEW
                ),
            },
        )
        if created:
            events.member_added.send(sender=ProjectMember, member=member, user=request.user)
        return JsonResponse(_member_json(member), status=201 if created else 200)

    require_capability(request.user, Capability.VIEW_PROJECT, project)
    members = project.members.select_related("user").order_by("pk")
    return JsonResponse({"members": [_member_json(m) for m in members]})


@login_required
@require_http_methods(["DELETE"])
def project_member_remove(request, pk, user_id):
    project = get_object_or_404(Project, pk=pk)
    require_capability(request.user, Capability.MANAGE_MEMBERS, project)
    member = get_object_or_404(ProjectMember, project=project, user_id=user_id)
    member.delete()
    return JsonResponse({"success": True})


def _timeline_filters(request):
    return {
        "pillars": request.GET.getlist("pillar") or None,
        "phases": request.GET.getlist("phase") or None,
        "assignees": [a for a in request.GET.getlist("assignee") if a.isdigit()] or None,
        "show_completed": request.GET.get("show_completed", "1") != "0",
    }


def _timeline_context(request, project):
    tasks = _project_tasks(project)
    filtered = services.filter_tasks(tasks, **_timeline_filters(request))
    return {
        "project": project,
        "stats": services.project_stats(tasks),
        "timeline": build_timeline(filtered),
    }


@login_required
def project_timeline(request, pk):
    project = get_object_or_404(Project.objects.select_related("owner"), pk=pk)
    require_capability(request.user, Capability.VIEW_PROJECT, project)

    context = _timeline_context(request, project)
    context.update({
        "pillars": Pillar.choices,
        "phases": Phase.choices,
        "can_edit": Capability.EDIT_TASKS in capabilities_for(request.user, project),
    })
    return render(request, "projects/timeline.html", context)


@login_required
def project_timeline_json(request, pk):
    project = get_object_or_404(Project, pk=pk)
    require_capability(request.user, Capability.VIEW_PROJECT, project)

    context = _timeline_context(request, project)
    timeline = context["timeline"]
    return JsonResponse({
        "window": {
            "start": timeline["window"].start.isoformat(),
            "end": timeline["window"].end.isoformat(),
        },
        "weeks": [w.isoformat() for w in timeline["weeks"]],
        "rows": [
            {
                "task": _task_json(row["task"]),
                "bar": row["bar"]._asdict() if row["bar"] else None,
                "progress_width": row["progress_width"],
            }
            for row in timeline["rows"]
        ],
        "stats": context["stats"],
    })


def _ai_error(exc):
    if isinstance(exc, SuggestionsNotConfigured):
        return JsonResponse({"error": str(exc)}, status=503)
    return JsonResponse({"error": str(exc)}, status=502)


@login_required
@require_POST
def project_suggestions(request, pk):
    project = get_object_or_404(Project, pk=pk)
    require_capability(request.user, Capability.REQUEST_SUGGESTIONS, project)
    payload = _json_body(request) or {}
    try:
        suggestions = generate_task_suggestions(
            project,
            target_audience=payload.get("target_audience", ""),
            website_type=payload.get("website_type", ""),
        )
    except SuggestionError as exc:
        return _ai_error(exc)
    return JsonResponse({"suggestions": suggestions})


@login_required
@require_POST
def project_gaps(request, pk):
    project = get_object_or_404(Project, pk=pk)
    require_capability(request.user, Capability.REQUEST_SUGGESTIONS, project)
    try:
        analysis = analyze_project_gaps(project)
    except SuggestionError as exc:
        return _ai_error(exc)
    return JsonResponse(analysis)


@login_required
@require_http_methods(["PATCH", "POST"])
def user_role(request, user_id):
    require_capability(request.user, Capability.MANAGE_USERS)
    target = get_object_or_404(get_user_model(), pk=user_id)
    payload = _json_body(request)
    if payload is None:
        return _bad_request({"__all__": ["Malformed JSON body."]})
    form = RoleForm(payload)
    if not form.is_valid():
        return _bad_request(form.errors)
    profile, _ = Profile.objects.update_or_create(
        user=target, defaults={"role": form.cleaned_data["role"]},
    )
    logger.info("User %s role set to %s by %s", target.pk, profile.role, request.user)
    return JsonResponse({"id": target.pk, "role": profile.role})
