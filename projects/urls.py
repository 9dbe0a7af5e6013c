from django.urls import path

from . import views

app_name = "projects"

urlpatterns = [
    path("", views.project_list, name="project_list"),
    path("<int:pk>/", views.project_detail, name="project_detail"),
    path("<int:pk>/tasks/", views.project_tasks, name="project_tasks"),
    path("<int:pk>/members/", views.project_members, name="project_members"),
    path("<int:pk>/members/<int:user_id>/", views.project_member_remove, name="project_member_remove"),
    path("<int:pk>/timeline/", views.project_timeline, name="project_timeline"),
    path("<int:pk>/timeline.json", views.project_timeline_json, name="project_timeline_json"),
    path("<int:pk>/suggestions/", views.project_suggestions, name="project_suggestions"),
    path("<int:pk>/gaps/", views.project_gaps, name="project_gaps"),
    path("tasks/<int:task_id>/", views.task_detail, name="task_detail"),
    path("users/<int:user_id>/role/", views.user_role, name="user_role"),
]
