from django import forms
from django.contrib.auth import get_user_model

from .models import Project, ProjectMember, Role, Task


class ProjectForm(forms.ModelForm):
    class Meta:
        model = Project
        fields = ["name"]


class TaskForm(forms.ModelForm):
    progress = forms.IntegerField(min_value=0, max_value=100, required=False)

    class Meta:
        model = Task
        fields = [
            "task_name", "assigned_to", "start_date", "end_date", "progress",
            "pillar", "phase", "status", "priority", "description",
            "guideline_doc_link",
        ]
        widgets = {
            "start_date": forms.DateInput(attrs={"type": "date"}),
            "end_date": forms.DateInput(attrs={"type": "date"}),
            "description": forms.Textarea(attrs={"rows": 3, "placeholder": "Optional notes..."}),
        }

    def __init__(self, *args, project=None, **kwargs):
        super().__init__(*args, **kwargs)
        # Defaults apply when omitted; sent values may not be blank
        for name in ("status", "priority", "progress"):
            self.fields[name].required = name in self.data
        # Only people on the project can be assigned
        if project is not None:
            self.fields["assigned_to"].queryset = get_user_model().objects.filter(
                pk__in=[project.owner_id, *project.members.values_list("user_id", flat=True)]
            )

    def clean(self):
        cleaned = super().clean()
        start = cleaned.get("start_date", self.instance.start_date)
        end = cleaned.get("end_date", self.instance.end_date)
        if start and end and end < start:
            self.add_error("end_date", "End date cannot be before the start date.")
        return cleaned


class TaskUpdateForm(TaskForm):
    """Partial update: only the submitted fields are validated and applied."""

    def __init__(self, data, *args, **kwargs):
        super().__init__(data, *args, **kwargs)
        for name in list(self.fields):
            if name not in data:
                del self.fields[name]

    def _post_clean(self):
        # Changes are applied by services.update_task, not construct_instance.
        pass


class MemberForm(forms.ModelForm):
    user = forms.ModelChoiceField(queryset=get_user_model().objects.all())

    class Meta:
        model = ProjectMember
        fields = ["user", "permission_level"]

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.fields["permission_level"].required = False


class RoleForm(forms.Form):
    role = forms.ChoiceField(choices=Role.choices)
