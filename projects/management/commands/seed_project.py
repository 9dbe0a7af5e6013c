import datetime

from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand, CommandError

from projects.models import Project
from projects.services import seed_masterplan


class Command(BaseCommand):
    help = "Create (or top up) a project with the default SEO masterplan tasks."

    def add_arguments(self, parser):
        parser.add_argument("owner", help="Username of the project owner.")
        parser.add_argument("name", help="Project name.")
        parser.add_argument(
            "--start",
            type=datetime.date.fromisoformat,
            default=None,
            help="Masterplan start date (YYYY-MM-DD). Defaults to today.",
        )

    def handle(self, *args, **options):
        User = get_user_model()
        try:
            owner = User.objects.get(username=options["owner"])
        except User.DoesNotExist:
            raise CommandError(f"No user named {options['owner']!r}.")

        project, created = Project.objects.get_or_create(
            name=options["name"], owner=owner,
        )
        status = "created" if created else "already exists"
        self.stdout.write(f"  {project.name} – {status}")

        for task in seed_masterplan(project, owner, start=options["start"]):
            self.stdout.write(f"  + {task.task_name} ({task.pillar}, {task.phase})")

        self.stdout.write(self.style.SUCCESS("Done."))
