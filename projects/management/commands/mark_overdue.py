import datetime

from django.core.management.base import BaseCommand
from django.utils import timezone

from projects.services import mark_overdue_tasks


class Command(BaseCommand):
    help = (
        "Flag open tasks whose end date has passed as Overdue. "
        "Completed and On Hold tasks are left alone."
    )

    def add_arguments(self, parser):
        parser.add_argument(
            "--date",
            type=datetime.date.fromisoformat,
            default=None,
            help="Reference date (YYYY-MM-DD). Defaults to today.",
        )

    def handle(self, *args, **options):
        target = options["date"] or timezone.localdate()

        flagged = mark_overdue_tasks(target)
        self.stdout.write(f"Marked {len(flagged)} task(s) overdue as of {target}.")
        for task in flagged:
            self.stdout.write(f"  ! {task.project.name}: {task.task_name} (ended {task.end_date})")

        self.stdout.write(self.style.SUCCESS("Done."))
