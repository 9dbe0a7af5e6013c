from django.core.management.base import BaseCommand

from gamification.services import sync_badges


class Command(BaseCommand):
    help = "Create or update the built-in badge definitions."

    def handle(self, *args, **options):
        created_count = 0
        for badge, created in sync_badges():
            if created:
                created_count += 1
                self.stdout.write(f"  Created: {badge.name} ({badge.category})")
            else:
                self.stdout.write(f"  Exists: {badge.name} ({badge.category})")

        self.stdout.write(
            self.style.SUCCESS(f"\nDone! Created {created_count} new badges.")
        )
