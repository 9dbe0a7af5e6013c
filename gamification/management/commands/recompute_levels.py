from django.core.management.base import BaseCommand

from gamification.models import PlayerStats
from gamification.services import calculate_level, check_achievements


class Command(BaseCommand):
    help = (
        "Recalculate every player's level from their experience points and "
        "award any badges they now qualify for.\n\n"
        "Safe to run at any frequency; the command is fully idempotent."
    )

    def add_arguments(self, parser):
        parser.add_argument(
            "--quiet",
            action="store_true",
            help="Suppress per-player output (still prints summary).",
        )

    def handle(self, *args, **options):
        quiet = options["quiet"]

        players = PlayerStats.objects.select_related("user").order_by("user__username")
        total = players.count()
        if total == 0:
            if not quiet:
                self.stdout.write("No players found.")
            return

        changed = 0
        for stats in players:
            level = calculate_level(stats.experience_points)
            if level != stats.level:
                changed += 1
                if not quiet:
                    self.stdout.write(
                        f"  {stats.user}: level {stats.level} -> {level} "
                        f"({stats.experience_points} XP)"
                    )
                stats.level = level
                stats.save(update_fields=["level", "updated_at"])
            for badge in check_achievements(stats.user):
                if not quiet:
                    self.stdout.write(f"  {stats.user}: earned {badge.name}")

        self.stdout.write(
            self.style.SUCCESS(
                f"recompute_levels: {total} players processed "
                f"({changed} level change(s))."
            )
        )
