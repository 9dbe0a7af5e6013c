from django.apps import AppConfig
from django.db.models.signals import post_migrate


class GamificationConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "gamification"

    def ready(self):
        import gamification.signals  # noqa: F401

        post_migrate.connect(self._sync_badges, sender=self)

    @staticmethod
    def _sync_badges(**kwargs):
        """Keep Badge rows in step with BADGE_DEFINITIONS after every migrate."""
        from .services import sync_badges

        sync_badges()
