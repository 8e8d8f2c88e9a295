from django.core.management.base import BaseCommand

from dispatch_api.engine import get_coordinator


class Command(BaseCommand):
    help = "Expire directed offers whose deadline has passed and requeue their orders."

    def handle(self, *args, **options):
        expired = get_coordinator().expire_overdue()

        self.stdout.write(
            self.style.SUCCESS(f"Expired {expired} offer(s).")
        )
