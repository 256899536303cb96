from django.core.management.base import BaseCommand

from services.lifecycle import auto_finish_overdue_requests


class Command(BaseCommand):
    help = "Finish requests whose client did not confirm completion within AUTO_FINISH_MINUTES."

    def handle(self, *args, **options):
        finished = auto_finish_overdue_requests()

        self.stdout.write(
            self.style.SUCCESS(f"Auto-finished {finished} request(s).")
        )
