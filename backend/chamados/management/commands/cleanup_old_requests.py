from django.core.management.base import BaseCommand
from django.utils import timezone
from datetime import timedelta
from chamados.models import SearchSession, ServiceRequest, TERMINAL_STATUSES
import logging

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Clean up closed search sessions and finished/canceled requests."

    def add_arguments(self, parser):
        parser.add_argument(
            "--days",
            type=int,
            default=30,
            help="Delete records older than this many days (default: 30).",
        )
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Show what would be deleted without actually deleting.",
        )

    def handle(self, *args, **options):
        days = options["days"]
        dry_run = options["dry_run"]
        cutoff = timezone.now() - timedelta(days=days)

        # Closed sessions of requests that are still kept
        old_sessions = SearchSession.objects.filter(
            closed_at__isnull=False,
            closed_at__lt=cutoff,
        )
        sessions_count = old_sessions.count()

        # Terminal requests the client already dismissed
        old_requests = ServiceRequest.objects.filter(
            updated_at__lt=cutoff,
            status__in=TERMINAL_STATUSES,
            acknowledged_at__isnull=False,
        )
        requests_count = old_requests.count()

        if dry_run:
            self.stdout.write(
                self.style.WARNING(
                    f"DRY RUN: Would delete {sessions_count} search sessions and "
                    f"{requests_count} requests older than {days} days."
                )
            )
            return

        old_sessions.delete()
        old_requests.delete()
        logger.info("Cleaned up %s search sessions and %s requests", sessions_count, requests_count)
        self.stdout.write(
            self.style.SUCCESS(
                f"Deleted {sessions_count} search sessions and {requests_count} requests older than {days} days."
            )
        )
