from django.core.management.base import BaseCommand
from django.utils import timezone
from datetime import timedelta
from orders.models import Order
import logging

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Clean up old delivered/cancelled orders."

    def add_arguments(self, parser):
        parser.add_argument(
            "--days",
            type=int,
            default=30,
            help="Delete finished orders older than this many days (default: 30).",
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

        old_orders = Order.objects.filter(
            updated_at__lt=cutoff,
            status__in=Order.TERMINAL_STATUSES,
        )
        orders_count = old_orders.count()

        if dry_run:
            self.stdout.write(
                self.style.WARNING(
                    f"DRY RUN: Would delete {orders_count} finished orders older than {days} days."
                )
            )
        else:
            old_orders.delete()
            logger.info(f"Cleaned up {orders_count} old orders")
            self.stdout.write(
                self.style.SUCCESS(
                    f"Deleted {orders_count} finished orders older than {days} days."
                )
            )
