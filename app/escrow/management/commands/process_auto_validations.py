"""
Release escrows whose validation window has lapsed.

Console entry point for the auto-validation reconciler, for deployments
that schedule it with cron instead of celery-beat.

Usage:
    python manage.py process_auto_validations
    python manage.py process_auto_validations --dry-run
    python manage.py process_auto_validations --batch-size 20
"""

from django.core.management.base import BaseCommand, CommandError

from escrow.services import EscrowService
from escrow.workers import AutoValidationReconciler


class Command(BaseCommand):
    help = "Release escrows awaiting validation whose deadline has passed"

    def add_arguments(self, parser):
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="List the escrows that are due without releasing them",
        )
        parser.add_argument(
            "--batch-size",
            type=int,
            default=None,
            help="Maximum number of escrows to process",
        )

    def handle(self, *args, **options):
        batch_size = options["batch_size"]
        if batch_size is not None and batch_size <= 0:
            raise CommandError("--batch-size must be positive")

        service = EscrowService()

        if options["dry_run"]:
            due = service.expired_validations(limit=batch_size)
            for record in due:
                self.stdout.write(
                    f"{record.pk}  job={record.job_ref}  "
                    f"deadline={record.validation_deadline.isoformat()}  "
                    f"amount={record.base_amount} {record.currency.upper()}"
                )
            self.stdout.write(self.style.SUCCESS(f"{len(due)} escrow(s) due for release"))
            return

        result = AutoValidationReconciler(service=service, batch_size=batch_size).run()

        for escrow_id, error in zip(result.failed_ids, result.errors):
            self.stderr.write(self.style.ERROR(f"{escrow_id}: {error}"))

        self.stdout.write(
            self.style.SUCCESS(
                f"Released {result.released_count} escrow(s), "
                f"{result.error_count} failure(s)"
            )
        )
