from django.core.management.base import BaseCommand, CommandError

from inventory.ledger import find_mismatches
from inventory.models import Batch


class Command(BaseCommand):
    help = "Verify that every batch's inventory record matches the sum of its movement entries."

    def add_arguments(self, parser):
        parser.add_argument("--batch-id", dest="batch_id", help="Optional batch UUID.")

    def handle(self, *args, **options):
        batches = Batch.objects.select_related("inventory_record").order_by("created_at")
        if options.get("batch_id"):
            batches = batches.filter(id=options["batch_id"])

        mismatches = 0
        for batch, derived, record in find_mismatches(batches.iterator()):
            mismatches += 1
            recorded = (
                f"on_hand={record.quantity_on_hand} on_shelf={record.quantity_on_shelf}" if record else "no inventory record"
            )
            self.stderr.write(
                f"Batch {batch.code}: ledger on_hand={derived['quantity_on_hand']} "
                f"on_shelf={derived['quantity_on_shelf']}, recorded {recorded}."
            )

        if mismatches:
            raise CommandError(f"{mismatches} batches disagree with the movement ledger.")
        self.stdout.write(self.style.SUCCESS("Movement ledger is consistent."))
