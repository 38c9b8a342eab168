from django.core.management.base import BaseCommand
from django.utils.dateparse import parse_date

from inventory.batches import expire_batches


class Command(BaseCommand):
    help = "Mark active batches whose expiry date has passed as expired."

    def add_arguments(self, parser):
        parser.add_argument("--as-of", dest="as_of", help="Optional ISO date to evaluate expiry against (default: today).")

    def handle(self, *args, **options):
        as_of = parse_date(options["as_of"]) if options.get("as_of") else None
        updated = expire_batches(today=as_of)
        self.stdout.write(self.style.SUCCESS(f"Expired {updated} batches."))
