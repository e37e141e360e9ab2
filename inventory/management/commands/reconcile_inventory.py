"""
Management command to compare product stock counters with bin contents.

Usage:
    python manage.py reconcile_inventory
    python manage.py reconcile_inventory --strict  # Exit non-zero on drift
"""
from django.core.management.base import BaseCommand, CommandError

from inventory.services import reconcile_all


class Command(BaseCommand):
    help = 'Report products whose total stock differs from the sum of their bin stock'

    def add_arguments(self, parser):
        parser.add_argument(
            '--strict',
            action='store_true',
            help='Fail when any product has drifted',
        )

    def handle(self, *args, **options):
        drifted = reconcile_all()

        for report in drifted:
            self.stdout.write(self.style.WARNING(
                f"{report['sku']}: total {report['total_stock']} "
                f"(available {report['available_stock']}, reserved {report['reserved_stock']}) "
                f"but bins hold {report['ledger_total']}"
            ))

        if not drifted:
            self.stdout.write(self.style.SUCCESS('All product counters match bin stock'))
            return

        message = f'{len(drifted)} product(s) drifted from bin stock'
        if options['strict']:
            raise CommandError(message)
        self.stdout.write(self.style.WARNING(message))
