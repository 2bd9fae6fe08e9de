"""
Management command to check that quantities replay from the movement log.

Usage:
    python manage.py verify_ledger
    python manage.py verify_ledger --store mjm
"""

from django.core.management.base import BaseCommand, CommandError

from stockledger import ledger


class Command(BaseCommand):
    """Verify the ledger replay invariant."""

    help = 'Compares on-hand quantities with the sum of applied movements'

    def add_arguments(self, parser):
        parser.add_argument(
            '--store',
            default=None,
            help='Only check items of this store'
        )

    def handle(self, *args, **options):
        discrepancies = ledger.verify(options['store'])

        for d in discrepancies:
            self.stderr.write(
                f'{d.store_id} {d.part_number}: on hand {d.on_hand}, '
                f'replayed {d.replayed} (difference {d.difference:+d})'
            )

        if discrepancies:
            raise CommandError(f'{len(discrepancies)} item(s) out of balance')

        self.stdout.write(self.style.SUCCESS('Ledger is consistent'))
