from datetime import timedelta

from django.core.management.base import BaseCommand

from apps.payments.services import find_stuck_refunds


class Command(BaseCommand):
    help = 'List refunds stuck in processing; they need manual reconciliation against the ledger'

    def add_arguments(self, parser):
        parser.add_argument(
            '--minutes', type=int, default=10,
            help='Only report refunds processing for longer than this (default: 10)',
        )

    def handle(self, *args, **options):
        stuck = find_stuck_refunds(older_than=timedelta(minutes=options['minutes']))
        if not stuck:
            self.stdout.write(self.style.SUCCESS('No stuck refunds.'))
            return
        for record in stuck:
            self.stdout.write(
                f'{record.reference}  user={record.user_id}  amount={record.refund_amount}  '
                f'since={record.refund_claimed_at:%Y-%m-%d %H:%M}  error={record.refund_error or "-"}'
            )
        self.stdout.write(self.style.WARNING(f'{len(stuck)} refunds stuck in processing.'))
