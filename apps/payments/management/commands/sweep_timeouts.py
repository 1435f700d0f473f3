from django.core.management.base import BaseCommand

from apps.payments.sweeper import sweep_timeouts


class Command(BaseCommand):
    help = 'Cancel matches stuck in matchmaking and open refunds for orphaned stakes'

    def handle(self, *args, **options):
        report = sweep_timeouts()
        self.stdout.write(self.style.SUCCESS(
            f'Cancelled {report.cancelled_matches} waiting matches, '
            f'opened {report.orphaned_stakes} orphaned-stake refunds.'
        ))
