from django.core.management.base import BaseCommand

from apps.matches.monitor import check_player_disconnects


class Command(BaseCommand):
    help = 'Resolve active matches whose players stopped sending heartbeats'

    def handle(self, *args, **options):
        report = check_player_disconnects()
        if report.skipped:
            self.stdout.write(self.style.WARNING('Heartbeat columns missing; nothing checked.'))
            return
        self.stdout.write(self.style.SUCCESS(
            f'Cancelled {len(report.cancelled)} matches, awarded {len(report.awarded)} wins by default.'
        ))
