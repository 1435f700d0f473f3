from django.core.management.base import BaseCommand

from apps.claims.expiry import expire_unclaimed_matches


class Command(BaseCommand):
    help = 'Expire winnings that were not claimed before their deadline'

    def handle(self, *args, **options):
        expired = expire_unclaimed_matches()
        self.stdout.write(self.style.SUCCESS(f'Expired {expired} unclaimed matches.'))
