import logging

from django.utils import timezone

from apps.matches.models import Match

logger = logging.getLogger(__name__)


def expire_unclaimed_matches(now=None) -> int:
    """Mark winnings nobody claimed before the deadline as expired.

    A single conditional update; a second run over the same rows changes
    nothing and returns 0.
    """
    now = now or timezone.now()
    expired = Match.objects.filter(
        claim_status='unclaimed',
        claim_deadline__lt=now,
    ).update(claim_status='expired', updated_at=now)
    if expired:
        logger.info('Expired %d unclaimed matches', expired)
    return expired
