"""Timeout sweeper: matchmaking that never started and stakes that never matched."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from django.conf import settings
from django.utils import timezone

from apps.matches import lifecycle
from apps.matches.models import Match
from apps.matches.services import cancel_match

from .services import mark_orphaned_stakes_eligible

logger = logging.getLogger(__name__)

DEFAULT_WAITING_MATCH_TIMEOUT = timedelta(minutes=10)


@dataclass
class SweepReport:
    cancelled_matches: int = 0
    orphaned_stakes: int = 0

    @property
    def changed(self):
        return self.cancelled_matches + self.orphaned_stakes


def sweep_waiting_matches(now=None) -> int:
    """Cancel matches stuck in ``waiting`` past the matchmaking timeout.

    The ``refund_processed`` flag is claimed first with a conditional update;
    only the sweeper that flips it goes on to cancel the match, so two
    overlapping sweeps never mark the same stakes twice.
    """
    now = now or timezone.now()
    timeout = getattr(settings, 'WAITING_MATCH_TIMEOUT', DEFAULT_WAITING_MATCH_TIMEOUT)
    stale_ids = list(
        Match.objects.filter(
            status=lifecycle.WAITING,
            refund_processed=False,
            created_at__lt=now - timeout,
        ).values_list('pk', flat=True)
    )

    cancelled = 0
    for match_id in stale_ids:
        won = Match.objects.filter(
            pk=match_id, status=lifecycle.WAITING, refund_processed=False,
        ).update(refund_processed=True, updated_at=now)
        if not won:
            continue
        if cancel_match(match_id, 'matchmaking_timeout', now=now, from_states=(lifecycle.WAITING,)):
            cancelled += 1
    if cancelled:
        logger.info('Cancelled %d matches stuck in matchmaking', cancelled)
    return cancelled


def sweep_orphaned_stakes(now=None) -> int:
    return mark_orphaned_stakes_eligible(now=now)


def sweep_timeouts(now=None) -> SweepReport:
    now = now or timezone.now()
    return SweepReport(
        cancelled_matches=sweep_waiting_matches(now=now),
        orphaned_stakes=sweep_orphaned_stakes(now=now),
    )
