"""Disconnect monitor.

Scans active matches for stale heartbeats and resolves them: both players
gone cancels the match, one player gone hands the other the win. Every write
is guarded by ``status IN active``, so re-running a tick whose previous
writes already landed is a no-op.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta

from django.conf import settings
from django.db import connection
from django.db.models import Q
from django.utils import timezone

from . import lifecycle
from .models import Match
from .services import award_win, cancel_match

logger = logging.getLogger(__name__)

DEFAULT_HEARTBEAT_TIMEOUT = timedelta(seconds=30)
DEFAULT_DISCONNECT_GRACE = timedelta(seconds=30)
HEARTBEAT_COLUMNS = {'player1_last_ping', 'player2_last_ping'}

_missing_columns_logged = False


@dataclass
class DisconnectReport:
    cancelled: list = field(default_factory=list)
    awarded: dict = field(default_factory=dict)
    skipped: bool = False

    @property
    def changed(self):
        return len(self.cancelled) + len(self.awarded)


def heartbeat_columns_available() -> bool:
    """Capability probe: do the ping columns exist yet (mid-deploy safety)."""
    table = Match._meta.db_table
    with connection.cursor() as cursor:
        if table not in connection.introspection.table_names(cursor):
            return False
        columns = {col.name for col in connection.introspection.get_table_description(cursor, table)}
    return HEARTBEAT_COLUMNS <= columns


def _is_stale(last_ping, cutoff) -> bool:
    return last_ping is None or last_ping < cutoff


def check_player_disconnects(now=None) -> DisconnectReport:
    global _missing_columns_logged

    report = DisconnectReport()
    if not heartbeat_columns_available():
        if not _missing_columns_logged:
            logger.info('Heartbeat columns missing on %s, skipping disconnect checks', Match._meta.db_table)
            _missing_columns_logged = True
        report.skipped = True
        return report

    now = now or timezone.now()
    timeout = getattr(settings, 'HEARTBEAT_TIMEOUT', DEFAULT_HEARTBEAT_TIMEOUT)
    grace = getattr(settings, 'DISCONNECT_GRACE', DEFAULT_DISCONNECT_GRACE)
    cutoff = now - timeout

    stale = (
        Q(player1_last_ping__isnull=True) | Q(player1_last_ping__lt=cutoff)
        | Q(player2_last_ping__isnull=True) | Q(player2_last_ping__lt=cutoff)
    )
    candidates = Match.objects.filter(
        stale,
        status__in=lifecycle.ACTIVE_STATES,
        created_at__lt=now - grace,
    ).order_by('pk')

    for match in candidates:
        p1_gone = _is_stale(match.player1_last_ping, cutoff)
        p2_gone = _is_stale(match.player2_last_ping, cutoff)

        if p1_gone and p2_gone:
            if cancel_match(match.pk, 'both_players_disconnect', now=now):
                report.cancelled.append(match.pk)
        elif p1_gone:
            if award_win(match, match.player2_id, reason='opponent_disconnect', now=now):
                report.awarded[match.pk] = match.player2_id
        elif p2_gone:
            if award_win(match, match.player1_id, reason='opponent_disconnect', now=now):
                report.awarded[match.pk] = match.player1_id

    if report.changed:
        logger.info(
            'Disconnect check: cancelled=%d awarded=%d',
            len(report.cancelled), len(report.awarded),
        )
    return report
