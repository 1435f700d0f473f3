from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from apps.payments.services import mark_refund_eligible

from . import lifecycle
from .models import Match

if TYPE_CHECKING:
    from django.contrib.auth.models import User

logger = logging.getLogger(__name__)

DEFAULT_CLAIM_WINDOW = timedelta(hours=1)


class InvalidMatch(Exception):
    pass


def claim_window() -> timedelta:
    return getattr(settings, 'CLAIM_WINDOW', DEFAULT_CLAIM_WINDOW)


def create_match(player1: User, player2: User, stake: int) -> Match:
    """Pair two players; both wallets are bound now and never rewritten."""
    if player1 == player2:
        raise InvalidMatch('A player cannot be matched against themselves.')
    if stake <= 0:
        raise InvalidMatch('Stake must be positive.')

    wallets = []
    for player in (player1, player2):
        wallet = player.profile.wallet_address
        if not wallet:
            raise InvalidMatch(f'{player.username} has no wallet bound.')
        wallets.append(wallet.lower())

    match = Match.objects.create(
        player1=player1,
        player2=player2,
        player1_wallet=wallets[0],
        player2_wallet=wallets[1],
        stake=stake,
    )
    logger.info(
        'Match created: match=%s player1=%s player2=%s stake=%d',
        match.pk, player1.username, player2.username, stake,
    )
    return match


def advance_match(match_id: int, to_status: str) -> bool:
    """Move a match one step forward (waiting -> ready -> countdown -> signal)."""
    sources = [state for state, target in lifecycle.FORWARD.items() if target == to_status]
    if not sources:
        raise lifecycle.InvalidTransition(match_id, '?', to_status, 'Not a forward step.')

    updated = Match.objects.filter(pk=match_id, status__in=sources).update(
        status=to_status, updated_at=timezone.now(),
    )
    if not updated:
        logger.info('Advance skipped: match=%s target=%s (state moved on)', match_id, to_status)
    return updated == 1


def record_heartbeat(match_id: int, user_id: int, at=None) -> bool:
    """Store a player's last ping. Only active matches accept heartbeats."""
    players = Match.objects.filter(pk=match_id).values('player1_id', 'player2_id').first()
    if players is None:
        return False
    if user_id == players['player1_id']:
        column = 'player1_last_ping'
    elif user_id == players['player2_id']:
        column = 'player2_last_ping'
    else:
        return False

    updated = Match.objects.filter(pk=match_id, status__in=lifecycle.ACTIVE_STATES).update(
        **{column: at or timezone.now()}
    )
    return updated == 1


def award_win(match: Match, winner_id: int, reason: str = 'reaction', now=None) -> bool:
    """Complete an active match with a winner and open the claim window."""
    if not match.is_participant(winner_id):
        raise InvalidMatch(f'User {winner_id} did not play match {match.pk}.')
    now = now or timezone.now()

    updated = Match.objects.filter(pk=match.pk, status__in=lifecycle.ACTIVE_STATES).update(
        status=lifecycle.COMPLETED,
        winner_id=winner_id,
        winner_wallet=match.wallet_for(winner_id),
        end_reason=reason,
        claim_status='unclaimed',
        claim_deadline=now + claim_window(),
        completed_at=now,
        updated_at=now,
    )
    if updated:
        logger.info('Match won: match=%s winner=%s reason=%s', match.pk, winner_id, reason)
    return updated == 1


def complete_match(match_id: int, winner_id: int | None = None, reason: str = 'reaction', now=None) -> bool:
    """Record the result of a match. ``winner_id=None`` records a tie.

    A tie pays nobody; both stakes become refund-eligible instead.
    """
    now = now or timezone.now()
    match = Match.objects.get(pk=match_id)
    if winner_id is not None:
        return award_win(match, winner_id, reason=reason, now=now)

    with transaction.atomic():
        updated = Match.objects.filter(pk=match_id, status__in=lifecycle.ACTIVE_STATES).update(
            status=lifecycle.COMPLETED,
            end_reason='tie',
            completed_at=now,
            updated_at=now,
        )
        if updated:
            mark_refund_eligible(match_id, 'tie', now=now)
            logger.info('Match tied: match=%s', match_id)
    return updated == 1


def cancel_match(match_id: int, reason: str, now=None, from_states=lifecycle.ACTIVE_STATES) -> bool:
    """Cancel a match and make its confirmed stakes refundable.

    Only matches currently in one of ``from_states`` are touched; the
    matchmaking sweeper narrows this to matches still waiting.
    """
    if reason not in lifecycle.CANCELLATION_REASONS:
        raise InvalidMatch(f'Unknown cancellation reason: {reason}')
    now = now or timezone.now()

    with transaction.atomic():
        updated = Match.objects.filter(pk=match_id, status__in=from_states).update(
            status=lifecycle.CANCELLED,
            cancelled=True,
            cancellation_reason=reason,
            updated_at=now,
        )
        if updated:
            marked = mark_refund_eligible(match_id, reason, now=now)
            logger.info('Match cancelled: match=%s reason=%s refunds_marked=%d', match_id, reason, marked)
    return updated == 1
