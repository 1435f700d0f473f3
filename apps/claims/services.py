"""Claim engine: pay a match winner exactly once.

Every decision is taken inside one transaction holding row locks in the
order match -> claim -> stake. The claim row is committed as ``processing``
before the ledger is called, and the ledger call itself happens with no lock
held. A concurrent request arriving while the payout is in flight finds that
row and is turned away.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from apps.economy.amounts import compute_payout, within_payout_bound
from apps.economy.exceptions import (
    Conflict,
    Forbidden,
    InvariantViolation,
    LedgerUnavailable,
    NotFound,
    PayoutFailed,
    ValidationFailed,
)
from apps.matches import lifecycle
from apps.matches.models import Match
from apps.payments.models import StakeRecord
from apps.treasury.client import get_ledger_client
from apps.treasury.exceptions import LedgerError, PayoutPending

from .models import Claim, IdempotencyKey

if TYPE_CHECKING:
    from apps.accounts.models import Principal

logger = logging.getLogger(__name__)
security_logger = logging.getLogger('settlement.security')

DEFAULT_CLAIM_GRACE_PERIOD = timedelta(seconds=60)
DEFAULT_CLAIM_RETRY_WINDOW = timedelta(hours=24)


@dataclass(frozen=True)
class ClaimResult:
    match_id: int
    tx_hash: str
    amount: int
    platform_fee: int
    gross_pool: int
    wallet: str

    def as_dict(self):
        return {
            'matchId': self.match_id,
            'txHash': self.tx_hash,
            'amount': str(self.amount),
            'platformFee': str(self.platform_fee),
            'grossPool': str(self.gross_pool),
            'wallet': self.wallet,
        }


def claim_grace_period() -> timedelta:
    return getattr(settings, 'CLAIM_GRACE_PERIOD', DEFAULT_CLAIM_GRACE_PERIOD)


def claim_retry_window() -> timedelta:
    return getattr(settings, 'CLAIM_RETRY_WINDOW', DEFAULT_CLAIM_RETRY_WINDOW)


def _check_match(match, principal, match_id, now):
    if match is None:
        raise NotFound('match_not_found', 'Match not found.')
    if match.status != lifecycle.COMPLETED:
        raise ValidationFailed('match_not_completed', 'Match not yet completed.', matchStatus=match.status)
    if match.winner_id != principal.user_id:
        raise Forbidden('not_winner', 'Not the winner of this match.')
    if not match.winner_wallet or match.winner_wallet.lower() != principal.wallet.lower():
        security_logger.warning(
            'Claim wallet mismatch: match=%s user=%s wallet=%s bound=%s',
            match_id, principal.user_id, principal.wallet, match.winner_wallet,
        )
        raise Forbidden('wallet_mismatch', 'Your wallet does not match the winner wallet for this match.')
    if match.claim_status == 'claimed':
        raise Conflict('already_claimed', 'Winnings already claimed.')
    # An 'expired' marker from the sweeper does not block a claim still inside the grace period.
    if match.claim_deadline and now > match.claim_deadline + claim_grace_period():
        raise ValidationFailed('claim_expired', 'Claim window expired.',
                               deadline=match.claim_deadline.isoformat())


def _check_existing_claim(match_id, now):
    existing = Claim.objects.select_for_update().filter(match_id=match_id).first()
    if existing is None:
        return
    if existing.status in Claim.ACTIVE_STATUSES:
        raise Conflict(
            'already_claimed', 'Winnings already claimed.',
            claimStatus=existing.status,
            wallet=existing.winner_wallet,
            txHash=existing.tx_hash or None,
        )
    if now - existing.created_at > claim_retry_window():
        raise ValidationFailed('retry_window_expired', 'Retry window for the failed claim has expired.',
                               failedAt=existing.created_at.isoformat())
    logger.warning(
        'Discarding failed claim before retry: match=%s created=%s error=%s',
        match_id, existing.created_at.isoformat(), existing.error_message,
    )
    existing.delete()


def _resolve_ledger(ledger):
    if ledger is not None:
        return ledger
    try:
        return get_ledger_client()
    except LedgerError as exc:
        logger.error('Ledger client unavailable: %s', exc)
        raise LedgerUnavailable('ledger_unavailable', 'Payouts are unavailable right now, try again later.')


def _reserve_claim(principal, match_id, now, ledger):
    with transaction.atomic():
        match = Match.objects.select_for_update().filter(pk=match_id).first()
        _check_match(match, principal, match_id, now)
        _check_existing_claim(match_id, now)

        stakes = list(
            StakeRecord.objects.select_for_update()
            .filter(match_id=match_id, user_id=principal.user_id, normalized_status='confirmed')
            .order_by('pk')
        )
        if not stakes:
            raise ValidationFailed('stake_not_found', 'No confirmed stake found for this match.')
        stake = stakes[0]

        breakdown = compute_payout(match.stake)
        if not within_payout_bound(stake.total_claimed_amount, breakdown.net_payout, stake.amount):
            security_logger.warning(
                'Claim would exceed payout bound: match=%s user=%s claimed=%d payout=%d stake=%d',
                match_id, principal.user_id, stake.total_claimed_amount, breakdown.net_payout, stake.amount,
            )
            raise InvariantViolation('max_payout_exceeded', 'Payout exceeds the maximum for this stake.')

        # Resolved last so a misconfigured treasury rolls the reservation back.
        ledger = _resolve_ledger(ledger)
        StakeRecord.objects.filter(pk=stake.pk).update(used_for_match=True, updated_at=now)
        claim = Claim.objects.create(
            match=match,
            winner_wallet=principal.wallet.lower(),
            amount=breakdown.gross_pool,
            platform_fee=breakdown.platform_fee,
            net_payout=breakdown.net_payout,
            status='processing',
            idempotency_key=str(IdempotencyKey(match_id, principal.wallet)),
        )
    return claim, stake, breakdown, ledger


def _record_payout(claim, stake, tx_hash, amount):
    now = timezone.now()
    with transaction.atomic():
        match = Match.objects.select_for_update().get(pk=claim.match_id)
        claim = Claim.objects.select_for_update().get(pk=claim.pk)
        stake = StakeRecord.objects.select_for_update().get(pk=stake.pk)

        claim.status = 'completed'
        claim.claimed = True
        claim.tx_hash = tx_hash
        claim.error_message = ''
        claim.processed_at = now
        claim.save(update_fields=['status', 'claimed', 'tx_hash', 'error_message', 'processed_at'])

        stake.total_claimed_amount += amount
        stake.save(update_fields=['total_claimed_amount', 'updated_at'])

        match.claim_status = 'claimed'
        match.total_claimed_amount += amount
        match.save(update_fields=['claim_status', 'total_claimed_amount', 'updated_at'])


def claim_winnings(principal: Principal, match_id: int, ledger=None) -> ClaimResult:
    """Pay the winner of ``match_id`` the pot minus the platform fee.

    Rejections raise a ``SettlementError`` subclass before anything is
    written. A ledger failure marks the claim ``failed`` and leaves the match
    unclaimed so the winner can retry inside the retry window. A transfer
    that was broadcast without a receipt keeps the claim ``processing`` with
    its hash, so no retry can send a second one.
    """
    if not principal.has_wallet:
        raise ValidationFailed('wallet_not_found', 'No wallet bound to this account.')

    now = timezone.now()
    claim, stake, breakdown, ledger = _reserve_claim(principal, match_id, now, ledger)
    logger.info(
        'Claim reserved: match=%s wallet=%s gross=%d fee=%d net=%d',
        match_id, claim.winner_wallet, breakdown.gross_pool, breakdown.platform_fee, breakdown.net_payout,
    )

    try:
        tx_hash = ledger.send_payout(claim.winner_wallet, breakdown.net_payout)
    except PayoutPending as exc:
        Claim.objects.filter(pk=claim.pk, status='processing').update(
            tx_hash=exc.tx_hash, error_message=str(exc),
        )
        logger.warning('Claim payout pending: match=%s tx=%s', match_id, exc.tx_hash)
        raise PayoutFailed.from_ledger_error(exc, matchId=match_id, claimStatus='processing')
    except LedgerError as exc:
        Claim.objects.filter(pk=claim.pk, status='processing').update(
            status='failed', error_message=str(exc), processed_at=timezone.now(),
        )
        logger.error('Claim payout failed: match=%s error=%s', match_id, exc)
        raise PayoutFailed.from_ledger_error(exc, matchId=match_id)

    _record_payout(claim, stake, tx_hash, breakdown.net_payout)
    logger.info('Claim paid: match=%s tx=%s amount=%d', match_id, tx_hash, breakdown.net_payout)
    return ClaimResult(
        match_id=match_id,
        tx_hash=tx_hash,
        amount=breakdown.net_payout,
        platform_fee=breakdown.platform_fee,
        gross_pool=breakdown.gross_pool,
        wallet=claim.winner_wallet,
    )


def get_claim_status(principal: Principal, match_id: int) -> dict:
    match = Match.objects.filter(pk=match_id).first()
    if match is None:
        raise NotFound('match_not_found', 'Match not found.')
    if not match.is_participant(principal.user_id):
        raise Forbidden('not_participant', 'Not a participant in this match.')

    if match.status != lifecycle.COMPLETED:
        return {'matchId': match.pk, 'claimable': False, 'status': 'match_not_completed',
                'matchStatus': match.status}
    if match.winner_id is None:
        return {'matchId': match.pk, 'claimable': False, 'status': 'no_winner',
                'reason': match.end_reason or 'tie'}

    now = timezone.now()
    is_winner = match.winner_id == principal.user_id
    breakdown = compute_payout(match.stake)
    # Same cut-off as claim_winnings: the deadline plus grace, regardless of the sweeper's marker.
    expired = bool(match.claim_deadline and now > match.claim_deadline + claim_grace_period())
    claim = Claim.objects.filter(match_id=match.pk).first()
    blocked = claim is not None and (
        claim.status in Claim.ACTIVE_STATUSES or now - claim.created_at > claim_retry_window()
    )

    return {
        'matchId': match.pk,
        'claimable': is_winner and match.claim_status != 'claimed' and not blocked and not expired,
        'isWinner': is_winner,
        'winnerWallet': match.winner_wallet,
        'amount': str(breakdown.net_payout),
        'platformFee': str(breakdown.platform_fee),
        'deadline': match.claim_deadline.isoformat() if match.claim_deadline else None,
        'deadlineExpired': expired,
        'status': claim.status if claim else match.claim_status,
        'txHash': (claim.tx_hash or None) if claim else None,
    }
