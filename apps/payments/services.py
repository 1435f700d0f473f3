"""Refund pipeline and stake bookkeeping.

Refunds follow the claim engine's shape at lower stakes: lock the stake row,
validate, mark it ``processing`` and commit, pay outside the transaction,
then record the transaction hash. A ledger failure leaves the row in
``processing`` with the error recorded; those rows are surfaced by
``find_stuck_refunds`` for manual reconciliation rather than re-opened
automatically.
"""
from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import Q
from django.utils import timezone

from apps.economy.amounts import compute_refund, within_payout_bound
from apps.economy.exceptions import (
    Conflict,
    Forbidden,
    InvariantViolation,
    LedgerUnavailable,
    NotFound,
    PayoutFailed,
    ValidationFailed,
)
from apps.treasury.client import get_ledger_client
from apps.treasury.exceptions import LedgerError, PayoutPending

from .models import StakeRecord

if TYPE_CHECKING:
    from django.contrib.auth.models import User

    from apps.accounts.models import Principal

logger = logging.getLogger(__name__)
security_logger = logging.getLogger('settlement.security')

DEFAULT_REFUND_WINDOW = timedelta(hours=4)
DEFAULT_ORPHAN_STAKE_TIMEOUT = timedelta(minutes=15)
DEFAULT_STUCK_REFUND_AGE = timedelta(minutes=10)

OPEN_REFUND = Q(refund_status__isnull=True) | Q(refund_status='none')


@dataclass(frozen=True)
class RefundResult:
    reference: str
    refund_amount: int
    fee: int
    tx_hash: str
    wallet: str

    def as_dict(self):
        return {
            'paymentReference': self.reference,
            'refundAmount': str(self.refund_amount),
            'gasFee': str(self.fee),
            'txHash': self.tx_hash,
            'wallet': self.wallet,
        }


def refund_window() -> timedelta:
    return getattr(settings, 'REFUND_WINDOW', DEFAULT_REFUND_WINDOW)


def orphan_stake_timeout() -> timedelta:
    return getattr(settings, 'ORPHAN_STAKE_TIMEOUT', DEFAULT_ORPHAN_STAKE_TIMEOUT)


# ── Stake bookkeeping ────────────────────────────────────────────────────


def open_stake(user: User, amount: int, reference: str | None = None) -> StakeRecord:
    """Create a pending stake. Re-using a reference returns the same record."""
    if amount <= 0:
        raise ValidationFailed('invalid_amount', 'Stake amount must be positive.')
    reference = reference or secrets.token_hex(16)
    record, created = StakeRecord.objects.get_or_create(
        reference=reference,
        defaults={'user': user, 'amount': amount},
    )
    if not created and record.user_id != user.pk:
        raise Conflict('reference_in_use', 'Payment reference already belongs to another user.')
    return record


def attach_to_match(reference: str, match_id: int) -> bool:
    """Link a confirmed, still-orphaned stake to the match it pays for."""
    updated = StakeRecord.objects.filter(
        OPEN_REFUND,
        reference=reference,
        normalized_status='confirmed',
        match__isnull=True,
    ).update(match_id=match_id, used_for_match=True, updated_at=timezone.now())
    return updated == 1


def confirm_deposit(principal: Principal, reference: str, tx_hash: str, ledger=None) -> StakeRecord:
    """Verify the inbound transfer on chain and mark the stake confirmed."""
    record = StakeRecord.objects.filter(reference=reference).first()
    if record is None:
        raise NotFound('payment_not_found', 'Payment not found.')
    if record.user_id != principal.user_id:
        raise Forbidden('not_payment_owner', 'Not your payment.')

    tx_hash = tx_hash.lower()
    if record.normalized_status == 'confirmed':
        if record.transaction_hash == tx_hash:
            return record
        raise Conflict('already_confirmed', 'Payment already confirmed with another transaction.')
    if record.normalized_status != 'pending':
        raise ValidationFailed('payment_not_pending', 'Payment can no longer be confirmed.',
                               paymentStatus=record.normalized_status)
    if StakeRecord.objects.filter(transaction_hash=tx_hash).exclude(pk=record.pk).exists():
        raise Conflict('transaction_already_used', 'Transaction already confirmed another payment.')

    try:
        verified = (ledger or get_ledger_client()).verify_deposit(tx_hash, record.amount)
    except LedgerError as exc:
        logger.error('Deposit verification unavailable: reference=%s error=%s', reference, exc)
        raise LedgerUnavailable('verification_unavailable', 'Could not reach the ledger, try again.')

    if not verified:
        StakeRecord.objects.filter(pk=record.pk).update(
            last_error=f'Deposit {tx_hash} did not verify', updated_at=timezone.now(),
        )
        raise ValidationFailed('deposit_not_verified', 'Transaction does not match this payment.')

    now = timezone.now()
    try:
        with transaction.atomic():
            updated = StakeRecord.objects.filter(pk=record.pk, normalized_status='pending').update(
                normalized_status='confirmed',
                transaction_hash=tx_hash,
                confirmed_at=now,
                last_error='',
                updated_at=now,
            )
    except IntegrityError:
        raise Conflict('transaction_already_used', 'Transaction already confirmed another payment.')
    if not updated:
        raise Conflict('payment_not_pending', 'Payment changed state during confirmation.')

    logger.info('Deposit confirmed: reference=%s user=%s amount=%d', reference, principal.username, record.amount)
    record.refresh_from_db()
    return record


# ── Refund eligibility ───────────────────────────────────────────────────


def mark_refund_eligible(match_id: int, reason: str, now=None) -> int:
    """Open refunds for every confirmed stake of a voided match.

    Only rows whose refund is still unset are touched, so concurrent sweeps
    cannot mark a stake twice or reset a refund in flight.
    """
    now = now or timezone.now()
    marked = StakeRecord.objects.filter(
        OPEN_REFUND,
        match_id=match_id,
        normalized_status='confirmed',
    ).update(
        refund_status='eligible',
        refund_deadline=now + refund_window(),
        refund_reason=reason,
        updated_at=now,
    )
    if marked:
        logger.info('Refunds opened: match=%s reason=%s count=%d', match_id, reason, marked)
    return marked


def mark_orphaned_stakes_eligible(now=None) -> int:
    """Open refunds for confirmed stakes never attached to any match."""
    now = now or timezone.now()
    marked = StakeRecord.objects.filter(
        OPEN_REFUND,
        normalized_status='confirmed',
        match__isnull=True,
        used_for_match=False,
        confirmed_at__lt=now - orphan_stake_timeout(),
    ).update(
        refund_status='eligible',
        refund_deadline=now + refund_window(),
        refund_reason='no_match_found',
        updated_at=now,
    )
    if marked:
        logger.info('Refunds opened for %d orphaned stakes', marked)
    return marked


# ── Refund claims ────────────────────────────────────────────────────────


def _check_match_refund(record, now):
    if record.refund_status != 'eligible':
        raise ValidationFailed('not_eligible', 'Payment is not eligible for a refund.',
                               refundStatus=record.refund_status)
    _check_deadline(record, now)


def _check_deposit_refund(record, now):
    if not record.is_orphaned:
        raise ValidationFailed('stake_attached_to_match', 'Payment was used for a match; use the match refund.')
    if record.normalized_status != 'confirmed':
        raise ValidationFailed('payment_not_confirmed', 'Payment was never confirmed.',
                               paymentStatus=record.normalized_status)
    if record.refund_status == 'eligible':
        _check_deadline(record, now)
        return
    if record.refund_status not in (None, 'none'):
        raise ValidationFailed('not_eligible', 'Payment is not eligible for a refund.',
                               refundStatus=record.refund_status)
    unlock_at = record.confirmed_at + orphan_stake_timeout()
    if now < unlock_at:
        raise ValidationFailed('not_eligible_yet', 'Deposit is still waiting for a match.',
                               eligibleAt=unlock_at.isoformat())


def _check_deadline(record, now):
    if record.refund_deadline and now > record.refund_deadline:
        raise ValidationFailed('refund_expired', 'Refund deadline expired.',
                               refundDeadline=record.refund_deadline.isoformat())


def _resolve_ledger(ledger):
    if ledger is not None:
        return ledger
    try:
        return get_ledger_client()
    except LedgerError as exc:
        logger.error('Ledger client unavailable: %s', exc)
        raise LedgerUnavailable('ledger_unavailable', 'Payouts are unavailable right now, try again later.')


def _reserve_refund(principal, reference, check, now, ledger):
    with transaction.atomic():
        record = StakeRecord.objects.select_for_update().filter(reference=reference).first()
        if record is None:
            raise NotFound('payment_not_found', 'Payment not found.')
        if record.user_id != principal.user_id:
            raise Forbidden('not_payment_owner', 'Not your payment.')
        if record.refund_status == 'completed':
            raise Conflict('already_refunded', 'Refund already claimed.',
                           refundStatus='completed', txHash=record.refund_tx_hash)
        if record.refund_status == 'processing':
            raise Conflict('refund_in_progress', 'Refund already in progress.', refundStatus='processing')
        check(record, now)

        breakdown = compute_refund(record.amount)
        if not within_payout_bound(record.total_claimed_amount, breakdown.refund, record.amount):
            security_logger.warning(
                'Refund would exceed payout bound: reference=%s user=%s claimed=%d refund=%d stake=%d',
                reference, principal.user_id, record.total_claimed_amount, breakdown.refund, record.amount,
            )
            raise InvariantViolation('max_payout_exceeded', 'Refund exceeds the maximum payout for this stake.')

        ledger = _resolve_ledger(ledger)
        record.refund_status = 'processing'
        record.refund_amount = breakdown.refund
        record.refund_claimed_at = now
        record.refund_error = ''
        record.save(update_fields=[
            'refund_status', 'refund_amount', 'refund_claimed_at', 'refund_error', 'updated_at',
        ])
    return record, breakdown, ledger


def _pay_refund(principal, reference, check, ledger):
    if not principal.has_wallet:
        raise ValidationFailed('wallet_not_found', 'No wallet bound to this account.')

    now = timezone.now()
    record, breakdown, ledger = _reserve_refund(principal, reference, check, now, ledger)
    logger.info(
        'Refund reserved: reference=%s user=%s refund=%d fee=%d',
        reference, principal.username, breakdown.refund, breakdown.fee,
    )

    try:
        tx_hash = ledger.send_payout(principal.wallet, breakdown.refund)
    except LedgerError as exc:
        changes = {'refund_error': str(exc)[:500], 'updated_at': timezone.now()}
        if isinstance(exc, PayoutPending):
            changes['refund_tx_hash'] = exc.tx_hash
        StakeRecord.objects.filter(pk=record.pk, refund_status='processing').update(**changes)
        logger.error('Refund payout failed: reference=%s error=%s', reference, exc)
        raise PayoutFailed.from_ledger_error(exc, refundStatus='processing')

    with transaction.atomic():
        locked = StakeRecord.objects.select_for_update().get(pk=record.pk)
        locked.refund_status = 'completed'
        locked.refund_tx_hash = tx_hash
        locked.total_claimed_amount += breakdown.refund
        locked.save(update_fields=['refund_status', 'refund_tx_hash', 'total_claimed_amount', 'updated_at'])

    logger.info('Refund completed: reference=%s tx=%s amount=%d', reference, tx_hash, breakdown.refund)
    return RefundResult(
        reference=reference,
        refund_amount=breakdown.refund,
        fee=breakdown.fee,
        tx_hash=tx_hash,
        wallet=principal.wallet,
    )


def claim_refund(principal: Principal, reference: str, ledger=None) -> RefundResult:
    """Refund a stake from a cancelled or timed-out match."""
    return _pay_refund(principal, reference, _check_match_refund, ledger)


def claim_deposit_refund(principal: Principal, reference: str, ledger=None) -> RefundResult:
    """Refund a confirmed deposit that never got attached to a match."""
    return _pay_refund(principal, reference, _check_deposit_refund, ledger)


# ── Read side ────────────────────────────────────────────────────────────


def describe_refund(record, now=None):
    now = now or timezone.now()
    expired = bool(record.refund_deadline and now > record.refund_deadline)
    match = record.match
    return {
        'paymentReference': record.reference,
        'amount': str(record.amount),
        'eligible': record.refund_status == 'eligible' and not expired,
        'refundStatus': record.refund_status,
        'refundAmount': str(record.refund_amount) if record.refund_amount is not None else None,
        'refundDeadline': record.refund_deadline.isoformat() if record.refund_deadline else None,
        'expired': expired,
        'reason': record.refund_reason,
        'txHash': record.refund_tx_hash or None,
        'matchId': record.match_id,
        'matchStatus': match.status if match else None,
        'cancelled': match.cancelled if match else None,
    }


def get_refund_status(principal: Principal, reference: str) -> dict:
    record = (
        StakeRecord.objects.select_related('match')
        .filter(reference=reference, user_id=principal.user_id)
        .first()
    )
    if record is None:
        raise NotFound('payment_not_found', 'Payment not found.')
    return describe_refund(record)


def list_eligible_refunds(principal: Principal) -> list:
    now = timezone.now()
    records = StakeRecord.objects.select_related('match').filter(
        Q(refund_deadline__isnull=True) | Q(refund_deadline__gte=now),
        user_id=principal.user_id,
        refund_status='eligible',
    ).order_by('refund_deadline')
    return [describe_refund(record, now=now) for record in records]


def find_stuck_refunds(older_than: timedelta = DEFAULT_STUCK_REFUND_AGE, now=None):
    """Refunds left in ``processing``; they need a manual look at the ledger."""
    now = now or timezone.now()
    return StakeRecord.objects.filter(
        refund_status='processing',
        refund_claimed_at__lt=now - older_than,
    ).order_by('refund_claimed_at')
