from datetime import timedelta
from unittest.mock import MagicMock

from django.contrib.auth.models import User
from django.db import IntegrityError, transaction
from django.test import TestCase
from django.utils import timezone

from apps.accounts.models import Principal
from apps.claims.models import Claim, IdempotencyKey
from apps.claims.services import claim_winnings, get_claim_status
from apps.economy.exceptions import (
    Conflict,
    Forbidden,
    InvariantViolation,
    LedgerUnavailable,
    NotFound,
    PayoutFailed,
    ValidationFailed,
)
from apps.matches.models import Match
from apps.matches.services import complete_match, create_match
from apps.payments.models import StakeRecord
from apps.treasury.client import get_ledger_client
from apps.treasury.exceptions import InsufficientTreasuryFunds, PayoutPending, TransactionReverted

STAKE = 100000
TX = '0x' + 'ef' * 32
ALICE_WALLET = '0x' + 'a' * 40


def make_player(username, wallet_digit):
    user = User.objects.create_user(username, f'{username}@test.com', 'pass1234')
    user.profile.wallet_address = '0x' + wallet_digit * 40
    user.profile.save()
    return user


def paying_ledger(tx_hash=TX):
    ledger = MagicMock()
    ledger.send_payout.return_value = tx_hash
    return ledger


def failing_ledger(exc):
    ledger = MagicMock()
    ledger.send_payout.side_effect = exc
    return ledger


class ClaimTestCase(TestCase):
    def setUp(self):
        self.alice = make_player('alice', 'a')
        self.bob = make_player('bob', 'b')
        self.match = create_match(self.alice, self.bob, STAKE)
        for user, reference in ((self.alice, 'ref-a'), (self.bob, 'ref-b')):
            StakeRecord.objects.create(
                reference=reference, user=user, amount=STAKE, match=self.match,
                normalized_status='confirmed', confirmed_at=timezone.now(),
            )
        complete_match(self.match.pk, winner_id=self.alice.pk)
        self.winner = Principal.from_user(self.alice)
        self.loser = Principal.from_user(self.bob)

    def set_deadline(self, delta):
        Match.objects.filter(pk=self.match.pk).update(claim_deadline=timezone.now() + delta)


class ClaimWinningsTest(ClaimTestCase):
    def test_pays_pot_minus_fee(self):
        ledger = paying_ledger()
        result = claim_winnings(self.winner, self.match.pk, ledger=ledger)
        self.assertEqual(result.gross_pool, 200000)
        self.assertEqual(result.platform_fee, 6000)
        self.assertEqual(result.amount, 194000)
        self.assertEqual(result.tx_hash, TX)
        ledger.send_payout.assert_called_once_with(ALICE_WALLET, 194000)

    def test_records_completed_claim(self):
        claim_winnings(self.winner, self.match.pk, ledger=paying_ledger())
        claim = Claim.objects.get(match=self.match)
        self.assertEqual(claim.status, 'completed')
        self.assertTrue(claim.claimed)
        self.assertEqual(claim.tx_hash, TX)
        self.assertEqual(claim.net_payout, 194000)
        self.assertEqual(claim.idempotency_key, f'claim:{self.match.pk}:{ALICE_WALLET}')
        self.assertIsNotNone(claim.processed_at)

        self.match.refresh_from_db()
        self.assertEqual(self.match.claim_status, 'claimed')
        self.assertEqual(self.match.total_claimed_amount, 194000)
        stake = StakeRecord.objects.get(reference='ref-a')
        self.assertTrue(stake.used_for_match)
        self.assertEqual(stake.total_claimed_amount, 194000)

    def test_second_claim_rejected(self):
        claim_winnings(self.winner, self.match.pk, ledger=paying_ledger())
        ledger = paying_ledger()
        with self.assertRaises(Conflict) as ctx:
            claim_winnings(self.winner, self.match.pk, ledger=ledger)
        self.assertEqual(ctx.exception.reason, 'already_claimed')
        ledger.send_payout.assert_not_called()

    def test_claim_during_payout_rejected(self):
        seen = {}

        def pay(wallet, amount):
            try:
                claim_winnings(self.winner, self.match.pk, ledger=paying_ledger('0xsecond'))
            except Conflict as exc:
                seen.update(exc.details, reason=exc.reason)
            return TX

        ledger = MagicMock()
        ledger.send_payout.side_effect = pay
        claim_winnings(self.winner, self.match.pk, ledger=ledger)

        self.assertEqual(seen['reason'], 'already_claimed')
        self.assertEqual(seen['claimStatus'], 'processing')
        self.assertEqual(seen['wallet'], ALICE_WALLET)
        self.assertEqual(Claim.objects.filter(match=self.match).count(), 1)
        self.assertEqual(Claim.objects.get(match=self.match).tx_hash, TX)

    def test_wallet_compared_case_insensitively(self):
        principal = Principal(user_id=self.alice.pk, username='alice', wallet=ALICE_WALLET.upper().replace('0X', '0x'))
        result = claim_winnings(principal, self.match.pk, ledger=paying_ledger())
        self.assertEqual(result.wallet, ALICE_WALLET)

    def test_unknown_match(self):
        with self.assertRaises(NotFound):
            claim_winnings(self.winner, 999999, ledger=paying_ledger())

    def test_match_not_completed(self):
        other = create_match(self.alice, self.bob, STAKE)
        with self.assertRaises(ValidationFailed) as ctx:
            claim_winnings(self.winner, other.pk, ledger=paying_ledger())
        self.assertEqual(ctx.exception.reason, 'match_not_completed')

    def test_loser_cannot_claim(self):
        with self.assertRaises(Forbidden) as ctx:
            claim_winnings(self.loser, self.match.pk, ledger=paying_ledger())
        self.assertEqual(ctx.exception.reason, 'not_winner')

    def test_wallet_mismatch(self):
        self.alice.profile.wallet_address = '0x' + 'e' * 40
        self.alice.profile.save()
        ledger = paying_ledger()
        with self.assertRaises(Forbidden) as ctx:
            claim_winnings(Principal.from_user(self.alice), self.match.pk, ledger=ledger)
        self.assertEqual(ctx.exception.reason, 'wallet_mismatch')
        ledger.send_payout.assert_not_called()

    def test_requires_wallet(self):
        principal = Principal(user_id=self.alice.pk, username='alice', wallet='')
        with self.assertRaises(ValidationFailed) as ctx:
            claim_winnings(principal, self.match.pk, ledger=paying_ledger())
        self.assertEqual(ctx.exception.reason, 'wallet_not_found')

    def test_no_confirmed_stake(self):
        StakeRecord.objects.filter(reference='ref-a').update(normalized_status='failed')
        with self.assertRaises(ValidationFailed) as ctx:
            claim_winnings(self.winner, self.match.pk, ledger=paying_ledger())
        self.assertEqual(ctx.exception.reason, 'stake_not_found')
        self.assertFalse(Claim.objects.exists())

    def test_payout_bound_enforced(self):
        StakeRecord.objects.filter(reference='ref-a').update(total_claimed_amount=10000)
        ledger = paying_ledger()
        with self.assertLogs('settlement.security', level='WARNING'):
            with self.assertRaises(InvariantViolation) as ctx:
                claim_winnings(self.winner, self.match.pk, ledger=ledger)
        self.assertEqual(ctx.exception.reason, 'max_payout_exceeded')
        ledger.send_payout.assert_not_called()
        self.assertFalse(Claim.objects.exists())
        self.assertFalse(StakeRecord.objects.get(reference='ref-a').used_for_match)


class ClaimDeadlineTest(ClaimTestCase):
    def test_thirty_seconds_late_accepted(self):
        self.set_deadline(-timedelta(seconds=30))
        result = claim_winnings(self.winner, self.match.pk, ledger=paying_ledger())
        self.assertEqual(result.amount, 194000)

    def test_two_minutes_late_rejected(self):
        self.set_deadline(-timedelta(minutes=2))
        ledger = paying_ledger()
        with self.assertRaises(ValidationFailed) as ctx:
            claim_winnings(self.winner, self.match.pk, ledger=ledger)
        self.assertEqual(ctx.exception.reason, 'claim_expired')
        ledger.send_payout.assert_not_called()

    def test_expired_marker_inside_grace_accepted(self):
        self.set_deadline(-timedelta(seconds=30))
        Match.objects.filter(pk=self.match.pk).update(claim_status='expired')
        claim_winnings(self.winner, self.match.pk, ledger=paying_ledger())
        self.match.refresh_from_db()
        self.assertEqual(self.match.claim_status, 'claimed')


class ClaimFailureTest(ClaimTestCase):
    def test_failure_marks_claim_failed(self):
        with self.assertRaises(PayoutFailed) as ctx:
            claim_winnings(self.winner, self.match.pk, ledger=failing_ledger(TransactionReverted(TX)))
        self.assertEqual(ctx.exception.reason, 'payout_failed')
        claim = Claim.objects.get(match=self.match)
        self.assertEqual(claim.status, 'failed')
        self.assertFalse(claim.claimed)
        self.assertIn('reverted', claim.error_message)
        self.match.refresh_from_db()
        self.assertEqual(self.match.claim_status, 'unclaimed')
        self.assertEqual(StakeRecord.objects.get(reference='ref-a').total_claimed_amount, 0)

    def test_treasury_shortfall_reason(self):
        ledger = failing_ledger(InsufficientTreasuryFunds(required=194000, available=1))
        with self.assertRaises(PayoutFailed) as ctx:
            claim_winnings(self.winner, self.match.pk, ledger=ledger)
        self.assertEqual(ctx.exception.reason, 'treasury_insufficient_funds')

    def test_retry_within_window_pays(self):
        with self.assertRaises(PayoutFailed):
            claim_winnings(self.winner, self.match.pk, ledger=failing_ledger(TransactionReverted(TX)))
        Claim.objects.filter(match=self.match).update(created_at=timezone.now() - timedelta(hours=23))

        ledger = paying_ledger()
        result = claim_winnings(self.winner, self.match.pk, ledger=ledger)
        self.assertEqual(result.tx_hash, TX)
        ledger.send_payout.assert_called_once_with(ALICE_WALLET, 194000)
        claim = Claim.objects.get(match=self.match)
        self.assertEqual(claim.status, 'completed')

    def test_retry_after_window_rejected(self):
        with self.assertRaises(PayoutFailed):
            claim_winnings(self.winner, self.match.pk, ledger=failing_ledger(TransactionReverted(TX)))
        Claim.objects.filter(match=self.match).update(created_at=timezone.now() - timedelta(hours=25))

        ledger = paying_ledger()
        with self.assertRaises(ValidationFailed) as ctx:
            claim_winnings(self.winner, self.match.pk, ledger=ledger)
        self.assertEqual(ctx.exception.reason, 'retry_window_expired')
        ledger.send_payout.assert_not_called()
        self.assertEqual(Claim.objects.get(match=self.match).status, 'failed')

    def test_unconfigured_treasury_reserves_nothing(self):
        get_ledger_client.cache_clear()
        self.addCleanup(get_ledger_client.cache_clear)
        with self.assertRaises(LedgerUnavailable) as ctx:
            claim_winnings(self.winner, self.match.pk)
        self.assertEqual(ctx.exception.reason, 'ledger_unavailable')
        self.assertEqual(ctx.exception.status_code, 503)
        self.assertFalse(Claim.objects.filter(match=self.match).exists())

        result = claim_winnings(self.winner, self.match.pk, ledger=paying_ledger())
        self.assertEqual(result.tx_hash, TX)
        self.assertEqual(Claim.objects.get(match=self.match).status, 'completed')

    def test_unconfirmed_broadcast_keeps_claim_processing(self):
        ledger = failing_ledger(PayoutPending(TX, 'timed out waiting for receipt'))
        with self.assertRaises(PayoutFailed) as ctx:
            claim_winnings(self.winner, self.match.pk, ledger=ledger)
        self.assertEqual(ctx.exception.reason, 'payout_pending')
        self.assertEqual(ctx.exception.details['txHash'], TX)
        claim = Claim.objects.get(match=self.match)
        self.assertEqual(claim.status, 'processing')
        self.assertFalse(claim.claimed)
        self.assertEqual(claim.tx_hash, TX)

        with self.assertRaises(Conflict) as ctx:
            claim_winnings(self.winner, self.match.pk, ledger=ledger)
        self.assertEqual(ctx.exception.reason, 'already_claimed')
        self.assertEqual(ctx.exception.details['txHash'], TX)
        ledger.send_payout.assert_called_once()


class ClaimModelTest(ClaimTestCase):
    def test_idempotency_key_lowercases_wallet(self):
        key = IdempotencyKey(42, '0xABCDEF')
        self.assertEqual(str(key), 'claim:42:0xabcdef')
        self.assertEqual(key, IdempotencyKey(42, '0xabcdef'))

    def test_paid_claim_needs_tx_hash(self):
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                Claim.objects.create(
                    match=self.match, winner_wallet=ALICE_WALLET, amount=200000, platform_fee=6000,
                    net_payout=194000, status='completed', claimed=True,
                    idempotency_key=str(IdempotencyKey(self.match.pk, ALICE_WALLET)),
                )

    def test_one_claim_per_match(self):
        Claim.objects.create(
            match=self.match, winner_wallet=ALICE_WALLET, amount=200000, platform_fee=6000,
            net_payout=194000, status='processing', idempotency_key='claim:x',
        )
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                Claim.objects.create(
                    match=self.match, winner_wallet=ALICE_WALLET, amount=200000, platform_fee=6000,
                    net_payout=194000, status='processing', idempotency_key='claim:y',
                )


class ClaimStatusTest(ClaimTestCase):
    def test_winner_sees_claimable(self):
        status = get_claim_status(self.winner, self.match.pk)
        self.assertTrue(status['claimable'])
        self.assertTrue(status['isWinner'])
        self.assertEqual(status['amount'], '194000')
        self.assertEqual(status['status'], 'unclaimed')
        self.assertFalse(status['deadlineExpired'])

    def test_loser_not_claimable(self):
        status = get_claim_status(self.loser, self.match.pk)
        self.assertFalse(status['claimable'])
        self.assertFalse(status['isWinner'])

    def test_outsider_forbidden(self):
        carol = make_player('carol', 'c')
        with self.assertRaises(Forbidden):
            get_claim_status(Principal.from_user(carol), self.match.pk)

    def test_after_payout(self):
        claim_winnings(self.winner, self.match.pk, ledger=paying_ledger())
        status = get_claim_status(self.winner, self.match.pk)
        self.assertFalse(status['claimable'])
        self.assertEqual(status['status'], 'completed')
        self.assertEqual(status['txHash'], TX)

    def test_past_deadline(self):
        self.set_deadline(-timedelta(minutes=5))
        status = get_claim_status(self.winner, self.match.pk)
        self.assertFalse(status['claimable'])
        self.assertTrue(status['deadlineExpired'])

    def test_tie_has_no_winner(self):
        tied = create_match(self.alice, self.bob, STAKE)
        complete_match(tied.pk)
        status = get_claim_status(self.winner, tied.pk)
        self.assertFalse(status['claimable'])
        self.assertEqual(status['status'], 'no_winner')

    def test_unfinished_match(self):
        pending = create_match(self.alice, self.bob, STAKE)
        status = get_claim_status(self.winner, pending.pk)
        self.assertEqual(status['status'], 'match_not_completed')

    def test_grace_period_still_claimable(self):
        self.set_deadline(-timedelta(seconds=30))
        Match.objects.filter(pk=self.match.pk).update(claim_status='expired')
        status = get_claim_status(self.winner, self.match.pk)
        self.assertTrue(status['claimable'])
        self.assertFalse(status['deadlineExpired'])
        claim_winnings(self.winner, self.match.pk, ledger=paying_ledger())

    def test_unconfirmed_payout_not_claimable(self):
        with self.assertRaises(PayoutFailed):
            claim_winnings(self.winner, self.match.pk, ledger=failing_ledger(PayoutPending(TX)))
        status = get_claim_status(self.winner, self.match.pk)
        self.assertFalse(status['claimable'])
        self.assertEqual(status['status'], 'processing')
        self.assertEqual(status['txHash'], TX)

    def test_failed_claim_claimable_until_retry_window_closes(self):
        with self.assertRaises(PayoutFailed):
            claim_winnings(self.winner, self.match.pk, ledger=failing_ledger(TransactionReverted(TX)))
        self.assertTrue(get_claim_status(self.winner, self.match.pk)['claimable'])

        Claim.objects.filter(match=self.match).update(created_at=timezone.now() - timedelta(hours=25))
        self.assertFalse(get_claim_status(self.winner, self.match.pk)['claimable'])
