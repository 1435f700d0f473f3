from datetime import timedelta
from io import StringIO
from unittest.mock import MagicMock, patch

from django.contrib.auth.models import User
from django.core.management import call_command
from django.test import TestCase
from django.utils import timezone

from apps.accounts.models import Principal
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
from apps.matches.services import advance_match, create_match
from apps.payments.models import StakeRecord
from apps.payments.services import (
    attach_to_match,
    claim_deposit_refund,
    claim_refund,
    confirm_deposit,
    find_stuck_refunds,
    get_refund_status,
    list_eligible_refunds,
    mark_refund_eligible,
    open_stake,
)
from apps.payments.sweeper import sweep_timeouts, sweep_waiting_matches
from apps.treasury.client import get_ledger_client
from apps.treasury.exceptions import (
    InsufficientTreasuryFunds,
    LedgerError,
    PayoutPending,
    PayoutSubmissionError,
)

STAKE = 100000
TX = '0x' + 'cd' * 32


def make_player(username, wallet_digit):
    user = User.objects.create_user(username, f'{username}@test.com', 'pass1234')
    user.profile.wallet_address = '0x' + wallet_digit * 40
    user.profile.save()
    return user


def paying_ledger(tx_hash=TX):
    ledger = MagicMock()
    ledger.send_payout.return_value = tx_hash
    return ledger


class RefundTestCase(TestCase):
    def setUp(self):
        self.alice = make_player('alice', 'a')
        self.bob = make_player('bob', 'b')
        self.principal = Principal.from_user(self.alice)
        self.match = create_match(self.alice, self.bob, STAKE)
        self.stake = StakeRecord.objects.create(
            reference='ref-alice', user=self.alice, amount=STAKE, match=self.match,
            normalized_status='confirmed', confirmed_at=timezone.now(), used_for_match=True,
        )

    def make_eligible(self):
        mark_refund_eligible(self.match.pk, 'both_players_disconnect')
        self.stake.refresh_from_db()


class MarkRefundEligibleTest(RefundTestCase):
    def test_sets_deadline_four_hours_out(self):
        now = timezone.now()
        self.assertEqual(mark_refund_eligible(self.match.pk, 'tie', now=now), 1)
        self.stake.refresh_from_db()
        self.assertEqual(self.stake.refund_status, 'eligible')
        self.assertEqual(self.stake.refund_reason, 'tie')
        self.assertEqual(self.stake.refund_deadline, now + timedelta(hours=4))

    def test_only_marks_once(self):
        self.assertEqual(mark_refund_eligible(self.match.pk, 'tie'), 1)
        self.assertEqual(mark_refund_eligible(self.match.pk, 'both_players_disconnect'), 0)
        self.stake.refresh_from_db()
        self.assertEqual(self.stake.refund_reason, 'tie')

    def test_does_not_reset_refund_in_flight(self):
        StakeRecord.objects.filter(pk=self.stake.pk).update(refund_status='processing')
        self.assertEqual(mark_refund_eligible(self.match.pk, 'tie'), 0)

    def test_null_refund_status_treated_as_none(self):
        StakeRecord.objects.filter(pk=self.stake.pk).update(refund_status=None)
        self.assertEqual(mark_refund_eligible(self.match.pk, 'tie'), 1)


class ClaimRefundTest(RefundTestCase):
    def test_successful_refund(self):
        self.make_eligible()
        ledger = paying_ledger()
        result = claim_refund(self.principal, 'ref-alice', ledger=ledger)
        self.assertEqual(result.refund_amount, 97000)
        self.assertEqual(result.fee, 3000)
        self.assertEqual(result.tx_hash, TX)
        ledger.send_payout.assert_called_once_with('0x' + 'a' * 40, 97000)
        self.stake.refresh_from_db()
        self.assertEqual(self.stake.refund_status, 'completed')
        self.assertEqual(self.stake.refund_tx_hash, TX)
        self.assertEqual(self.stake.refund_amount, 97000)
        self.assertEqual(self.stake.total_claimed_amount, 97000)
        self.assertIsNotNone(self.stake.refund_claimed_at)

    def test_response_shape(self):
        self.make_eligible()
        payload = claim_refund(self.principal, 'ref-alice', ledger=paying_ledger()).as_dict()
        self.assertEqual(payload['refundAmount'], '97000')
        self.assertEqual(payload['gasFee'], '3000')
        self.assertEqual(payload['txHash'], TX)

    def test_unknown_reference(self):
        with self.assertRaises(NotFound):
            claim_refund(self.principal, 'nope', ledger=paying_ledger())

    def test_not_owner(self):
        self.make_eligible()
        ledger = paying_ledger()
        with self.assertRaises(Forbidden):
            claim_refund(Principal.from_user(self.bob), 'ref-alice', ledger=ledger)
        ledger.send_payout.assert_not_called()

    def test_not_eligible(self):
        with self.assertRaises(ValidationFailed) as ctx:
            claim_refund(self.principal, 'ref-alice', ledger=paying_ledger())
        self.assertEqual(ctx.exception.reason, 'not_eligible')

    def test_deadline_passed(self):
        self.make_eligible()
        StakeRecord.objects.filter(pk=self.stake.pk).update(refund_deadline=timezone.now() - timedelta(minutes=1))
        with self.assertRaises(ValidationFailed) as ctx:
            claim_refund(self.principal, 'ref-alice', ledger=paying_ledger())
        self.assertEqual(ctx.exception.reason, 'refund_expired')

    def test_already_refunded(self):
        self.make_eligible()
        claim_refund(self.principal, 'ref-alice', ledger=paying_ledger())
        ledger = paying_ledger()
        with self.assertRaises(Conflict) as ctx:
            claim_refund(self.principal, 'ref-alice', ledger=ledger)
        self.assertEqual(ctx.exception.reason, 'already_refunded')
        self.assertEqual(ctx.exception.details['txHash'], TX)
        ledger.send_payout.assert_not_called()

    def test_concurrent_refund_turned_away(self):
        self.make_eligible()
        second_attempt = {}

        def pay(wallet, amount):
            try:
                claim_refund(self.principal, 'ref-alice', ledger=paying_ledger())
            except Conflict as exc:
                second_attempt['reason'] = exc.reason
            return TX

        ledger = MagicMock()
        ledger.send_payout.side_effect = pay
        claim_refund(self.principal, 'ref-alice', ledger=ledger)
        self.assertEqual(second_attempt['reason'], 'refund_in_progress')
        self.assertEqual(ledger.send_payout.call_count, 1)

    def test_ledger_failure_leaves_processing(self):
        self.make_eligible()
        ledger = MagicMock()
        ledger.send_payout.side_effect = PayoutSubmissionError('rpc down')
        with self.assertRaises(PayoutFailed) as ctx:
            claim_refund(self.principal, 'ref-alice', ledger=ledger)
        self.assertEqual(ctx.exception.reason, 'payout_failed')
        self.stake.refresh_from_db()
        self.assertEqual(self.stake.refund_status, 'processing')
        self.assertIn('rpc down', self.stake.refund_error)
        self.assertEqual(self.stake.total_claimed_amount, 0)

        with self.assertRaises(Conflict) as ctx:
            claim_refund(self.principal, 'ref-alice', ledger=paying_ledger())
        self.assertEqual(ctx.exception.reason, 'refund_in_progress')

    def test_unconfigured_treasury_keeps_refund_eligible(self):
        self.make_eligible()
        get_ledger_client.cache_clear()
        self.addCleanup(get_ledger_client.cache_clear)
        with self.assertRaises(LedgerUnavailable) as ctx:
            claim_refund(self.principal, 'ref-alice')
        self.assertEqual(ctx.exception.reason, 'ledger_unavailable')
        self.stake.refresh_from_db()
        self.assertEqual(self.stake.refund_status, 'eligible')

        result = claim_refund(self.principal, 'ref-alice', ledger=paying_ledger())
        self.assertEqual(result.tx_hash, TX)

    def test_unconfirmed_broadcast_records_tx_hash(self):
        self.make_eligible()
        ledger = MagicMock()
        ledger.send_payout.side_effect = PayoutPending(TX, 'timed out waiting for receipt')
        with self.assertRaises(PayoutFailed) as ctx:
            claim_refund(self.principal, 'ref-alice', ledger=ledger)
        self.assertEqual(ctx.exception.reason, 'payout_pending')
        self.stake.refresh_from_db()
        self.assertEqual(self.stake.refund_status, 'processing')
        self.assertEqual(self.stake.refund_tx_hash, TX)
        self.assertEqual(self.stake.total_claimed_amount, 0)

    def test_treasury_shortfall_reason(self):
        self.make_eligible()
        ledger = MagicMock()
        ledger.send_payout.side_effect = InsufficientTreasuryFunds(required=97000, available=10)
        with self.assertRaises(PayoutFailed) as ctx:
            claim_refund(self.principal, 'ref-alice', ledger=ledger)
        self.assertEqual(ctx.exception.reason, 'treasury_insufficient_funds')

    def test_payout_bound(self):
        self.make_eligible()
        StakeRecord.objects.filter(pk=self.stake.pk).update(total_claimed_amount=194000)
        ledger = paying_ledger()
        with self.assertLogs('settlement.security', level='WARNING'):
            with self.assertRaises(InvariantViolation):
                claim_refund(self.principal, 'ref-alice', ledger=ledger)
        ledger.send_payout.assert_not_called()
        self.stake.refresh_from_db()
        self.assertEqual(self.stake.refund_status, 'eligible')

    def test_requires_wallet(self):
        self.make_eligible()
        self.alice.profile.wallet_address = ''
        self.alice.profile.save()
        with self.assertRaises(ValidationFailed) as ctx:
            claim_refund(Principal.from_user(self.alice), 'ref-alice', ledger=paying_ledger())
        self.assertEqual(ctx.exception.reason, 'wallet_not_found')


class DepositRefundTest(TestCase):
    def setUp(self):
        self.alice = make_player('alice', 'a')
        self.principal = Principal.from_user(self.alice)
        self.stake = StakeRecord.objects.create(
            reference='ref-orphan', user=self.alice, amount=STAKE,
            normalized_status='confirmed', confirmed_at=timezone.now() - timedelta(minutes=20),
        )

    def test_orphan_past_timeout_refunded(self):
        result = claim_deposit_refund(self.principal, 'ref-orphan', ledger=paying_ledger())
        self.assertEqual(result.refund_amount, 97000)
        self.stake.refresh_from_db()
        self.assertEqual(self.stake.refund_status, 'completed')

    def test_recent_orphan_must_wait(self):
        StakeRecord.objects.filter(pk=self.stake.pk).update(confirmed_at=timezone.now() - timedelta(minutes=5))
        with self.assertRaises(ValidationFailed) as ctx:
            claim_deposit_refund(self.principal, 'ref-orphan', ledger=paying_ledger())
        self.assertEqual(ctx.exception.reason, 'not_eligible_yet')

    def test_attached_stake_rejected(self):
        match = create_match(self.alice, make_player('bob', 'b'), STAKE)
        self.assertTrue(attach_to_match('ref-orphan', match.pk))
        with self.assertRaises(ValidationFailed) as ctx:
            claim_deposit_refund(self.principal, 'ref-orphan', ledger=paying_ledger())
        self.assertEqual(ctx.exception.reason, 'stake_attached_to_match')

    def test_unconfirmed_deposit_rejected(self):
        StakeRecord.objects.filter(pk=self.stake.pk).update(normalized_status='pending')
        with self.assertRaises(ValidationFailed) as ctx:
            claim_deposit_refund(self.principal, 'ref-orphan', ledger=paying_ledger())
        self.assertEqual(ctx.exception.reason, 'payment_not_confirmed')


class StakeBookkeepingTest(TestCase):
    def setUp(self):
        self.alice = make_player('alice', 'a')
        self.bob = make_player('bob', 'b')

    def test_open_stake_is_idempotent_per_reference(self):
        first = open_stake(self.alice, STAKE, reference='ref-1')
        second = open_stake(self.alice, STAKE, reference='ref-1')
        self.assertEqual(first.pk, second.pk)
        self.assertEqual(first.normalized_status, 'pending')

    def test_reference_of_other_user_rejected(self):
        open_stake(self.alice, STAKE, reference='ref-1')
        with self.assertRaises(Conflict):
            open_stake(self.bob, STAKE, reference='ref-1')

    def test_open_stake_rejects_zero(self):
        with self.assertRaises(ValidationFailed):
            open_stake(self.alice, 0)

    def test_attach_only_confirmed(self):
        match = create_match(self.alice, self.bob, STAKE)
        open_stake(self.alice, STAKE, reference='ref-1')
        self.assertFalse(attach_to_match('ref-1', match.pk))
        StakeRecord.objects.filter(reference='ref-1').update(normalized_status='confirmed')
        self.assertTrue(attach_to_match('ref-1', match.pk))
        self.assertFalse(attach_to_match('ref-1', match.pk))
        record = StakeRecord.objects.get(reference='ref-1')
        self.assertTrue(record.used_for_match)
        self.assertFalse(record.is_orphaned)


class ConfirmDepositTest(TestCase):
    def setUp(self):
        self.alice = make_player('alice', 'a')
        self.principal = Principal.from_user(self.alice)
        self.stake = open_stake(self.alice, STAKE, reference='ref-1')

    def verifying_ledger(self, verified=True):
        ledger = MagicMock()
        ledger.verify_deposit.return_value = verified
        return ledger

    def test_verified_deposit_confirms(self):
        ledger = self.verifying_ledger()
        record = confirm_deposit(self.principal, 'ref-1', TX.upper().replace('0X', '0x'), ledger=ledger)
        self.assertEqual(record.normalized_status, 'confirmed')
        self.assertEqual(record.transaction_hash, TX)
        self.assertIsNotNone(record.confirmed_at)
        ledger.verify_deposit.assert_called_once_with(TX, STAKE)

    def test_reconfirming_same_tx_is_idempotent(self):
        confirm_deposit(self.principal, 'ref-1', TX, ledger=self.verifying_ledger())
        ledger = self.verifying_ledger()
        record = confirm_deposit(self.principal, 'ref-1', TX, ledger=ledger)
        self.assertEqual(record.normalized_status, 'confirmed')
        ledger.verify_deposit.assert_not_called()

    def test_unverified_deposit_rejected(self):
        with self.assertRaises(ValidationFailed) as ctx:
            confirm_deposit(self.principal, 'ref-1', TX, ledger=self.verifying_ledger(False))
        self.assertEqual(ctx.exception.reason, 'deposit_not_verified')
        self.stake.refresh_from_db()
        self.assertEqual(self.stake.normalized_status, 'pending')
        self.assertTrue(self.stake.last_error)

    def test_transaction_used_once(self):
        confirm_deposit(self.principal, 'ref-1', TX, ledger=self.verifying_ledger())
        open_stake(self.alice, STAKE, reference='ref-2')
        with self.assertRaises(Conflict) as ctx:
            confirm_deposit(self.principal, 'ref-2', TX, ledger=self.verifying_ledger())
        self.assertEqual(ctx.exception.reason, 'transaction_already_used')

    def test_other_users_payment(self):
        bob = make_player('bob', 'b')
        with self.assertRaises(Forbidden):
            confirm_deposit(Principal.from_user(bob), 'ref-1', TX, ledger=self.verifying_ledger())

    def test_ledger_unreachable(self):
        ledger = MagicMock()
        ledger.verify_deposit.side_effect = LedgerError('timeout')
        with self.assertRaises(LedgerUnavailable):
            confirm_deposit(self.principal, 'ref-1', TX, ledger=ledger)

    def test_unconfigured_treasury_unavailable(self):
        get_ledger_client.cache_clear()
        self.addCleanup(get_ledger_client.cache_clear)
        with self.assertRaises(LedgerUnavailable) as ctx:
            confirm_deposit(self.principal, 'ref-1', TX)
        self.assertEqual(ctx.exception.reason, 'verification_unavailable')
        self.stake.refresh_from_db()
        self.assertEqual(self.stake.normalized_status, 'pending')


class TimeoutSweeperTest(TestCase):
    def setUp(self):
        self.alice = make_player('alice', 'a')
        self.bob = make_player('bob', 'b')
        self.match = create_match(self.alice, self.bob, STAKE)
        StakeRecord.objects.create(
            reference='ref-a', user=self.alice, amount=STAKE, match=self.match,
            normalized_status='confirmed', confirmed_at=timezone.now(),
        )
        self.later = timezone.now() + timedelta(minutes=11)

    def test_stale_waiting_match_cancelled(self):
        self.assertEqual(sweep_waiting_matches(now=self.later), 1)
        self.match.refresh_from_db()
        self.assertEqual(self.match.status, 'cancelled')
        self.assertEqual(self.match.cancellation_reason, 'matchmaking_timeout')
        self.assertTrue(self.match.refund_processed)
        stake = StakeRecord.objects.get(reference='ref-a')
        self.assertEqual(stake.refund_status, 'eligible')
        self.assertEqual(stake.refund_reason, 'matchmaking_timeout')

    def test_second_sweep_is_noop(self):
        sweep_waiting_matches(now=self.later)
        self.assertEqual(sweep_waiting_matches(now=self.later), 0)

    def test_young_match_untouched(self):
        self.assertEqual(sweep_waiting_matches(now=timezone.now()), 0)

    def test_match_that_started_untouched(self):
        advance_match(self.match.pk, 'ready')
        self.assertEqual(sweep_waiting_matches(now=self.later), 0)
        self.match.refresh_from_db()
        self.assertEqual(self.match.status, 'ready')

    def test_already_flagged_match_skipped(self):
        Match.objects.filter(pk=self.match.pk).update(refund_processed=True)
        self.assertEqual(sweep_waiting_matches(now=self.later), 0)
        self.assertEqual(StakeRecord.objects.get(reference='ref-a').refund_status, 'none')

    def test_orphaned_stakes_opened(self):
        StakeRecord.objects.create(
            reference='ref-orphan', user=self.bob, amount=STAKE,
            normalized_status='confirmed', confirmed_at=timezone.now() - timedelta(minutes=20),
        )
        StakeRecord.objects.create(
            reference='ref-fresh', user=self.bob, amount=STAKE,
            normalized_status='confirmed', confirmed_at=timezone.now(),
        )
        report = sweep_timeouts()
        self.assertEqual(report.orphaned_stakes, 1)
        orphan = StakeRecord.objects.get(reference='ref-orphan')
        self.assertEqual(orphan.refund_status, 'eligible')
        self.assertEqual(orphan.refund_reason, 'no_match_found')
        self.assertEqual(StakeRecord.objects.get(reference='ref-fresh').refund_status, 'none')

    def test_command(self):
        out = StringIO()
        call_command('sweep_timeouts', stdout=out)
        self.assertIn('Cancelled 0 waiting matches', out.getvalue())


class RefundReadSideTest(RefundTestCase):
    def test_status(self):
        self.make_eligible()
        status = get_refund_status(self.principal, 'ref-alice')
        self.assertTrue(status['eligible'])
        self.assertEqual(status['refundStatus'], 'eligible')
        self.assertEqual(status['matchId'], self.match.pk)

    def test_status_hidden_from_others(self):
        with self.assertRaises(NotFound):
            get_refund_status(Principal.from_user(self.bob), 'ref-alice')

    def test_eligible_list_skips_expired(self):
        self.make_eligible()
        self.assertEqual(len(list_eligible_refunds(self.principal)), 1)
        StakeRecord.objects.filter(pk=self.stake.pk).update(refund_deadline=timezone.now() - timedelta(minutes=1))
        self.assertEqual(list_eligible_refunds(self.principal), [])

    def test_stuck_refunds_reported(self):
        StakeRecord.objects.filter(pk=self.stake.pk).update(
            refund_status='processing', refund_claimed_at=timezone.now() - timedelta(hours=1),
            refund_amount=97000, refund_error='rpc down',
        )
        self.assertEqual(list(find_stuck_refunds()), [StakeRecord.objects.get(pk=self.stake.pk)])
        out = StringIO()
        call_command('report_stuck_refunds', stdout=out)
        self.assertIn('ref-alice', out.getvalue())


class RefundApiTest(RefundTestCase):
    def setUp(self):
        super().setUp()
        self.client.login(username='alice', password='pass1234')

    @patch('apps.payments.services.get_ledger_client')
    def test_claim_refund_endpoint(self, get_client):
        get_client.return_value = paying_ledger()
        self.make_eligible()
        response = self.client.post(
            '/api/refund/claim/', {'paymentReference': 'ref-alice'}, content_type='application/json',
        )
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body['refundAmount'], '97000')
        self.assertEqual(body['gasFee'], '3000')
        self.assertEqual(body['txHash'], TX)

    def test_missing_reference(self):
        response = self.client.post('/api/refund/claim/', {}, content_type='application/json')
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['error'], 'missing_paymentReference')

    def test_not_eligible_is_400(self):
        response = self.client.post(
            '/api/refund/claim/', {'paymentReference': 'ref-alice'}, content_type='application/json',
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['error'], 'not_eligible')

    def test_get_not_allowed(self):
        response = self.client.get('/api/refund/claim/')
        self.assertEqual(response.status_code, 405)

    def test_status_endpoint(self):
        self.make_eligible()
        response = self.client.get('/api/refund/status/ref-alice/')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['refundStatus'], 'eligible')

    def test_eligible_endpoint(self):
        self.make_eligible()
        response = self.client.get('/api/refund/eligible/')
        self.assertEqual(response.json()['count'], 1)

    @patch('apps.payments.services.get_ledger_client')
    def test_confirm_endpoint(self, get_client):
        ledger = MagicMock()
        ledger.verify_deposit.return_value = True
        get_client.return_value = ledger
        open_stake(self.alice, STAKE, reference='ref-new')
        response = self.client.post(
            '/api/payments/confirm/',
            {'paymentReference': 'ref-new', 'transactionHash': TX},
            content_type='application/json',
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['status'], 'confirmed')
