import json

from django.contrib.auth.models import User
from django.core.exceptions import ValidationError
from django.test import RequestFactory, SimpleTestCase, TestCase, override_settings

from apps.economy.amounts import (
    compute_payout,
    compute_refund,
    max_claimable,
    within_payout_bound,
)
from apps.economy.exceptions import Conflict, PayoutFailed, ValidationFailed
from apps.economy.fields import UINT256_MAX, BaseUnitsField
from apps.economy.http import json_body, require_field, settlement_endpoint
from apps.payments.models import StakeRecord
from apps.treasury.exceptions import InsufficientTreasuryFunds, PayoutPending, PayoutSubmissionError


class ComputePayoutTest(SimpleTestCase):
    def test_three_percent_fee(self):
        breakdown = compute_payout(100000, fee_bps=300)
        self.assertEqual(breakdown.gross_pool, 200000)
        self.assertEqual(breakdown.platform_fee, 6000)
        self.assertEqual(breakdown.net_payout, 194000)

    @override_settings(PLATFORM_FEE_BPS=250)
    def test_fee_read_from_settings(self):
        breakdown = compute_payout(100000)
        self.assertEqual(breakdown.platform_fee, 5000)
        self.assertEqual(breakdown.net_payout, 195000)

    def test_fee_rounds_down(self):
        # 2 * 333 * 300 / 10000 = 19.98
        breakdown = compute_payout(333, fee_bps=300)
        self.assertEqual(breakdown.platform_fee, 19)
        self.assertEqual(breakdown.net_payout, 647)

    def test_large_amounts_stay_exact(self):
        stake = 10 ** 30 + 7
        breakdown = compute_payout(stake, fee_bps=300)
        self.assertEqual(breakdown.platform_fee + breakdown.net_payout, 2 * stake)

    def test_float_rejected(self):
        with self.assertRaises(TypeError):
            compute_payout(1.5)

    def test_negative_rejected(self):
        with self.assertRaises(ValueError):
            compute_payout(-1)


class ComputeRefundTest(SimpleTestCase):
    def test_refund_fee(self):
        breakdown = compute_refund(100000, fee_bps=300)
        self.assertEqual(breakdown.fee, 3000)
        self.assertEqual(breakdown.refund, 97000)

    def test_zero_fee(self):
        self.assertEqual(compute_refund(5000, fee_bps=0).refund, 5000)


class PayoutBoundTest(SimpleTestCase):
    def test_max_claimable_is_double_stake(self):
        self.assertEqual(max_claimable(100000), 200000)

    def test_within_bound(self):
        self.assertTrue(within_payout_bound(0, 194000, 100000))
        self.assertTrue(within_payout_bound(6000, 194000, 100000))

    def test_exceeds_bound(self):
        self.assertFalse(within_payout_bound(194000, 194000, 100000))


class BaseUnitsFieldTest(SimpleTestCase):
    def test_defaults_fit_uint256(self):
        field = BaseUnitsField()
        self.assertEqual(field.max_digits, 78)
        self.assertEqual(field.decimal_places, 0)
        self.assertGreaterEqual(10 ** field.max_digits, 2 ** 256)

    def test_to_python_returns_int(self):
        value = BaseUnitsField().to_python('194000')
        self.assertEqual(value, 194000)
        self.assertIsInstance(value, int)

    def test_none_passes_through(self):
        self.assertIsNone(BaseUnitsField(null=True).to_python(None))

    def test_range_validated_without_decimal_validator(self):
        field = BaseUnitsField()
        field.run_validators(194000)
        with self.assertRaises(ValidationError):
            field.run_validators(-1)
        with self.assertRaises(ValidationError):
            field.run_validators(UINT256_MAX + 1)


class BaseUnitsStorageTest(TestCase):
    def setUp(self):
        self.user = User.objects.create_user('alice', 'alice@test.com', 'pass1234')

    def test_wei_scale_amount_round_trips_exactly(self):
        amount = 10 ** 18 + 123456789
        StakeRecord.objects.create(reference='ref-wei', user=self.user, amount=amount)
        stored = StakeRecord.objects.get(reference='ref-wei')
        self.assertEqual(stored.amount, amount)
        self.assertIsInstance(stored.amount, int)

    def test_uint256_max_round_trips_exactly(self):
        record = StakeRecord.objects.create(reference='ref-max', user=self.user, amount=UINT256_MAX)
        record.refresh_from_db()
        self.assertEqual(record.amount, UINT256_MAX)
        self.assertEqual(
            StakeRecord.objects.values_list('amount', flat=True).get(pk=record.pk), UINT256_MAX,
        )

    def test_update_and_lookup_stay_exact(self):
        record = StakeRecord.objects.create(reference='ref-upd', user=self.user, amount=1)
        total = 2 * 10 ** 18 + 1
        StakeRecord.objects.filter(pk=record.pk).update(total_claimed_amount=total)
        self.assertTrue(StakeRecord.objects.filter(total_claimed_amount=total).exists())
        self.assertFalse(StakeRecord.objects.filter(total_claimed_amount=total - 1).exists())
        record.refresh_from_db()
        self.assertEqual(record.total_claimed_amount, total)


class SettlementErrorTest(SimpleTestCase):
    def test_as_dict_includes_details(self):
        exc = Conflict('already_claimed', 'Winnings already claimed.', txHash='0xabc')
        self.assertEqual(exc.as_dict(), {
            'error': 'already_claimed',
            'message': 'Winnings already claimed.',
            'txHash': '0xabc',
        })

    def test_insufficient_funds_has_distinct_reason(self):
        exc = PayoutFailed.from_ledger_error(InsufficientTreasuryFunds(required=10, available=5))
        self.assertEqual(exc.reason, 'treasury_insufficient_funds')
        self.assertEqual(exc.status_code, 500)

    def test_other_ledger_errors_are_payout_failed(self):
        exc = PayoutFailed.from_ledger_error(PayoutSubmissionError('nonce too low'))
        self.assertEqual(exc.reason, 'payout_failed')

    def test_pending_payout_carries_tx_hash(self):
        exc = PayoutFailed.from_ledger_error(PayoutPending('0xabc'), matchId=3)
        self.assertEqual(exc.reason, 'payout_pending')
        self.assertEqual(exc.as_dict()['txHash'], '0xabc')
        self.assertEqual(exc.as_dict()['matchId'], 3)


class JsonHelpersTest(SimpleTestCase):
    def setUp(self):
        self.factory = RequestFactory()

    def test_invalid_json_rejected(self):
        request = self.factory.post('/api/claim/', data='{not json', content_type='application/json')
        with self.assertRaises(ValidationFailed) as ctx:
            json_body(request)
        self.assertEqual(ctx.exception.reason, 'invalid_json')

    def test_missing_field(self):
        with self.assertRaises(ValidationFailed) as ctx:
            require_field({}, 'matchId')
        self.assertEqual(ctx.exception.reason, 'missing_matchId')

    def test_endpoint_translates_errors(self):
        @settlement_endpoint
        def view(request):
            raise Conflict('refund_in_progress', 'Refund already in progress.')

        response = view(self.factory.post('/api/refund/claim/'))
        self.assertEqual(response.status_code, 400)
        self.assertEqual(json.loads(response.content)['error'], 'refund_in_progress')
