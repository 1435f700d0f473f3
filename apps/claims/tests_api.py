from unittest.mock import MagicMock, patch

from django.contrib.auth.models import User
from django.test import TestCase
from django.utils import timezone

from apps.claims.models import Claim
from apps.matches.services import complete_match, create_match
from apps.payments.models import StakeRecord

TX = '0x' + '12' * 32


class ClaimApiTest(TestCase):
    def setUp(self):
        self.alice = User.objects.create_user('alice', 'alice@test.com', 'pass1234')
        self.bob = User.objects.create_user('bob', 'bob@test.com', 'pass1234')
        for user, digit in ((self.alice, 'a'), (self.bob, 'b')):
            user.profile.wallet_address = '0x' + digit * 40
            user.profile.save()
        self.match = create_match(self.alice, self.bob, 100000)
        StakeRecord.objects.create(
            reference='ref-a', user=self.alice, amount=100000, match=self.match,
            normalized_status='confirmed', confirmed_at=timezone.now(),
        )
        complete_match(self.match.pk, winner_id=self.alice.pk)

    def post_claim(self, payload):
        return self.client.post('/api/claim/', payload, content_type='application/json')

    @patch('apps.claims.services.get_ledger_client')
    def test_claim(self, get_client):
        ledger = MagicMock()
        ledger.send_payout.return_value = TX
        get_client.return_value = ledger
        self.client.login(username='alice', password='pass1234')
        response = self.post_claim({'matchId': self.match.pk})
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertTrue(body['success'])
        self.assertEqual(body['txHash'], TX)
        self.assertEqual(body['amount'], '194000')
        self.assertTrue(Claim.objects.get(match=self.match).claimed)

    @patch('apps.claims.services.get_ledger_client')
    def test_payout_failure_is_500(self, get_client):
        from apps.treasury.exceptions import PayoutSubmissionError

        ledger = MagicMock()
        ledger.send_payout.side_effect = PayoutSubmissionError('rpc down')
        get_client.return_value = ledger
        self.client.login(username='alice', password='pass1234')
        response = self.post_claim({'matchId': self.match.pk})
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()['error'], 'payout_failed')

    def test_loser_forbidden(self):
        self.client.login(username='bob', password='pass1234')
        response = self.post_claim({'matchId': self.match.pk})
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()['error'], 'not_winner')

    def test_unknown_match_404(self):
        self.client.login(username='alice', password='pass1234')
        response = self.post_claim({'matchId': 999999})
        self.assertEqual(response.status_code, 404)

    def test_missing_match_id(self):
        self.client.login(username='alice', password='pass1234')
        response = self.post_claim({})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['error'], 'missing_matchId')

    def test_non_numeric_match_id(self):
        self.client.login(username='alice', password='pass1234')
        response = self.post_claim({'matchId': 'abc'})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['error'], 'invalid_matchId')

    def test_status_endpoint(self):
        self.client.login(username='alice', password='pass1234')
        response = self.client.get(f'/api/claim/status/{self.match.pk}/')
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()['claimable'])

    def test_status_requires_login(self):
        response = self.client.get(f'/api/claim/status/{self.match.pk}/')
        self.assertEqual(response.status_code, 401)
