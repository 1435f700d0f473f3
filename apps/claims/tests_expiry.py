from datetime import timedelta
from io import StringIO

from django.contrib.auth.models import User
from django.core.management import call_command
from django.test import TestCase
from django.utils import timezone

from apps.claims.expiry import expire_unclaimed_matches
from apps.matches.models import Match
from apps.matches.services import complete_match, create_match


class ExpireUnclaimedMatchesTest(TestCase):
    def setUp(self):
        self.alice = User.objects.create_user('alice', 'alice@test.com', 'pass1234')
        self.bob = User.objects.create_user('bob', 'bob@test.com', 'pass1234')
        for user, digit in ((self.alice, 'a'), (self.bob, 'b')):
            user.profile.wallet_address = '0x' + digit * 40
            user.profile.save()

    def finished_match(self, deadline_delta, claim_status='unclaimed'):
        match = create_match(self.alice, self.bob, 100000)
        complete_match(match.pk, winner_id=self.alice.pk)
        Match.objects.filter(pk=match.pk).update(
            claim_deadline=timezone.now() + deadline_delta, claim_status=claim_status,
        )
        return match

    def test_expires_past_deadline(self):
        match = self.finished_match(-timedelta(minutes=1))
        self.assertEqual(expire_unclaimed_matches(), 1)
        match.refresh_from_db()
        self.assertEqual(match.claim_status, 'expired')

    def test_second_run_changes_nothing(self):
        self.finished_match(-timedelta(minutes=1))
        self.assertEqual(expire_unclaimed_matches(), 1)
        self.assertEqual(expire_unclaimed_matches(), 0)

    def test_open_window_untouched(self):
        match = self.finished_match(timedelta(minutes=30))
        self.assertEqual(expire_unclaimed_matches(), 0)
        match.refresh_from_db()
        self.assertEqual(match.claim_status, 'unclaimed')

    def test_claimed_match_untouched(self):
        match = self.finished_match(-timedelta(minutes=1), claim_status='claimed')
        self.assertEqual(expire_unclaimed_matches(), 0)
        match.refresh_from_db()
        self.assertEqual(match.claim_status, 'claimed')

    def test_command(self):
        self.finished_match(-timedelta(minutes=1))
        out = StringIO()
        call_command('expire_claims', stdout=out)
        self.assertIn('Expired 1 unclaimed matches', out.getvalue())
