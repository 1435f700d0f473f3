from datetime import timedelta
from unittest.mock import patch

from django.contrib.auth.models import User
from django.test import TestCase, override_settings
from django.utils import timezone

from apps.matches import lifecycle, monitor
from apps.matches.models import Match
from apps.matches.monitor import check_player_disconnects, heartbeat_columns_available
from apps.matches.services import (
    InvalidMatch,
    advance_match,
    cancel_match,
    complete_match,
    create_match,
    record_heartbeat,
)
from apps.payments.models import StakeRecord

STAKE = 100000


def make_player(username, wallet_digit):
    user = User.objects.create_user(username, f'{username}@test.com', 'pass1234')
    user.profile.wallet_address = '0x' + wallet_digit * 40
    user.profile.save()
    return user


def confirmed_stake(user, match, reference):
    return StakeRecord.objects.create(
        reference=reference, user=user, amount=STAKE, match=match,
        normalized_status='confirmed', confirmed_at=timezone.now(),
    )


class LifecycleTest(TestCase):
    def test_forward_transitions(self):
        self.assertTrue(lifecycle.can_transition('waiting', 'ready'))
        self.assertTrue(lifecycle.can_transition('signal', 'completed'))
        self.assertFalse(lifecycle.can_transition('completed', 'cancelled'))
        self.assertFalse(lifecycle.can_transition('ready', 'waiting'))

    def test_every_active_state_can_end(self):
        for state in lifecycle.ACTIVE_STATES:
            self.assertTrue(lifecycle.can_transition(state, 'cancelled'))
            self.assertTrue(lifecycle.can_transition(state, 'completed'))

    def test_terminal_states(self):
        self.assertTrue(lifecycle.is_terminal('completed'))
        self.assertFalse(lifecycle.is_active('cancelled'))
        self.assertEqual(lifecycle.sources_for('countdown'), ('ready',))


class MatchServicesTest(TestCase):
    def setUp(self):
        self.alice = make_player('alice', 'a')
        self.bob = make_player('bob', 'b')

    def test_create_binds_wallets(self):
        match = create_match(self.alice, self.bob, STAKE)
        self.assertEqual(match.status, 'waiting')
        self.assertEqual(match.player1_wallet, '0x' + 'a' * 40)
        self.assertEqual(match.player2_wallet, '0x' + 'b' * 40)
        self.assertEqual(match.stake, STAKE)

    def test_create_requires_wallets(self):
        carol = User.objects.create_user('carol', 'carol@test.com', 'pass1234')
        with self.assertRaises(InvalidMatch):
            create_match(self.alice, carol, STAKE)

    def test_cannot_play_self(self):
        with self.assertRaises(InvalidMatch):
            create_match(self.alice, self.alice, STAKE)

    def test_advance_is_guarded(self):
        match = create_match(self.alice, self.bob, STAKE)
        self.assertTrue(advance_match(match.pk, 'ready'))
        self.assertFalse(advance_match(match.pk, 'ready'))
        self.assertFalse(advance_match(match.pk, 'signal'))
        self.assertTrue(advance_match(match.pk, 'countdown'))

    def test_advance_rejects_non_forward_target(self):
        match = create_match(self.alice, self.bob, STAKE)
        with self.assertRaises(lifecycle.InvalidTransition):
            advance_match(match.pk, 'completed')

    @override_settings(CLAIM_WINDOW=timedelta(hours=1))
    def test_complete_with_winner_opens_claim_window(self):
        match = create_match(self.alice, self.bob, STAKE)
        now = timezone.now()
        self.assertTrue(complete_match(match.pk, winner_id=self.bob.pk, now=now))
        match.refresh_from_db()
        self.assertEqual(match.status, 'completed')
        self.assertEqual(match.winner, self.bob)
        self.assertEqual(match.winner_wallet, '0x' + 'b' * 40)
        self.assertEqual(match.claim_status, 'unclaimed')
        self.assertEqual(match.claim_deadline, now + timedelta(hours=1))
        self.assertEqual(match.end_reason, 'reaction')

    def test_complete_twice_is_noop(self):
        match = create_match(self.alice, self.bob, STAKE)
        self.assertTrue(complete_match(match.pk, winner_id=self.bob.pk))
        self.assertFalse(complete_match(match.pk, winner_id=self.alice.pk))
        match.refresh_from_db()
        self.assertEqual(match.winner, self.bob)

    def test_outsider_cannot_win(self):
        carol = make_player('carol', 'c')
        match = create_match(self.alice, self.bob, STAKE)
        with self.assertRaises(InvalidMatch):
            complete_match(match.pk, winner_id=carol.pk)

    def test_tie_makes_both_stakes_refundable(self):
        match = create_match(self.alice, self.bob, STAKE)
        confirmed_stake(self.alice, match, 'ref-a')
        confirmed_stake(self.bob, match, 'ref-b')
        self.assertTrue(complete_match(match.pk))
        match.refresh_from_db()
        self.assertEqual(match.end_reason, 'tie')
        self.assertIsNone(match.winner)
        self.assertIsNone(match.claim_status)
        reasons = set(StakeRecord.objects.values_list('refund_status', 'refund_reason'))
        self.assertEqual(reasons, {('eligible', 'tie')})

    def test_cancel_marks_refunds(self):
        match = create_match(self.alice, self.bob, STAKE)
        confirmed_stake(self.alice, match, 'ref-a')
        StakeRecord.objects.create(reference='ref-b', user=self.bob, amount=STAKE, match=match)
        self.assertTrue(cancel_match(match.pk, 'matchmaking_timeout'))
        match.refresh_from_db()
        self.assertTrue(match.cancelled)
        self.assertEqual(match.cancellation_reason, 'matchmaking_timeout')
        self.assertEqual(StakeRecord.objects.get(reference='ref-a').refund_status, 'eligible')
        # Never confirmed, so nothing to refund.
        self.assertEqual(StakeRecord.objects.get(reference='ref-b').refund_status, 'none')

    def test_cancel_requires_known_reason(self):
        match = create_match(self.alice, self.bob, STAKE)
        with self.assertRaises(InvalidMatch):
            cancel_match(match.pk, 'bored')

    def test_cancel_completed_match_is_noop(self):
        match = create_match(self.alice, self.bob, STAKE)
        complete_match(match.pk, winner_id=self.alice.pk)
        self.assertFalse(cancel_match(match.pk, 'both_players_disconnect'))

    def test_cancel_respects_from_states(self):
        match = create_match(self.alice, self.bob, STAKE)
        advance_match(match.pk, 'ready')
        self.assertFalse(cancel_match(match.pk, 'matchmaking_timeout', from_states=('waiting',)))
        match.refresh_from_db()
        self.assertEqual(match.status, 'ready')


class HeartbeatTest(TestCase):
    def setUp(self):
        self.alice = make_player('alice', 'a')
        self.bob = make_player('bob', 'b')
        self.match = create_match(self.alice, self.bob, STAKE)

    def test_records_per_player(self):
        at = timezone.now()
        self.assertTrue(record_heartbeat(self.match.pk, self.bob.pk, at=at))
        self.match.refresh_from_db()
        self.assertIsNone(self.match.player1_last_ping)
        self.assertEqual(self.match.player2_last_ping, at)

    def test_outsider_ignored(self):
        carol = make_player('carol', 'c')
        self.assertFalse(record_heartbeat(self.match.pk, carol.pk))

    def test_finished_match_ignored(self):
        complete_match(self.match.pk, winner_id=self.alice.pk)
        self.assertFalse(record_heartbeat(self.match.pk, self.alice.pk))

    def test_unknown_match(self):
        self.assertFalse(record_heartbeat(999999, self.alice.pk))


class DisconnectMonitorTest(TestCase):
    def setUp(self):
        self.alice = make_player('alice', 'a')
        self.bob = make_player('bob', 'b')
        self.match = create_match(self.alice, self.bob, STAKE)
        confirmed_stake(self.alice, self.match, 'ref-a')
        confirmed_stake(self.bob, self.match, 'ref-b')
        self.now = timezone.now() + timedelta(minutes=2)

    def ping(self, player1_ago=None, player2_ago=None):
        Match.objects.filter(pk=self.match.pk).update(
            player1_last_ping=self.now - player1_ago if player1_ago is not None else None,
            player2_last_ping=self.now - player2_ago if player2_ago is not None else None,
        )

    def test_both_gone_cancels(self):
        self.ping(player1_ago=timedelta(seconds=45), player2_ago=timedelta(seconds=60))
        report = check_player_disconnects(now=self.now)
        self.assertEqual(report.cancelled, [self.match.pk])
        self.match.refresh_from_db()
        self.assertEqual(self.match.status, 'cancelled')
        self.assertEqual(self.match.cancellation_reason, 'both_players_disconnect')
        self.assertEqual(StakeRecord.objects.filter(refund_status='eligible').count(), 2)

    def test_one_gone_awards_other(self):
        self.ping(player1_ago=timedelta(seconds=5), player2_ago=timedelta(seconds=45))
        report = check_player_disconnects(now=self.now)
        self.assertEqual(report.awarded, {self.match.pk: self.alice.pk})
        self.match.refresh_from_db()
        self.assertEqual(self.match.status, 'completed')
        self.assertEqual(self.match.winner, self.alice)
        self.assertEqual(self.match.end_reason, 'opponent_disconnect')
        self.assertEqual(self.match.claim_status, 'unclaimed')
        self.assertEqual(self.match.claim_deadline, self.now + timedelta(hours=1))

    def test_never_pinged_counts_as_gone(self):
        self.ping(player2_ago=timedelta(seconds=1))
        report = check_player_disconnects(now=self.now)
        self.assertEqual(report.awarded, {self.match.pk: self.bob.pk})

    def test_both_present_untouched(self):
        self.ping(player1_ago=timedelta(seconds=5), player2_ago=timedelta(seconds=10))
        report = check_player_disconnects(now=self.now)
        self.assertEqual(report.changed, 0)
        self.match.refresh_from_db()
        self.assertEqual(self.match.status, 'waiting')

    def test_new_match_within_grace_untouched(self):
        report = check_player_disconnects(now=timezone.now())
        self.assertEqual(report.changed, 0)

    def test_second_run_is_noop(self):
        self.ping(player1_ago=timedelta(seconds=5), player2_ago=timedelta(seconds=45))
        first = check_player_disconnects(now=self.now)
        second = check_player_disconnects(now=self.now)
        self.assertEqual(first.changed, 1)
        self.assertEqual(second.changed, 0)

    def test_same_input_same_outcome(self):
        other = create_match(make_player('carol', 'c'), make_player('dave', 'd'), STAKE)
        Match.objects.filter(pk=other.pk).update(player1_last_ping=self.now, player2_last_ping=None)
        self.ping(player1_ago=timedelta(seconds=5), player2_ago=timedelta(seconds=45))
        report = check_player_disconnects(now=self.now)
        self.assertEqual(report.awarded, {
            self.match.pk: self.alice.pk,
            other.pk: other.player1_id,
        })


class CapabilityProbeTest(TestCase):
    def test_columns_present_in_test_schema(self):
        self.assertTrue(heartbeat_columns_available())

    def test_missing_columns_skip_and_log_once(self):
        monitor._missing_columns_logged = False
        with patch('apps.matches.monitor.heartbeat_columns_available', return_value=False):
            with self.assertLogs('apps.matches.monitor', level='INFO') as logs:
                first = check_player_disconnects()
                second = check_player_disconnects()
        self.assertTrue(first.skipped)
        self.assertTrue(second.skipped)
        self.assertEqual(len(logs.records), 1)
