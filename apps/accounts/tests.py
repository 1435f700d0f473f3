from django.contrib.auth.models import User
from django.test import TestCase

from .models import Principal, UserProfile

WALLET = '0xAbCdEf0123456789abcdef0123456789ABCDEF01'


class UserProfileSignalTest(TestCase):
    def test_profile_created_on_user_creation(self):
        user = User.objects.create_user('testuser', 'test@test.com', 'pass1234')
        self.assertTrue(hasattr(user, 'profile'))
        self.assertEqual(user.profile.display_name, 'testuser')
        self.assertEqual(user.profile.wallet_address, '')

    def test_profile_display_name(self):
        user = User.objects.create_user('testuser', 'test@test.com', 'pass1234')
        self.assertEqual(user.profile.get_display_name(), 'testuser')
        user.profile.display_name = 'Custom Name'
        user.profile.save()
        self.assertEqual(user.profile.get_display_name(), 'Custom Name')

    def test_wallet_stored_lowercase(self):
        user = User.objects.create_user('testuser', 'test@test.com', 'pass1234')
        user.profile.wallet_address = WALLET
        user.profile.save()
        self.assertEqual(UserProfile.objects.get(user=user).wallet_address, WALLET.lower())


class PrincipalTest(TestCase):
    def test_from_user_with_wallet(self):
        user = User.objects.create_user('alice', 'alice@test.com', 'pass1234')
        user.profile.wallet_address = WALLET
        user.profile.save()
        principal = Principal.from_user(user)
        self.assertEqual(principal.user_id, user.pk)
        self.assertEqual(principal.username, 'alice')
        self.assertEqual(principal.wallet, WALLET.lower())
        self.assertTrue(principal.has_wallet)

    def test_from_user_without_wallet(self):
        user = User.objects.create_user('bob', 'bob@test.com', 'pass1234')
        self.assertFalse(Principal.from_user(user).has_wallet)


class PrincipalRequiredTest(TestCase):
    def test_unauthenticated_gets_json_401(self):
        response = self.client.get('/api/refund/eligible/')
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()['error'], 'authentication_required')

    def test_unauthenticated_claim_rejected(self):
        response = self.client.post('/api/claim/', {'matchId': 1}, content_type='application/json')
        self.assertEqual(response.status_code, 401)

    def test_authenticated_passes_through(self):
        User.objects.create_user('alice', 'alice@test.com', 'pass1234')
        self.client.login(username='alice', password='pass1234')
        response = self.client.get('/api/refund/eligible/')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {'refunds': [], 'count': 0})


class HealthCheckTest(TestCase):
    def test_health(self):
        response = self.client.get('/health/')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {'status': 'ok'})
        self.assertTrue(response['X-Request-ID'])

    def test_upstream_request_id_kept(self):
        response = self.client.get('/health/', HTTP_X_REQUEST_ID='lb-1234')
        self.assertEqual(response['X-Request-ID'], 'lb-1234')
