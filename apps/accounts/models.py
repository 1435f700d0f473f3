from dataclasses import dataclass

from django.conf import settings
from django.core.validators import RegexValidator
from django.db import models

wallet_validator = RegexValidator(r'^0x[0-9a-fA-F]{40}$', 'Must be a 0x-prefixed 20-byte hex address.')


class UserProfile(models.Model):
    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='profile',
    )
    display_name = models.CharField(max_length=30, blank=True)
    # Bound by the identity layer after wallet sign-in.
    wallet_address = models.CharField(max_length=42, blank=True, validators=[wallet_validator])
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return self.get_display_name()

    def get_display_name(self):
        return self.display_name or self.user.username

    def save(self, *args, **kwargs):
        self.wallet_address = self.wallet_address.lower()
        super().save(*args, **kwargs)


@dataclass(frozen=True)
class Principal:
    """The authenticated caller, passed explicitly into every handler."""

    user_id: int
    username: str
    wallet: str

    @classmethod
    def from_user(cls, user):
        profile = getattr(user, 'profile', None)
        wallet = profile.wallet_address if profile else ''
        return cls(user_id=user.pk, username=user.get_username(), wallet=wallet.lower())

    @property
    def has_wallet(self):
        return bool(self.wallet)
