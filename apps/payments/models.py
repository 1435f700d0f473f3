from django.conf import settings
from django.db import models

from apps.economy.fields import BaseUnitsField


class StakeRecord(models.Model):
    """A player's inbound deposit, later attached to the match it paid for.

    ``match`` stays null until matchmaking attaches the stake; a confirmed
    record that never gets a match is an orphan and becomes refundable.
    """

    STATUS_CHOICES = [
        ('pending', 'Pending'),
        ('confirmed', 'Confirmed'),
        ('failed', 'Failed'),
        ('cancelled', 'Cancelled'),
    ]
    REFUND_STATUS_CHOICES = [
        ('none', 'None'),
        ('eligible', 'Eligible'),
        ('processing', 'Processing'),
        ('completed', 'Completed'),
        ('failed', 'Failed'),
    ]
    REFUND_REASON_CHOICES = [
        ('both_players_disconnect', 'Both players disconnected'),
        ('opponent_disconnect', 'Opponent disconnected'),
        ('matchmaking_timeout', 'Matchmaking timeout'),
        ('no_match_found', 'No match found'),
        ('tie', 'Tie'),
    ]

    reference = models.CharField(max_length=64, unique=True)
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name='stake_records',
    )
    amount = BaseUnitsField()
    normalized_status = models.CharField(max_length=10, choices=STATUS_CHOICES, default='pending')
    transaction_hash = models.CharField(max_length=66, unique=True, null=True, blank=True)
    confirmed_at = models.DateTimeField(null=True, blank=True)
    last_error = models.CharField(max_length=500, blank=True)

    match = models.ForeignKey(
        'matches.Match',
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='stake_records',
    )
    used_for_match = models.BooleanField(default=False)
    total_claimed_amount = BaseUnitsField(default=0)

    refund_status = models.CharField(max_length=10, choices=REFUND_STATUS_CHOICES, default='none', null=True)
    refund_reason = models.CharField(max_length=30, choices=REFUND_REASON_CHOICES, null=True, blank=True)
    refund_deadline = models.DateTimeField(null=True, blank=True)
    refund_amount = BaseUnitsField(null=True, blank=True)
    refund_claimed_at = models.DateTimeField(null=True, blank=True)
    refund_tx_hash = models.CharField(max_length=66, blank=True)
    refund_error = models.CharField(max_length=500, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'payment_intents'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['match', 'user'], name='stake_match_user_idx'),
            models.Index(fields=['refund_status'], name='stake_refund_status_idx'),
        ]

    def __str__(self):
        return f'{self.reference} ({self.user.username}, {self.amount} base units) - {self.normalized_status}'

    @property
    def is_orphaned(self):
        return self.match_id is None and not self.used_for_match
