from django.conf import settings
from django.db import models

from apps.economy.fields import BaseUnitsField


class Match(models.Model):
    STATUS_CHOICES = [
        ('waiting', 'Waiting'),
        ('ready', 'Ready'),
        ('countdown', 'Countdown'),
        ('signal', 'Signal'),
        ('completed', 'Completed'),
        ('cancelled', 'Cancelled'),
    ]
    END_REASON_CHOICES = [
        ('reaction', 'Reaction'),
        ('opponent_disconnect', 'Opponent disconnect'),
        ('tie', 'Tie'),
    ]
    CANCELLATION_REASON_CHOICES = [
        ('both_players_disconnect', 'Both players disconnected'),
        ('opponent_disconnect', 'Opponent disconnected'),
        ('matchmaking_timeout', 'Matchmaking timeout'),
        ('no_match_found', 'No match found'),
    ]
    CLAIM_STATUS_CHOICES = [
        ('unclaimed', 'Unclaimed'),
        ('claimed', 'Claimed'),
        ('expired', 'Expired'),
    ]

    player1 = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name='matches_as_player1',
    )
    player2 = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name='matches_as_player2',
    )
    # Wallets are bound when the match is created and never change.
    player1_wallet = models.CharField(max_length=42)
    player2_wallet = models.CharField(max_length=42)
    stake = BaseUnitsField()  # per side
    status = models.CharField(max_length=10, choices=STATUS_CHOICES, default='waiting')

    winner = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='matches_won',
    )
    winner_wallet = models.CharField(max_length=42, blank=True)
    end_reason = models.CharField(max_length=20, choices=END_REASON_CHOICES, null=True, blank=True)

    claim_status = models.CharField(max_length=10, choices=CLAIM_STATUS_CHOICES, null=True, blank=True)
    claim_deadline = models.DateTimeField(null=True, blank=True)
    total_claimed_amount = BaseUnitsField(default=0)

    cancelled = models.BooleanField(default=False)
    cancellation_reason = models.CharField(
        max_length=30, choices=CANCELLATION_REASON_CHOICES, null=True, blank=True,
    )
    refund_processed = models.BooleanField(default=False)

    player1_last_ping = models.DateTimeField(null=True, blank=True)
    player2_last_ping = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = 'matches'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['status', 'created_at'], name='matches_status_created_idx'),
            models.Index(fields=['claim_status', 'claim_deadline'], name='matches_claim_deadline_idx'),
        ]

    def __str__(self):
        return (
            f'{self.player1.username} vs {self.player2.username} '
            f'({self.stake} base units) - {self.status}'
        )

    def is_participant(self, user_id):
        return user_id in (self.player1_id, self.player2_id)

    def wallet_for(self, user_id):
        """Return the wallet bound to ``user_id`` at creation, or ''."""
        if user_id == self.player1_id:
            return self.player1_wallet
        if user_id == self.player2_id:
            return self.player2_wallet
        return ''

    def get_other_player_id(self, user_id):
        if user_id == self.player1_id:
            return self.player2_id
        return self.player1_id
