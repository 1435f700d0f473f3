from dataclasses import dataclass

from django.db import models
from django.db.models import Q

from apps.economy.fields import BaseUnitsField


@dataclass(frozen=True)
class IdempotencyKey:
    """One payout per (match, winner wallet); the wallet is compared lower-cased."""

    match_id: int
    wallet: str

    def __post_init__(self):
        object.__setattr__(self, 'wallet', self.wallet.lower())

    def __str__(self):
        return f'claim:{self.match_id}:{self.wallet}'


class Claim(models.Model):
    STATUS_CHOICES = [
        ('pending', 'Pending'),
        ('processing', 'Processing'),
        ('completed', 'Completed'),
        ('failed', 'Failed'),
    ]
    ACTIVE_STATUSES = ('pending', 'processing', 'completed')

    match = models.OneToOneField(
        'matches.Match',
        on_delete=models.PROTECT,
        related_name='claim',
    )
    winner_wallet = models.CharField(max_length=42)
    amount = BaseUnitsField()  # gross pool
    platform_fee = BaseUnitsField()
    net_payout = BaseUnitsField()
    status = models.CharField(max_length=10, choices=STATUS_CHOICES, default='pending')
    claimed = models.BooleanField(default=False)
    idempotency_key = models.CharField(max_length=100, unique=True)
    tx_hash = models.CharField(max_length=66, blank=True)
    error_message = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    processed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = 'claims'
        ordering = ['-created_at']
        constraints = [
            models.CheckConstraint(
                condition=Q(claimed=False) | (Q(status='completed') & ~Q(tx_hash='')),
                name='claim_paid_has_tx_hash',
            ),
        ]

    def __str__(self):
        return f'Claim for match {self.match_id}: {self.net_payout} base units - {self.status}'
