from django.contrib import admin

from .models import Claim


@admin.register(Claim)
class ClaimAdmin(admin.ModelAdmin):
    list_display = ('match', 'winner_wallet', 'net_payout', 'status', 'claimed', 'created_at', 'processed_at')
    list_filter = ('status', 'claimed')
    search_fields = ('winner_wallet', 'tx_hash', 'idempotency_key')
    readonly_fields = ('idempotency_key', 'amount', 'platform_fee', 'net_payout', 'tx_hash', 'created_at', 'processed_at')
