from django.contrib import admin

from .models import StakeRecord


@admin.register(StakeRecord)
class StakeRecordAdmin(admin.ModelAdmin):
    list_display = ('reference', 'user', 'amount', 'normalized_status', 'match', 'refund_status', 'created_at')
    list_filter = ('normalized_status', 'refund_status', 'used_for_match')
    search_fields = ('reference', 'user__username', 'transaction_hash', 'refund_tx_hash')
    readonly_fields = ('total_claimed_amount', 'refund_tx_hash', 'created_at', 'updated_at')
