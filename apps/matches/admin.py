from django.contrib import admin

from .models import Match


@admin.register(Match)
class MatchAdmin(admin.ModelAdmin):
    list_display = ('pk', 'player1', 'player2', 'stake', 'status', 'winner', 'claim_status', 'created_at')
    list_filter = ('status', 'claim_status', 'cancelled')
    search_fields = ('player1__username', 'player2__username', 'player1_wallet', 'player2_wallet')
    readonly_fields = (
        'player1_wallet', 'player2_wallet', 'total_claimed_amount',
        'created_at', 'updated_at', 'completed_at',
    )
