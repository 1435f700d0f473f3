from django.contrib import admin

from .models import UserProfile


@admin.register(UserProfile)
class UserProfileAdmin(admin.ModelAdmin):
    list_display = ('user', 'display_name', 'wallet_address', 'created_at')
    search_fields = ('user__username', 'display_name', 'wallet_address')
    readonly_fields = ('created_at',)
