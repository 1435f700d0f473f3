import apps.economy.fields
import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='Match',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('player1_wallet', models.CharField(max_length=42)),
                ('player2_wallet', models.CharField(max_length=42)),
                ('stake', apps.economy.fields.BaseUnitsField(decimal_places=0, max_digits=78)),
                ('status', models.CharField(choices=[('waiting', 'Waiting'), ('ready', 'Ready'), ('countdown', 'Countdown'), ('signal', 'Signal'), ('completed', 'Completed'), ('cancelled', 'Cancelled')], default='waiting', max_length=10)),
                ('winner_wallet', models.CharField(blank=True, max_length=42)),
                ('end_reason', models.CharField(blank=True, choices=[('reaction', 'Reaction'), ('opponent_disconnect', 'Opponent disconnect'), ('tie', 'Tie')], max_length=20, null=True)),
                ('claim_status', models.CharField(blank=True, choices=[('unclaimed', 'Unclaimed'), ('claimed', 'Claimed'), ('expired', 'Expired')], max_length=10, null=True)),
                ('claim_deadline', models.DateTimeField(blank=True, null=True)),
                ('total_claimed_amount', apps.economy.fields.BaseUnitsField(decimal_places=0, default=0, max_digits=78)),
                ('cancelled', models.BooleanField(default=False)),
                ('cancellation_reason', models.CharField(blank=True, choices=[('both_players_disconnect', 'Both players disconnected'), ('opponent_disconnect', 'Opponent disconnected'), ('matchmaking_timeout', 'Matchmaking timeout'), ('no_match_found', 'No match found')], max_length=30, null=True)),
                ('refund_processed', models.BooleanField(default=False)),
                ('player1_last_ping', models.DateTimeField(blank=True, null=True)),
                ('player2_last_ping', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('completed_at', models.DateTimeField(blank=True, null=True)),
                ('player1', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='matches_as_player1', to=settings.AUTH_USER_MODEL)),
                ('player2', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='matches_as_player2', to=settings.AUTH_USER_MODEL)),
                ('winner', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='matches_won', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'db_table': 'matches',
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['status', 'created_at'], name='matches_status_created_idx'),
                    models.Index(fields=['claim_status', 'claim_deadline'], name='matches_claim_deadline_idx'),
                ],
            },
        ),
    ]
