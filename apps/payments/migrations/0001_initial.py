import apps.economy.fields
import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
        ('matches', '0001_initial'),
    ]

    operations = [
        migrations.CreateModel(
            name='StakeRecord',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('reference', models.CharField(max_length=64, unique=True)),
                ('amount', apps.economy.fields.BaseUnitsField(decimal_places=0, max_digits=78)),
                ('normalized_status', models.CharField(choices=[('pending', 'Pending'), ('confirmed', 'Confirmed'), ('failed', 'Failed'), ('cancelled', 'Cancelled')], default='pending', max_length=10)),
                ('transaction_hash', models.CharField(blank=True, max_length=66, null=True, unique=True)),
                ('confirmed_at', models.DateTimeField(blank=True, null=True)),
                ('last_error', models.CharField(blank=True, max_length=500)),
                ('used_for_match', models.BooleanField(default=False)),
                ('total_claimed_amount', apps.economy.fields.BaseUnitsField(decimal_places=0, default=0, max_digits=78)),
                ('refund_status', models.CharField(choices=[('none', 'None'), ('eligible', 'Eligible'), ('processing', 'Processing'), ('completed', 'Completed'), ('failed', 'Failed')], default='none', max_length=10, null=True)),
                ('refund_reason', models.CharField(blank=True, choices=[('both_players_disconnect', 'Both players disconnected'), ('opponent_disconnect', 'Opponent disconnected'), ('matchmaking_timeout', 'Matchmaking timeout'), ('no_match_found', 'No match found'), ('tie', 'Tie')], max_length=30, null=True)),
                ('refund_deadline', models.DateTimeField(blank=True, null=True)),
                ('refund_amount', apps.economy.fields.BaseUnitsField(blank=True, decimal_places=0, max_digits=78, null=True)),
                ('refund_claimed_at', models.DateTimeField(blank=True, null=True)),
                ('refund_tx_hash', models.CharField(blank=True, max_length=66)),
                ('refund_error', models.CharField(blank=True, max_length=500)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('match', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='stake_records', to='matches.match')),
                ('user', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='stake_records', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'db_table': 'payment_intents',
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['match', 'user'], name='stake_match_user_idx'),
                    models.Index(fields=['refund_status'], name='stake_refund_status_idx'),
                ],
            },
        ),
    ]
