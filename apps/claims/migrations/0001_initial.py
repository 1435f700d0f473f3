import apps.economy.fields
import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('matches', '0001_initial'),
    ]

    operations = [
        migrations.CreateModel(
            name='Claim',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('winner_wallet', models.CharField(max_length=42)),
                ('amount', apps.economy.fields.BaseUnitsField(decimal_places=0, max_digits=78)),
                ('platform_fee', apps.economy.fields.BaseUnitsField(decimal_places=0, max_digits=78)),
                ('net_payout', apps.economy.fields.BaseUnitsField(decimal_places=0, max_digits=78)),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('processing', 'Processing'), ('completed', 'Completed'), ('failed', 'Failed')], default='pending', max_length=10)),
                ('claimed', models.BooleanField(default=False)),
                ('idempotency_key', models.CharField(max_length=100, unique=True)),
                ('tx_hash', models.CharField(blank=True, max_length=66)),
                ('error_message', models.TextField(blank=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('processed_at', models.DateTimeField(blank=True, null=True)),
                ('match', models.OneToOneField(on_delete=django.db.models.deletion.PROTECT, related_name='claim', to='matches.match')),
            ],
            options={
                'db_table': 'claims',
                'ordering': ['-created_at'],
                'constraints': [models.CheckConstraint(condition=models.Q(('claimed', False), models.Q(('status', 'completed'), models.Q(('tx_hash', ''), _negated=True)), _connector='OR'), name='claim_paid_has_tx_hash')],
            },
        ),
    ]
