"""
Initial migration for Stockledger models.
"""

from decimal import Decimal
import uuid

import django.db.models.deletion
import django.utils.timezone
from django.db import migrations, models


class Migration(migrations.Migration):
    """Create Stockledger models: StockItem, Movement."""

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='StockItem',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('store_id', models.CharField(db_index=True, max_length=50, verbose_name='Store')),
                ('part_number', models.CharField(max_length=100, verbose_name='Part number')),
                ('name', models.CharField(blank=True, default='', max_length=255, verbose_name='Name')),
                ('_quantity', models.IntegerField(default=0, verbose_name='Quantity on hand')),
                ('cost_price', models.DecimalField(decimal_places=2, default=Decimal('0'), max_digits=14, verbose_name='Cost price')),
                ('sell_price', models.DecimalField(decimal_places=2, default=Decimal('0'), max_digits=14, verbose_name='Sell price')),
                ('version', models.PositiveIntegerField(default=0, verbose_name='Revision')),
                ('is_active', models.BooleanField(default=True, verbose_name='Active')),
                ('metadata', models.JSONField(blank=True, default=dict)),
                ('last_updated', models.DateTimeField(blank=True, null=True, verbose_name='Last movement')),
                ('created_at', models.DateTimeField(auto_now_add=True)),
            ],
            options={
                'verbose_name': 'Stock item',
                'verbose_name_plural': 'Stock items',
                'ordering': ['store_id', 'part_number'],
            },
        ),
        migrations.CreateModel(
            name='Movement',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('store_id', models.CharField(max_length=50, verbose_name='Store')),
                ('part_number', models.CharField(max_length=100, verbose_name='Part number')),
                ('kind', models.CharField(choices=[('in', 'Inbound'), ('out', 'Outbound'), ('reserve', 'Reserve'), ('release', 'Release'), ('return', 'Return')], max_length=10, verbose_name='Kind')),
                ('delta', models.IntegerField(help_text='Positive = stock in, negative = stock out', verbose_name='Delta')),
                ('unit_price', models.DecimalField(blank=True, decimal_places=2, max_digits=14, null=True, verbose_name='Unit price')),
                ('counterparty', models.CharField(blank=True, default='', help_text='Supplier for inbound, customer for outbound', max_length=255, verbose_name='Counterparty')),
                ('reference_id', models.CharField(blank=True, default='', max_length=100, verbose_name='Reference')),
                ('reason', models.CharField(blank=True, default='', max_length=255, verbose_name='Reason')),
                ('status', models.CharField(choices=[('applied', 'Applied'), ('rejected', 'Rejected')], default='applied', max_length=10, verbose_name='Status')),
                ('reject_reason', models.CharField(blank=True, default='', max_length=255)),
                ('quantity_after', models.IntegerField(blank=True, null=True, verbose_name='Quantity after')),
                ('applied_at', models.DateTimeField(db_index=True, default=django.utils.timezone.now, verbose_name='Applied at')),
                ('metadata', models.JSONField(blank=True, default=dict)),
                ('item', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='movements', to='stockledger.stockitem', verbose_name='Item')),
                ('reversal_of', models.OneToOneField(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='reversal', to='stockledger.movement', verbose_name='Reverses')),
            ],
            options={
                'verbose_name': 'Movement',
                'verbose_name_plural': 'Movements',
                'ordering': ['applied_at'],
            },
        ),
        # Constraints
        migrations.AddConstraint(
            model_name='stockitem',
            constraint=models.UniqueConstraint(fields=('store_id', 'part_number'), name='unique_stock_item_per_store'),
        ),
        migrations.AddConstraint(
            model_name='stockitem',
            constraint=models.CheckConstraint(condition=models.Q(('_quantity__gte', 0)), name='stock_item_quantity_non_negative'),
        ),
        # Indexes
        migrations.AddIndex(
            model_name='movement',
            index=models.Index(fields=['store_id', 'part_number', 'applied_at'], name='stockledger_item_time_idx'),
        ),
        migrations.AddIndex(
            model_name='movement',
            index=models.Index(fields=['reference_id', 'kind'], name='stockledger_ref_kind_idx'),
        ),
    ]
