"""
Movement model — Immutable ledger of quantity changes.
"""

import uuid

from django.db import models
from django.utils import timezone
from django.utils.translation import gettext_lazy as _

from stockledger.models.enums import MovementKind, MovementStatus


class Movement(models.Model):
    """
    Immutable record of a quantity change request.

    Rules:
    - NEVER update() or delete()
    - Corrections are new Movements with inverse delta (reversal_of)
    - APPLIED movements sum to the item's on-hand quantity
    - REJECTED movements are kept for audit and carry no quantity effect
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    item = models.ForeignKey(
        'stockledger.StockItem',
        on_delete=models.PROTECT,
        related_name='movements',
        verbose_name=_('Item'),
    )
    store_id = models.CharField(max_length=50, verbose_name=_('Store'))
    part_number = models.CharField(max_length=100, verbose_name=_('Part number'))

    kind = models.CharField(
        max_length=10,
        choices=MovementKind.choices,
        verbose_name=_('Kind'),
    )
    delta = models.IntegerField(
        verbose_name=_('Delta'),
        help_text=_('Positive = stock in, negative = stock out'),
    )
    unit_price = models.DecimalField(
        max_digits=14,
        decimal_places=2,
        null=True,
        blank=True,
        verbose_name=_('Unit price'),
    )
    counterparty = models.CharField(
        max_length=255,
        blank=True,
        default='',
        verbose_name=_('Counterparty'),
        help_text=_('Supplier for inbound, customer for outbound'),
    )
    reference_id = models.CharField(
        max_length=100,
        blank=True,
        default='',
        verbose_name=_('Reference'),
    )
    reason = models.CharField(max_length=255, blank=True, default='', verbose_name=_('Reason'))

    status = models.CharField(
        max_length=10,
        choices=MovementStatus.choices,
        default=MovementStatus.APPLIED,
        verbose_name=_('Status'),
    )
    reject_reason = models.CharField(max_length=255, blank=True, default='')
    quantity_after = models.IntegerField(
        null=True,
        blank=True,
        verbose_name=_('Quantity after'),
    )

    reversal_of = models.OneToOneField(
        'self',
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='reversal',
        verbose_name=_('Reverses'),
    )

    applied_at = models.DateTimeField(default=timezone.now, db_index=True, verbose_name=_('Applied at'))
    metadata = models.JSONField(default=dict, blank=True)

    class Meta:
        verbose_name = _('Movement')
        verbose_name_plural = _('Movements')
        ordering = ['applied_at']
        indexes = [
            models.Index(fields=['store_id', 'part_number', 'applied_at'], name='stockledger_item_time_idx'),
            models.Index(fields=['reference_id', 'kind'], name='stockledger_ref_kind_idx'),
        ]

    @property
    def is_applied(self) -> bool:
        return self.status == MovementStatus.APPLIED

    def save(self, *args, **kwargs):
        # UUID pk is set before the first save, so existence decides immutability
        if not self._state.adding:
            raise ValueError(
                "Movements are immutable. "
                "To correct one, record a reversal."
            )
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValueError(
            "Movements are immutable. "
            "To undo one, record a reversal."
        )

    def __str__(self) -> str:
        signal = '+' if self.delta > 0 else ''
        return f"{signal}{self.delta} {self.kind} {self.part_number} [{self.status}]"
