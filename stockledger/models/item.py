"""
StockItem model — authoritative on-hand quantity per store and part number.
"""

from decimal import Decimal

from django.db import models
from django.db.models import Q
from django.utils.translation import gettext_lazy as _


def normalize_part_number(part_number) -> str:
    """Part numbers compare case-insensitively and ignore surrounding blanks."""
    return str(part_number or '').strip().upper()


class StockItemQuerySet(models.QuerySet):
    """QuerySet with helper filters for StockItem."""

    def for_store(self, store_id):
        return self.filter(store_id=store_id)

    def active(self):
        return self.filter(is_active=True)

    def low_stock(self, threshold: int):
        """In stock, but at or below the threshold."""
        return self.filter(_quantity__gt=0, _quantity__lte=threshold)

    def empty(self):
        return self.filter(_quantity=0)


class StockItem(models.Model):
    """
    One part number in one store.

    Rules:
    - _quantity is only written by the reconciliation engine
    - _quantity never goes below zero (engine check + DB constraint)
    - version increments on every write (compare-and-swap guard)
    - never deleted while movements reference it; deactivate instead
    """

    store_id = models.CharField(
        max_length=50,
        db_index=True,
        verbose_name=_('Store'),
    )
    part_number = models.CharField(
        max_length=100,
        verbose_name=_('Part number'),
    )
    name = models.CharField(
        max_length=255,
        blank=True,
        default='',
        verbose_name=_('Name'),
    )

    _quantity = models.IntegerField(
        default=0,
        verbose_name=_('Quantity on hand'),
    )
    cost_price = models.DecimalField(
        max_digits=14,
        decimal_places=2,
        default=Decimal('0'),
        verbose_name=_('Cost price'),
    )
    sell_price = models.DecimalField(
        max_digits=14,
        decimal_places=2,
        default=Decimal('0'),
        verbose_name=_('Sell price'),
    )

    version = models.PositiveIntegerField(default=0, verbose_name=_('Revision'))
    is_active = models.BooleanField(default=True, verbose_name=_('Active'))
    metadata = models.JSONField(default=dict, blank=True)

    last_updated = models.DateTimeField(
        null=True,
        blank=True,
        verbose_name=_('Last movement'),
    )
    created_at = models.DateTimeField(auto_now_add=True)

    objects = StockItemQuerySet.as_manager()

    class Meta:
        verbose_name = _('Stock item')
        verbose_name_plural = _('Stock items')
        ordering = ['store_id', 'part_number']
        constraints = [
            models.UniqueConstraint(
                fields=['store_id', 'part_number'],
                name='unique_stock_item_per_store',
            ),
            models.CheckConstraint(
                condition=Q(_quantity__gte=0),
                name='stock_item_quantity_non_negative',
            ),
        ]

    @property
    def quantity(self) -> int:
        return self._quantity

    @property
    def key(self) -> tuple[str, str]:
        return (self.store_id, self.part_number)

    def __str__(self) -> str:
        return f"{self.store_id}/{self.part_number}: {self._quantity}"
