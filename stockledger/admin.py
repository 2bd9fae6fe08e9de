"""
Stockledger Admin.

Read-only views for auditing the ledger:
- StockItem: quantity, prices, active flag
- Movement: immutable audit trail with a "reverse" action

Quantities only change through the ledger service, never through a form.
"""

import logging

from django.contrib import admin
from django.utils.translation import gettext_lazy as _

from stockledger.conf import ledger_settings
from stockledger.exceptions import LedgerError
from stockledger.models import Movement, MovementStatus, StockItem

logger = logging.getLogger(__name__)


class ReadOnlyAdmin(admin.ModelAdmin):

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


# =========================================================================
# STOCK ITEM ADMIN (read-only)
# =========================================================================

class StockLevelFilter(admin.SimpleListFilter):
    """Active items that are running low or out of stock."""

    title = _('stock level')
    parameter_name = 'level'

    def lookups(self, request, model_admin):
        return [
            ('low', _('Low stock')),
            ('empty', _('Out of stock')),
        ]

    def queryset(self, request, queryset):
        if self.value() == 'low':
            return queryset.active().low_stock(ledger_settings.LOW_STOCK_THRESHOLD)
        if self.value() == 'empty':
            return queryset.active().empty()
        return queryset


@admin.register(StockItem)
class StockItemAdmin(ReadOnlyAdmin):
    """StockItem admin — read-only. Stock only changes via the ledger."""

    list_display = ['part_number', 'name', 'store_id', 'quantity_display',
                    'cost_price', 'sell_price', 'is_active', 'last_updated']
    list_filter = ['store_id', 'is_active', StockLevelFilter]
    search_fields = ['part_number', 'name']
    readonly_fields = ['store_id', 'part_number', 'name', '_quantity', 'cost_price',
                       'sell_price', 'version', 'is_active', 'metadata',
                       'last_updated', 'created_at']

    @admin.display(description=_('Quantity'), ordering='_quantity')
    def quantity_display(self, obj):
        return obj.quantity


# =========================================================================
# MOVEMENT ADMIN (read-only audit trail with reverse action)
# =========================================================================

@admin.register(Movement)
class MovementAdmin(ReadOnlyAdmin):
    """Movement admin — read-only. Corrections are compensating movements."""

    list_display = ['applied_at', 'store_id', 'part_number', 'kind', 'delta',
                    'status', 'quantity_after', 'reference_id', 'counterparty']
    list_filter = ['status', 'kind', 'store_id']
    search_fields = ['part_number', 'reference_id', 'counterparty']
    readonly_fields = ['id', 'item', 'store_id', 'part_number', 'kind', 'delta',
                       'unit_price', 'counterparty', 'reference_id', 'reason',
                       'status', 'reject_reason', 'quantity_after', 'reversal_of',
                       'applied_at', 'metadata']
    date_hierarchy = 'applied_at'
    actions = ['reverse_movements']

    @admin.action(description=_('Reverse selected movements'))
    def reverse_movements(self, request, queryset):
        from stockledger import ledger

        count = 0
        for movement in queryset.filter(status=MovementStatus.APPLIED):
            try:
                ledger.reverse(movement.id, reason='Reversed via admin')
                count += 1
            except LedgerError as exc:
                logger.warning("reverse_movements: failed to reverse %s: %s", movement.id, exc)

        self.message_user(request, _('{count} movement(s) reversed.').format(count=count))
