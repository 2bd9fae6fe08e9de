"""
Enums for Stockledger models.
"""

from django.db import models
from django.utils.translation import gettext_lazy as _


class MovementKind(models.TextChoices):
    """
    Type of quantity change.

    IN:      Goods received from a supplier            (delta > 0)
    OUT:     Goods sold or dispatched to a customer    (delta < 0)
    RESERVE: Stock held for an order not yet shipped   (delta < 0)
    RELEASE: Reservation cancelled, stock restored     (delta > 0)
    RETURN:  Previously sold stock coming back         (delta > 0)
    """
    IN = 'in', _('Inbound')
    OUT = 'out', _('Outbound')
    RESERVE = 'reserve', _('Reserve')
    RELEASE = 'release', _('Release')
    RETURN = 'return', _('Return')


POSITIVE_KINDS = frozenset({MovementKind.IN, MovementKind.RELEASE, MovementKind.RETURN})

# Kind used for the compensating movement of each kind
REVERSAL_KIND = {
    MovementKind.IN: MovementKind.OUT,
    MovementKind.OUT: MovementKind.RETURN,
    MovementKind.RESERVE: MovementKind.RELEASE,
    MovementKind.RELEASE: MovementKind.RESERVE,
    MovementKind.RETURN: MovementKind.OUT,
}


class MovementStatus(models.TextChoices):
    """Outcome of a submitted movement."""
    APPLIED = 'applied', _('Applied')
    REJECTED = 'rejected', _('Rejected')


class LineState(models.TextChoices):
    """Reservation lifecycle of an order line."""
    NONE = 'none', _('None')
    RESERVED = 'reserved', _('Reserved')      # Checked out, awaiting shipment
    SHIPPED = 'shipped', _('Shipped')         # Dispatched to the customer
    RELEASED = 'released', _('Released')      # Cancelled before shipment
    RETURNED = 'returned', _('Returned')      # Came back after shipment
