"""
Ledger audit — replay applied movements and compare with on-hand quantity.

Usage:
    from stockledger.services.audit import verify

    # Run periodically (cron) or from the verify_ledger management command
    for d in verify(store_id='mjm'):
        print(d.store_id, d.part_number, d.on_hand, d.replayed)
"""

import logging
from dataclasses import dataclass

from stockledger.models.item import normalize_part_number

logger = logging.getLogger('stockledger')


@dataclass(frozen=True)
class Discrepancy:
    """An item whose quantity differs from the sum of its applied movements."""

    store_id: str
    part_number: str
    on_hand: int
    replayed: int

    @property
    def difference(self) -> int:
        return self.on_hand - self.replayed


def _stores(stores):
    if stores is None:
        from stockledger.stores import get_stores
        stores = get_stores()
    return stores


def replay(store_id, part_number, *, stores=None) -> int:
    """Quantity implied by the item's APPLIED movements."""
    return _stores(stores).movements.sum_applied(store_id, normalize_part_number(part_number))


def verify(store_id=None, *, stores=None) -> list[Discrepancy]:
    """
    Check the replay invariant for every item.

    Returns:
        Discrepancies found (empty list when the ledger is consistent)
    """
    stores = _stores(stores)
    discrepancies = []

    for item in stores.quantities.iter_items(store_id):
        replayed = stores.movements.sum_applied(item.store_id, item.part_number)
        if replayed != item.quantity:
            discrepancy = Discrepancy(
                store_id=item.store_id,
                part_number=item.part_number,
                on_hand=item.quantity,
                replayed=replayed,
            )
            discrepancies.append(discrepancy)
            logger.warning(
                "ledger.audit.mismatch",
                extra={
                    "store": item.store_id,
                    "part": item.part_number,
                    "on_hand": item.quantity,
                    "replayed": replayed,
                },
            )

    logger.info(
        "ledger.audit.verified",
        extra={"store": store_id, "discrepancies": len(discrepancies)},
    )
    return discrepancies
