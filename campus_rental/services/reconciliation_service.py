"""Net stock deltas for rental application transitions.

An application holds stock back from ``currentStock`` while it is Pending or
Rented. Moving an application between two (status, items) states therefore
changes stock by a single net amount per item:

* reserved -> not reserved releases the old quantity,
* not reserved -> reserved reserves the new quantity,
* reserved -> reserved moves only the difference ``old - new``.

``reconcile`` computes and validates those deltas against an inventory
snapshot. It never writes; ``inventory_service.apply_stock_deltas`` does.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Mapping

from services.errors import InsufficientStock, NotFound


STATUS_PENDING = "Pending"
STATUS_RENTED = "Rented"
STATUS_RETURNED = "Returned"
KNOWN_STATES = {STATUS_PENDING, STATUS_RENTED, STATUS_RETURNED}
RESERVED_STATES = {STATUS_PENDING, STATUS_RENTED}

LOGGER = logging.getLogger("campus_rental.reservations")


@dataclass(frozen=True)
class ItemSnapshot:
    item_id: str
    name: str
    initial_stock: int
    current_stock: int
    price: int


@dataclass(frozen=True)
class ReservationState:
    status: str
    lines: Mapping[str, int]


@dataclass
class StockPlan:
    deltas: dict[str, int] = field(default_factory=dict)
    # item id -> release amount discarded by the initial-stock cap
    clamped: dict[str, int] = field(default_factory=dict)

    @property
    def is_noop(self) -> bool:
        return not self.deltas


def is_reserved(status: str | None) -> bool:
    return status in RESERVED_STATES


def _involved_item_ids(old_lines: Mapping[str, int], new_lines: Mapping[str, int]) -> Iterable[str]:
    seen: set[str] = set()
    for item_id in list(old_lines) + list(new_lines):
        if item_id in seen:
            continue
        seen.add(item_id)
        yield item_id


def _raw_delta(old_reserved: bool, new_reserved: bool, old_qty: int, new_qty: int) -> int:
    if old_reserved and not new_reserved:
        return old_qty
    if not old_reserved and new_reserved:
        return -new_qty
    if old_reserved and new_reserved:
        return old_qty - new_qty
    return 0


def reconcile(
    old: ReservationState | None,
    new: ReservationState | None,
    inventory: Mapping[str, ItemSnapshot],
) -> StockPlan:
    """Return the stock deltas that move an application from ``old`` to ``new``.

    ``None`` on either side means the application does not exist there
    (create or delete). Raises ``InsufficientStock`` when a reservation would
    drive an item below zero and ``NotFound`` when stock must be reserved from
    an item that is not in ``inventory``.
    """
    old_reserved = old is not None and is_reserved(old.status)
    new_reserved = new is not None and is_reserved(new.status)
    old_lines = dict(old.lines) if old is not None else {}
    new_lines = dict(new.lines) if new is not None else {}

    plan = StockPlan()
    simulated: dict[str, int] = {}

    for item_id in _involved_item_ids(old_lines, new_lines):
        old_qty = int(old_lines.get(item_id, 0))
        new_qty = int(new_lines.get(item_id, 0))
        delta = _raw_delta(old_reserved, new_reserved, old_qty, new_qty)
        if delta == 0:
            continue

        snapshot = inventory.get(item_id)
        if snapshot is None:
            if delta < 0:
                raise NotFound(f"Item with ID {item_id} not found.")
            LOGGER.warning("Release skipped item_id=%s release=%s reason=item_missing", item_id, delta)
            continue

        current = simulated.get(item_id, snapshot.current_stock)
        future = current + delta
        if future < 0:
            # Report against the full request: stock this application already holds counts as available.
            available = current + (old_qty if old_reserved else 0)
            LOGGER.warning(
                "Reservation rejected item_id=%s required=%s available=%s",
                item_id,
                new_qty,
                available,
            )
            raise InsufficientStock(item_id, required=new_qty, available=available, item_name=snapshot.name)

        if delta > 0 and future > snapshot.initial_stock:
            capped = max(snapshot.initial_stock - current, 0)
            LOGGER.warning(
                "Release capped at initial stock item_id=%s requested=%s applied=%s initial=%s current=%s",
                item_id,
                delta,
                capped,
                snapshot.initial_stock,
                current,
            )
            plan.clamped[item_id] = delta - capped
            delta = capped
            if delta == 0:
                continue

        simulated[item_id] = current + delta
        plan.deltas[item_id] = delta

    return plan
