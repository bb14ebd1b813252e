from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping

from services.errors import ValidationError


@dataclass(frozen=True)
class CostBreakdown:
    total_item_cost: int
    deposit: int
    total_amount: int


def compute_costs(lines: Mapping[str, int], prices: Mapping[str, int], fixed_deposit: int) -> CostBreakdown:
    """Price a selection against the current price list.

    Unknown item ids fail the whole calculation so an application can never
    be under-charged for an item that vanished from the catalog.
    """
    missing = [item_id for item_id in lines if item_id not in prices]
    if missing:
        raise ValidationError(
            f"Cannot price unknown item(s): {', '.join(sorted(missing))}.",
            details={item_id: "Item not found in price list." for item_id in missing},
        )

    total = 0
    for item_id, quantity in lines.items():
        total += int(prices[item_id]) * int(quantity)

    deposit = int(fixed_deposit)
    return CostBreakdown(total_item_cost=total, deposit=deposit, total_amount=total + deposit)
