from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime
from typing import Any, Mapping

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from models.rental_models import Item
from services.errors import ActiveReservationConflict, InsufficientStock, InvalidTransition, NotFound, ValidationError
from services.ledger_service import has_active_reservation, log_audit
from services.reconciliation_service import ItemSnapshot
from services.unit_of_work import unit_of_work


LOGGER = logging.getLogger("campus_rental.inventory")

ITEM_FIELDS = ("name", "initialStock", "currentStock", "price", "description", "imageUrl", "unit")


def generate_id(prefix: str) -> str:
    return f"{prefix}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


def list_items(db: Session) -> list[Item]:
    stmt = select(Item).order_by(Item.name.asc(), Item.id.asc()).execution_options(populate_existing=True)
    return list(db.execute(stmt).scalars().all())


def get_item_or_404(db: Session, item_id: str) -> Item:
    stmt = select(Item).where(Item.id == item_id).execution_options(populate_existing=True)
    item = db.execute(stmt).scalars().first()
    if not item:
        raise NotFound("Item not found")
    return item


def load_inventory(db: Session) -> dict[str, ItemSnapshot]:
    return {
        item.id: ItemSnapshot(
            item_id=item.id,
            name=item.name,
            initial_stock=int(item.initialStock),
            current_stock=int(item.currentStock),
            price=int(item.price),
        )
        for item in list_items(db)
    }


def price_list(inventory: Mapping[str, ItemSnapshot]) -> dict[str, int]:
    return {item_id: snapshot.price for item_id, snapshot in inventory.items()}


def apply_stock_deltas(db: Session, deltas: Mapping[str, int]) -> None:
    """Stage guarded ``currentStock`` updates in the current transaction.

    Each statement only matches while the result stays within
    ``0..initialStock``, so a request that reconciled against a stale
    snapshot cannot overdraw stock another request already took.
    """
    for item_id, delta in deltas.items():
        if delta == 0:
            continue
        next_stock = Item.currentStock + delta
        result = db.execute(
            update(Item)
            .where(Item.id == item_id)
            .where(next_stock >= 0)
            .where(next_stock <= Item.initialStock)
            .values(currentStock=next_stock, updatedDate=datetime.now())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            continue

        live_stock = db.execute(select(Item.currentStock).where(Item.id == item_id)).scalar()
        LOGGER.warning(
            "Guarded stock update rejected item_id=%s delta=%s live_stock=%s",
            item_id,
            delta,
            live_stock,
        )
        if live_stock is None:
            raise NotFound(f"Item with ID {item_id} not found.")
        if delta < 0:
            raise InsufficientStock(item_id, required=-delta, available=int(live_stock))
        raise InvalidTransition(f"Stock release for {item_id} conflicts with a concurrent stock change.")


def _validate_item_values(values: Mapping[str, Any], *, require_all: bool) -> None:
    errors: dict[str, str] = {}
    name = values.get("name")
    unit = values.get("unit")
    if require_all or "name" in values:
        if not str(name or "").strip():
            errors["name"] = "Name is required."
    if require_all or "unit" in values:
        if not str(unit or "").strip():
            errors["unit"] = "Unit is required."
    for field, label in (("initialStock", "Initial stock"), ("price", "Price"), ("currentStock", "Current stock")):
        required = require_all and field != "currentStock"
        if field not in values and not required:
            continue
        value = values.get(field)
        if value is None or int(value) < 0:
            errors[field] = f"{label} must be a non-negative number."
    if errors:
        raise ValidationError("Missing required fields or invalid numeric values.", details=errors)


def serialize_item(item: Item) -> dict:
    return {
        "id": item.id,
        "name": item.name,
        "initialStock": item.initialStock,
        "currentStock": item.currentStock,
        "price": item.price,
        "description": item.description,
        "imageUrl": item.imageUrl,
        "unit": item.unit,
    }


def create_item(db: Session, values: Mapping[str, Any]) -> Item:
    _validate_item_values(values, require_all=True)
    item_id = generate_id("item")
    initial_stock = int(values["initialStock"])
    item = Item(
        id=item_id,
        name=str(values["name"]).strip(),
        initialStock=initial_stock,
        currentStock=initial_stock,
        price=int(values["price"]),
        description=values.get("description") or "",
        imageUrl=values.get("imageUrl") or f"https://picsum.photos/seed/{item_id}/200",
        unit=str(values["unit"]).strip(),
        createdDate=datetime.now(),
        updatedDate=datetime.now(),
    )
    with unit_of_work(db, "CreateItem", item_id):
        db.add(item)
        log_audit(db, "Item", item_id, "CreateItem", f"initialStock={initial_stock} price={item.price}")
    LOGGER.info("Item created item_id=%s initial_stock=%s", item_id, initial_stock)
    return item


def update_item(db: Session, item_id: str, values: Mapping[str, Any]) -> Item:
    """Replace catalog fields. Stock values are admin overrides, bounded only
    by ``0 <= currentStock <= initialStock``."""
    item = get_item_or_404(db, item_id)
    _validate_item_values(values, require_all=False)

    merged = {field: getattr(item, field) for field in ITEM_FIELDS}
    merged.update({field: value for field, value in values.items() if field in ITEM_FIELDS})
    if int(merged["currentStock"]) > int(merged["initialStock"]):
        raise ValidationError(
            "Current stock cannot exceed initial stock.",
            details={"currentStock": "Must be less than or equal to initialStock."},
        )

    with unit_of_work(db, "UpdateItem", item_id):
        for field, value in merged.items():
            setattr(item, field, value)
        item.updatedDate = datetime.now()
        log_audit(
            db,
            "Item",
            item_id,
            "UpdateItem",
            f"initialStock={item.initialStock} currentStock={item.currentStock} price={item.price}",
        )
    LOGGER.info("Item updated item_id=%s current_stock=%s initial_stock=%s", item_id, item.currentStock, item.initialStock)
    return item


def delete_item(db: Session, item_id: str) -> None:
    item = get_item_or_404(db, item_id)
    if has_active_reservation(db, item_id):
        raise ActiveReservationConflict("Cannot delete item with active (Pending or Rented) rental applications.")

    with unit_of_work(db, "DeleteItem", item_id):
        db.delete(item)
        log_audit(db, "Item", item_id, "DeleteItem", f"name={item.name}")
    LOGGER.info("Item deleted item_id=%s", item_id)
