from __future__ import annotations

from datetime import date, datetime
from typing import Mapping

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from models.rental_models import AuditLog, Item, RentalApplication, RentalApplicationItem
from services.errors import NotFound, ValidationError
from services.reconciliation_service import (
    KNOWN_STATES,
    STATUS_PENDING,
    STATUS_RENTED,
    STATUS_RETURNED,
    ReservationState,
)


STATE_ALIASES = {
    "대여 전": STATUS_PENDING,
    "대여 중": STATUS_RENTED,
    "반납 완료": STATUS_RETURNED,
    "PENDING": STATUS_PENDING,
    "RENTED": STATUS_RENTED,
    "RETURNED": STATUS_RETURNED,
}
LOW_STOCK_THRESHOLD = 5


def normalize_status(raw: str | None) -> str:
    state = (raw or "").strip()
    state = STATE_ALIASES.get(state, state)
    if state not in KNOWN_STATES:
        raise ValidationError(f"Unknown status: {raw!r}.", details={"status": "Must be Pending, Rented or Returned."})
    return state


def log_audit(db: Session, entity_type: str, entity_id: str, action: str, details: str | None = None, user_id: str | None = None) -> None:
    db.add(
        AuditLog(
            EntityType=entity_type,
            EntityID=entity_id,
            Action=action,
            Details=details,
            UserID=user_id,
            CreatedAt=datetime.now(),
        )
    )


def _application_query():
    return (
        select(RentalApplication)
        .options(selectinload(RentalApplication.ApplicationItems))
        .execution_options(populate_existing=True)
    )


def get_application(db: Session, application_id: str) -> RentalApplication | None:
    stmt = _application_query().where(RentalApplication.id == application_id)
    return db.execute(stmt).scalars().first()


def get_application_or_404(db: Session, application_id: str) -> RentalApplication:
    application = get_application(db, application_id)
    if not application:
        raise NotFound("Application not found")
    return application


def list_applications(db: Session) -> list[RentalApplication]:
    stmt = _application_query().order_by(RentalApplication.applicationDate.desc(), RentalApplication.id.desc())
    return list(db.execute(stmt).scalars().all())


def find_applications(db: Session, name: str, student_id: str, phone_number: str) -> list[RentalApplication]:
    stmt = (
        _application_query()
        .where(RentalApplication.applicantName == name)
        .where(RentalApplication.studentId == student_id)
        .where(RentalApplication.phoneNumber == phone_number)
        .order_by(RentalApplication.applicationDate.desc(), RentalApplication.id.desc())
    )
    return list(db.execute(stmt).scalars().all())


def application_lines(application: RentalApplication) -> dict[str, int]:
    return {line.itemId: int(line.quantity) for line in application.ApplicationItems}


def reservation_state(application: RentalApplication) -> ReservationState:
    return ReservationState(status=application.status, lines=application_lines(application))


def replace_application_items(application: RentalApplication, lines: Mapping[str, int]) -> None:
    """Bring the application's item rows in line with ``lines``.

    Rows for unchanged item ids are updated in place so the composite
    primary key is never deleted and re-inserted in the same flush.
    """
    existing = {line.itemId: line for line in application.ApplicationItems}
    for item_id, line in existing.items():
        if item_id not in lines:
            application.ApplicationItems.remove(line)
    for item_id, quantity in lines.items():
        line = existing.get(item_id)
        if line is None:
            application.ApplicationItems.append(RentalApplicationItem(itemId=item_id, quantity=int(quantity)))
        elif int(line.quantity) != int(quantity):
            line.quantity = int(quantity)


def has_active_reservation(db: Session, item_id: str) -> bool:
    stmt = (
        select(RentalApplicationItem.itemId)
        .join(RentalApplication, RentalApplication.id == RentalApplicationItem.rentalApplicationId)
        .where(RentalApplicationItem.itemId == item_id)
        .where(RentalApplication.status.in_([STATUS_PENDING, STATUS_RENTED]))
        .limit(1)
    )
    return db.execute(stmt).first() is not None


def reserved_quantities(db: Session) -> dict[str, int]:
    stmt = (
        select(RentalApplicationItem.itemId, func.sum(RentalApplicationItem.quantity))
        .join(RentalApplication, RentalApplication.id == RentalApplicationItem.rentalApplicationId)
        .where(RentalApplication.status.in_([STATUS_PENDING, STATUS_RENTED]))
        .group_by(RentalApplicationItem.itemId)
    )
    return {item_id: int(total or 0) for item_id, total in db.execute(stmt).all()}


def dashboard_stats(db: Session, today: date | None = None) -> dict[str, int]:
    current_date = today or date.today()

    def _count(stmt) -> int:
        return int(db.execute(stmt).scalar() or 0)

    count_apps = select(func.count(RentalApplication.id))
    return {
        "newRequests": _count(count_apps.where(RentalApplication.status == STATUS_PENDING)),
        "dueToday": _count(
            count_apps.where(RentalApplication.status == STATUS_RENTED).where(RentalApplication.returnDate == current_date)
        ),
        "currentlyRented": _count(count_apps.where(RentalApplication.status == STATUS_RENTED)),
        "lowStockItems": _count(
            select(func.count(Item.id)).where(Item.currentStock < LOW_STOCK_THRESHOLD).where(Item.initialStock > 0)
        ),
    }


def serialize_application(application: RentalApplication) -> dict:
    return {
        "id": application.id,
        "applicantName": application.applicantName,
        "phoneNumber": application.phoneNumber,
        "studentId": application.studentId,
        "accountHolderName": application.accountHolderName,
        "accountNumber": application.accountNumber,
        "rentalDate": application.rentalDate,
        "returnDate": application.returnDate,
        "items": [
            {"itemId": line.itemId, "quantity": line.quantity}
            for line in application.ApplicationItems
        ],
        "totalItemCost": application.totalItemCost,
        "deposit": application.deposit,
        "totalAmount": application.totalAmount,
        "status": application.status,
        "applicationDate": application.applicationDate,
        "rentalStaff": application.rentalStaff,
        "returnStaff": application.returnStaff,
        "actualReturnDate": application.actualReturnDate,
        "depositRefunded": bool(application.depositRefunded),
    }
