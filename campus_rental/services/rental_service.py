from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Iterable, Mapping

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from models.rental_models import RentalApplication
from schemas.rentals import AdminRentalPatch, ApplicantIdentityDto, ApplyRentalDto, SelectedItemDto, UserEditRequest
from services.cost_service import CostBreakdown, compute_costs
from services.errors import InvalidTransition, NotFound, ValidationError
from services.inventory_service import apply_stock_deltas, generate_id, load_inventory, price_list
from services.ledger_service import (
    application_lines,
    get_application_or_404,
    log_audit,
    normalize_status,
    replace_application_items,
    reservation_state,
)
from services.reconciliation_service import STATUS_PENDING, STATUS_RETURNED, ReservationState, StockPlan, reconcile
from services.unit_of_work import unit_of_work


LOGGER = logging.getLogger("campus_rental.reservations")

# Derived or immutable fields admin clients echo back; dropped before validation.
IGNORED_PATCH_FIELDS = {"id", "totalItemCost", "deposit", "totalAmount", "applicationDate"}
REQUIRED_TEXT_FIELDS = ("applicantName", "phoneNumber", "studentId", "accountHolderName", "accountNumber")


def normalize_lines(entries: Iterable[SelectedItemDto]) -> dict[str, int]:
    lines: dict[str, int] = {}
    errors: dict[str, str] = {}
    for entry in entries:
        item_id = (entry.itemId or "").strip()
        if not item_id:
            errors["items"] = "Every entry needs an itemId."
            continue
        if item_id in lines:
            errors[item_id] = "Item selected more than once."
            continue
        if int(entry.quantity) <= 0:
            errors[item_id] = "Quantity must be greater than zero."
            continue
        lines[item_id] = int(entry.quantity)
    if errors:
        raise ValidationError("Invalid item selection.", details=errors)
    if not lines:
        raise ValidationError("Items list cannot be empty.", details={"items": "Select at least one item."})
    return lines


def _validate_dates(rental_date: date, return_date: date) -> None:
    if return_date < rental_date:
        raise ValidationError(
            "returnDate must be on or after rentalDate.",
            details={"returnDate": "Must not be before rentalDate."},
        )


def _validate_required_text(values: Mapping[str, Any], fields: Iterable[str]) -> None:
    missing = {field: "This field is required." for field in fields if not str(values.get(field) or "").strip()}
    if missing:
        raise ValidationError("Missing required applicant fields.", details=missing)


def _apply_costs(application: RentalApplication, costs: CostBreakdown) -> None:
    application.totalItemCost = costs.total_item_cost
    application.deposit = costs.deposit
    application.totalAmount = costs.total_amount


def _describe_plan(plan: StockPlan) -> str:
    if plan.is_noop:
        return "stock=unchanged"
    moves = ",".join(f"{item_id}:{delta:+d}" for item_id, delta in plan.deltas.items())
    return f"stock={moves}"


def _require_identity(application: RentalApplication, identity: ApplicantIdentityDto) -> None:
    supplied = {
        "name": (identity.name or "").strip(),
        "studentId": (identity.studentId or "").strip(),
        "phoneNumber": (identity.phoneNumber or "").strip(),
    }
    missing = {field: "This field is required." for field, value in supplied.items() if not value}
    if missing:
        raise ValidationError("Name, studentId, and phoneNumber are required.", details=missing)
    matches = (
        application.applicantName == supplied["name"]
        and application.studentId == supplied["studentId"]
        and application.phoneNumber == supplied["phoneNumber"]
    )
    if not matches:
        # Same answer as a missing id so lookups cannot probe other applicants.
        raise NotFound("Application not found")


def create_application(db: Session, payload: ApplyRentalDto, fixed_deposit: int, today: date | None = None) -> RentalApplication:
    values = payload.model_dump()
    _validate_required_text(values, REQUIRED_TEXT_FIELDS)
    _validate_dates(payload.rentalDate, payload.returnDate)
    lines = normalize_lines(payload.items)

    inventory = load_inventory(db)
    plan = reconcile(None, ReservationState(STATUS_PENDING, lines), inventory)
    costs = compute_costs(lines, price_list(inventory), fixed_deposit)

    application_id = generate_id("rental")
    application = RentalApplication(
        id=application_id,
        applicantName=payload.applicantName.strip(),
        phoneNumber=payload.phoneNumber.strip(),
        studentId=payload.studentId.strip(),
        accountHolderName=payload.accountHolderName.strip(),
        accountNumber=payload.accountNumber.strip(),
        rentalDate=payload.rentalDate,
        returnDate=payload.returnDate,
        status=STATUS_PENDING,
        applicationDate=today or date.today(),
        depositRefunded=False,
        createdDate=datetime.now(),
        updatedDate=datetime.now(),
    )
    replace_application_items(application, lines)
    _apply_costs(application, costs)

    with unit_of_work(db, "CreateApplication", application_id):
        db.add(application)
        apply_stock_deltas(db, plan.deltas)
        log_audit(db, "RentalApplication", application_id, "CreateApplication", _describe_plan(plan))

    LOGGER.info(
        "Application created application_id=%s items=%s total_amount=%s",
        application_id,
        lines,
        application.totalAmount,
    )
    return application


def user_edit_application(db: Session, application_id: str, payload: UserEditRequest, fixed_deposit: int) -> RentalApplication:
    application = get_application_or_404(db, application_id)
    _require_identity(application, payload)
    if application.status != STATUS_PENDING:
        raise InvalidTransition("Only pending applications can be modified by the applicant.")
    _validate_dates(payload.rentalDate, payload.returnDate)
    lines = normalize_lines(payload.items)

    inventory = load_inventory(db)
    plan = reconcile(reservation_state(application), ReservationState(STATUS_PENDING, lines), inventory)
    costs = compute_costs(lines, price_list(inventory), fixed_deposit)

    with unit_of_work(db, "UserEditApplication", application_id):
        application.rentalDate = payload.rentalDate
        application.returnDate = payload.returnDate
        replace_application_items(application, lines)
        _apply_costs(application, costs)
        application.updatedDate = datetime.now()
        apply_stock_deltas(db, plan.deltas)
        log_audit(db, "RentalApplication", application_id, "UserEditApplication", _describe_plan(plan))

    LOGGER.info("Application edited by applicant application_id=%s %s", application_id, _describe_plan(plan))
    return application


def user_cancel_application(db: Session, application_id: str, identity: ApplicantIdentityDto) -> None:
    application = get_application_or_404(db, application_id)
    _require_identity(application, identity)
    if application.status != STATUS_PENDING:
        raise InvalidTransition("Only pending applications can be cancelled by the applicant.")

    inventory = load_inventory(db)
    plan = reconcile(reservation_state(application), None, inventory)

    with unit_of_work(db, "UserCancelApplication", application_id):
        apply_stock_deltas(db, plan.deltas)
        db.delete(application)
        log_audit(db, "RentalApplication", application_id, "UserCancelApplication", _describe_plan(plan))

    LOGGER.info("Application cancelled by applicant application_id=%s %s", application_id, _describe_plan(plan))


def parse_admin_patch(payload: Mapping[str, Any]) -> AdminRentalPatch:
    if not isinstance(payload, Mapping):
        raise ValidationError("Request body must be a JSON object.")
    cleaned = {key: value for key, value in payload.items() if key not in IGNORED_PATCH_FIELDS}
    try:
        return AdminRentalPatch.model_validate(cleaned)
    except PydanticValidationError as exc:
        details = {".".join(str(part) for part in err["loc"]) or "body": err["msg"] for err in exc.errors()}
        raise ValidationError("Invalid admin update.", details=details) from exc


def admin_update_application(db: Session, application_id: str, patch: AdminRentalPatch, fixed_deposit: int) -> RentalApplication:
    application = get_application_or_404(db, application_id)
    changes = patch.model_dump(exclude_unset=True)
    items = changes.pop("items", None)

    merged = {
        "applicantName": application.applicantName,
        "phoneNumber": application.phoneNumber,
        "studentId": application.studentId,
        "accountHolderName": application.accountHolderName,
        "accountNumber": application.accountNumber,
        "rentalDate": application.rentalDate,
        "returnDate": application.returnDate,
        "status": application.status,
        "rentalStaff": application.rentalStaff,
        "returnStaff": application.returnStaff,
        "actualReturnDate": application.actualReturnDate,
        "depositRefunded": bool(application.depositRefunded),
    }
    merged.update(changes)
    merged["status"] = normalize_status(merged["status"])
    merged["depositRefunded"] = bool(merged["depositRefunded"])

    _validate_required_text(merged, REQUIRED_TEXT_FIELDS)
    if merged["rentalDate"] is None or merged["returnDate"] is None:
        raise ValidationError("rentalDate and returnDate are required.")
    _validate_dates(merged["rentalDate"], merged["returnDate"])
    if merged["status"] == STATUS_RETURNED and not merged["actualReturnDate"]:
        raise InvalidTransition("Actual return date is required for Returned status.")

    if items is not None:
        lines = normalize_lines(SelectedItemDto.model_validate(entry) for entry in items)
    else:
        lines = application_lines(application)

    old_status = application.status
    inventory = load_inventory(db)
    plan = reconcile(reservation_state(application), ReservationState(merged["status"], lines), inventory)
    # Stored totals stand unless new lines are supplied; they may name items deleted since.
    costs = None
    if items is not None:
        costs = compute_costs(lines, price_list(inventory), fixed_deposit)

    with unit_of_work(db, "AdminUpdateApplication", application_id):
        for field, value in merged.items():
            setattr(application, field, value)
        if costs is not None:
            replace_application_items(application, lines)
            _apply_costs(application, costs)
        application.updatedDate = datetime.now()
        apply_stock_deltas(db, plan.deltas)
        log_audit(
            db,
            "RentalApplication",
            application_id,
            "AdminUpdateApplication",
            f"status={old_status}->{application.status} {_describe_plan(plan)}",
        )

    LOGGER.info(
        "Application updated by admin application_id=%s status=%s->%s %s",
        application_id,
        old_status,
        application.status,
        _describe_plan(plan),
    )
    return application


def admin_delete_application(db: Session, application_id: str) -> None:
    application = get_application_or_404(db, application_id)
    status = application.status

    inventory = load_inventory(db)
    plan = reconcile(reservation_state(application), None, inventory)

    with unit_of_work(db, "AdminDeleteApplication", application_id):
        apply_stock_deltas(db, plan.deltas)
        db.delete(application)
        log_audit(db, "RentalApplication", application_id, "AdminDeleteApplication", f"status={status} {_describe_plan(plan)}")

    LOGGER.info("Application deleted by admin application_id=%s status=%s %s", application_id, status, _describe_plan(plan))
