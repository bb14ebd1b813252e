import logging
import os

from fastapi import Depends, FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.middleware.sessions import SessionMiddleware

try:
    from dotenv import load_dotenv

    load_dotenv()
except ImportError:
    pass

from db.base import Base
from db.deps import get_rental_db
from db.session import engine_rental
from schemas.items import ItemCreateDto, ItemUpdateDto
from schemas.rentals import AdminLoginRequest, ApplicantIdentityDto, ApplyRentalDto, UserEditRequest
from services.admin_auth_service import (
    admin_session_payload,
    check_admin_credentials,
    create_session,
    get_session,
    is_admin_session,
)
from services.errors import InsufficientStock, RentalError, StorageFailure, Unauthorized
from services.errors import ValidationError as RequestRejected
from services.inventory_service import (
    create_item,
    delete_item,
    get_item_or_404,
    list_items,
    serialize_item,
    update_item,
)
from services.ledger_service import (
    dashboard_stats,
    find_applications,
    get_application_or_404,
    list_applications,
    serialize_application,
)
from services.rental_service import (
    admin_delete_application,
    admin_update_application,
    create_application,
    parse_admin_patch,
    user_cancel_application,
    user_edit_application,
)

app = FastAPI()


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


def _env_flag(name: str, default: str) -> bool:
    return str(os.environ.get(name, default)).strip().lower() in {"1", "true", "yes", "on"}


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:5173,http://localhost:5173",
)
_CORS_ALLOW_CREDENTIALS = _env_flag("CORS_ALLOW_CREDENTIALS", "true")
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials; force safe behavior.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"]
)
app.add_middleware(
    SessionMiddleware,
    secret_key=(os.environ.get("SESSION_SIGNING_SECRET") or "").strip(),
    session_cookie="campus_rental_session",
    same_site="lax",
    https_only=False,
)

FIXED_DEPOSIT_AMOUNT = int(os.environ.get("FIXED_DEPOSIT_AMOUNT") or "10000")
AUTH_LOGGER = logging.getLogger("campus_rental.auth")
API_LOGGER = logging.getLogger("campus_rental.api")

if _env_flag("RENTAL_AUTO_CREATE_TABLES", "true"):
    Base.metadata.create_all(bind=engine_rental)


@app.exception_handler(RentalError)
def handle_rental_error(request: Request, exc: RentalError):
    if isinstance(exc, StorageFailure):
        API_LOGGER.error("Request failed in storage path=%s method=%s", request.url.path, request.method)
    else:
        API_LOGGER.info(
            "Request rejected path=%s method=%s kind=%s detail=%s",
            request.url.path,
            request.method,
            exc.kind,
            exc.message,
        )
    payload = exc.to_payload()
    if isinstance(exc, InsufficientStock):
        payload["liveStock"] = _live_stock_or_none(request)
    return JSONResponse(status_code=exc.status_code, content=payload)


def _live_stock_or_none(request: Request) -> list[dict] | None:
    db = getattr(request.state, "db", None)
    if db is None:
        return None
    try:
        db.rollback()
        return [
            {"id": item.id, "name": item.name, "currentStock": item.currentStock}
            for item in list_items(db)
        ]
    except SQLAlchemyError:
        API_LOGGER.exception("Could not re-read live stock after rejection path=%s", request.url.path)
        return None


def get_db(request: Request, db: Session = Depends(get_rental_db)) -> Session:
    # Kept on the request so stock rejections can report live stock.
    request.state.db = db
    return db


def _bearer_token(authorization: str | None) -> str | None:
    raw = (authorization or "").strip()
    if raw.lower().startswith("bearer "):
        return raw[7:].strip() or None
    return None


def _get_active_session(request: Request, session_token: str | None) -> dict | None:
    session_from_cookie = request.session.get("user")
    if isinstance(session_from_cookie, dict) and is_admin_session(session_from_cookie):
        return dict(session_from_cookie)
    session_from_token = get_session(session_token)
    if is_admin_session(session_from_token):
        request.session["user"] = dict(session_from_token)
        return dict(session_from_token)
    return None


def require_admin(
    request: Request,
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
    authorization: str | None = Header(None),
) -> dict:
    session = _get_active_session(request, x_session_token or _bearer_token(authorization))
    if not session:
        raise Unauthorized("Unauthorized: Missing, invalid or expired token.")
    return session


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except SQLAlchemyError as exc:
        raise StorageFailure(f"db_unavailable: {exc}") from exc


@app.post("/api/auth/login")
def auth_login(payload: dict, request: Request):
    try:
        parsed = AdminLoginRequest.model_validate(payload)
    except ValidationError:
        raise RequestRejected("Invalid login request.")

    if not check_admin_credentials(parsed.id, parsed.password):
        AUTH_LOGGER.warning("Login failed admin_id=%s", (parsed.id or "").strip())
        raise Unauthorized("Invalid credentials.")

    session_payload = admin_session_payload()
    token = create_session(session_payload)
    request.session["user"] = get_session(token)
    AUTH_LOGGER.info("Login success admin_id=%s", session_payload["id"])
    return {"token": token, "sessionToken": token, "user": session_payload}


@app.post("/api/auth/logout")
def auth_logout(request: Request):
    request.session.clear()
    return {"ok": True}


@app.get("/api/auth/me")
def auth_me(admin: dict = Depends(require_admin)):
    return {"user": admin}


@app.get("/api/items")
def get_items(db: Session = Depends(get_db)):
    return [serialize_item(item) for item in list_items(db)]


@app.get("/api/items/{item_id}")
def get_item(item_id: str, db: Session = Depends(get_db), admin: dict = Depends(require_admin)):
    return serialize_item(get_item_or_404(db, item_id))


@app.post("/api/items", status_code=201)
def post_item(payload: ItemCreateDto, db: Session = Depends(get_db), admin: dict = Depends(require_admin)):
    item = create_item(db, payload.model_dump())
    return serialize_item(item)


@app.put("/api/items/{item_id}")
def put_item(item_id: str, payload: ItemUpdateDto, db: Session = Depends(get_db), admin: dict = Depends(require_admin)):
    values = payload.model_dump(exclude_unset=True)
    values.pop("id", None)
    item = update_item(db, item_id, values)
    return serialize_item(item)


@app.delete("/api/items/{item_id}", status_code=204)
def remove_item(item_id: str, db: Session = Depends(get_db), admin: dict = Depends(require_admin)):
    delete_item(db, item_id)
    return Response(status_code=204)


@app.post("/api/rentals/apply", status_code=201)
def apply_rental(payload: ApplyRentalDto, db: Session = Depends(get_db)):
    application = create_application(db, payload, FIXED_DEPOSIT_AMOUNT)
    return serialize_application(application)


@app.post("/api/rentals/find")
def find_rentals(payload: ApplicantIdentityDto, db: Session = Depends(get_db)):
    name = (payload.name or "").strip()
    student_id = (payload.studentId or "").strip()
    phone_number = (payload.phoneNumber or "").strip()
    if not name or not student_id or not phone_number:
        raise RequestRejected("Name, studentId, and phoneNumber are required.")
    return [serialize_application(application) for application in find_applications(db, name, student_id, phone_number)]


@app.put("/api/rentals/{rental_id}")
def edit_rental(rental_id: str, payload: UserEditRequest, db: Session = Depends(get_db)):
    application = user_edit_application(db, rental_id, payload, FIXED_DEPOSIT_AMOUNT)
    return serialize_application(application)


@app.post("/api/rentals/{rental_id}/cancel")
def cancel_rental(rental_id: str, payload: ApplicantIdentityDto, db: Session = Depends(get_db)):
    user_cancel_application(db, rental_id, payload)
    return {"message": "Application cancelled successfully."}


@app.get("/api/admin/rentals")
def get_admin_rentals(db: Session = Depends(get_db), admin: dict = Depends(require_admin)):
    return [serialize_application(application) for application in list_applications(db)]


@app.get("/api/admin/rentals/{rental_id}")
def get_admin_rental(rental_id: str, db: Session = Depends(get_db), admin: dict = Depends(require_admin)):
    return serialize_application(get_application_or_404(db, rental_id))


@app.put("/api/admin/rentals/{rental_id}")
def update_admin_rental(rental_id: str, payload: dict, db: Session = Depends(get_db), admin: dict = Depends(require_admin)):
    patch = parse_admin_patch(payload)
    application = admin_update_application(db, rental_id, patch, FIXED_DEPOSIT_AMOUNT)
    return serialize_application(application)


@app.delete("/api/admin/rentals/{rental_id}", status_code=204)
def delete_admin_rental(rental_id: str, db: Session = Depends(get_db), admin: dict = Depends(require_admin)):
    admin_delete_application(db, rental_id)
    return Response(status_code=204)


@app.get("/api/admin/dashboard/stats")
def get_dashboard_stats(db: Session = Depends(get_db), admin: dict = Depends(require_admin)):
    return dashboard_stats(db)
