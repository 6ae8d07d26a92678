import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

import errors
from accounts import AccountDirectory, user_identity
from blood_banks import BloodBankRegistry, bank_identity
from blood_requests import BloodRequestRegistry
from config import Settings, configure_logging
from contact import ContactRegistry
from database import Database, pagination_info
from donors import DonorDirectory
from events import EventRegistry
from notifier import UrgentRequestNotifier
from schemas import (
    BloodBankCreate,
    BloodBankProfileUpdate,
    BloodBankUpdate,
    BloodRequestCreate,
    BloodRequestUpdate,
    ContactSubmission,
    ContactUpdate,
    DonorCreate,
    DonorUpdate,
    EventCreate,
    EventUpdate,
    Identity,
    LoginRequest,
    NoteRequest,
    ProfileUpdate,
    RegisterRequest,
    RejectRequest,
    ResponseRequest,
    StatusUpdate,
    StockUpdate,
)
from security import PasswordHasher, TokenSigner

logger = logging.getLogger("blood_donor")


class Services:
    """Registries wired to one database; stored on ``app.state.services``."""

    def __init__(self, settings: Settings, database: Database):
        self.settings = settings
        self.database = database
        self.hasher = PasswordHasher(settings.bcrypt_rounds)
        self.tokens = TokenSigner(settings.jwt_secret, settings.jwt_expire_minutes)
        self.accounts = AccountDirectory(database, self.hasher, self.tokens)
        self.blood_banks = BloodBankRegistry(
            database, self.hasher, self.tokens, token_expire_minutes=settings.bloodbank_token_expire_minutes
        )
        self.events = EventRegistry(database, accounts=self.accounts)
        self.notifier = UrgentRequestNotifier(settings.urgent_request_webhook_url, settings.notify_timeout)
        self.requests = BloodRequestRegistry(database, self.blood_banks, notifier=self.notifier)
        self.contact = ContactRegistry(database, accounts=self.accounts)
        self.donors = DonorDirectory(database)


def ok(data: Any = None, message: Optional[str] = None, **extra: Any) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": True}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = data
    body.update(extra)
    return body


# --- Auth helpers ---

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login", auto_error=False)


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_identity(token: Optional[str] = Depends(oauth2_scheme), services: Services = Depends(get_services)) -> Identity:
    if not token:
        raise errors.AuthError()
    claims = services.tokens.decode(token)
    try:
        if claims["type"] == "bloodbank":
            return bank_identity(services.blood_banks.resolve_claims(claims))
        return user_identity(services.accounts.resolve_claims(claims))
    except errors.NotFoundError:
        raise errors.InvalidToken("Invalid token or account not found")


def require_user(identity: Identity = Depends(get_identity)) -> Identity:
    if identity.kind != "user":
        raise errors.ForbiddenError("User account required")
    return identity


def require_admin(identity: Identity = Depends(get_identity)) -> Identity:
    if not identity.is_admin:
        raise errors.ForbiddenError("Admin access required")
    return identity


def require_bloodbank(identity: Identity = Depends(get_identity)) -> Identity:
    if not identity.is_bloodbank:
        raise errors.ForbiddenError("Blood bank access required")
    return identity


def require_staff(identity: Identity = Depends(get_identity)) -> Identity:
    """Blood bank staff or an admin."""
    if not (identity.is_bloodbank or identity.is_admin):
        raise errors.ForbiddenError("Blood bank or admin access required")
    return identity


def check_bank_access(identity: Identity, bank_id: str) -> None:
    if identity.is_admin or (identity.is_bloodbank and identity.id == bank_id):
        return
    raise errors.ForbiddenError("You can only manage your own blood bank")


# --- Basic routes ---

root_router = APIRouter()


@root_router.get("/")
def root():
    return {"ok": True, "service": "Blood Donor API"}


@root_router.get("/health")
def health(services: Services = Depends(get_services)):
    info = {
        "success": True,
        "backend": "running",
        "environment": services.settings.environment,
        "database": "connected",
        "collections": [],
    }
    try:
        info["collections"] = services.database.ping()
    except (PyMongoError, RuntimeError) as e:
        logger.warning("health check database error: %s", e)
        info["database"] = f"error: {str(e)}"
    return info


# --- Auth ---

auth_router = APIRouter(prefix="/auth", tags=["auth"])


@auth_router.post("/register", status_code=201)
def register(payload: RegisterRequest, services: Services = Depends(get_services)):
    user = services.accounts.register(payload.model_dump(exclude={"password"}), payload.password)
    token = services.accounts.issue_token(user)
    return ok({"user": user, "token": token}, "User registered successfully")


@auth_router.post("/login")
def login(payload: LoginRequest, services: Services = Depends(get_services)):
    return ok(services.accounts.login(payload.email, payload.password), "Login successful")


@auth_router.get("/me")
def me(identity: Identity = Depends(require_user), services: Services = Depends(get_services)):
    return ok({"user": services.accounts.get_user(identity.id)})


@auth_router.put("/profile")
def update_profile(
    payload: ProfileUpdate, identity: Identity = Depends(require_user), services: Services = Depends(get_services)
):
    user = services.accounts.update_profile(identity.id, payload.model_dump(exclude_unset=True))
    return ok({"user": user}, "Profile updated successfully")


@auth_router.post("/logout")
def logout(identity: Identity = Depends(get_identity)):
    logger.info("logout kind=%s id=%s", identity.kind, identity.id)
    return ok(message="Logged out successfully")


@auth_router.get("/users")
def list_users(
    role: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
    admin: Identity = Depends(require_admin),
    services: Services = Depends(get_services),
):
    users, total = services.accounts.list_users(role, page, limit)
    return ok({"users": users, "pagination": pagination_info(page, limit, total)})


@auth_router.post("/create-admin", status_code=201)
def create_admin(payload: RegisterRequest, admin: Identity = Depends(require_admin), services: Services = Depends(get_services)):
    user = services.accounts.create_admin(payload.model_dump(exclude={"password"}), payload.password)
    logger.info("admin created user_id=%s by=%s", user["_id"], admin.id)
    return ok({"user": user}, "Admin user created successfully")


@auth_router.put("/users/{user_id}/deactivate")
def deactivate_user(user_id: str, admin: Identity = Depends(require_admin), services: Services = Depends(get_services)):
    if user_id == admin.id:
        raise errors.ValidationError("You cannot deactivate your own account")
    return ok({"user": services.accounts.deactivate(user_id)}, "User deactivated successfully")


# --- Blood banks ---

banks_router = APIRouter(prefix="/blood-banks", tags=["blood-banks"])


@banks_router.get("")
def list_blood_banks(
    city: Optional[str] = None,
    state: Optional[str] = None,
    search: Optional[str] = None,
    blood_type: Optional[str] = None,
    has_stock: bool = False,
    is_open: bool = False,
    page: int = 1,
    limit: int = 10,
    services: Services = Depends(get_services),
):
    banks, total = services.blood_banks.list_banks(city, state, search, blood_type, has_stock, is_open, page, limit)
    return ok(banks, pagination=pagination_info(page, limit, total))


@banks_router.get("/search")
def search_blood_banks(q: str = "", services: Services = Depends(get_services)):
    banks = services.blood_banks.search(q)
    return ok(banks, count=len(banks))


@banks_router.get("/nearby")
def nearby_blood_banks(
    lat: float,
    lng: float,
    radius: float = 50,
    blood_type: Optional[str] = None,
    has_stock: bool = False,
    services: Services = Depends(get_services),
):
    banks = services.blood_banks.nearby(lat, lng, radius, blood_type, has_stock)
    return ok(banks, count=len(banks))


@banks_router.post("/login")
def blood_bank_login(payload: LoginRequest, services: Services = Depends(get_services)):
    result = services.blood_banks.login(payload.email, payload.password)
    return ok(result["data"], "Login successful", token=result["token"])


@banks_router.post("", status_code=201)
def create_blood_bank(payload: BloodBankCreate, admin: Identity = Depends(require_admin), services: Services = Depends(get_services)):
    bank = services.blood_banks.create(payload.name, payload.email, payload.password, created_by=admin.id)
    return ok(bank, "Blood bank created successfully")


@banks_router.get("/{bank_id}")
def get_blood_bank(bank_id: str, services: Services = Depends(get_services)):
    return ok(services.blood_banks.get(bank_id, active_only=True))


@banks_router.get("/{bank_id}/stock")
def get_blood_stock(bank_id: str, services: Services = Depends(get_services)):
    return ok(services.blood_banks.stock(bank_id))


@banks_router.put("/{bank_id}")
def update_blood_bank(
    bank_id: str, payload: BloodBankUpdate, admin: Identity = Depends(require_admin), services: Services = Depends(get_services)
):
    bank = services.blood_banks.update(bank_id, payload.model_dump(exclude_unset=True))
    return ok(bank, "Blood bank updated successfully")


@banks_router.delete("/{bank_id}")
def delete_blood_bank(bank_id: str, admin: Identity = Depends(require_admin), services: Services = Depends(get_services)):
    services.blood_banks.delete(bank_id)
    return ok(message="Blood bank deleted successfully")


@banks_router.put("/{bank_id}/profile")
def update_blood_bank_profile(
    bank_id: str,
    payload: BloodBankProfileUpdate,
    identity: Identity = Depends(require_staff),
    services: Services = Depends(get_services),
):
    check_bank_access(identity, bank_id)
    bank = services.blood_banks.update_profile(bank_id, payload.model_dump(exclude_unset=True))
    return ok(bank, "Profile updated successfully")


@banks_router.put("/{bank_id}/stock")
def update_blood_stock(
    bank_id: str, payload: StockUpdate, identity: Identity = Depends(require_staff), services: Services = Depends(get_services)
):
    check_bank_access(identity, bank_id)
    result = services.blood_banks.update_stock(bank_id, payload.blood_type, payload.quantity, payload.operation)
    return ok(result, "Blood stock updated successfully")


@banks_router.get("/{bank_id}/dashboard")
def blood_bank_dashboard(bank_id: str, identity: Identity = Depends(require_staff), services: Services = Depends(get_services)):
    check_bank_access(identity, bank_id)
    return ok(services.blood_banks.dashboard(bank_id))


# --- Events ---

events_router = APIRouter(prefix="/events", tags=["events"])


@events_router.get("")
def list_events(
    search: Optional[str] = None,
    location: Optional[str] = None,
    upcoming: bool = False,
    page: int = 1,
    limit: int = 10,
    services: Services = Depends(get_services),
):
    events, total = services.events.list_public(search, location, upcoming, page, limit)
    return ok(events, pagination=pagination_info(page, limit, total))


@events_router.get("/my-events/list")
def my_events(identity: Identity = Depends(require_bloodbank), services: Services = Depends(get_services)):
    events = services.events.list_for_organizer(identity.id)
    return ok(events, count=len(events))


@events_router.get("/my-registrations/list")
def my_registrations(identity: Identity = Depends(require_user), services: Services = Depends(get_services)):
    events = services.events.list_for_user(identity.id)
    return ok(events, count=len(events))


@events_router.get("/admin/all-events")
def all_events(
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    admin: Identity = Depends(require_admin),
    services: Services = Depends(get_services),
):
    result = services.events.list_all(status, page, limit)
    return ok(
        result["events"],
        pagination=pagination_info(page, limit, result["total"]),
        status_counts=result["status_counts"],
    )


@events_router.post("", status_code=201)
def create_event(payload: EventCreate, identity: Identity = Depends(require_staff), services: Services = Depends(get_services)):
    if identity.is_bloodbank:
        organizer_id, organizer_name = identity.id, identity.name
    else:
        if not payload.organizer_id:
            raise errors.ValidationError("organizer_id is required when an admin creates an event")
        bank = services.blood_banks.get(payload.organizer_id, active_only=True)
        organizer_id, organizer_name = bank["_id"], bank["name"]
    event = services.events.create(payload.model_dump(), organizer_id, organizer_name)
    return ok(event, "Event created and submitted for approval")


@events_router.get("/{event_id}")
def get_event(event_id: str, services: Services = Depends(get_services)):
    return ok(services.events.get(event_id))


@events_router.put("/{event_id}")
def update_event(
    event_id: str, payload: EventUpdate, identity: Identity = Depends(require_staff), services: Services = Depends(get_services)
):
    event = services.events.update(event_id, payload.model_dump(exclude_unset=True), identity)
    return ok(event, "Event updated successfully")


@events_router.delete("/{event_id}")
def delete_event(event_id: str, identity: Identity = Depends(require_staff), services: Services = Depends(get_services)):
    services.events.delete(event_id, identity)
    return ok(message="Event deleted successfully")


@events_router.put("/{event_id}/cancel")
def cancel_event(event_id: str, identity: Identity = Depends(require_staff), services: Services = Depends(get_services)):
    return ok(services.events.cancel(event_id, identity), "Event cancelled successfully")


@events_router.post("/{event_id}/register")
def register_for_event(event_id: str, identity: Identity = Depends(require_user), services: Services = Depends(get_services)):
    return ok(services.events.register(event_id, identity.id), "Successfully registered for event")


@events_router.post("/{event_id}/unregister")
def unregister_from_event(event_id: str, identity: Identity = Depends(require_user), services: Services = Depends(get_services)):
    return ok(services.events.unregister(event_id, identity.id), "Successfully unregistered from event")


@events_router.get("/{event_id}/registrations")
def event_registrations(event_id: str, identity: Identity = Depends(require_staff), services: Services = Depends(get_services)):
    return ok(services.events.registrations(event_id, identity))


@events_router.put("/{event_id}/approve")
def approve_event(event_id: str, admin: Identity = Depends(require_admin), services: Services = Depends(get_services)):
    return ok(services.events.approve(event_id, admin.id), "Event approved successfully")


@events_router.put("/{event_id}/reject")
def reject_event(
    event_id: str, payload: RejectRequest, admin: Identity = Depends(require_admin), services: Services = Depends(get_services)
):
    return ok(services.events.reject(event_id, admin.id, payload.reason), "Event rejected")


# --- Blood requests ---

requests_router = APIRouter(prefix="/requests", tags=["requests"])


@requests_router.post("", status_code=201)
def create_request(payload: BloodRequestCreate, identity: Identity = Depends(require_user), services: Services = Depends(get_services)):
    request = services.requests.create(payload.model_dump(), identity)
    return ok(request, "Blood request created successfully")


@requests_router.get("")
def list_requests(
    blood_type: Optional[str] = None,
    urgency: Optional[str] = None,
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 50,
    services: Services = Depends(get_services),
):
    found, total = services.requests.list_requests(blood_type, urgency, status, page, limit)
    return ok(found, pagination=pagination_info(page, limit, total))


@requests_router.get("/my-requests")
def my_requests(identity: Identity = Depends(require_user), services: Services = Depends(get_services)):
    return ok(services.requests.list_for_requester(identity.id))


@requests_router.get("/blood-bank/requests")
def blood_bank_requests(
    status: Optional[str] = None,
    urgency: Optional[str] = None,
    identity: Identity = Depends(require_bloodbank),
    services: Services = Depends(get_services),
):
    found = services.requests.list_for_bank(identity.id, status, urgency)
    return ok(found, count=len(found))


@requests_router.get("/blood-bank/urgent")
def blood_bank_urgent_requests(identity: Identity = Depends(require_bloodbank), services: Services = Depends(get_services)):
    found = services.requests.urgent_for_bank(identity.id)
    return ok(found, count=len(found))


@requests_router.get("/{request_id}")
def get_request(request_id: str, services: Services = Depends(get_services)):
    return ok(services.requests.get(request_id))


@requests_router.put("/{request_id}/status")
def update_request_status(
    request_id: str, payload: StatusUpdate, identity: Identity = Depends(require_staff), services: Services = Depends(get_services)
):
    request = services.requests.update_status(request_id, payload.status, payload.note, identity)
    return ok(request, "Request status updated successfully")


@requests_router.put("/{request_id}")
def update_request(
    request_id: str, payload: BloodRequestUpdate, identity: Identity = Depends(require_user), services: Services = Depends(get_services)
):
    request = services.requests.update(request_id, payload.model_dump(exclude_unset=True), identity)
    return ok(request, "Request updated successfully")


@requests_router.delete("/{request_id}")
def delete_request(request_id: str, identity: Identity = Depends(require_user), services: Services = Depends(get_services)):
    services.requests.delete(request_id, identity)
    return ok(message="Request deleted successfully")


# --- Contact form ---

contact_router = APIRouter(prefix="/contact", tags=["contact"])


@contact_router.post("/submit", status_code=201)
def submit_contact(payload: ContactSubmission, services: Services = Depends(get_services)):
    message = services.contact.submit(payload.model_dump())
    return ok(
        {"id": message["_id"], "status": message["status"], "created_at": message["created_at"]},
        "Your message has been sent successfully. We will get back to you soon!",
    )


@contact_router.get("/my-messages/{email}")
def my_messages(email: str, services: Services = Depends(get_services)):
    return ok(services.contact.messages_for_email(email))


@contact_router.get("/messages")
def list_messages(
    status: Optional[str] = None,
    priority: Optional[str] = None,
    search: Optional[str] = None,
    sort_by: str = "created_at",
    sort_order: str = "desc",
    page: int = 1,
    limit: int = 20,
    admin: Identity = Depends(require_admin),
    services: Services = Depends(get_services),
):
    return ok(services.contact.list_messages(status, priority, search, sort_by, sort_order, page, limit))


@contact_router.get("/messages/{message_id}")
def get_message(message_id: str, admin: Identity = Depends(require_admin), services: Services = Depends(get_services)):
    return ok(services.contact.get(message_id))


@contact_router.put("/messages/{message_id}")
def update_message(
    message_id: str, payload: ContactUpdate, admin: Identity = Depends(require_admin), services: Services = Depends(get_services)
):
    message = services.contact.update(message_id, payload.model_dump(exclude_unset=True), admin.id)
    return ok(message, "Message updated successfully")


@contact_router.put("/messages/{message_id}/read")
def mark_message_read(message_id: str, admin: Identity = Depends(require_admin), services: Services = Depends(get_services)):
    return ok(services.contact.mark_read(message_id, admin.id), "Message marked as read")


@contact_router.post("/messages/{message_id}/notes")
def add_message_note(
    message_id: str, payload: NoteRequest, admin: Identity = Depends(require_admin), services: Services = Depends(get_services)
):
    return ok(services.contact.add_note(message_id, payload.note, admin.id), "Note added successfully")


@contact_router.post("/messages/{message_id}/response")
def respond_to_message(
    message_id: str, payload: ResponseRequest, admin: Identity = Depends(require_admin), services: Services = Depends(get_services)
):
    return ok(services.contact.respond(message_id, payload.message, admin.id), "Response sent successfully")


@contact_router.delete("/messages/{message_id}")
def delete_message(message_id: str, admin: Identity = Depends(require_admin), services: Services = Depends(get_services)):
    services.contact.delete(message_id)
    return ok(message="Message deleted successfully")


# --- Donors ---

donors_router = APIRouter(prefix="/donors", tags=["donors"])


@donors_router.get("")
def list_donors(
    blood_type: Optional[str] = None, page: int = 1, limit: int = 10, services: Services = Depends(get_services)
):
    donors, total = services.donors.list(blood_type, page, limit)
    return ok(donors, pagination=pagination_info(page, limit, total))


@donors_router.get("/blood-type/{blood_type}")
def donors_by_blood_type(blood_type: str, services: Services = Depends(get_services)):
    donors = services.donors.by_blood_type(blood_type)
    return ok(donors, count=len(donors))


@donors_router.get("/{donor_id}")
def get_donor(donor_id: str, services: Services = Depends(get_services)):
    return ok(services.donors.get(donor_id))


@donors_router.post("", status_code=201)
def create_donor(payload: DonorCreate, services: Services = Depends(get_services)):
    return ok(services.donors.create(payload.model_dump()), "Donor registered successfully")


@donors_router.put("/{donor_id}")
def update_donor(
    donor_id: str, payload: DonorUpdate, admin: Identity = Depends(require_admin), services: Services = Depends(get_services)
):
    return ok(services.donors.update(donor_id, payload.model_dump(exclude_unset=True)), "Donor updated successfully")


@donors_router.delete("/{donor_id}")
def delete_donor(donor_id: str, admin: Identity = Depends(require_admin), services: Services = Depends(get_services)):
    services.donors.delete(donor_id)
    return ok(message="Donor deleted successfully")


# --- Error handling ---

def app_error_handler(request: Request, exc: errors.AppError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def request_validation_handler(request: Request, exc: RequestValidationError):
    error = errors.ValidationError("Validation failed", errors=errors.format_validation_errors(exc.errors()))
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


def http_exception_handler(request: Request, exc: StarletteHTTPException):
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    if exc.status_code == 404 and message == "Not Found":
        message = "Route not found"
    return JSONResponse(status_code=exc.status_code, content={"success": False, "message": message})


def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("unhandled error %s %s", request.method, request.url.path)
    settings = request.app.state.services.settings
    error = errors.InternalError(str(exc) if settings.is_development else None)
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


# --- App factory ---

def create_app(settings: Optional[Settings] = None, database: Optional[Database] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    database = database or Database.from_settings(settings)
    services = Services(settings, database)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        database.open()
        database.ensure_indexes()
        if settings.admin_email and settings.admin_password:
            services.accounts.ensure_admin(settings.admin_email, settings.admin_password)
        logger.info("blood donor api started environment=%s", settings.environment)
        yield
        database.close()

    app = FastAPI(title="Blood Donor API", version="1.0.0", lifespan=lifespan)
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url, "http://localhost:5173", "http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        logger.info(
            "%s %s status=%s duration_ms=%.1f",
            request.method, request.url.path, response.status_code, (time.perf_counter() - started) * 1000,
        )
        return response

    app.add_exception_handler(errors.AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    for router in (root_router, auth_router, banks_router, events_router, requests_router, contact_router, donors_router):
        app.include_router(router)
    return app


def run() -> None:
    import uvicorn

    configure_logging(app.state.services.settings.log_level)
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))


app = create_app()


if __name__ == "__main__":
    run()
