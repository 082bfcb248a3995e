from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator

from data_backend import (
    AuthError,
    BackendError,
    DataBackend,
    SqliteBackend,
    SupabaseBackend,
    is_admin_user,
    now_iso,
    user_role,
)

BASE_DIR = Path(__file__).resolve().parent
db_path_raw = os.getenv("DB_PATH", str(BASE_DIR / "app.db"))
DB_PATH = Path(db_path_raw).expanduser()
if not DB_PATH.is_absolute():
    DB_PATH = (BASE_DIR / DB_PATH).resolve()
else:
    DB_PATH = DB_PATH.resolve()

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"
logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger(__name__)

SUPABASE_URL = (os.getenv("SUPABASE_URL") or os.getenv("EXPO_PUBLIC_SUPABASE_URL") or "").strip()
SUPABASE_ANON_KEY = (os.getenv("SUPABASE_ANON_KEY") or os.getenv("EXPO_PUBLIC_SUPABASE_ANON_KEY") or "").strip()
SUPABASE_SERVICE_ROLE_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "").strip()

DEFAULT_ADMIN_EMAIL = os.getenv("DEFAULT_ADMIN_EMAIL", "admin@example.com").strip().lower()
DEFAULT_ADMIN_PASSWORD = os.getenv("DEFAULT_ADMIN_PASSWORD", "ChangeMe123!").strip()
DEFAULT_ADMIN_NAME = os.getenv("DEFAULT_ADMIN_NAME", "Admin User").strip()

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
INSURANCE_TYPES = {"health", "auto", "life", "property", "business"}
USER_ROLES = {"admin", "employee", "client", "vendor", "system"}
USER_STATUSES = {"active", "inactive", "suspended"}
VENDOR_TYPES = {"mga", "carrier", "partner"}
USER_LANGUAGES = {"en", "es", "fr"}
DEFAULT_TIMEZONE = "America/New_York"
DEFAULT_LANGUAGE = "en"
WON_STATUS = "closed_won"
LOST_STATUS = "closed_lost"
DEFAULT_QUOTE_STATUS = "new_request"
QUOTE_REQUEST_STATUS = "new"
ACTIVITY_LIMIT = 50
PASSWORD_MIN_LENGTH = 8

CLIENT_INFO_REQUIRED = {
    "first_name": "first name",
    "last_name": "last name",
    "email": "email",
    "phone": "phone",
    "address": "address",
    "city": "city",
    "state": "state",
    "zip_code": "ZIP code",
}
QUOTE_REQUEST_REQUIRED = {
    "full_name": "full name",
    "email": "email",
    "phone": "phone",
    "insurance_type": "insurance type",
}

app = FastAPI(title="Insurance Services API")

FRONTEND_BASE_URL = os.getenv("FRONTEND_BASE_URL", "http://localhost:8081").rstrip("/")
_extra_origins_raw = os.getenv("ALLOWED_ORIGINS", "")
EXTRA_ALLOWED_ORIGINS = [
    origin.strip().rstrip("/")
    for origin in _extra_origins_raw.split(",")
    if origin.strip()
]
ALLOW_ORIGIN_REGEX = os.getenv("ALLOWED_ORIGIN_REGEX", "").strip() or None
ALLOWED_ORIGINS = sorted(set([
    FRONTEND_BASE_URL,
    "http://localhost:8081",
    "http://localhost:19006",
    *EXTRA_ALLOWED_ORIGINS,
]))

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_origin_regex=ALLOW_ORIGIN_REGEX,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ----------------------
# Backend
# ----------------------

BACKEND: Optional[DataBackend] = None


def init_backend() -> DataBackend:
    global BACKEND
    if SUPABASE_URL and SUPABASE_ANON_KEY:
        BACKEND = SupabaseBackend(SUPABASE_URL, SUPABASE_ANON_KEY, SUPABASE_SERVICE_ROLE_KEY or None)
        logger.info("Using hosted backend at %s", SUPABASE_URL)
        return BACKEND

    logger.error(
        "Missing Supabase environment variables. Please set SUPABASE_URL and SUPABASE_ANON_KEY. "
        "Using local database at %s",
        DB_PATH,
    )
    local = SqliteBackend(DB_PATH)
    local.init_db()
    local.ensure_admin_user(DEFAULT_ADMIN_EMAIL, DEFAULT_ADMIN_PASSWORD, DEFAULT_ADMIN_NAME)
    BACKEND = local
    return BACKEND


def get_backend() -> DataBackend:
    if BACKEND is None:
        return init_backend()
    return BACKEND


def backend_failure(action: str, exc: BackendError) -> HTTPException:
    logger.error("Error %s: %s", action, exc.message)
    return HTTPException(status_code=500, detail=f"Error {action}: {exc.message}")


# ----------------------
# Models
# ----------------------

def form_value(value: Any) -> Any:
    # Form clients send phone, ZIP and amount fields as numbers as often as strings.
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


class ClientInfoIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    first_name: Optional[str] = Field(default=None, alias="firstName")
    last_name: Optional[str] = Field(default=None, alias="lastName")
    email: Optional[str] = None
    phone: Optional[str] = None
    date_of_birth: Optional[str] = Field(default=None, alias="dateOfBirth")
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = Field(default=None, alias="zipCode")

    @field_validator("*", mode="before")
    @classmethod
    def accept_numbers(cls, value: Any) -> Any:
        return form_value(value)


class QuoteRequestIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    full_name: Optional[str] = Field(default=None, alias="fullName")
    email: Optional[str] = None
    phone: Optional[str] = None
    insurance_type: Optional[str] = Field(default=None, alias="insuranceType")
    coverage_amount: Optional[str] = Field(default=None, alias="coverageAmount")
    additional_info: Optional[str] = Field(default=None, alias="additionalInfo")

    @field_validator("*", mode="before")
    @classmethod
    def accept_numbers(cls, value: Any) -> Any:
        return form_value(value)


class ClientIn(BaseModel):
    first_name: str
    last_name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None


class QuoteIn(BaseModel):
    title: str
    client_id: Optional[str] = None
    assigned_to: Optional[str] = None
    status_id: Optional[str] = None
    insurance_type: Optional[str] = None
    coverage_amount: Optional[float] = None
    premium_amount: Optional[float] = None
    notes: Optional[str] = None


class QuoteUpdate(BaseModel):
    title: Optional[str] = None
    client_id: Optional[str] = None
    assigned_to: Optional[str] = None
    status_id: Optional[str] = None
    insurance_type: Optional[str] = None
    coverage_amount: Optional[float] = None
    premium_amount: Optional[float] = None
    notes: Optional[str] = None


class UserIn(BaseModel):
    full_name: str
    email: str
    phone: str = ""
    role: str = "employee"
    department: Optional[str] = None
    status: str = "active"
    employee_id: Optional[str] = None
    job_title: Optional[str] = None
    vendor_company_name: Optional[str] = None
    vendor_type: Optional[str] = None
    timezone: str = DEFAULT_TIMEZONE
    preferred_language: str = DEFAULT_LANGUAGE
    password: Optional[str] = None


class UserUpdate(BaseModel):
    full_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    role: Optional[str] = None
    department: Optional[str] = None
    status: Optional[str] = None
    employee_id: Optional[str] = None
    job_title: Optional[str] = None
    vendor_company_name: Optional[str] = None
    vendor_type: Optional[str] = None
    timezone: Optional[str] = None
    preferred_language: Optional[str] = None


class ActivityIn(BaseModel):
    activity_type: str
    description: str = ""
    quote_id: Optional[str] = None
    client_id: Optional[str] = None


class AuthLoginIn(BaseModel):
    email: str
    password: str


# ----------------------
# Utility functions
# ----------------------

def clean_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def require_fields(record: Dict[str, Any], labels: Dict[str, str]) -> None:
    missing = [label for key, label in labels.items() if not record.get(key)]
    if missing:
        raise HTTPException(status_code=400, detail=f"Missing required fields: {', '.join(missing)}")


def normalize_contact_email(email: Optional[str]) -> str:
    value = clean_text(email).lower()
    if not EMAIL_PATTERN.match(value):
        raise HTTPException(status_code=400, detail="Please enter a valid email")
    return value


def normalize_insurance_type(value: Optional[str]) -> str:
    normalized = clean_text(value).lower()
    if normalized not in INSURANCE_TYPES:
        allowed = ", ".join(sorted(INSURANCE_TYPES))
        raise HTTPException(status_code=400, detail=f"Insurance type must be one of: {allowed}")
    return normalized


def normalize_user_role(role: Optional[str]) -> str:
    value = clean_text(role).lower()
    if value not in USER_ROLES:
        allowed = ", ".join(sorted(USER_ROLES))
        raise HTTPException(status_code=400, detail=f"Role must be one of: {allowed}")
    return value


def normalize_user_status(status: Optional[str]) -> str:
    value = clean_text(status).lower()
    if value not in USER_STATUSES:
        allowed = ", ".join(sorted(USER_STATUSES))
        raise HTTPException(status_code=400, detail=f"Status must be one of: {allowed}")
    return value


def normalize_vendor_type(vendor_type: Optional[str]) -> Optional[str]:
    value = clean_text(vendor_type).lower()
    if not value:
        return None
    if value not in VENDOR_TYPES:
        allowed = ", ".join(sorted(VENDOR_TYPES))
        raise HTTPException(status_code=400, detail=f"Vendor type must be one of: {allowed}")
    return value


def normalize_language(language: Optional[str]) -> str:
    value = clean_text(language).lower() or DEFAULT_LANGUAGE
    if value not in USER_LANGUAGES:
        allowed = ", ".join(sorted(USER_LANGUAGES))
        raise HTTPException(status_code=400, detail=f"Preferred language must be one of: {allowed}")
    return value


def require_valid_password(password: Optional[str]) -> Optional[str]:
    value = (password or "").strip()
    if not value:
        return None
    if len(value) < PASSWORD_MIN_LENGTH:
        raise HTTPException(
            status_code=400,
            detail=f"Password must be at least {PASSWORD_MIN_LENGTH} characters",
        )
    return value


def parse_amount(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("Authorization") or ""
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def require_session_user(request: Request) -> Dict[str, Any]:
    token = bearer_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="Authentication required")
    try:
        user = get_backend().get_user(token)
    except BackendError as exc:
        raise backend_failure("validating session", exc)
    if not user:
        raise HTTPException(status_code=401, detail="Session expired. Please log in again.")
    return user


def require_admin_user(request: Request) -> Dict[str, Any]:
    user = require_session_user(request)
    if not is_admin_user(user):
        raise HTTPException(status_code=403, detail="Access denied. Admin privileges required.")
    return user


def fetch_record(backend: DataBackend, table: str, record_id: str, label: str) -> Dict[str, Any]:
    try:
        record = backend.get(table, record_id)
    except BackendError as exc:
        raise backend_failure(f"loading {label.lower()}", exc)
    if not record:
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return record


def delete_record(table: str, record_id: str, label: str) -> Dict[str, Any]:
    try:
        deleted = get_backend().delete(table, record_id)
    except BackendError as exc:
        raise backend_failure(f"deleting {label.lower()}", exc)
    if not deleted:
        raise HTTPException(status_code=404, detail=f"{label} not found")
    logger.info("Deleted %s %s", table, record_id)
    return {"success": True, "message": f"{label} deleted successfully"}


def quote_statuses(backend: DataBackend, *, active_only: bool = False) -> List[Dict[str, Any]]:
    filters = {"is_active": True} if active_only else None
    return backend.select("quote_statuses", filters=filters, order_by="sort_order", descending=False)


def expand_quotes(backend: DataBackend, quotes: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Embed status, client and assigned user records into each quote."""
    statuses = {status["id"]: status for status in quote_statuses(backend)}
    clients = {client["id"]: client for client in backend.select("clients", order_by=None)}
    users = {user["id"]: user for user in backend.select("users", order_by=None)}
    expanded: List[Dict[str, Any]] = []
    for quote in quotes:
        assigned = users.get(quote.get("assigned_to"))
        expanded.append(
            {
                **quote,
                "status": statuses.get(quote.get("status_id")),
                "client": clients.get(quote.get("client_id")),
                "assigned_user": (
                    {key: assigned.get(key) for key in ("id", "full_name", "email")}
                    if assigned
                    else None
                ),
            }
        )
    return expanded


def expand_activities(backend: DataBackend, activities: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    users = {user["id"]: user for user in backend.select("users", order_by=None)}
    quotes = {quote["id"]: quote for quote in backend.select("quotes", order_by=None)}
    clients = {client["id"]: client for client in backend.select("clients", order_by=None)}
    expanded: List[Dict[str, Any]] = []
    for activity in activities:
        user = users.get(activity.get("user_id"))
        quote = quotes.get(activity.get("quote_id"))
        client = clients.get(activity.get("client_id"))
        expanded.append(
            {
                **activity,
                "user": {key: user.get(key) for key in ("id", "full_name", "email")} if user else None,
                "quote": {key: quote.get(key) for key in ("id", "title")} if quote else None,
                "client": (
                    {key: client.get(key) for key in ("id", "first_name", "last_name")}
                    if client
                    else None
                ),
            }
        )
    return expanded


def compute_dashboard_stats(
    quotes: List[Dict[str, Any]], statuses: List[Dict[str, Any]]
) -> Dict[str, Any]:
    status_names = {status["id"]: status.get("name") for status in statuses}
    won = [quote for quote in quotes if status_names.get(quote.get("status_id")) == WON_STATUS]
    lost = [quote for quote in quotes if status_names.get(quote.get("status_id")) == LOST_STATUS]
    closed = len(won) + len(lost)
    # Round half up; the dashboard shows whole percentages.
    win_rate = int(len(won) * 100 / closed + 0.5) if closed else 0

    pipeline: List[Dict[str, Any]] = []
    for status in statuses:
        in_status = [quote for quote in quotes if quote.get("status_id") == status["id"]]
        pipeline.append(
            {
                "status_id": status["id"],
                "name": status.get("name"),
                "display_name": status.get("display_name"),
                "count": len(in_status),
                "total_coverage": sum(parse_amount(quote.get("coverage_amount")) for quote in in_status),
            }
        )

    return {
        "totalQuotes": len(quotes),
        "activeQuotes": len(quotes) - closed,
        "wonQuotes": len(won),
        "lostQuotes": len(lost),
        "totalRevenue": sum(parse_amount(quote.get("premium_amount")) for quote in won),
        "totalCoverage": sum(parse_amount(quote.get("coverage_amount")) for quote in won),
        "winRate": win_rate,
        "pipelineStats": pipeline,
    }


def require_reference(backend: DataBackend, table: str, record_id: str, label: str) -> None:
    try:
        record = backend.get(table, record_id)
    except BackendError as exc:
        raise backend_failure(f"loading {label}", exc)
    if not record:
        raise HTTPException(status_code=400, detail=f"Unknown {label}: {record_id}")


def validate_quote_fields(backend: DataBackend, data: Dict[str, Any]) -> None:
    if data.get("insurance_type"):
        data["insurance_type"] = normalize_insurance_type(data["insurance_type"])
    if data.get("status_id"):
        require_reference(backend, "quote_statuses", data["status_id"], "quote status")
    if data.get("client_id"):
        require_reference(backend, "clients", data["client_id"], "client")
    if data.get("assigned_to"):
        require_reference(backend, "users", data["assigned_to"], "user")


# ----------------------
# API routes
# ----------------------

@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    messages = []
    for error in exc.errors():
        field = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        message = str(error.get("msg") or "Invalid value")
        messages.append(f"{field}: {message}" if field else message)
    return JSONResponse(status_code=400, content={"detail": "Invalid request: " + "; ".join(messages)})


@app.on_event("startup")
async def startup_event() -> None:
    if BACKEND is None:
        init_backend()


@app.get("/")
def root() -> Dict[str, str]:
    return {"message": "Insurance Services API is running"}


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/api/client-info", status_code=201)
def submit_client_info(payload: ClientInfoIn) -> Dict[str, Any]:
    record = {key: clean_text(value) for key, value in payload.model_dump().items()}
    require_fields(record, CLIENT_INFO_REQUIRED)
    record["email"] = normalize_contact_email(record["email"])
    record["date_of_birth"] = record["date_of_birth"] or None
    try:
        stored = get_backend().insert("client_submissions", record)
    except BackendError as exc:
        raise backend_failure("submitting client information", exc)
    logger.info("Stored client submission %s", stored.get("id"))
    return {
        "success": True,
        "message": "Client information submitted successfully",
        "data": stored,
    }


@app.post("/api/quote-request", status_code=201)
def submit_quote_request(payload: QuoteRequestIn) -> Dict[str, Any]:
    record = {key: clean_text(value) for key, value in payload.model_dump().items()}
    require_fields(record, QUOTE_REQUEST_REQUIRED)
    record["email"] = normalize_contact_email(record["email"])
    record["insurance_type"] = normalize_insurance_type(record["insurance_type"])
    record["coverage_amount"] = record["coverage_amount"] or None
    record["additional_info"] = record["additional_info"] or None
    record["status"] = QUOTE_REQUEST_STATUS
    try:
        stored = get_backend().insert("quote_requests", record)
    except BackendError as exc:
        raise backend_failure("submitting quote request", exc)
    logger.info("Stored quote request %s (%s)", stored.get("id"), record["insurance_type"])
    return {
        "success": True,
        "message": "Quote request submitted successfully",
        "data": stored,
    }


@app.get("/api/submissions")
def list_submissions(request: Request) -> Dict[str, Any]:
    require_admin_user(request)
    backend = get_backend()
    try:
        client_submissions = backend.select("client_submissions")
        quote_requests = backend.select("quote_requests")
    except BackendError as exc:
        raise backend_failure("fetching submissions", exc)
    return {
        "success": True,
        "data": {
            "clientSubmissions": client_submissions,
            "quoteRequests": quote_requests,
        },
    }


@app.delete("/api/client-submissions/{submission_id}")
def delete_client_submission(submission_id: str, request: Request) -> Dict[str, Any]:
    require_admin_user(request)
    return delete_record("client_submissions", submission_id, "Client submission")


@app.delete("/api/quote-requests/{request_id}")
def delete_quote_request(request_id: str, request: Request) -> Dict[str, Any]:
    require_admin_user(request)
    return delete_record("quote_requests", request_id, "Quote request")


@app.post("/api/auth/login")
def login_with_password(payload: AuthLoginIn) -> Dict[str, Any]:
    email = clean_text(payload.email).lower()
    if not email or not payload.password:
        raise HTTPException(status_code=400, detail="Email and password are required")
    try:
        session = get_backend().sign_in_with_password(email, payload.password)
    except AuthError as exc:
        raise HTTPException(status_code=401, detail=exc.message)
    except BackendError as exc:
        raise backend_failure("signing in", exc)
    return {"success": True, "data": session}


@app.post("/api/auth/logout")
def logout(request: Request) -> Dict[str, str]:
    token = bearer_token(request)
    if token:
        try:
            get_backend().sign_out(token)
        except BackendError as exc:
            raise backend_failure("signing out", exc)
    return {"status": "ok"}


@app.get("/api/auth/me")
def get_auth_me(request: Request) -> Dict[str, Any]:
    user = require_session_user(request)
    return {
        "success": True,
        "data": {"user": user, "role": user_role(user), "is_admin": is_admin_user(user)},
    }


@app.get("/api/admin/dashboard")
def get_dashboard_stats(request: Request) -> Dict[str, Any]:
    require_admin_user(request)
    backend = get_backend()
    try:
        quotes = backend.select("quotes")
        statuses = quote_statuses(backend)
    except BackendError as exc:
        raise backend_failure("loading dashboard", exc)
    return {"success": True, "data": compute_dashboard_stats(quotes, statuses)}


@app.get("/api/admin/quotes")
def list_quotes(
    request: Request,
    status_id: Optional[str] = None,
    assigned_to: Optional[str] = None,
    insurance_type: Optional[str] = None,
) -> Dict[str, Any]:
    require_admin_user(request)
    backend = get_backend()
    filters = {
        key: value
        for key, value in (
            ("status_id", status_id),
            ("assigned_to", assigned_to),
            ("insurance_type", insurance_type),
        )
        if value
    }
    try:
        quotes = expand_quotes(backend, backend.select("quotes", filters=filters))
    except BackendError as exc:
        raise backend_failure("loading quotes", exc)
    return {"success": True, "data": quotes}


@app.post("/api/admin/quotes", status_code=201)
def create_quote(payload: QuoteIn, request: Request) -> Dict[str, Any]:
    require_admin_user(request)
    backend = get_backend()
    data = payload.model_dump()
    data["title"] = clean_text(data["title"])
    if not data["title"]:
        raise HTTPException(status_code=400, detail="Title is required")
    validate_quote_fields(backend, data)
    try:
        if not data.get("status_id"):
            default_status = backend.select(
                "quote_statuses", filters={"name": DEFAULT_QUOTE_STATUS}, order_by=None, limit=1
            )
            data["status_id"] = default_status[0]["id"] if default_status else None
        quote = backend.insert("quotes", data)
        expanded = expand_quotes(backend, [quote])[0]
    except BackendError as exc:
        raise backend_failure("creating quote", exc)
    return {"success": True, "data": expanded}


@app.get("/api/admin/quotes/{quote_id}")
def get_quote(quote_id: str, request: Request) -> Dict[str, Any]:
    require_admin_user(request)
    backend = get_backend()
    quote = fetch_record(backend, "quotes", quote_id, "Quote")
    try:
        expanded = expand_quotes(backend, [quote])[0]
    except BackendError as exc:
        raise backend_failure("loading quote", exc)
    return {"success": True, "data": expanded}


@app.patch("/api/admin/quotes/{quote_id}")
def update_quote(quote_id: str, payload: QuoteUpdate, request: Request) -> Dict[str, Any]:
    require_admin_user(request)
    backend = get_backend()
    fetch_record(backend, "quotes", quote_id, "Quote")
    updates = payload.model_dump(exclude_unset=True)
    if "title" in updates:
        updates["title"] = clean_text(updates["title"])
        if not updates["title"]:
            raise HTTPException(status_code=400, detail="Title is required")
    validate_quote_fields(backend, updates)
    updates["updated_at"] = now_iso()
    try:
        quote = backend.update("quotes", quote_id, updates)
        if not quote:
            raise HTTPException(status_code=404, detail="Quote not found")
        expanded = expand_quotes(backend, [quote])[0]
    except BackendError as exc:
        raise backend_failure("updating quote", exc)
    return {"success": True, "data": expanded}


@app.get("/api/admin/clients")
def list_clients(request: Request, search: Optional[str] = None) -> Dict[str, Any]:
    require_admin_user(request)
    term = clean_text(search)
    try:
        clients = get_backend().select(
            "clients",
            search=(("first_name", "last_name", "email"), term) if term else None,
        )
    except BackendError as exc:
        raise backend_failure("loading clients", exc)
    return {"success": True, "data": clients}


@app.post("/api/admin/clients", status_code=201)
def create_client(payload: ClientIn, request: Request) -> Dict[str, Any]:
    require_admin_user(request)
    data = {key: clean_text(value) or None for key, value in payload.model_dump().items()}
    require_fields(data, {"first_name": "first name", "last_name": "last name"})
    if data["email"]:
        data["email"] = normalize_contact_email(data["email"])
    try:
        client = get_backend().insert("clients", data)
    except BackendError as exc:
        raise backend_failure("creating client", exc)
    return {"success": True, "data": client}


@app.get("/api/admin/quote-statuses")
def list_quote_statuses(request: Request) -> Dict[str, Any]:
    require_admin_user(request)
    try:
        statuses = quote_statuses(get_backend(), active_only=True)
    except BackendError as exc:
        raise backend_failure("loading quote statuses", exc)
    return {"success": True, "data": statuses}


@app.get("/api/admin/users")
def list_users(
    request: Request,
    role: Optional[str] = None,
    status: Optional[str] = None,
    search: Optional[str] = None,
) -> Dict[str, Any]:
    require_admin_user(request)
    filters: Dict[str, Any] = {}
    if role:
        filters["role"] = normalize_user_role(role)
    if status:
        filters["status"] = normalize_user_status(status)
    term = clean_text(search)
    try:
        users = get_backend().select(
            "users",
            filters=filters,
            search=(("full_name", "email", "employee_id"), term) if term else None,
            order_by="full_name",
            descending=False,
        )
    except BackendError as exc:
        raise backend_failure("loading users", exc)
    return {"success": True, "data": users}


@app.get("/api/admin/users/{user_id}")
def get_user(user_id: str, request: Request) -> Dict[str, Any]:
    require_admin_user(request)
    return {"success": True, "data": fetch_record(get_backend(), "users", user_id, "User")}


@app.post("/api/admin/users", status_code=201)
def create_user(payload: UserIn, request: Request) -> Dict[str, Any]:
    require_admin_user(request)
    backend = get_backend()
    full_name = clean_text(payload.full_name)
    if not full_name:
        raise HTTPException(status_code=400, detail="Full name is required")
    email = normalize_contact_email(payload.email)
    role = normalize_user_role(payload.role)
    status = normalize_user_status(payload.status)
    password = require_valid_password(payload.password)
    record = {
        "full_name": full_name,
        "email": email,
        "phone": clean_text(payload.phone),
        "role": role,
        "department": clean_text(payload.department) or None,
        "status": status,
        "employee_id": clean_text(payload.employee_id) or None,
        "job_title": clean_text(payload.job_title) or None,
        "timezone": clean_text(payload.timezone) or DEFAULT_TIMEZONE,
        "preferred_language": normalize_language(payload.preferred_language),
        "is_active": status == "active",
    }
    if role == "vendor":
        record["vendor_company_name"] = clean_text(payload.vendor_company_name) or None
        record["vendor_type"] = normalize_vendor_type(payload.vendor_type)
    try:
        if backend.select("users", filters={"email": email}, order_by=None, limit=1):
            raise HTTPException(status_code=400, detail="Email already exists")
        if password:
            auth_user = backend.create_auth_user(
                email, password, role=role, user_metadata={"full_name": full_name}
            )
            # The profile row shares its id with the auth account.
            record["id"] = auth_user["id"]
        user = backend.insert("users", record)
    except BackendError as exc:
        if exc.status_code in (409, 422):
            raise HTTPException(status_code=400, detail="Email already exists")
        raise backend_failure("creating user", exc)
    logger.info("Created %s user %s", role, email)
    return {"success": True, "data": user}


@app.patch("/api/admin/users/{user_id}")
def update_user(user_id: str, payload: UserUpdate, request: Request) -> Dict[str, Any]:
    require_admin_user(request)
    backend = get_backend()
    fetch_record(backend, "users", user_id, "User")
    updates: Dict[str, Any] = {}
    for key, value in payload.model_dump(exclude_unset=True).items():
        if isinstance(value, str):
            value = value.strip()
        if key == "email":
            value = normalize_contact_email(value)
        elif key == "role":
            value = normalize_user_role(value)
        elif key == "status":
            value = normalize_user_status(value)
            updates["is_active"] = value == "active"
        elif key == "vendor_type":
            value = normalize_vendor_type(value)
        elif key == "preferred_language":
            value = normalize_language(value)
        elif key == "timezone":
            value = value or DEFAULT_TIMEZONE
        elif key == "full_name" and not value:
            raise HTTPException(status_code=400, detail="Full name is required")
        updates[key] = value
    if updates.get("role") and updates["role"] != "vendor":
        updates["vendor_company_name"] = None
        updates["vendor_type"] = None
    updates["updated_at"] = now_iso()
    try:
        user = backend.update("users", user_id, updates)
    except BackendError as exc:
        if exc.status_code == 409:
            raise HTTPException(status_code=400, detail="Email already exists")
        raise backend_failure("updating user", exc)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return {"success": True, "data": user}


@app.delete("/api/admin/users/{user_id}")
def delete_user(user_id: str, request: Request) -> Dict[str, Any]:
    require_admin_user(request)
    return delete_record("users", user_id, "User")


@app.get("/api/admin/departments")
def list_departments(request: Request) -> Dict[str, Any]:
    require_admin_user(request)
    try:
        departments = get_backend().select("departments", order_by="name", descending=False)
    except BackendError as exc:
        raise backend_failure("loading departments", exc)
    return {"success": True, "data": departments}


@app.get("/api/admin/activities")
def list_activities(
    request: Request, quote_id: Optional[str] = None, client_id: Optional[str] = None
) -> Dict[str, Any]:
    require_admin_user(request)
    filters = {key: value for key, value in (("quote_id", quote_id), ("client_id", client_id)) if value}
    backend = get_backend()
    try:
        activities = expand_activities(
            backend, backend.select("activities", filters=filters, limit=ACTIVITY_LIMIT)
        )
    except BackendError as exc:
        raise backend_failure("loading activities", exc)
    return {"success": True, "data": activities}


@app.post("/api/admin/activities", status_code=201)
def create_activity(payload: ActivityIn, request: Request) -> Dict[str, Any]:
    user = require_admin_user(request)
    activity_type = clean_text(payload.activity_type)
    if not activity_type:
        raise HTTPException(status_code=400, detail="Activity type is required")
    record = {
        "user_id": user.get("id"),
        "quote_id": payload.quote_id or None,
        "client_id": payload.client_id or None,
        "activity_type": activity_type,
        "description": clean_text(payload.description),
    }
    try:
        activity = get_backend().insert("activities", record)
    except BackendError as exc:
        raise backend_failure("creating activity", exc)
    return {"success": True, "data": activity}
