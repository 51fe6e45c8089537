"""
Lawman Case Workflow API
========================

FastAPI endpoints over the case workflow core.

Session:
- POST /api/login        - Staff login; access token in body, refresh token in cookie
- POST /api/refresh      - New token pair from the refresh cookie
- POST /api/logout       - Revoke the refresh cookie
- GET  /api/me           - Current staff member

Cases:
- GET/POST   /api/cases                       - List (with derived stage/readiness) / create
- GET/PATCH  /api/cases/{case_id}             - Get / edit non-state fields
- DELETE     /api/cases/{case_id}             - Administrative purge (admin)
- GET        /api/cases/{case_id}/history     - Transition ledger
- POST       /api/cases/{case_id}/transitions - Move to a new state (mails the customer)
- GET/POST   /api/cases/{case_id}/notes       - Notes
- GET/POST   /api/cases/{case_id}/tasks       - Tasks
- GET        /api/cases/{case_id}/readiness   - Ready / pending tasks / SLA overdue

Other:
- /api/customers, /api/kpis, /api/notifications, /api/admin/ledger-check, /health

Run with:
    uvicorn lawman.api:app --host 0.0.0.0 --port 8000
"""

import logging
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Dict, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Header, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .audit import event_to_dict, recent_events
from .auth import Actor, authenticate_staff, is_password_too_long, load_active_actor, require_admin, MAX_PASSWORD_BYTES
from .cases import (
    CaseService, customer_to_dict, history_to_dict, note_to_dict, task_to_dict,
)
from .clock import as_naive_utc, utcnow
from .config import get_settings
from .db.models import RevokedToken
from .db.session import get_db, init_db
from .errors import InvalidRequest, LawmanError, Unauthenticated
from .ledger import find_inconsistent_cases
from .mailer import MailDelivery, build_case_update_message
from .middleware import RequestLogMiddleware, SecurityHeadersMiddleware
from .notifications import dismiss_notification, list_notifications, notification_to_dict
from .scheduler import build_jobs
from .schemas import (
    AddNoteRequest, AddTaskRequest, CreateCaseRequest, CreateCustomerRequest,
    LoginRequest, SetTaskDoneRequest, TokenResponse, TransitionRequest, UpdateCaseRequest,
)
from .tokens import TokenIssuer, get_token_issuer
from .workflow import STATE_LABELS, CaseStage, CaseState

# Configure logging
logging.basicConfig(
    level=getattr(logging, get_settings().log_level.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# =============================================================================
# FastAPI App
# =============================================================================

app = FastAPI(
    title="Lawman Case Workflow Service",
    description="Case lifecycle, transition ledger, readiness and customer mail for a legal practice",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
    allow_headers=["*"],
)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestLogMiddleware)

_jobs: Dict[str, object] = {}


# =============================================================================
# Dependencies
# =============================================================================

def get_db_dependency():
    """Get database session for FastAPI dependency injection"""
    yield from get_db()


@lru_cache()
def get_mail_delivery() -> MailDelivery:
    return MailDelivery.from_settings()


def get_current_actor(
    authorization: Optional[str] = Header(None, alias="Authorization"),
    issuer: TokenIssuer = Depends(get_token_issuer),
) -> Actor:
    return Actor.from_claims(issuer.verify_access(authorization))


def get_admin_actor(actor: Actor = Depends(get_current_actor)) -> Actor:
    return require_admin(actor)


def get_service(db: Session = Depends(get_db_dependency)) -> CaseService:
    return CaseService(db)


# =============================================================================
# Error Handlers
# =============================================================================

def _build_error_payload(code: str, message: str, details=None) -> dict:
    return {
        "error": {
            "code": code,
            "message": message,
            "details": details,
        }
    }


def _error_code_for_status(status_code: int) -> str:
    return {
        400: "bad_request",
        401: "unauthenticated",
        403: "forbidden",
        404: "not_found",
        405: "method_not_allowed",
        409: "conflict",
        422: "validation_error",
        500: "internal_error",
    }.get(status_code, "error")


@app.exception_handler(LawmanError)
async def lawman_error_handler(request: Request, exc: LawmanError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code} {exc.message} {exc.details}")
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


@app.exception_handler(StarletteHTTPException)
async def api_http_exception_handler(request: Request, exc: StarletteHTTPException):
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return JSONResponse(
        status_code=exc.status_code,
        content=_build_error_payload(_error_code_for_status(exc.status_code), message),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def api_validation_exception_handler(request: Request, exc: RequestValidationError):
    """Return structured validation errors without echoing inputs."""
    sanitized_errors = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=422,
        content=_build_error_payload("validation_error", "Invalid request", {"errors": sanitized_errors}),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Unexpected errors: full stack in the log, opaque message in production."""
    logger.exception(f"Unhandled exception on {request.method} {request.url.path}")
    if get_settings().is_production:
        message, details = "An internal error occurred.", None
    else:
        message, details = str(exc) or exc.__class__.__name__, {"exception": exc.__class__.__name__}
    return JSONResponse(status_code=500, content=_build_error_payload("internal_error", message, details))


# =============================================================================
# Lifecycle
# =============================================================================

@app.on_event("startup")
async def startup_event():
    """Initialize on startup"""
    settings = get_settings()
    logger.info(f"Starting Lawman Case Workflow Service v{settings.service_version} ({settings.environment})")
    init_db()

    for warning in settings.validate_mail_config():
        logger.warning(f"Mail config: {warning}")
    get_mail_delivery().verify_primary()

    if settings.scheduler_enabled:
        _jobs.update(build_jobs(settings))
        for job in _jobs.values():
            job.start()


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown"""
    for job in _jobs.values():
        job.stop()
    _jobs.clear()


@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint"""
    settings = get_settings()
    return {
        "status": "healthy",
        "version": settings.service_version,
        "environment": settings.environment,
        "timestamp": utcnow().isoformat(),
    }


# =============================================================================
# Session Endpoints
# =============================================================================

def _set_refresh_cookie(response: Response, token: str) -> None:
    settings = get_settings()
    response.set_cookie(
        key=settings.refresh_cookie_name,
        value=token,
        max_age=settings.refresh_token_expire_days * 24 * 60 * 60,
        httponly=True,
        secure=settings.is_production,
        samesite="strict",
        path="/api",
    )


def _revoke_refresh(db: Session, payload: dict) -> None:
    jti = payload.get("jti")
    if not jti or db.get(RevokedToken, jti) is not None:
        return
    exp = payload.get("exp")
    expires_at = as_naive_utc(datetime.fromtimestamp(exp, timezone.utc)) if exp else utcnow() + timedelta(days=7)
    db.add(RevokedToken(jti=jti, username=payload.get("sub"), expires_at=expires_at))
    db.commit()


@app.post("/api/login", tags=["Auth"], response_model=TokenResponse)
def login(
    request: LoginRequest,
    response: Response,
    db: Session = Depends(get_db_dependency),
    issuer: TokenIssuer = Depends(get_token_issuer),
):
    """Login with username and password."""
    if is_password_too_long(request.password):
        raise InvalidRequest(f"Password too long (max {MAX_PASSWORD_BYTES} bytes)")

    actor = authenticate_staff(db, request.username, request.password)
    if actor is None:
        raise Unauthenticated("Invalid username or password")

    tokens = issuer.issue_tokens(actor.token_claims())
    _set_refresh_cookie(response, tokens.refresh_token)
    logger.info(f"Login: {actor.username} ({actor.role.value})")
    return TokenResponse(access_token=tokens.access_token, user=actor.to_dict())


@app.post("/api/refresh", tags=["Auth"], response_model=TokenResponse)
def refresh_session(
    request: Request,
    response: Response,
    db: Session = Depends(get_db_dependency),
    issuer: TokenIssuer = Depends(get_token_issuer),
):
    """Rotate the refresh cookie and return a fresh access token."""
    payload = issuer.verify_refresh(request.cookies.get(get_settings().refresh_cookie_name))
    if db.get(RevokedToken, payload.get("jti")) is not None:
        raise Unauthenticated("Refresh token has been revoked")

    actor = load_active_actor(db, payload["sub"])
    if actor is None:
        raise Unauthenticated("User not found or inactive")

    _revoke_refresh(db, payload)
    tokens = issuer.issue_tokens(actor.token_claims())
    _set_refresh_cookie(response, tokens.refresh_token)
    return TokenResponse(access_token=tokens.access_token, user=actor.to_dict())


@app.post("/api/logout", tags=["Auth"])
def logout(
    request: Request,
    response: Response,
    db: Session = Depends(get_db_dependency),
    issuer: TokenIssuer = Depends(get_token_issuer),
):
    """Revoke the refresh cookie. Always succeeds."""
    cookie_name = get_settings().refresh_cookie_name
    token = request.cookies.get(cookie_name)
    if token:
        try:
            _revoke_refresh(db, issuer.verify_refresh(token))
        except LawmanError:
            # Already unusable, nothing to revoke
            pass
    response.delete_cookie(cookie_name, path="/api")
    return {"message": "Logged out"}


@app.get("/api/me", tags=["Auth"])
async def me(actor: Actor = Depends(get_current_actor)):
    return actor.to_dict()


# =============================================================================
# Customers
# =============================================================================

@app.post("/api/customers", tags=["Customers"], status_code=201)
def create_customer(
    request: CreateCustomerRequest,
    service: CaseService = Depends(get_service),
    actor: Actor = Depends(get_current_actor),
):
    customer = service.create_customer(request.name, request.email, request.phone, actor=actor)
    return customer_to_dict(customer)


@app.get("/api/customers", tags=["Customers"])
def list_customers(
    service: CaseService = Depends(get_service),
    actor: Actor = Depends(get_current_actor),
):
    return [customer_to_dict(c) for c in service.list_customers()]


@app.get("/api/customers/{customer_id}", tags=["Customers"])
def get_customer(
    customer_id: str,
    service: CaseService = Depends(get_service),
    actor: Actor = Depends(get_current_actor),
):
    return customer_to_dict(service.get_customer(customer_id))


@app.get("/api/customers/{customer_id}/cases", tags=["Customers"])
def list_customer_cases(
    customer_id: str,
    service: CaseService = Depends(get_service),
    actor: Actor = Depends(get_current_actor),
):
    service.get_customer(customer_id)
    settings = get_settings()
    return service.list_case_views(service.list_cases(customer_id=customer_id), soon_hours=settings.deadline_soon_hours)


@app.get("/api/customers/{customer_id}/notifications", tags=["Notifications"])
def list_customer_notifications(
    customer_id: str,
    service: CaseService = Depends(get_service),
    actor: Actor = Depends(get_current_actor),
):
    service.get_customer(customer_id)
    return [notification_to_dict(n) for n in list_notifications(service.db, customer_id=customer_id)]


# =============================================================================
# Cases
# =============================================================================

@app.get("/api/cases", tags=["Cases"])
def list_cases(
    state: Optional[CaseState] = Query(None),
    stage: Optional[CaseStage] = Query(None),
    customer_id: Optional[str] = Query(None),
    assigned_to: Optional[str] = Query(None),
    q: Optional[str] = Query(None, description="Search case id, title or category"),
    service: CaseService = Depends(get_service),
    actor: Actor = Depends(get_current_actor),
):
    cases = service.list_cases(state=state, stage=stage, customer_id=customer_id, assigned_to=assigned_to, q=q)
    return service.list_case_views(cases, soon_hours=get_settings().deadline_soon_hours)


@app.post("/api/cases", tags=["Cases"], status_code=201)
def create_case(
    request: CreateCaseRequest,
    service: CaseService = Depends(get_service),
    actor: Actor = Depends(get_current_actor),
):
    fields = request.model_dump(exclude_none=True, exclude={"customer_id", "state", "stage"})
    case = service.create_case(request.customer_id, state=request.state, stage=request.stage, actor=actor, **fields)
    return service.case_view(case, tasks=[])


@app.get("/api/cases/{case_id}", tags=["Cases"])
def get_case(
    case_id: str,
    service: CaseService = Depends(get_service),
    actor: Actor = Depends(get_current_actor),
):
    case = service.get_case(case_id)
    return service.case_view(case, soon_hours=get_settings().deadline_soon_hours)


@app.patch("/api/cases/{case_id}", tags=["Cases"])
def update_case(
    case_id: str,
    request: UpdateCaseRequest,
    service: CaseService = Depends(get_service),
    actor: Actor = Depends(get_current_actor),
):
    changes = request.model_dump(exclude_unset=True, exclude={"expected_version"})
    case = service.update_case(case_id, changes, expected_version=request.expected_version, actor=actor)
    return service.case_view(case)


@app.delete("/api/cases/{case_id}", tags=["Cases"])
def purge_case(
    case_id: str,
    service: CaseService = Depends(get_service),
    actor: Actor = Depends(get_admin_actor),
):
    """Remove a case with its history, notes and tasks. Admin only."""
    removed = service.purge_case(case_id, actor=actor)
    return {"case_id": case_id, "removed": removed}


@app.get("/api/cases/{case_id}/history", tags=["Cases"])
def case_history(
    case_id: str,
    service: CaseService = Depends(get_service),
    actor: Actor = Depends(get_current_actor),
):
    return [history_to_dict(r) for r in service.history(case_id)]


def send_case_update_mail(mailer: MailDelivery, to: Optional[str], customer_name: Optional[str], case_id: str, state: CaseState) -> None:
    """Background task: the outcome is logged by the mailer, never raised."""
    result = mailer.send(build_case_update_message(to, customer_name, case_id, STATE_LABELS[state]))
    if result.error is not None:
        logger.warning(f"Case update mail for {case_id} not delivered: {result.error.message}")


@app.post("/api/cases/{case_id}/transitions", tags=["Cases"])
def transition_case(
    case_id: str,
    request: TransitionRequest,
    background_tasks: BackgroundTasks,
    service: CaseService = Depends(get_service),
    actor: Actor = Depends(get_current_actor),
    mailer: MailDelivery = Depends(get_mail_delivery),
):
    """
    Move a case along the workflow.

    The state change and its history record commit together. The customer is
    mailed after the response; a mail failure does not affect the transition.
    """
    case, record = service.change_state(case_id, request.target, actor=actor)

    customer = None
    try:
        customer = service.get_customer(case.customer_id)
    except LawmanError:
        logger.warning(f"Case {case_id} has no customer record; skipping update mail")
    if customer is not None:
        background_tasks.add_task(
            send_case_update_mail, mailer, customer.email, customer.name, case.case_id, CaseState(case.state)
        )

    return {
        "case": service.case_view(case),
        "history": history_to_dict(record),
    }


@app.get("/api/cases/{case_id}/readiness", tags=["Cases"])
def case_readiness(
    case_id: str,
    service: CaseService = Depends(get_service),
    actor: Actor = Depends(get_current_actor),
):
    return service.readiness(case_id).to_dict()


# =============================================================================
# Notes & Tasks
# =============================================================================

@app.get("/api/cases/{case_id}/notes", tags=["Notes"])
def list_notes(
    case_id: str,
    service: CaseService = Depends(get_service),
    actor: Actor = Depends(get_current_actor),
):
    return [note_to_dict(n) for n in service.list_notes(case_id)]


@app.post("/api/cases/{case_id}/notes", tags=["Notes"], status_code=201)
def add_note(
    case_id: str,
    request: AddNoteRequest,
    service: CaseService = Depends(get_service),
    actor: Actor = Depends(get_current_actor),
):
    return note_to_dict(service.add_note(case_id, request.note_text, actor=actor))


@app.get("/api/cases/{case_id}/tasks", tags=["Tasks"])
def list_tasks(
    case_id: str,
    service: CaseService = Depends(get_service),
    actor: Actor = Depends(get_current_actor),
):
    return [task_to_dict(t) for t in service.list_tasks(case_id)]


@app.post("/api/cases/{case_id}/tasks", tags=["Tasks"], status_code=201)
def add_task(
    case_id: str,
    request: AddTaskRequest,
    service: CaseService = Depends(get_service),
    actor: Actor = Depends(get_current_actor),
):
    return task_to_dict(service.add_task(case_id, request.title, request.due_date, actor=actor))


@app.put("/api/tasks/{task_id}/done", tags=["Tasks"])
def set_task_done(
    task_id: str,
    request: SetTaskDoneRequest,
    service: CaseService = Depends(get_service),
    actor: Actor = Depends(get_current_actor),
):
    return task_to_dict(service.set_task_done(task_id, request.done, actor=actor))


@app.post("/api/tasks/{task_id}/toggle", tags=["Tasks"])
def toggle_task(
    task_id: str,
    service: CaseService = Depends(get_service),
    actor: Actor = Depends(get_current_actor),
):
    return task_to_dict(service.toggle_task(task_id, actor=actor))


@app.delete("/api/tasks/{task_id}", tags=["Tasks"], status_code=204)
def delete_task(
    task_id: str,
    service: CaseService = Depends(get_service),
    actor: Actor = Depends(get_current_actor),
):
    service.delete_task(task_id, actor=actor)
    return Response(status_code=204)


# =============================================================================
# Dashboard
# =============================================================================

@app.get("/api/kpis", tags=["Dashboard"])
def kpis(
    service: CaseService = Depends(get_service),
    actor: Actor = Depends(get_current_actor),
):
    return service.kpis(window_days=get_settings().kpi_deadline_window_days)


@app.get("/api/notifications", tags=["Notifications"])
def notifications(
    customer_id: Optional[str] = Query(None),
    db: Session = Depends(get_db_dependency),
    actor: Actor = Depends(get_current_actor),
):
    return [notification_to_dict(n) for n in list_notifications(db, customer_id=customer_id)]


@app.delete("/api/notifications/{notification_id}", tags=["Notifications"], status_code=204)
def dismiss(
    notification_id: str,
    db: Session = Depends(get_db_dependency),
    actor: Actor = Depends(get_current_actor),
):
    dismiss_notification(db, notification_id)
    return Response(status_code=204)


# =============================================================================
# Admin
# =============================================================================

@app.get("/api/admin/ledger-check", tags=["Admin"])
def ledger_check(
    db: Session = Depends(get_db_dependency),
    actor: Actor = Depends(get_admin_actor),
):
    """Cases whose stored state disagrees with their transition history."""
    problems = find_inconsistent_cases(db)
    return {"ok": not problems, "inconsistent": [p.to_dict() for p in problems]}


@app.get("/api/admin/audit", tags=["Admin"])
def audit_log(
    resource: Optional[str] = Query(None),
    resource_id: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db_dependency),
    actor: Actor = Depends(get_admin_actor),
):
    return [event_to_dict(e) for e in recent_events(db, resource, resource_id, limit)]
