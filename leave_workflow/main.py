"""
FastAPI application serving the leave approval workflow.
Provides REST endpoints for leave requests, staffing checks and administration.
"""

import logging
import os
from contextlib import asynccontextmanager
from datetime import date, datetime
from functools import lru_cache

import uvicorn
from fastapi import Depends, FastAPI, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field

from leave_workflow.config import settings
from leave_workflow.conflict_detection import ConflictEngine, ConflictResult
from leave_workflow.exceptions import (
    ConcurrentModification,
    DataUnavailable,
    GuardViolation,
    InvalidTransition,
    LeaveWorkflowError,
    NotFoundError,
    ValidationError,
)
from leave_workflow.models import (
    Actor,
    ApprovalRecord,
    ConflictRule,
    HistoryEntry,
    LeaveRequest,
    LeaveRequestState,
    ServiceSubstitution,
    Urgency,
)
from leave_workflow.repository import InMemoryRepository, LeaveRepository
from leave_workflow.service import LeaveWorkflowService
from leave_workflow.state_machine import (
    get_available_transitions,
    get_next_approver,
    get_state_label,
    visualize,
)

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"


# Dependencies


@lru_cache
def get_repository() -> LeaveRepository:
    """
    The one backend for this process: the HR warehouse when configured,
    otherwise an in-memory store seeded with demo data. Staffing reads,
    request writes and administration all go through it.
    """
    if settings.snowflake_account:
        from leave_workflow.snowflake_client import SnowflakeRepository

        return SnowflakeRepository.from_settings()
    return InMemoryRepository.from_demo_data()


@lru_cache
def get_service() -> LeaveWorkflowService:
    repository = get_repository()
    return LeaveWorkflowService(repository, conflict_engine=ConflictEngine(repository))


def resolve_actor(actor_id: str, service: LeaveWorkflowService) -> Actor:
    """Actors act with the role on their profile, never a client-supplied one."""
    profile = service.repository.get_profile(actor_id)
    return Actor(user_id=profile.user_id, role=profile.role)


# Pydantic models for API


class CreateLeaveRequest(BaseModel):
    """Request model for creating a draft leave request."""

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "requester_id": "E001",
                "leave_type": "Annual Leave",
                "start_date": "2026-11-16",
                "end_date": "2026-11-20",
                "reason": "Family trip",
                "urgency": "normal",
            }
        }
    )

    requester_id: str = Field(..., description="Employee requesting the leave")
    leave_type: str = Field(..., description="Leave type name")
    start_date: date = Field(..., description="First day of leave (inclusive)")
    end_date: date = Field(..., description="Last day of leave (inclusive)")
    reason: str | None = None
    urgency: Urgency = Urgency.NORMAL
    submit: bool = Field(False, description="Submit immediately after creation")


class EventRequest(BaseModel):
    """Request model for applying a workflow event."""

    model_config = ConfigDict(
        json_schema_extra={
            "example": {"event": "APPROVE_N1", "actor_id": "M001", "comment": "Covered"}
        }
    )

    event: str = Field(..., description="Workflow event name, e.g. SUBMIT or APPROVE_N1")
    actor_id: str = Field(..., description="User applying the event")
    comment: str | None = None


class ConflictCheckRequest(BaseModel):
    user_id: str
    start_date: date
    end_date: date
    exclude_request_id: str | None = None


class ConflictRuleCreate(BaseModel):
    department: str
    min_employees_required: int = Field(..., ge=0)
    period_start: date | None = None
    period_end: date | None = None
    max_concurrent_leaves: int | None = Field(None, ge=0)
    is_active: bool = True


class ConflictRuleUpdate(BaseModel):
    min_employees_required: int | None = Field(None, ge=0)
    period_start: date | None = None
    period_end: date | None = None
    max_concurrent_leaves: int | None = Field(None, ge=0)
    is_active: bool | None = None


class SubstitutionCreate(BaseModel):
    original_user_id: str
    substitute_user_id: str
    department: str
    start_date: date
    end_date: date


class ApprovalResponse(BaseModel):
    approver_id: str
    decided_at: datetime | None
    approved: bool
    comment: str | None = None

    @classmethod
    def from_domain(cls, record: ApprovalRecord | None) -> "ApprovalResponse | None":
        if record is None:
            return None
        return cls(
            approver_id=record.approver_id,
            decided_at=record.decided_at,
            approved=record.approved,
            comment=record.comment,
        )


class HistoryEntryResponse(BaseModel):
    event: str
    timestamp: datetime
    actor_id: str
    from_state: str
    to_state: str
    comment: str | None = None

    @classmethod
    def from_domain(cls, entry: HistoryEntry) -> "HistoryEntryResponse":
        return cls(
            event=entry.event.value,
            timestamp=entry.timestamp,
            actor_id=entry.actor_id,
            from_state=entry.from_state.value,
            to_state=entry.to_state.value,
            comment=entry.comment,
        )


class LeaveRequestResponse(BaseModel):
    """Leave request as returned by the API."""

    id: str
    requester_id: str
    leave_type: str
    start_date: date
    end_date: date
    days: int
    state: str
    state_label: str
    next_approver: str | None
    reason: str | None
    urgency: str
    created_at: datetime | None
    submitted_at: datetime | None
    cell_manager_approval: ApprovalResponse | None
    service_chief_approval: ApprovalResponse | None
    hr_approval: ApprovalResponse | None
    history: list[HistoryEntryResponse]
    version: int

    @classmethod
    def from_domain(cls, request: LeaveRequest) -> "LeaveRequestResponse":
        next_approver = get_next_approver(request.state)
        return cls(
            id=request.id,
            requester_id=request.requester_id,
            leave_type=request.leave_type,
            start_date=request.start_date,
            end_date=request.end_date,
            days=request.days,
            state=request.state.value,
            state_label=get_state_label(request.state),
            next_approver=next_approver.value if next_approver else None,
            reason=request.reason,
            urgency=request.urgency.value,
            created_at=request.created_at,
            submitted_at=request.submitted_at,
            cell_manager_approval=ApprovalResponse.from_domain(request.cell_manager_approval),
            service_chief_approval=ApprovalResponse.from_domain(request.service_chief_approval),
            hr_approval=ApprovalResponse.from_domain(request.hr_approval),
            history=[HistoryEntryResponse.from_domain(e) for e in request.history],
            version=request.version,
        )


class ConflictResponse(BaseModel):
    has_conflict: bool
    conflict_type: str | None = None
    message: str | None = None
    details: dict | None = None
    degraded: bool = False

    @classmethod
    def from_domain(cls, result: ConflictResult) -> "ConflictResponse":
        details = None
        if result.details is not None:
            d = result.details
            details = {
                "current_absences": d.current_absences,
                "min_required": d.min_required,
                "max_allowed": d.max_allowed,
                "employees_present": d.employees_present,
                "total_employees": d.total_employees,
                "affected_employees": list(d.affected_employees),
                "substitutions_available": d.substitutions_available,
            }
        return cls(
            has_conflict=result.has_conflict,
            conflict_type=result.conflict_type.value if result.conflict_type else None,
            message=result.message,
            details=details,
            degraded=result.degraded,
        )


class EventResponse(BaseModel):
    request: LeaveRequestResponse
    previous_state: str
    new_state: str
    declared_actions: list[str]
    conflict: ConflictResponse | None = None
    # Committed, but these declared actions could not be carried out
    failed_actions: list[str] = []


class ConflictRuleResponse(BaseModel):
    id: str
    department: str
    min_employees_required: int
    period_start: date | None
    period_end: date | None
    max_concurrent_leaves: int | None
    is_active: bool

    @classmethod
    def from_domain(cls, rule: ConflictRule) -> "ConflictRuleResponse":
        return cls(
            id=rule.id,
            department=rule.department,
            min_employees_required=rule.min_employees_required,
            period_start=rule.period_start,
            period_end=rule.period_end,
            max_concurrent_leaves=rule.max_concurrent_leaves,
            is_active=rule.is_active,
        )


class SubstitutionResponse(BaseModel):
    id: str
    original_user_id: str
    substitute_user_id: str
    department: str
    start_date: date
    end_date: date

    @classmethod
    def from_domain(cls, sub: ServiceSubstitution) -> "SubstitutionResponse":
        return cls(
            id=sub.id,
            original_user_id=sub.original_user_id,
            substitute_user_id=sub.substitute_user_id,
            department=sub.department,
            start_date=sub.start_date,
            end_date=sub.end_date,
        )


class TransitionOption(BaseModel):
    event: str
    to_state: str
    allowed: bool
    guards: list[str]
    description: str


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    environment: str
    data_source: str
    snowflake_circuit_breaker: dict | None = None


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle startup and shutdown events."""
    logger.info("Starting Leave Workflow API")
    logger.info(f"Environment: {settings.environment}")
    logger.info(
        f"Conflict check failure policy: {settings.conflict_check_on_error}, "
        f"same-day requests allowed: {settings.allow_same_day_requests}"
    )

    yield

    logger.info("Shutting down Leave Workflow API")
    repository = get_repository()
    if hasattr(repository, "close"):
        repository.close()


# Create FastAPI app
app = FastAPI(
    title="Leave Workflow API",
    description="Multi-level leave approval workflow with staffing conflict detection",
    version=API_VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error handling

ERROR_STATUS: list[tuple[type[LeaveWorkflowError], int]] = [
    (InvalidTransition, status.HTTP_409_CONFLICT),
    (GuardViolation, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConcurrentModification, status.HTTP_409_CONFLICT),
    (DataUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def status_for(exc: LeaveWorkflowError) -> int:
    for error_type, code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_400_BAD_REQUEST


@app.exception_handler(LeaveWorkflowError)
async def workflow_exception_handler(request: Request, exc: LeaveWorkflowError):
    """Map domain errors to HTTP status codes with a structured body."""
    code = status_for(exc)
    if code >= 500:
        logger.error(f"{exc.code} on {request.url.path}: {exc}")
    else:
        logger.warning(f"{exc.code} on {request.url.path}: {exc}")
    return JSONResponse(status_code=code, content={"success": False, "error": exc.to_dict()})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Report malformed bodies in the same shape as domain validation errors."""
    errors = []
    for error in exc.errors():
        field = error["loc"][-1] if error["loc"] else "unknown"
        errors.append(f"{field}: {error['msg']}")
    logger.warning(f"Validation error on {request.url.path}: {errors}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "success": False,
            "error": {"code": ValidationError.code, "message": "Invalid input", "errors": errors},
        },
    )


# API Endpoints


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint."""
    return {"message": "Leave Workflow API", "version": API_VERSION, "docs": "/docs"}


@app.get("/health", response_model=HealthResponse, tags=["Health"])
def health_check(repository: LeaveRepository = Depends(get_repository)):
    """
    Health check endpoint.
    Returns service status and, when the warehouse is used, its circuit breaker state.
    """
    breaker = getattr(repository, "get_circuit_breaker_state", None)
    return HealthResponse(
        status="healthy",
        environment=settings.environment,
        data_source=type(repository).__name__,
        snowflake_circuit_breaker=breaker() if breaker else None,
    )


@app.get("/metrics", tags=["Monitoring"])
def metrics(
    service: LeaveWorkflowService = Depends(get_service),
    repository: LeaveRepository = Depends(get_repository),
):
    """
    Workflow metrics.

    Returns:
    - Leave requests per state
    - Circuit breaker state (warehouse only)
    - Environment
    """
    requests = service.list_requests()
    by_state = {state.value: 0 for state in LeaveRequestState}
    for req in requests:
        by_state[req.state.value] += 1
    breaker = getattr(repository, "get_circuit_breaker_state", None)
    return {
        "leave_requests_by_state": by_state,
        "leave_requests_total": len(requests),
        "circuit_breaker": breaker() if breaker else None,
        "environment": settings.environment,
    }


@app.post(
    "/leave-requests",
    response_model=LeaveRequestResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Leave Requests"],
)
def create_leave_request(
    body: CreateLeaveRequest, service: LeaveWorkflowService = Depends(get_service)
):
    """
    Create a leave request in DRAFT.

    With ``submit: true`` the request is submitted right away on behalf of
    the requester, which runs the balance, date-range and staffing guards.
    """
    request = service.create_request(
        requester_id=body.requester_id,
        leave_type=body.leave_type,
        start_date=body.start_date,
        end_date=body.end_date,
        reason=body.reason,
        urgency=body.urgency,
    )
    if body.submit:
        actor = resolve_actor(body.requester_id, service)
        request = service.submit(request.id, actor).request
    return LeaveRequestResponse.from_domain(request)


@app.get("/leave-requests", response_model=list[LeaveRequestResponse], tags=["Leave Requests"])
def list_leave_requests(
    requester_id: str | None = None,
    state: str | None = None,
    service: LeaveWorkflowService = Depends(get_service),
):
    """List leave requests, optionally filtered by requester and state."""
    state_filter = None
    if state is not None:
        try:
            state_filter = LeaveRequestState.from_persisted(state)
        except ValueError as e:
            raise ValidationError([f"Unknown state: {state}"]) from e
    requests = service.list_requests(requester_id=requester_id, state=state_filter)
    return [LeaveRequestResponse.from_domain(r) for r in requests]


@app.get(
    "/leave-requests/{request_id}", response_model=LeaveRequestResponse, tags=["Leave Requests"]
)
def get_leave_request(request_id: str, service: LeaveWorkflowService = Depends(get_service)):
    return LeaveRequestResponse.from_domain(service.get_request(request_id))


@app.post(
    "/leave-requests/{request_id}/events", response_model=EventResponse, tags=["Leave Requests"]
)
def apply_event(
    request_id: str, body: EventRequest, service: LeaveWorkflowService = Depends(get_service)
):
    """
    Apply a workflow event (SUBMIT, APPROVE_N1, REJECT_N2, CANCEL, ...).

    Errors:
    - 409 INVALID_TRANSITION: the event does not apply to the current state
    - 422 GUARD_VIOLATION: the event applies but a guard failed
    - 409 CONCURRENT_MODIFICATION: the request changed meanwhile; reload and retry
    - 503 DATA_UNAVAILABLE: staffing data could not be read
    """
    actor = resolve_actor(body.actor_id, service)
    outcome = service.apply_event(request_id, body.event, actor, body.comment)
    return EventResponse(
        request=LeaveRequestResponse.from_domain(outcome.request),
        previous_state=outcome.transition.previous_state.value,
        new_state=outcome.transition.new_state.value,
        declared_actions=[a.value for a in outcome.transition.declared_actions],
        conflict=ConflictResponse.from_domain(outcome.conflict) if outcome.conflict else None,
        failed_actions=[a.value for a in outcome.failed_actions],
    )


@app.get(
    "/leave-requests/{request_id}/transitions",
    response_model=list[TransitionOption],
    tags=["Leave Requests"],
)
def list_transitions(
    request_id: str,
    actor_id: str = Query(..., description="User the options are computed for"),
    service: LeaveWorkflowService = Depends(get_service),
):
    """Transitions leaving the request's current state, and whether the actor may apply each."""
    actor = resolve_actor(actor_id, service)
    request = service.get_request(request_id)
    allowed = set(service.available_events(request_id, actor))
    return [
        TransitionOption(
            event=row.event.value,
            to_state=row.to_state.value,
            allowed=row.event in allowed,
            guards=list(row.guard_names),
            description=row.description,
        )
        for row in get_available_transitions(request.state)
    ]


@app.post("/conflicts/check", response_model=ConflictResponse, tags=["Conflicts"])
def check_conflicts(body: ConflictCheckRequest, service: LeaveWorkflowService = Depends(get_service)):
    """Staffing verdict for a prospective absence, without creating a request."""
    result = service.check_conflicts(
        body.user_id, body.start_date, body.end_date, body.exclude_request_id
    )
    return ConflictResponse.from_domain(result)


@app.get("/conflict-rules", response_model=list[ConflictRuleResponse], tags=["Administration"])
def list_conflict_rules(
    department: str | None = None, repository: LeaveRepository = Depends(get_repository)
):
    return [ConflictRuleResponse.from_domain(r) for r in repository.list_conflict_rules(department)]


@app.post(
    "/conflict-rules",
    response_model=ConflictRuleResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Administration"],
)
def create_conflict_rule(
    body: ConflictRuleCreate, repository: LeaveRepository = Depends(get_repository)
):
    rule = repository.create_conflict_rule(**body.model_dump())
    return ConflictRuleResponse.from_domain(rule)


@app.patch(
    "/conflict-rules/{rule_id}", response_model=ConflictRuleResponse, tags=["Administration"]
)
def update_conflict_rule(
    rule_id: str,
    body: ConflictRuleUpdate,
    repository: LeaveRepository = Depends(get_repository),
):
    rule = repository.update_conflict_rule(rule_id, **body.model_dump(exclude_unset=True))
    return ConflictRuleResponse.from_domain(rule)


@app.get("/substitutions", response_model=list[SubstitutionResponse], tags=["Administration"])
def list_substitutions(
    user_id: str = Query(..., description="Covered or covering employee"),
    repository: LeaveRepository = Depends(get_repository),
):
    return [
        SubstitutionResponse.from_domain(s) for s in repository.list_substitutions_for_user(user_id)
    ]


@app.post(
    "/substitutions",
    response_model=SubstitutionResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Administration"],
)
def create_substitution(
    body: SubstitutionCreate, repository: LeaveRepository = Depends(get_repository)
):
    substitution = repository.create_substitution(**body.model_dump())
    return SubstitutionResponse.from_domain(substitution)


@app.delete(
    "/substitutions/{substitution_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["Administration"],
)
def delete_substitution(
    substitution_id: str, repository: LeaveRepository = Depends(get_repository)
):
    repository.delete_substitution(substitution_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.get("/workflow/graph", response_class=PlainTextResponse, tags=["Workflow"])
async def workflow_graph():
    """Transition table as a Graphviz DOT document."""
    return visualize()


if __name__ == "__main__":
    uvicorn.run(
        "leave_workflow.main:app",
        host="0.0.0.0",
        port=int(os.environ.get("PORT", 8080)),
        reload=settings.environment == "development",
        log_level=settings.log_level.lower(),
    )
