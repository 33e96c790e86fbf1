"""
Approval state machine for leave requests.

Employee -> Cell Manager (N1) -> Service Chief (N2) -> HR.

Responsibility
--------------
Decide whether a request may move from one state to another, and record
the move. The transition table below is the single authority: one row
per (state, event) pair, each row listing its guards (all must pass) and
the actions it declares.

Guarantees
----------
- Pure decision logic. No I/O: declared actions are returned to the
  caller, who dispatches them (notifications, audit, balance).
- ``transition()`` is atomic. If the row is missing or any guard fails,
  state and history are left exactly as they were.
- Terminal states (approved, rejected, cancelled) have no outgoing rows.
- Role guards match exactly. There is no role hierarchy: an HR user
  cannot perform an N1 approval.

Non-goals
---------
- Serializing concurrent transitions on the same request. One machine
  instance wraps one in-memory state; cross-process ordering belongs to
  the persistence layer (see ``repository.ConcurrentModification``).
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from enum import Enum

from leave_workflow.exceptions import GuardViolation, InvalidTransition
from leave_workflow.models import (
    Actor,
    HistoryEntry,
    LeaveRequest,
    LeaveRequestEvent,
    LeaveRequestState,
    Urgency,
    UserRole,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowAction(str, Enum):
    """Side effects a transition declares. The machine never performs them."""

    NOTIFY_NEXT_APPROVER = "notify_next_approver"
    NOTIFY_EMPLOYEE = "notify_employee"
    NOTIFY_HR = "notify_hr"
    LOG_TRANSITION = "log_transition"
    LOG_APPROVAL = "log_approval"
    LOG_REJECTION = "log_rejection"
    UPDATE_STATUS = "update_status"
    UPDATE_APPROVAL_METADATA = "update_approval_metadata"
    ADJUST_LEAVE_BALANCE = "adjust_leave_balance"
    CHECK_CONFLICT = "check_conflict"


@dataclass(frozen=True)
class WorkflowContext:
    """Snapshot the guards are evaluated against.

    ``actor_role`` is the role of whoever triggers the event;
    ``has_conflict`` comes from the conflict engine, computed by the caller.
    """

    current_balance: float
    days_requested: int
    start_date: date
    end_date: date
    urgency: Urgency = Urgency.NORMAL
    has_conflict: bool = False
    actor_role: UserRole | None = None
    allow_same_day: bool = True

    def for_actor(self, actor: Actor) -> WorkflowContext:
        return replace(self, actor_role=actor.role)

    @classmethod
    def for_request(
        cls,
        request: LeaveRequest,
        current_balance: float,
        has_conflict: bool = False,
        actor_role: UserRole | None = None,
        allow_same_day: bool = True,
    ) -> WorkflowContext:
        return cls(
            current_balance=current_balance,
            days_requested=request.days,
            start_date=request.start_date,
            end_date=request.end_date,
            urgency=request.urgency,
            has_conflict=has_conflict,
            actor_role=actor_role,
            allow_same_day=allow_same_day,
        )


# ---------------------------------------------------------------------------
# Guards
# ---------------------------------------------------------------------------


def is_employee(ctx: WorkflowContext) -> bool:
    return ctx.actor_role == UserRole.EMPLOYEE


def is_cell_manager(ctx: WorkflowContext) -> bool:
    return ctx.actor_role == UserRole.CELL_MANAGER


def is_service_chief(ctx: WorkflowContext) -> bool:
    return ctx.actor_role == UserRole.SERVICE_CHIEF


def is_hr(ctx: WorkflowContext) -> bool:
    return ctx.actor_role == UserRole.HR


def has_sufficient_balance(ctx: WorkflowContext) -> bool:
    return ctx.current_balance >= ctx.days_requested


def is_valid_date_range(ctx: WorkflowContext) -> bool:
    # Same-day requests (start == end) are valid unless strict mode is configured
    if ctx.allow_same_day:
        return ctx.start_date <= ctx.end_date
    return ctx.start_date < ctx.end_date


def has_no_conflict(ctx: WorkflowContext) -> bool:
    return not ctx.has_conflict


@dataclass(frozen=True)
class Guard:
    """A named precondition on a transition."""

    name: str
    description: str
    condition: Callable[[WorkflowContext], bool] = field(compare=False, repr=False)

    def check(self, ctx: WorkflowContext) -> bool:
        return bool(self.condition(ctx))


HAS_SUFFICIENT_BALANCE = Guard(
    "hasSufficientBalance", "Leave balance covers the requested days", has_sufficient_balance
)
IS_VALID_DATE_RANGE = Guard(
    "isValidDateRange", "Start date is not after end date", is_valid_date_range
)
HAS_NO_CONFLICT = Guard(
    "hasNoConflict", "Department staffing rules are respected", has_no_conflict
)
IS_EMPLOYEE = Guard("isEmployee", "Actor must be the employee", is_employee)
IS_CELL_MANAGER = Guard("isCellManager", "Actor must be a cell manager", is_cell_manager)
IS_SERVICE_CHIEF = Guard("isServiceChief", "Actor must be a service chief", is_service_chief)
IS_HR = Guard("isHR", "Actor must be HR", is_hr)


# ---------------------------------------------------------------------------
# Transition table
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TransitionRow:
    from_state: LeaveRequestState
    event: LeaveRequestEvent
    to_state: LeaveRequestState
    guards: tuple[Guard, ...] = ()
    actions: tuple[WorkflowAction, ...] = ()
    description: str = ""

    @property
    def guard_names(self) -> tuple[str, ...]:
        return tuple(g.name for g in self.guards)


S = LeaveRequestState
E = LeaveRequestEvent
A = WorkflowAction

TRANSITIONS: tuple[TransitionRow, ...] = (
    TransitionRow(
        S.DRAFT,
        E.SUBMIT,
        S.PENDING_CELL_MANAGER,
        guards=(HAS_SUFFICIENT_BALANCE, IS_VALID_DATE_RANGE, HAS_NO_CONFLICT),
        actions=(A.UPDATE_STATUS, A.NOTIFY_NEXT_APPROVER, A.LOG_TRANSITION),
        description="Employee submits the request to the cell manager",
    ),
    TransitionRow(
        S.PENDING_CELL_MANAGER,
        E.APPROVE_N1,
        S.PENDING_SERVICE_CHIEF,
        guards=(IS_CELL_MANAGER,),
        actions=(
            A.UPDATE_STATUS,
            A.LOG_APPROVAL,
            A.UPDATE_APPROVAL_METADATA,
            A.NOTIFY_NEXT_APPROVER,
        ),
        description="Cell manager approves, forwarded to the service chief",
    ),
    TransitionRow(
        S.PENDING_CELL_MANAGER,
        E.REJECT_N1,
        S.REJECTED,
        guards=(IS_CELL_MANAGER,),
        actions=(A.UPDATE_STATUS, A.LOG_REJECTION, A.NOTIFY_EMPLOYEE),
        description="Cell manager rejects the request (final)",
    ),
    TransitionRow(
        S.PENDING_CELL_MANAGER,
        E.CANCEL,
        S.CANCELLED,
        guards=(IS_EMPLOYEE,),
        actions=(A.UPDATE_STATUS, A.LOG_TRANSITION, A.NOTIFY_NEXT_APPROVER),
        description="Employee cancels a pending request",
    ),
    TransitionRow(
        S.PENDING_SERVICE_CHIEF,
        E.APPROVE_N2,
        S.PENDING_HR,
        guards=(IS_SERVICE_CHIEF,),
        actions=(A.UPDATE_STATUS, A.LOG_APPROVAL, A.UPDATE_APPROVAL_METADATA, A.NOTIFY_HR),
        description="Service chief approves, forwarded to HR",
    ),
    TransitionRow(
        S.PENDING_SERVICE_CHIEF,
        E.REJECT_N2,
        S.REJECTED,
        guards=(IS_SERVICE_CHIEF,),
        actions=(A.UPDATE_STATUS, A.LOG_REJECTION, A.NOTIFY_EMPLOYEE),
        description="Service chief rejects the request (final)",
    ),
    TransitionRow(
        S.PENDING_HR,
        E.APPROVE_HR,
        S.APPROVED,
        guards=(IS_HR,),
        actions=(
            A.UPDATE_STATUS,
            A.LOG_APPROVAL,
            A.ADJUST_LEAVE_BALANCE,
            A.NOTIFY_EMPLOYEE,
            A.CHECK_CONFLICT,
        ),
        description="HR gives final approval",
    ),
    TransitionRow(
        S.PENDING_HR,
        E.REJECT_HR,
        S.REJECTED,
        guards=(IS_HR,),
        actions=(A.UPDATE_STATUS, A.LOG_REJECTION, A.NOTIFY_EMPLOYEE),
        description="HR rejects the request (final)",
    ),
)

del S, E, A


def _index(rows: Iterable[TransitionRow]) -> dict[tuple[LeaveRequestState, LeaveRequestEvent], TransitionRow]:
    index: dict[tuple[LeaveRequestState, LeaveRequestEvent], TransitionRow] = {}
    for row in rows:
        key = (row.from_state, row.event)
        if key in index:
            raise ValueError(f"Ambiguous transition table: duplicate row for {key}")
        if row.from_state.is_terminal:
            raise ValueError(f"Terminal state {row.from_state.value} cannot have transitions")
        index[key] = row
    return index


_TRANSITION_INDEX = _index(TRANSITIONS)

NEXT_APPROVER: dict[LeaveRequestState, UserRole | None] = {
    LeaveRequestState.DRAFT: None,
    LeaveRequestState.PENDING_CELL_MANAGER: UserRole.CELL_MANAGER,
    LeaveRequestState.PENDING_SERVICE_CHIEF: UserRole.SERVICE_CHIEF,
    LeaveRequestState.PENDING_HR: UserRole.HR,
    LeaveRequestState.APPROVED: None,
    LeaveRequestState.REJECTED: None,
    LeaveRequestState.CANCELLED: None,
}

STATE_LABELS: dict[LeaveRequestState, str] = {
    LeaveRequestState.DRAFT: "Draft",
    LeaveRequestState.PENDING_CELL_MANAGER: "Pending - Cell Manager",
    LeaveRequestState.PENDING_SERVICE_CHIEF: "Pending - Service Chief",
    LeaveRequestState.PENDING_HR: "Pending - HR",
    LeaveRequestState.APPROVED: "Approved",
    LeaveRequestState.REJECTED: "Rejected",
    LeaveRequestState.CANCELLED: "Cancelled",
}


def find_transition(state: LeaveRequestState, event: LeaveRequestEvent) -> TransitionRow | None:
    return _TRANSITION_INDEX.get((state, event))


def get_available_transitions(state: LeaveRequestState) -> list[TransitionRow]:
    """Rows leaving ``state``, in table order. Used to decide which actions to offer."""
    return [row for row in TRANSITIONS if row.from_state == state]


def first_failed_guard(row: TransitionRow, ctx: WorkflowContext) -> Guard | None:
    for guard in row.guards:
        if not guard.check(ctx):
            return guard
    return None


def can_transition(
    state: LeaveRequestState, event: LeaveRequestEvent, context: WorkflowContext
) -> bool:
    """True iff a row exists for (state, event) and every guard passes."""
    row = find_transition(state, event)
    if row is None:
        return False
    return first_failed_guard(row, context) is None


def get_next_approver(state: LeaveRequestState) -> UserRole | None:
    return NEXT_APPROVER[state]


def get_state_label(state: LeaveRequestState) -> str:
    return STATE_LABELS[state]


def visualize() -> str:
    """Render the transition table as a Graphviz DOT graph."""
    lines = ["digraph LeaveRequestWorkflow {", "  rankdir=LR;", "  node [shape=box];", ""]
    for row in TRANSITIONS:
        lines.append(f'  {row.from_state.value} -> {row.to_state.value} [label="{row.event.value}"];')
    lines.append("}")
    return "\n".join(lines) + "\n"


@dataclass(frozen=True)
class TransitionResult:
    new_state: LeaveRequestState
    declared_actions: tuple[WorkflowAction, ...]
    history_entry: HistoryEntry

    @property
    def previous_state(self) -> LeaveRequestState:
        return self.history_entry.from_state


class LeaveRequestStateMachine:
    """
    Stateful wrapper around the transition table for one leave request.

    Holds the current state, the guard context and the transition history.
    History entries are immutable and only ever appended.
    """

    def __init__(
        self,
        context: WorkflowContext,
        state: LeaveRequestState = LeaveRequestState.DRAFT,
        history: Iterable[HistoryEntry] = (),
        clock: Clock | None = None,
    ):
        self._state = state
        self._context = context
        self._history: list[HistoryEntry] = list(history)
        self._clock = clock or utcnow

    @classmethod
    def for_request(
        cls, request: LeaveRequest, context: WorkflowContext, clock: Clock | None = None
    ) -> LeaveRequestStateMachine:
        return cls(context=context, state=request.state, history=request.history, clock=clock)

    @property
    def state(self) -> LeaveRequestState:
        return self._state

    @property
    def context(self) -> WorkflowContext:
        return self._context

    @property
    def history(self) -> tuple[HistoryEntry, ...]:
        return tuple(self._history)

    @property
    def is_terminal(self) -> bool:
        return self._state.is_terminal

    def get_available_transitions(self) -> list[TransitionRow]:
        return get_available_transitions(self._state)

    def can_transition(self, event: LeaveRequestEvent, actor: Actor | None = None) -> bool:
        ctx = self._context.for_actor(actor) if actor else self._context
        return can_transition(self._state, event, ctx)

    def transition(
        self, event: LeaveRequestEvent, actor: Actor, comment: str | None = None
    ) -> TransitionResult:
        """
        Apply ``event`` on behalf of ``actor``.

        Raises:
            InvalidTransition: no row for (current state, event)
            GuardViolation: the row exists but a guard failed (first failure wins)
        """
        row = find_transition(self._state, event)
        if row is None:
            logger.warning(
                f"Invalid transition: event={event.value} state={self._state.value} "
                f"actor={actor.user_id}"
            )
            raise InvalidTransition(self._state, event)

        ctx = self._context.for_actor(actor)
        failed = first_failed_guard(row, ctx)
        if failed is not None:
            logger.warning(
                f"Guard {failed.name} failed: event={event.value} "
                f"state={self._state.value} actor={actor.user_id}"
            )
            raise GuardViolation(failed.name, self._state, event, failed.description)

        entry = HistoryEntry(
            event=event,
            timestamp=self._clock(),
            actor_id=actor.user_id,
            from_state=self._state,
            to_state=row.to_state,
            comment=comment,
        )
        self._history.append(entry)
        self._state = row.to_state

        logger.info(
            f"Transition {entry.from_state.value} -> {entry.to_state.value} "
            f"event={event.value} actor={actor.user_id}"
        )
        return TransitionResult(
            new_state=row.to_state, declared_actions=row.actions, history_entry=entry
        )
