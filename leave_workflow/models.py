"""
Domain value types for leave requests, staffing rules and substitutions.

Persisted representations (ISO strings, legacy status values) are
translated here, at the edge. The state machine and the conflict engine
only ever see these types.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum

from dateutil import parser

ISO_DATE = re.compile(r"\d{4}-\d{2}-\d{2}")


class LeaveRequestState(str, Enum):
    """Lifecycle states of a leave request."""

    DRAFT = "draft"
    PENDING_CELL_MANAGER = "pending_cell_manager"
    PENDING_SERVICE_CHIEF = "pending_service_chief"
    PENDING_HR = "pending_hr"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"

    @classmethod
    def from_persisted(cls, value: str) -> LeaveRequestState:
        """Translate a stored status string, including the legacy ``pending``."""
        normalized = (value or "").strip().lower()
        if normalized == "pending":
            return cls.PENDING_CELL_MANAGER
        return cls(normalized)

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {LeaveRequestState.APPROVED, LeaveRequestState.REJECTED, LeaveRequestState.CANCELLED}
)
PENDING_STATES = frozenset(
    {
        LeaveRequestState.PENDING_CELL_MANAGER,
        LeaveRequestState.PENDING_SERVICE_CHIEF,
        LeaveRequestState.PENDING_HR,
    }
)
# Committed or likely absences for staffing purposes
ABSENCE_STATES = PENDING_STATES | {LeaveRequestState.APPROVED}


class LeaveRequestEvent(str, Enum):
    """Events that drive the approval workflow."""

    SUBMIT = "SUBMIT"
    APPROVE_N1 = "APPROVE_N1"
    REJECT_N1 = "REJECT_N1"
    APPROVE_N2 = "APPROVE_N2"
    REJECT_N2 = "REJECT_N2"
    APPROVE_HR = "APPROVE_HR"
    REJECT_HR = "REJECT_HR"
    CANCEL = "CANCEL"
    # Reserved: no transition is wired to it yet
    RETURN_TO_EMPLOYEE = "RETURN_TO_EMPLOYEE"


class UserRole(str, Enum):
    EMPLOYEE = "employee"
    CELL_MANAGER = "cell_manager"
    SERVICE_CHIEF = "service_chief"
    HR = "hr"
    ADMIN = "admin"


class Urgency(str, Enum):
    NORMAL = "normal"
    URGENT = "urgent"
    EMERGENCY = "emergency"


class ApprovalLevel(str, Enum):
    """Approval tiers, in the order a request moves through them."""

    CELL_MANAGER = "n1"
    SERVICE_CHIEF = "n2"
    HR = "hr"


@dataclass(frozen=True)
class Actor:
    """Who is acting on a request."""

    user_id: str
    role: UserRole


@dataclass(frozen=True)
class ApprovalRecord:
    approver_id: str
    decided_at: datetime
    approved: bool
    comment: str | None = None


@dataclass(frozen=True)
class HistoryEntry:
    """One applied transition. Never mutated once recorded."""

    event: LeaveRequestEvent
    timestamp: datetime
    actor_id: str
    from_state: LeaveRequestState
    to_state: LeaveRequestState
    comment: str | None = None


@dataclass(frozen=True)
class LeaveType:
    name: str
    max_days: int
    description: str = ""


@dataclass(frozen=True)
class EmployeeProfile:
    user_id: str
    full_name: str
    role: UserRole
    department: str
    leave_balance: float
    cell: str | None = None


@dataclass
class LeaveRequest:
    """The entity under workflow control."""

    id: str
    requester_id: str
    leave_type: str
    start_date: date
    end_date: date
    days: int
    state: LeaveRequestState = LeaveRequestState.DRAFT
    reason: str | None = None
    urgency: Urgency = Urgency.NORMAL
    created_at: datetime | None = None
    submitted_at: datetime | None = None
    cell_manager_approval: ApprovalRecord | None = None
    service_chief_approval: ApprovalRecord | None = None
    hr_approval: ApprovalRecord | None = None
    history: tuple[HistoryEntry, ...] = ()
    version: int = 0

    def overlaps(self, start_date: date, end_date: date) -> bool:
        return ranges_overlap(self.start_date, self.end_date, start_date, end_date)


@dataclass(frozen=True)
class ConflictRule:
    """Staffing floor for a department, optionally limited to a period."""

    id: str
    department: str
    min_employees_required: int
    period_start: date | None = None
    period_end: date | None = None
    max_concurrent_leaves: int | None = None
    is_active: bool = True


@dataclass(frozen=True)
class ServiceSubstitution:
    """Temporary coverage of ``original_user_id`` by ``substitute_user_id``."""

    id: str
    original_user_id: str
    substitute_user_id: str
    department: str
    start_date: date
    end_date: date

    def overlaps(self, start_date: date, end_date: date) -> bool:
        return ranges_overlap(self.start_date, self.end_date, start_date, end_date)


@dataclass
class LeaveRequestDraft:
    """Raw creation input, checked before a request enters the workflow."""

    requester_id: str | None = None
    leave_type: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    reason: str | None = None
    urgency: Urgency = Urgency.NORMAL

    def missing_fields(self) -> list[str]:
        missing = []
        if not self.requester_id:
            missing.append("requester_id")
        if not self.leave_type:
            missing.append("leave_type")
        if not self.start_date:
            missing.append("start_date")
        if not self.end_date:
            missing.append("end_date")
        return missing


def ranges_overlap(start_a: date, end_a: date, start_b: date, end_b: date) -> bool:
    """Inclusive date-range intersection."""
    return start_a <= end_b and end_a >= start_b


def count_leave_days(start_date: date, end_date: date) -> int:
    """Working days (Monday to Friday) in the inclusive range."""
    total = (end_date - start_date).days + 1
    if total <= 0:
        return 0
    full_weeks, remainder = divmod(total, 7)
    first_weekday = start_date.weekday()
    extra = sum(1 for offset in range(remainder) if (first_weekday + offset) % 7 < 5)
    return full_weeks * 5 + extra


def parse_date(value: date | str | None) -> date | None:
    """
    Parse a boundary date value: a date, a datetime or a ``YYYY-MM-DD`` string.

    Partial or locale-shaped strings ("2026-11", "02/11/2026") are rejected
    rather than completed from today's date.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not ISO_DATE.fullmatch(text):
        raise ValueError(f"Invalid date: {value}. Please use YYYY-MM-DD.")
    try:
        return parser.isoparse(text).date()
    except ValueError as e:
        raise ValueError(f"Invalid date: {value}. Please use YYYY-MM-DD.") from e
