"""
Persistence boundary for the leave workflow.

Two protocols describe what the workflow needs from the outside world:

- ``WorkflowDataSource``: the reads behind a staffing decision (rules,
  overlapping requests, substitutions, headcount, balance, profile).
- ``LeaveRequestStore``: the write side used by the orchestration layer.

``LeaveRepository`` is both plus rule and substitution administration.
A deployment uses exactly one backend for all of it, so requests written
by the workflow are the same rows the conflict engine counts:
``InMemoryRepository`` (seeded from ``data.demo_data``) or
``leave_workflow.snowflake_client.SnowflakeRepository``.

Persisted rows (dicts keyed by column name) are translated into domain
types by the ``*_from_row`` helpers below. Status strings are converted to
``LeaveRequestState`` here and nowhere else.
"""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import asdict, replace
from datetime import date, datetime
from typing import Any, Protocol, runtime_checkable

from dateutil import parser

from data import demo_data
from leave_workflow.exceptions import (
    ConcurrentModification,
    ConflictRuleNotFound,
    EmployeeNotFound,
    LeaveRequestNotFound,
    SubstitutionNotFound,
    ValidationError,
)
from leave_workflow.models import (
    ABSENCE_STATES,
    ApprovalRecord,
    ConflictRule,
    EmployeeProfile,
    HistoryEntry,
    LeaveRequest,
    LeaveRequestEvent,
    LeaveRequestState,
    LeaveType,
    ServiceSubstitution,
    Urgency,
    UserRole,
    count_leave_days,
    parse_date,
)

logger = logging.getLogger(__name__)


@runtime_checkable
class WorkflowDataSource(Protocol):
    """Reads consumed by the conflict engine and the submission guards."""

    def get_active_conflict_rules(
        self, department: str, start_date: date, end_date: date
    ) -> list[ConflictRule]: ...

    def get_overlapping_requests(
        self,
        department: str,
        start_date: date,
        end_date: date,
        exclude_id: str | None = None,
    ) -> list[LeaveRequest]: ...

    def get_active_substitutions(
        self, department: str, start_date: date, end_date: date
    ) -> list[ServiceSubstitution]: ...

    def get_department_headcount(self, department: str) -> int: ...

    def get_current_leave_balance(self, user_id: str) -> float: ...

    def get_profile(self, user_id: str) -> EmployeeProfile: ...


@runtime_checkable
class LeaveRequestStore(Protocol):
    """Write side used by the workflow service."""

    def get_leave_request(self, request_id: str) -> LeaveRequest: ...

    def add_leave_request(self, request: LeaveRequest) -> LeaveRequest: ...

    def save_leave_request(self, request: LeaveRequest) -> LeaveRequest: ...

    def list_leave_requests(
        self, requester_id: str | None = None, state: LeaveRequestState | None = None
    ) -> list[LeaveRequest]: ...

    def debit_leave_balance(self, user_id: str, days: float) -> float: ...

    def get_leave_type(self, name: str) -> LeaveType | None: ...


@runtime_checkable
class LeaveRepository(WorkflowDataSource, LeaveRequestStore, Protocol):
    """A complete backend: staffing reads, request writes and administration."""

    def create_conflict_rule(
        self,
        department: str,
        min_employees_required: int,
        period_start: date | None = None,
        period_end: date | None = None,
        max_concurrent_leaves: int | None = None,
        is_active: bool = True,
    ) -> ConflictRule: ...

    def update_conflict_rule(self, rule_id: str, **changes: Any) -> ConflictRule: ...

    def list_conflict_rules(self, department: str | None = None) -> list[ConflictRule]: ...

    def create_substitution(
        self,
        original_user_id: str,
        substitute_user_id: str,
        department: str,
        start_date: date,
        end_date: date,
    ) -> ServiceSubstitution: ...

    def list_substitutions_for_user(self, user_id: str) -> list[ServiceSubstitution]: ...

    def delete_substitution(self, substitution_id: str) -> None: ...


# ---------------------------------------------------------------------------
# Row translation
# ---------------------------------------------------------------------------


def _missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value == ""
    # NaN / NaT from DataFrame rows are not equal to themselves
    return value != value


def _normalize(row: Mapping[str, Any]) -> dict[str, Any]:
    # Warehouse columns come back upper-cased
    return {str(k).lower(): (None if _missing(v) else v) for k, v in row.items()}


def _to_datetime(value: Any) -> datetime | None:
    if _missing(value):
        return None
    if isinstance(value, datetime):
        return value
    return parser.parse(str(value))


def _to_date(value: Any) -> date | None:
    return None if _missing(value) else parse_date(value)


def _to_int(value: Any) -> int | None:
    return None if _missing(value) else int(value)


def profile_from_row(row: Mapping[str, Any]) -> EmployeeProfile:
    data = _normalize(row)
    return EmployeeProfile(
        user_id=str(data["user_id"]),
        full_name=data.get("full_name") or "",
        role=UserRole(str(data.get("role") or "employee").lower()),
        department=data["department"],
        leave_balance=float(data.get("leave_balance") or 0),
        cell=data.get("cell"),
    )


def rule_from_row(row: Mapping[str, Any]) -> ConflictRule:
    data = _normalize(row)
    return ConflictRule(
        id=str(data["id"]),
        department=data["department"],
        min_employees_required=int(data["min_employees_required"]),
        period_start=_to_date(data.get("period_start")),
        period_end=_to_date(data.get("period_end")),
        max_concurrent_leaves=_to_int(data.get("max_concurrent_leaves")),
        is_active=bool(data.get("is_active", True)),
    )


def substitution_from_row(row: Mapping[str, Any]) -> ServiceSubstitution:
    data = _normalize(row)
    return ServiceSubstitution(
        id=str(data["id"]),
        original_user_id=str(data["original_user_id"]),
        substitute_user_id=str(data["substitute_user_id"]),
        department=data["department"],
        start_date=_to_date(data["start_date"]),
        end_date=_to_date(data["end_date"]),
    )


def _approval_from_row(data: Mapping[str, Any], prefix: str) -> ApprovalRecord | None:
    approver = data.get(f"{prefix}_approver_id")
    if approver is None:
        return None
    return ApprovalRecord(
        approver_id=str(approver),
        decided_at=_to_datetime(data.get(f"{prefix}_decided_at")),
        approved=bool(data.get(f"{prefix}_approved", True)),
        comment=data.get(f"{prefix}_comment"),
    )


def leave_request_from_row(row: Mapping[str, Any]) -> LeaveRequest:
    data = _normalize(row)
    start = _to_date(data["start_date"])
    end = _to_date(data["end_date"])
    return LeaveRequest(
        id=str(data["id"]),
        requester_id=str(data["user_id"]),
        leave_type=data.get("type") or "",
        start_date=start,
        end_date=end,
        days=_to_int(data.get("days")) or count_leave_days(start, end),
        state=LeaveRequestState.from_persisted(data.get("status") or "draft"),
        reason=data.get("reason"),
        urgency=Urgency(data.get("urgency") or "normal"),
        created_at=_to_datetime(data.get("created_at")),
        submitted_at=_to_datetime(data.get("submitted_at")),
        cell_manager_approval=_approval_from_row(data, "n1"),
        service_chief_approval=_approval_from_row(data, "n2"),
        hr_approval=_approval_from_row(data, "hr"),
        version=_to_int(data.get("version")) or 0,
    )


APPROVAL_COLUMNS = (
    ("n1", "cell_manager_approval"),
    ("n2", "service_chief_approval"),
    ("hr", "hr_approval"),
)


def leave_request_to_row(request: LeaveRequest) -> dict[str, Any]:
    """Persisted columns of a request; history is stored separately."""
    row = {
        "id": request.id,
        "user_id": request.requester_id,
        "type": request.leave_type,
        "start_date": request.start_date,
        "end_date": request.end_date,
        "days": request.days,
        "status": request.state.value,
        "reason": request.reason,
        "urgency": request.urgency.value,
        "created_at": request.created_at,
        "submitted_at": request.submitted_at,
        "version": request.version,
    }
    for prefix, slot in APPROVAL_COLUMNS:
        approval = getattr(request, slot)
        row[f"{prefix}_approver_id"] = approval.approver_id if approval else None
        row[f"{prefix}_decided_at"] = approval.decided_at if approval else None
        row[f"{prefix}_approved"] = approval.approved if approval else None
        row[f"{prefix}_comment"] = approval.comment if approval else None
    return row


def history_entry_to_row(request_id: str, seq: int, entry: HistoryEntry) -> dict[str, Any]:
    return {
        "request_id": request_id,
        "seq": seq,
        "event": entry.event.value,
        "timestamp": entry.timestamp,
        "actor_id": entry.actor_id,
        "from_state": entry.from_state.value,
        "to_state": entry.to_state.value,
        "comment": entry.comment,
    }


def history_entry_from_row(row: Mapping[str, Any]) -> HistoryEntry:
    data = _normalize(row)
    return HistoryEntry(
        event=LeaveRequestEvent(data["event"]),
        timestamp=_to_datetime(data["timestamp"]),
        actor_id=str(data["actor_id"]),
        from_state=LeaveRequestState.from_persisted(data["from_state"]),
        to_state=LeaveRequestState.from_persisted(data["to_state"]),
        comment=data.get("comment"),
    )


def validate_conflict_rule(rule: ConflictRule) -> None:
    errors = []
    if not rule.department:
        errors.append("department is required")
    if rule.min_employees_required < 0:
        errors.append("min_employees_required must be >= 0")
    if rule.max_concurrent_leaves is not None and rule.max_concurrent_leaves < 0:
        errors.append("max_concurrent_leaves must be >= 0")
    if rule.period_start and rule.period_end and rule.period_start > rule.period_end:
        errors.append("period_start must not be after period_end")
    if errors:
        raise ValidationError(errors, prefix="Invalid conflict rule")


def validate_substitution(substitution: ServiceSubstitution) -> None:
    errors = []
    if substitution.original_user_id == substitution.substitute_user_id:
        errors.append("an employee cannot substitute for themselves")
    if substitution.start_date > substitution.end_date:
        errors.append("start_date must not be after end_date")
    if errors:
        raise ValidationError(errors, prefix="Invalid substitution")


RULE_UPDATE_FIELDS = frozenset(
    {
        "period_start",
        "period_end",
        "min_employees_required",
        "max_concurrent_leaves",
        "is_active",
    }
)


def new_conflict_rule(
    department: str,
    min_employees_required: int,
    period_start: date | None = None,
    period_end: date | None = None,
    max_concurrent_leaves: int | None = None,
    is_active: bool = True,
) -> ConflictRule:
    rule = ConflictRule(
        id=f"R-{uuid.uuid4().hex[:8]}",
        department=department,
        min_employees_required=min_employees_required,
        period_start=period_start,
        period_end=period_end,
        max_concurrent_leaves=max_concurrent_leaves,
        is_active=is_active,
    )
    validate_conflict_rule(rule)
    return rule


def apply_rule_changes(rule: ConflictRule, changes: Mapping[str, Any]) -> ConflictRule:
    unknown = set(changes) - RULE_UPDATE_FIELDS
    if unknown:
        raise ValidationError([f"cannot update field {name}" for name in sorted(unknown)])
    updated = replace(rule, **changes)
    validate_conflict_rule(updated)
    return updated


def new_substitution(
    original_user_id: str,
    substitute_user_id: str,
    department: str,
    start_date: date,
    end_date: date,
) -> ServiceSubstitution:
    substitution = ServiceSubstitution(
        id=f"SUB-{uuid.uuid4().hex[:8]}",
        original_user_id=original_user_id,
        substitute_user_id=substitute_user_id,
        department=department,
        start_date=start_date,
        end_date=end_date,
    )
    validate_substitution(substitution)
    return substitution


def load_leave_types() -> list[LeaveType]:
    """Leave type catalogue. Policy constants, shared by every backend."""
    return [
        LeaveType(name=name, max_days=row["max_days"], description=row["description"])
        for name, row in demo_data.LEAVE_TYPES.items()
    ]


def rule_to_row(rule: ConflictRule) -> dict[str, Any]:
    return asdict(rule)


def substitution_to_row(substitution: ServiceSubstitution) -> dict[str, Any]:
    return asdict(substitution)


# ---------------------------------------------------------------------------
# In-memory repository
# ---------------------------------------------------------------------------


class InMemoryRepository:
    """
    Thread-safe in-memory backend implementing ``LeaveRepository``.

    Stored requests are copied on the way in and on the way out, so callers
    never hold a reference to stored state. ``save_leave_request`` performs
    an optimistic version check: the caller must save the version it
    loaded, otherwise ``ConcurrentModification`` is raised.
    """

    def __init__(
        self,
        employees: Iterable[EmployeeProfile] = (),
        leave_requests: Iterable[LeaveRequest] = (),
        conflict_rules: Iterable[ConflictRule] = (),
        substitutions: Iterable[ServiceSubstitution] = (),
        leave_types: Iterable[LeaveType] = (),
    ):
        self._lock = threading.RLock()
        self._employees = {e.user_id: e for e in employees}
        self._requests = {r.id: copy.deepcopy(r) for r in leave_requests}
        self._rules = {r.id: r for r in conflict_rules}
        self._substitutions = {s.id: s for s in substitutions}
        self._leave_types = {t.name: t for t in leave_types}

    @classmethod
    def from_demo_data(cls) -> InMemoryRepository:
        """Build a repository from the demo rows in ``data.demo_data``."""
        return cls(
            employees=[profile_from_row(row) for row in demo_data.EMPLOYEES.values()],
            leave_requests=[leave_request_from_row(row) for row in demo_data.LEAVE_REQUESTS],
            conflict_rules=[rule_from_row(row) for row in demo_data.CONFLICT_RULES],
            substitutions=[substitution_from_row(row) for row in demo_data.SERVICE_SUBSTITUTIONS],
            leave_types=load_leave_types(),
        )

    # --- WorkflowDataSource -------------------------------------------------

    def get_profile(self, user_id: str) -> EmployeeProfile:
        with self._lock:
            profile = self._employees.get(user_id)
        if profile is None:
            raise EmployeeNotFound(user_id)
        return profile

    def get_active_conflict_rules(
        self, department: str, start_date: date, end_date: date
    ) -> list[ConflictRule]:
        with self._lock:
            rules = list(self._rules.values())
        return [
            rule
            for rule in rules
            if rule.is_active
            and rule.department == department
            and (rule.period_start is None or rule.period_start <= end_date)
            and (rule.period_end is None or rule.period_end >= start_date)
        ]

    def get_overlapping_requests(
        self,
        department: str,
        start_date: date,
        end_date: date,
        exclude_id: str | None = None,
    ) -> list[LeaveRequest]:
        with self._lock:
            members = {e.user_id for e in self._employees.values() if e.department == department}
            return [
                copy.deepcopy(req)
                for req in self._requests.values()
                if req.requester_id in members
                and req.state in ABSENCE_STATES
                and req.id != exclude_id
                and req.overlaps(start_date, end_date)
            ]

    def get_active_substitutions(
        self, department: str, start_date: date, end_date: date
    ) -> list[ServiceSubstitution]:
        with self._lock:
            subs = list(self._substitutions.values())
        return [s for s in subs if s.department == department and s.overlaps(start_date, end_date)]

    def get_department_headcount(self, department: str) -> int:
        with self._lock:
            return sum(1 for e in self._employees.values() if e.department == department)

    def get_current_leave_balance(self, user_id: str) -> float:
        return self.get_profile(user_id).leave_balance

    # --- LeaveRequestStore --------------------------------------------------

    def get_leave_type(self, name: str) -> LeaveType | None:
        return self._leave_types.get(name)

    def get_leave_request(self, request_id: str) -> LeaveRequest:
        with self._lock:
            request = self._requests.get(request_id)
            if request is None:
                raise LeaveRequestNotFound(request_id)
            return copy.deepcopy(request)

    def list_leave_requests(
        self, requester_id: str | None = None, state: LeaveRequestState | None = None
    ) -> list[LeaveRequest]:
        with self._lock:
            return [
                copy.deepcopy(req)
                for req in self._requests.values()
                if (requester_id is None or req.requester_id == requester_id)
                and (state is None or req.state == state)
            ]

    def add_leave_request(self, request: LeaveRequest) -> LeaveRequest:
        with self._lock:
            if request.id in self._requests:
                raise ValidationError([f"leave request {request.id} already exists"])
            stored = replace(request, version=1)
            self._requests[request.id] = copy.deepcopy(stored)
            return copy.deepcopy(stored)

    def save_leave_request(self, request: LeaveRequest) -> LeaveRequest:
        with self._lock:
            current = self._requests.get(request.id)
            if current is None:
                raise LeaveRequestNotFound(request.id)
            if current.version != request.version:
                raise ConcurrentModification(request.id, request.version, current.version)
            stored = replace(request, version=current.version + 1)
            self._requests[request.id] = copy.deepcopy(stored)
            logger.info(f"Saved leave request {request.id} state={stored.state.value} v{stored.version}")
            return copy.deepcopy(stored)

    def debit_leave_balance(self, user_id: str, days: float) -> float:
        with self._lock:
            profile = self.get_profile(user_id)
            updated = replace(profile, leave_balance=profile.leave_balance - days)
            self._employees[user_id] = updated
            logger.info(f"Debited {days} day(s) from {user_id}; balance={updated.leave_balance}")
            return updated.leave_balance

    # --- Administration -----------------------------------------------------

    def create_conflict_rule(
        self,
        department: str,
        min_employees_required: int,
        period_start: date | None = None,
        period_end: date | None = None,
        max_concurrent_leaves: int | None = None,
        is_active: bool = True,
    ) -> ConflictRule:
        rule = new_conflict_rule(
            department,
            min_employees_required,
            period_start=period_start,
            period_end=period_end,
            max_concurrent_leaves=max_concurrent_leaves,
            is_active=is_active,
        )
        with self._lock:
            self._rules[rule.id] = rule
        logger.info(f"Created conflict rule {rule.id} for department={department}")
        return rule

    def update_conflict_rule(self, rule_id: str, **changes: Any) -> ConflictRule:
        with self._lock:
            rule = self._rules.get(rule_id)
            if rule is None:
                raise ConflictRuleNotFound(rule_id)
            updated = apply_rule_changes(rule, changes)
            self._rules[rule_id] = updated
        logger.info(f"Updated conflict rule {rule_id}: {sorted(changes)}")
        return updated

    def list_conflict_rules(self, department: str | None = None) -> list[ConflictRule]:
        with self._lock:
            return [r for r in self._rules.values() if department is None or r.department == department]

    def create_substitution(
        self,
        original_user_id: str,
        substitute_user_id: str,
        department: str,
        start_date: date,
        end_date: date,
    ) -> ServiceSubstitution:
        substitution = new_substitution(
            original_user_id, substitute_user_id, department, start_date, end_date
        )
        self.get_profile(original_user_id)
        self.get_profile(substitute_user_id)
        with self._lock:
            self._substitutions[substitution.id] = substitution
        logger.info(
            f"Created substitution {substitution.id}: {substitute_user_id} covers "
            f"{original_user_id} ({start_date} to {end_date})"
        )
        return substitution

    def list_substitutions_for_user(self, user_id: str) -> list[ServiceSubstitution]:
        """Substitutions where the user is either covered or covering, latest first."""
        with self._lock:
            subs = [
                s
                for s in self._substitutions.values()
                if user_id in (s.original_user_id, s.substitute_user_id)
            ]
        return sorted(subs, key=lambda s: s.start_date, reverse=True)

    def delete_substitution(self, substitution_id: str) -> None:
        with self._lock:
            if self._substitutions.pop(substitution_id, None) is None:
                raise SubstitutionNotFound(substitution_id)
        logger.info(f"Deleted substitution {substitution_id}")
