"""
Staffing conflict detection.

Decides whether granting a leave request would leave its department below
the required minimum headcount, or above the allowed number of concurrent
leaves, once substitute coverage has been netted out.

The engine only reads. Fetching goes through a ``WorkflowDataSource``;
everything after the fetch is a pure function over the fetched rows, so
the arithmetic can be tested without any data source at all.

Data-source failures are never turned into "no conflict" silently. What
happens instead is an explicit policy (``on_error``):

- ``raise``: propagate ``DataUnavailable`` to the caller (default)
- ``allow``: fail open, report no conflict and flag the result as degraded
- ``deny``:  fail closed, report a ``DATA_UNAVAILABLE`` conflict
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Literal

from leave_workflow.config import settings
from leave_workflow.exceptions import DataUnavailable
from leave_workflow.models import (
    ABSENCE_STATES,
    ConflictRule,
    LeaveRequest,
    ServiceSubstitution,
    ranges_overlap,
)
from leave_workflow.observability import trace_span
from leave_workflow.repository import WorkflowDataSource

logger = logging.getLogger(__name__)

FailurePolicy = Literal["raise", "allow", "deny"]


class ConflictType(str, Enum):
    MIN_EMPLOYEES = "MIN_EMPLOYEES"
    MAX_CONCURRENT = "MAX_CONCURRENT"
    DATA_UNAVAILABLE = "DATA_UNAVAILABLE"


@dataclass(frozen=True)
class ConflictCheck:
    """A candidate leave request, as seen by the conflict engine."""

    user_id: str
    department: str
    start_date: date
    end_date: date
    exclude_request_id: str | None = None


@dataclass(frozen=True)
class ConflictDetails:
    current_absences: int
    min_required: int | None = None
    max_allowed: int | None = None
    employees_present: int | None = None
    total_employees: int | None = None
    affected_employees: tuple[str, ...] = ()
    substitutions_available: bool = False


@dataclass(frozen=True)
class ConflictResult:
    has_conflict: bool
    conflict_type: ConflictType | None = None
    message: str | None = None
    details: ConflictDetails | None = None
    degraded: bool = False

    @classmethod
    def no_conflict(cls, message: str | None = None) -> ConflictResult:
        return cls(has_conflict=False, message=message)


@dataclass(frozen=True)
class StaffingSnapshot:
    """Everything the verdict is computed from, fetched in one pass."""

    rules: tuple[ConflictRule, ...]
    overlapping_requests: tuple[LeaveRequest, ...] = ()
    substitutions: tuple[ServiceSubstitution, ...] = ()
    total_employees: int = 0


# ---------------------------------------------------------------------------
# Pure evaluation
# ---------------------------------------------------------------------------


def rule_applies(rule: ConflictRule, department: str, start_date: date, end_date: date) -> bool:
    """Active, same department, and period overlaps the range (open bounds always match)."""
    if not rule.is_active or rule.department != department:
        return False
    if rule.period_start is not None and rule.period_start > end_date:
        return False
    if rule.period_end is not None and rule.period_end < start_date:
        return False
    return True


def select_most_restrictive_rule(rules: Sequence[ConflictRule]) -> ConflictRule | None:
    """Highest ``min_employees_required`` wins; ties keep the first rule seen."""
    selected: ConflictRule | None = None
    for rule in rules:
        if selected is None or rule.min_employees_required > selected.min_employees_required:
            selected = rule
    return selected


def distinct_absentees(requests: Iterable[LeaveRequest]) -> list[str]:
    """Requester ids in first-seen order, each employee once."""
    seen: dict[str, None] = {}
    for request in requests:
        seen.setdefault(request.requester_id, None)
    return list(seen)


def calculate_effective_absentees(
    requests: Iterable[LeaveRequest], substitutions: Iterable[ServiceSubstitution]
) -> int:
    """Distinct absent employees, minus those covered by a substitute."""
    absent = set(distinct_absentees(requests))
    covered = {sub.original_user_id for sub in substitutions}
    return len(absent - covered)


def evaluate_conflict_rules(
    rules: Sequence[ConflictRule],
    requests: Sequence[LeaveRequest],
    substitutions: Sequence[ServiceSubstitution],
    total_employees: int,
) -> ConflictResult:
    """Verdict for one candidate request, given already-fetched data."""
    rule = select_most_restrictive_rule(rules)
    if rule is None:
        return ConflictResult.no_conflict()

    effective_absentees = calculate_effective_absentees(requests, substitutions)
    # -1: the candidate is not yet among the overlapping requests
    employees_present = total_employees - effective_absentees - 1
    absences_with_candidate = effective_absentees + 1
    affected = tuple(distinct_absentees(requests))
    substitutions_available = len(substitutions) > 0

    if employees_present < rule.min_employees_required:
        return ConflictResult(
            has_conflict=True,
            conflict_type=ConflictType.MIN_EMPLOYEES,
            message=(
                f"Minimum staffing not met: {rule.min_employees_required} employee(s) "
                f"required, only {employees_present} would be present."
            ),
            details=ConflictDetails(
                current_absences=absences_with_candidate,
                min_required=rule.min_employees_required,
                max_allowed=rule.max_concurrent_leaves,
                employees_present=employees_present,
                total_employees=total_employees,
                affected_employees=affected,
                substitutions_available=substitutions_available,
            ),
        )

    if (
        rule.max_concurrent_leaves is not None
        and absences_with_candidate > rule.max_concurrent_leaves
    ):
        return ConflictResult(
            has_conflict=True,
            conflict_type=ConflictType.MAX_CONCURRENT,
            message=(
                f"Too many concurrent leaves: at most {rule.max_concurrent_leaves} allowed, "
                f"{absences_with_candidate} requested."
            ),
            details=ConflictDetails(
                current_absences=absences_with_candidate,
                min_required=rule.min_employees_required,
                max_allowed=rule.max_concurrent_leaves,
                employees_present=employees_present,
                total_employees=total_employees,
                affected_employees=affected,
                substitutions_available=substitutions_available,
            ),
        )

    return ConflictResult(
        has_conflict=False,
        message="No conflict detected",
        details=ConflictDetails(
            current_absences=absences_with_candidate,
            min_required=rule.min_employees_required,
            max_allowed=rule.max_concurrent_leaves,
            employees_present=employees_present,
            total_employees=total_employees,
            substitutions_available=substitutions_available,
        ),
    )


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class ConflictEngine:
    """
    Fetches staffing data for a candidate request and evaluates it.

    Args:
        source: read-side data source (in-memory or Snowflake)
        on_error: what to do when the source fails (raise / allow / deny)
    """

    def __init__(self, source: WorkflowDataSource, on_error: FailurePolicy | None = None):
        self.source = source
        self.on_error: FailurePolicy = on_error or settings.conflict_check_on_error

    def detect_conflicts(self, check: ConflictCheck) -> ConflictResult:
        with trace_span(
            "detect_conflicts",
            user=check.user_id,
            department=check.department,
            start=check.start_date,
            end=check.end_date,
        ):
            try:
                snapshot = self._fetch(check)
            except DataUnavailable as e:
                return self._on_data_unavailable(check, e)

            if not snapshot.rules:
                logger.info(f"No staffing rule for department={check.department}; no conflict")
                return ConflictResult.no_conflict()

            result = evaluate_conflict_rules(
                snapshot.rules,
                snapshot.overlapping_requests,
                snapshot.substitutions,
                snapshot.total_employees,
            )
            logger.info(
                f"Conflict check: user={check.user_id} department={check.department} "
                f"has_conflict={result.has_conflict} "
                f"type={result.conflict_type.value if result.conflict_type else None}"
            )
            return result

    def _fetch(self, check: ConflictCheck) -> StaffingSnapshot:
        rules = tuple(
            rule
            for rule in self.source.get_active_conflict_rules(
                check.department, check.start_date, check.end_date
            )
            if rule_applies(rule, check.department, check.start_date, check.end_date)
        )
        if not rules:
            return StaffingSnapshot(rules=())

        requests = tuple(
            req
            for req in self.source.get_overlapping_requests(
                check.department, check.start_date, check.end_date, check.exclude_request_id
            )
            if req.id != check.exclude_request_id
            and req.state in ABSENCE_STATES
            and ranges_overlap(req.start_date, req.end_date, check.start_date, check.end_date)
        )
        substitutions = tuple(
            sub
            for sub in self.source.get_active_substitutions(
                check.department, check.start_date, check.end_date
            )
            if sub.department == check.department
            and sub.overlaps(check.start_date, check.end_date)
        )
        total = self.source.get_department_headcount(check.department)
        return StaffingSnapshot(
            rules=rules,
            overlapping_requests=requests,
            substitutions=substitutions,
            total_employees=total,
        )

    def _on_data_unavailable(self, check: ConflictCheck, error: DataUnavailable) -> ConflictResult:
        logger.error(
            f"Conflict check failed for department={check.department} "
            f"(policy={self.on_error}): {error}"
        )
        if self.on_error == "allow":
            return ConflictResult(
                has_conflict=False,
                message="Conflict check unavailable; request allowed without verification",
                degraded=True,
            )
        if self.on_error == "deny":
            return ConflictResult(
                has_conflict=True,
                conflict_type=ConflictType.DATA_UNAVAILABLE,
                message="Conflict check unavailable; request blocked until it can be verified",
                degraded=True,
            )
        raise error
