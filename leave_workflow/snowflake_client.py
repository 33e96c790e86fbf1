"""
Snowflake-backed leave repository with circuit breaker protection.

Implements ``LeaveRepository`` against the HR warehouse with the Snowpark
DataFrame API: staffing reads, leave request writes, balance debits and
rule/substitution administration all go to the same tables, so requests
written by the workflow are the rows the conflict engine counts. Values
are bound through ``col(...)`` comparisons, never formatted into SQL strings.

Any Snowpark error, or an open breaker, is raised as ``DataUnavailable``.
There is no fallback to demo data: whether a failed read blocks or allows
a request is the conflict engine's configured policy, not this module's.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import replace
from datetime import date
from typing import Any, TypeVar

from snowflake.snowpark import DataFrame, Session
from snowflake.snowpark.exceptions import SnowparkClientException
from snowflake.snowpark.functions import col

from leave_workflow.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError
from leave_workflow.config import Settings, settings
from leave_workflow.exceptions import (
    ConcurrentModification,
    ConflictRuleNotFound,
    DataUnavailable,
    EmployeeNotFound,
    LeaveRequestNotFound,
    SubstitutionNotFound,
    ValidationError,
)
from leave_workflow.models import (
    ABSENCE_STATES,
    ConflictRule,
    EmployeeProfile,
    HistoryEntry,
    LeaveRequest,
    LeaveRequestState,
    LeaveType,
    ServiceSubstitution,
)
from leave_workflow.observability import trace_span
from leave_workflow.repository import (
    apply_rule_changes,
    history_entry_from_row,
    history_entry_to_row,
    leave_request_from_row,
    leave_request_to_row,
    load_leave_types,
    new_conflict_rule,
    new_substitution,
    profile_from_row,
    rule_from_row,
    rule_to_row,
    substitution_from_row,
    substitution_to_row,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

EMPLOYEES_TABLE = "employees"
LEAVE_REQUESTS_TABLE = "leave_requests"
LEAVE_REQUEST_HISTORY_TABLE = "leave_request_history"
CONFLICT_RULES_TABLE = "conflict_rules"
SUBSTITUTIONS_TABLE = "service_substitutions"

# Stored status values that count as absences, legacy "pending" included
ABSENCE_STATUS_VALUES = sorted({s.value for s in ABSENCE_STATES} | {"pending"})


def status_values(state: LeaveRequestState) -> list[str]:
    """Stored status strings that read back as ``state``."""
    if state == LeaveRequestState.PENDING_CELL_MANAGER:
        return [state.value, "pending"]
    return [state.value]


class SnowflakeRepository:
    """
    Warehouse backend over Snowpark.

    Args:
        session: an open Snowpark session
        circuit_breaker: shared breaker; one is built from settings if omitted
    """

    def __init__(self, session: Session, circuit_breaker: CircuitBreaker | None = None):
        self.session = session
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=settings.circuit_breaker_failure_threshold,
            timeout=settings.circuit_breaker_timeout,
            name="snowflake",
        )
        self._leave_types = {t.name: t for t in load_leave_types()}

    @classmethod
    def from_settings(cls, config: Settings = settings) -> SnowflakeRepository:
        """Open a Snowpark session from the SNOWFLAKE_* settings."""
        connection_params = {
            "account": config.snowflake_account,
            "user": config.snowflake_user,
            "password": config.snowflake_password,
            "warehouse": config.snowflake_warehouse,
            "database": config.snowflake_database,
            "schema": config.snowflake_schema,
        }
        try:
            session = Session.builder.configs(connection_params).create()
        except SnowparkClientException as e:
            raise DataUnavailable("snowflake session", e) from e
        logger.info(f"Snowflake session initialized for account={config.snowflake_account}")
        return cls(session)

    # --- Query plumbing -----------------------------------------------------

    def _run(self, operation: str, func: Callable[[Session], T]) -> T:
        """Run one warehouse operation under the breaker."""
        with trace_span(f"snowflake.{operation}"):
            try:
                return self.circuit_breaker.call(func, self.session)
            except (SnowparkClientException, CircuitBreakerOpenError) as e:
                raise DataUnavailable(operation, e) from e

    def _read(self, operation: str, build: Callable[[Session], DataFrame]) -> list[dict[str, Any]]:
        """Run a DataFrame query and return its rows."""
        frame = self._run(operation, lambda s: build(s).to_pandas())
        # Snowflake returns upper-cased column names
        return [{str(k).lower(): v for k, v in row.items()} for row in frame.to_dict(orient="records")]

    def _append(self, operation: str, table: str, rows: list[dict[str, Any]]) -> None:
        columns = list(rows[0])
        values = [[row[name] for name in columns] for row in rows]
        self._run(
            operation,
            lambda s: s.create_dataframe(values, schema=columns).write.save_as_table(
                table, mode="append", column_order="name"
            ),
        )

    # --- WorkflowDataSource -------------------------------------------------

    def get_profile(self, user_id: str) -> EmployeeProfile:
        rows = self._read(
            "get_profile",
            lambda s: s.table(EMPLOYEES_TABLE).filter(col("user_id") == user_id),
        )
        if not rows:
            raise EmployeeNotFound(user_id)
        return profile_from_row(rows[0])

    def get_active_conflict_rules(
        self, department: str, start_date: date, end_date: date
    ) -> list[ConflictRule]:
        rows = self._read(
            "get_active_conflict_rules",
            lambda s: s.table(CONFLICT_RULES_TABLE)
            .filter(col("department") == department)
            .filter(col("is_active"))
            .filter(col("period_start").is_null() | (col("period_start") <= end_date))
            .filter(col("period_end").is_null() | (col("period_end") >= start_date)),
        )
        return [rule_from_row(row) for row in rows]

    def get_overlapping_requests(
        self,
        department: str,
        start_date: date,
        end_date: date,
        exclude_id: str | None = None,
    ) -> list[LeaveRequest]:
        members = self._read(
            "department_members",
            lambda s: s.table(EMPLOYEES_TABLE)
            .filter(col("department") == department)
            .select("user_id"),
        )
        member_ids = [str(row["user_id"]) for row in members]
        if not member_ids:
            return []

        def build(s: Session) -> DataFrame:
            frame = (
                s.table(LEAVE_REQUESTS_TABLE)
                .filter(col("user_id").isin(member_ids))
                .filter(col("status").isin(ABSENCE_STATUS_VALUES))
                .filter(col("start_date") <= end_date)
                .filter(col("end_date") >= start_date)
            )
            if exclude_id is not None:
                frame = frame.filter(col("id") != exclude_id)
            return frame

        rows = self._read("get_overlapping_requests", build)
        return [leave_request_from_row(row) for row in rows]

    def get_active_substitutions(
        self, department: str, start_date: date, end_date: date
    ) -> list[ServiceSubstitution]:
        rows = self._read(
            "get_active_substitutions",
            lambda s: s.table(SUBSTITUTIONS_TABLE)
            .filter(col("department") == department)
            .filter(col("start_date") <= end_date)
            .filter(col("end_date") >= start_date),
        )
        return [substitution_from_row(row) for row in rows]

    def get_department_headcount(self, department: str) -> int:
        rows = self._read(
            "get_department_headcount",
            lambda s: s.table(EMPLOYEES_TABLE)
            .filter(col("department") == department)
            .select("user_id"),
        )
        return len(rows)

    def get_current_leave_balance(self, user_id: str) -> float:
        return self.get_profile(user_id).leave_balance

    # --- LeaveRequestStore --------------------------------------------------

    def get_leave_type(self, name: str) -> LeaveType | None:
        return self._leave_types.get(name)

    def _request_rows(self, request_id: str) -> list[dict[str, Any]]:
        return self._read(
            "get_leave_request",
            lambda s: s.table(LEAVE_REQUESTS_TABLE).filter(col("id") == request_id),
        )

    def _histories(self, request_ids: list[str]) -> dict[str, tuple[HistoryEntry, ...]]:
        if not request_ids:
            return {}
        rows = self._read(
            "get_leave_request_history",
            lambda s: s.table(LEAVE_REQUEST_HISTORY_TABLE).filter(
                col("request_id").isin(request_ids)
            ),
        )
        grouped: dict[str, list[dict[str, Any]]] = {}
        for row in rows:
            grouped.setdefault(str(row["request_id"]), []).append(row)
        return {
            request_id: tuple(
                history_entry_from_row(row) for row in sorted(entries, key=lambda r: int(r["seq"]))
            )
            for request_id, entries in grouped.items()
        }

    def _with_history(self, rows: list[dict[str, Any]]) -> list[LeaveRequest]:
        requests = [leave_request_from_row(row) for row in rows]
        histories = self._histories([r.id for r in requests])
        return [replace(r, history=histories.get(r.id, ())) for r in requests]

    def get_leave_request(self, request_id: str) -> LeaveRequest:
        rows = self._request_rows(request_id)
        if not rows:
            raise LeaveRequestNotFound(request_id)
        return self._with_history(rows[:1])[0]

    def list_leave_requests(
        self, requester_id: str | None = None, state: LeaveRequestState | None = None
    ) -> list[LeaveRequest]:
        def build(s: Session) -> DataFrame:
            frame = s.table(LEAVE_REQUESTS_TABLE)
            if requester_id is not None:
                frame = frame.filter(col("user_id") == requester_id)
            if state is not None:
                frame = frame.filter(col("status").isin(status_values(state)))
            return frame

        return self._with_history(self._read("list_leave_requests", build))

    def _append_history(self, request: LeaveRequest, start: int) -> None:
        entries = request.history[start:]
        if entries:
            rows = [
                history_entry_to_row(request.id, seq, entry)
                for seq, entry in enumerate(entries, start=start)
            ]
            self._append("append_history", LEAVE_REQUEST_HISTORY_TABLE, rows)

    def add_leave_request(self, request: LeaveRequest) -> LeaveRequest:
        if self._request_rows(request.id):
            raise ValidationError([f"leave request {request.id} already exists"])
        stored = replace(request, version=1)
        self._append("add_leave_request", LEAVE_REQUESTS_TABLE, [leave_request_to_row(stored)])
        self._append_history(stored, 0)
        logger.info(f"Added leave request {stored.id} for {stored.requester_id}")
        return stored

    def save_leave_request(self, request: LeaveRequest) -> LeaveRequest:
        """Conditional update on the loaded version, then append new history rows."""
        stored = replace(request, version=request.version + 1)
        assignments = leave_request_to_row(stored)
        del assignments["id"]
        result = self._run(
            "save_leave_request",
            lambda s: s.table(LEAVE_REQUESTS_TABLE).update(
                assignments,
                (col("id") == request.id) & (col("version") == request.version),
            ),
        )
        if result.rows_updated == 0:
            rows = self._request_rows(request.id)
            if not rows:
                raise LeaveRequestNotFound(request.id)
            current = leave_request_from_row(rows[0])
            raise ConcurrentModification(request.id, request.version, current.version)

        recorded = len(self._histories([request.id]).get(request.id, ()))
        self._append_history(stored, recorded)
        logger.info(f"Saved leave request {stored.id} state={stored.state.value} v{stored.version}")
        return stored

    def debit_leave_balance(self, user_id: str, days: float) -> float:
        result = self._run(
            "debit_leave_balance",
            lambda s: s.table(EMPLOYEES_TABLE).update(
                {"leave_balance": col("leave_balance") - days},
                col("user_id") == user_id,
            ),
        )
        if result.rows_updated == 0:
            raise EmployeeNotFound(user_id)
        balance = self.get_current_leave_balance(user_id)
        logger.info(f"Debited {days} day(s) from {user_id}; balance={balance}")
        return balance

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
        self._append("create_conflict_rule", CONFLICT_RULES_TABLE, [rule_to_row(rule)])
        logger.info(f"Created conflict rule {rule.id} for department={department}")
        return rule

    def update_conflict_rule(self, rule_id: str, **changes: Any) -> ConflictRule:
        rows = self._read(
            "get_conflict_rule",
            lambda s: s.table(CONFLICT_RULES_TABLE).filter(col("id") == rule_id),
        )
        if not rows:
            raise ConflictRuleNotFound(rule_id)
        updated = apply_rule_changes(rule_from_row(rows[0]), changes)
        if changes:
            self._run(
                "update_conflict_rule",
                lambda s: s.table(CONFLICT_RULES_TABLE).update(
                    {name: getattr(updated, name) for name in changes}, col("id") == rule_id
                ),
            )
        logger.info(f"Updated conflict rule {rule_id}: {sorted(changes)}")
        return updated

    def list_conflict_rules(self, department: str | None = None) -> list[ConflictRule]:
        def build(s: Session) -> DataFrame:
            frame = s.table(CONFLICT_RULES_TABLE)
            if department is not None:
                frame = frame.filter(col("department") == department)
            return frame

        return [rule_from_row(row) for row in self._read("list_conflict_rules", build)]

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
        self._append(
            "create_substitution", SUBSTITUTIONS_TABLE, [substitution_to_row(substitution)]
        )
        logger.info(
            f"Created substitution {substitution.id}: {substitute_user_id} covers "
            f"{original_user_id} ({start_date} to {end_date})"
        )
        return substitution

    def list_substitutions_for_user(self, user_id: str) -> list[ServiceSubstitution]:
        rows = self._read(
            "list_substitutions_for_user",
            lambda s: s.table(SUBSTITUTIONS_TABLE).filter(
                (col("original_user_id") == user_id) | (col("substitute_user_id") == user_id)
            ),
        )
        subs = [substitution_from_row(row) for row in rows]
        return sorted(subs, key=lambda s: s.start_date, reverse=True)

    def delete_substitution(self, substitution_id: str) -> None:
        result = self._run(
            "delete_substitution",
            lambda s: s.table(SUBSTITUTIONS_TABLE).delete(col("id") == substitution_id),
        )
        if result.rows_deleted == 0:
            raise SubstitutionNotFound(substitution_id)
        logger.info(f"Deleted substitution {substitution_id}")

    # --- Lifecycle ----------------------------------------------------------

    def get_circuit_breaker_state(self) -> dict:
        return self.circuit_breaker.get_state()

    def close(self) -> None:
        self.session.close()
        logger.info("Snowflake session closed")
