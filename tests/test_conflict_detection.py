"""
Tests for staffing conflict detection.
"""

from datetime import date
from unittest.mock import Mock

import pytest

from leave_workflow.conflict_detection import (
    ConflictCheck,
    ConflictEngine,
    ConflictType,
    calculate_effective_absentees,
    evaluate_conflict_rules,
    rule_applies,
    select_most_restrictive_rule,
)
from leave_workflow.exceptions import DataUnavailable
from leave_workflow.models import ConflictRule, LeaveRequestState, ServiceSubstitution
from leave_workflow.repository import InMemoryRepository

from conftest import make_leave, make_staff

NOV_2 = date(2026, 11, 2)
NOV_6 = date(2026, 11, 6)


def rule(rule_id="R1", min_required=1, max_concurrent=None, start=None, end=None, active=True):
    return ConflictRule(
        id=rule_id,
        department="Ops",
        min_employees_required=min_required,
        period_start=start,
        period_end=end,
        max_concurrent_leaves=max_concurrent,
        is_active=active,
    )


def substitution(original, substitute, start=NOV_2, end=NOV_6):
    return ServiceSubstitution(
        id=f"S-{original}",
        original_user_id=original,
        substitute_user_id=substitute,
        department="Ops",
        start_date=start,
        end_date=end,
    )


def ops_check(user_id="U10", start=NOV_2, end=NOV_6, exclude=None):
    return ConflictCheck(
        user_id=user_id,
        department="Ops",
        start_date=start,
        end_date=end,
        exclude_request_id=exclude,
    )


class TestPureEvaluation:
    """Test the arithmetic without any data source."""

    def test_substitution_netting(self):
        """10 staff, 3 away, 1 covered: 7 present, below a floor of 8."""
        requests = [
            make_leave("L1", "U01", NOV_2, NOV_6),
            make_leave("L2", "U02", NOV_2, NOV_6),
            make_leave("L3", "U03", NOV_2, NOV_6, LeaveRequestState.PENDING_HR),
        ]
        result = evaluate_conflict_rules(
            [rule(min_required=8)], requests, [substitution("U01", "U04")], total_employees=10
        )

        assert result.has_conflict
        assert result.conflict_type == ConflictType.MIN_EMPLOYEES
        assert result.details.employees_present == 7
        assert result.details.current_absences == 3
        assert result.details.min_required == 8
        assert result.details.total_employees == 10
        assert result.details.substitutions_available
        assert set(result.details.affected_employees) == {"U01", "U02", "U03"}

    def test_no_rule_means_no_conflict(self):
        requests = [make_leave(f"L{i}", f"U{i:02d}", NOV_2, NOV_6) for i in range(1, 10)]
        result = evaluate_conflict_rules([], requests, [], total_employees=10)
        assert not result.has_conflict
        assert result.details is None

    def test_last_available_employee(self):
        """5 staff, 4 already away, floor of 2: nobody would be left."""
        requests = [
            make_leave("L1", "U01", NOV_2, NOV_6),
            make_leave("L2", "U02", NOV_2, NOV_6, LeaveRequestState.PENDING_CELL_MANAGER),
            make_leave("L3", "U03", NOV_2, NOV_6, LeaveRequestState.PENDING_SERVICE_CHIEF),
            make_leave("L4", "U04", NOV_2, NOV_6),
        ]
        result = evaluate_conflict_rules([rule(min_required=2)], requests, [], total_employees=5)

        assert result.conflict_type == ConflictType.MIN_EMPLOYEES
        assert result.details.employees_present == 0
        assert not result.details.substitutions_available

    def test_most_restrictive_rule_is_used(self):
        """Floors of 5 and 8 with 7 present: only the 8 produces a conflict."""
        requests = [make_leave("L1", "U01", NOV_2, NOV_6), make_leave("L2", "U02", NOV_2, NOV_6)]
        for rules in ([rule("A", 5), rule("B", 8)], [rule("B", 8), rule("A", 5)]):
            result = evaluate_conflict_rules(rules, requests, [], total_employees=10)
            assert result.has_conflict
            assert result.details.min_required == 8

    def test_tie_keeps_first_rule(self):
        first = rule("A", min_required=5)
        second = rule("B", min_required=5, max_concurrent=1)
        assert select_most_restrictive_rule([first, second]) is first

        result = evaluate_conflict_rules(
            [first, second], [make_leave("L1", "U01", NOV_2, NOV_6)], [], total_employees=10
        )
        assert not result.has_conflict
        assert result.details.max_allowed is None

    def test_max_concurrent_leaves(self):
        requests = [make_leave("L1", "U01", NOV_2, NOV_6), make_leave("L2", "U02", NOV_2, NOV_6)]
        result = evaluate_conflict_rules(
            [rule(min_required=1, max_concurrent=2)], requests, [], total_employees=10
        )

        assert result.conflict_type == ConflictType.MAX_CONCURRENT
        assert result.details.current_absences == 3
        assert result.details.max_allowed == 2

    def test_min_staffing_is_checked_before_max_concurrent(self):
        requests = [make_leave("L1", "U01", NOV_2, NOV_6), make_leave("L2", "U02", NOV_2, NOV_6)]
        result = evaluate_conflict_rules(
            [rule(min_required=3, max_concurrent=1)], requests, [], total_employees=5
        )
        assert result.conflict_type == ConflictType.MIN_EMPLOYEES

    def test_employee_with_two_requests_counts_once(self):
        requests = [
            make_leave("L1", "U01", NOV_2, date(2026, 11, 3)),
            make_leave("L2", "U01", date(2026, 11, 5), NOV_6),
        ]
        assert calculate_effective_absentees(requests, []) == 1

    def test_substitution_for_someone_not_absent_changes_nothing(self):
        requests = [make_leave("L1", "U01", NOV_2, NOV_6)]
        assert calculate_effective_absentees(requests, [substitution("U09", "U08")]) == 1

    def test_no_conflict_reports_details(self):
        result = evaluate_conflict_rules([rule(min_required=1)], [], [], total_employees=10)
        assert not result.has_conflict
        assert result.message == "No conflict detected"
        assert result.details.employees_present == 9
        assert result.details.current_absences == 1


class TestRuleApplies:
    """Test rule filtering by department, activity and period."""

    def test_open_bounds_always_apply(self):
        assert rule_applies(rule(), "Ops", NOV_2, NOV_6)

    def test_other_department(self):
        assert not rule_applies(rule(), "Finance", NOV_2, NOV_6)

    def test_inactive_rule(self):
        assert not rule_applies(rule(active=False), "Ops", NOV_2, NOV_6)

    def test_period_must_overlap(self):
        december = rule(start=date(2026, 12, 20), end=date(2026, 12, 31))
        assert not rule_applies(december, "Ops", NOV_2, NOV_6)
        assert rule_applies(december, "Ops", date(2026, 12, 31), date(2027, 1, 2))

    def test_half_open_period(self):
        from_december = rule(start=date(2026, 12, 1))
        assert not rule_applies(from_december, "Ops", NOV_2, NOV_6)
        assert rule_applies(from_december, "Ops", date(2027, 3, 1), date(2027, 3, 2))


class TestConflictEngine:
    """Test the engine against an in-memory data source."""

    @pytest.fixture
    def ops_repository(self):
        return InMemoryRepository(
            employees=make_staff("Ops", 10) + make_staff("Sales", 3, prefix="X"),
            leave_requests=[
                make_leave("L1", "U01", NOV_2, NOV_6),
                make_leave("L2", "U02", NOV_2, NOV_6, LeaveRequestState.PENDING_CELL_MANAGER),
                make_leave("L3", "U03", date(2026, 11, 5), date(2026, 11, 9)),
                make_leave("L4", "U04", NOV_2, NOV_6, LeaveRequestState.REJECTED),
                make_leave("L5", "U05", NOV_2, NOV_6, LeaveRequestState.CANCELLED),
                make_leave("L6", "U06", NOV_2, NOV_6, LeaveRequestState.DRAFT),
                make_leave("L7", "U07", date(2026, 11, 9), date(2026, 11, 13)),
                make_leave("L8", "X01", NOV_2, NOV_6),
            ],
            conflict_rules=[rule("R1", min_required=8)],
            substitutions=[substitution("U01", "U09")],
        )

    def test_netting_through_the_engine(self, ops_repository):
        """Rejected, cancelled, draft, non-overlapping and other-department rows are ignored."""
        result = ConflictEngine(ops_repository).detect_conflicts(ops_check())

        assert result.has_conflict
        assert result.details.employees_present == 7
        assert set(result.details.affected_employees) == {"U01", "U02", "U03"}

    def test_excluded_request_is_not_counted(self, ops_repository):
        result = ConflictEngine(ops_repository).detect_conflicts(ops_check(exclude="L2"))

        assert not result.has_conflict
        assert result.details.employees_present == 8

    def test_no_rules_for_department(self, ops_repository):
        check = ConflictCheck("X02", "Sales", NOV_2, NOV_6)
        result = ConflictEngine(ops_repository).detect_conflicts(check)
        assert not result.has_conflict
        assert not result.degraded

    def test_deactivated_rule_no_longer_applies(self, ops_repository):
        ops_repository.update_conflict_rule("R1", is_active=False)
        result = ConflictEngine(ops_repository).detect_conflicts(ops_check())
        assert not result.has_conflict

    def test_demo_finance_request_has_no_conflict(self, repository):
        """E002 is away but covered; E003 is pending: 5 of 7 remain against a floor of 3."""
        check = ConflictCheck("E001", "Finance", date(2026, 11, 4), date(2026, 11, 5))
        result = ConflictEngine(repository).detect_conflicts(check)

        assert not result.has_conflict
        assert result.details.employees_present == 5
        assert result.details.substitutions_available


class TestFailurePolicy:
    """Test what happens when the data source cannot be read."""

    @pytest.fixture
    def broken_source(self):
        source = Mock()
        source.get_active_conflict_rules.side_effect = DataUnavailable(
            "get_active_conflict_rules", "warehouse timeout"
        )
        return source

    def test_raise_policy_propagates(self, broken_source):
        engine = ConflictEngine(broken_source, on_error="raise")
        with pytest.raises(DataUnavailable) as exc_info:
            engine.detect_conflicts(ops_check())
        assert exc_info.value.operation == "get_active_conflict_rules"

    def test_allow_policy_fails_open(self, broken_source):
        result = ConflictEngine(broken_source, on_error="allow").detect_conflicts(ops_check())
        assert not result.has_conflict
        assert result.degraded

    def test_deny_policy_fails_closed(self, broken_source):
        result = ConflictEngine(broken_source, on_error="deny").detect_conflicts(ops_check())
        assert result.has_conflict
        assert result.conflict_type == ConflictType.DATA_UNAVAILABLE
        assert result.degraded

    def test_default_policy_comes_from_settings(self, broken_source):
        assert ConflictEngine(broken_source).on_error == "raise"

    def test_other_errors_are_not_swallowed(self):
        source = Mock()
        source.get_active_conflict_rules.side_effect = RuntimeError("bug")
        with pytest.raises(RuntimeError):
            ConflictEngine(source, on_error="allow").detect_conflicts(ops_check())
