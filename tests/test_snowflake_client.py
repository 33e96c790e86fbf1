"""
Tests for the Snowflake leave repository.
Uses a mocked Snowpark session; no warehouse connection is made.
"""

from datetime import date, datetime, timezone
from unittest.mock import MagicMock

import pandas as pd
import pytest
from snowflake.snowpark.exceptions import SnowparkSQLException

from leave_workflow.circuit_breaker import CircuitBreaker, CircuitState
from leave_workflow.exceptions import (
    ConcurrentModification,
    ConflictRuleNotFound,
    DataUnavailable,
    EmployeeNotFound,
    SubstitutionNotFound,
)
from leave_workflow.models import HistoryEntry, LeaveRequestEvent, LeaveRequestState, UserRole
from leave_workflow.repository import LeaveRepository, WorkflowDataSource
from leave_workflow.snowflake_client import (
    CONFLICT_RULES_TABLE,
    EMPLOYEES_TABLE,
    LEAVE_REQUEST_HISTORY_TABLE,
    LEAVE_REQUESTS_TABLE,
    SUBSTITUTIONS_TABLE,
    SnowflakeRepository,
)

from conftest import make_leave

REQUEST_ROW = {
    "ID": "LR9",
    "USER_ID": "E002",
    "TYPE": "Annual Leave",
    "START_DATE": "2026-11-02",
    "END_DATE": "2026-11-04",
    "STATUS": "pending_cell_manager",
    "URGENCY": "normal",
    "VERSION": 3,
}


@pytest.fixture
def frame():
    """A DataFrame stand-in whose query methods chain back to itself."""
    df = MagicMock()
    df.filter.return_value = df
    df.select.return_value = df
    return df


@pytest.fixture
def mock_snowflake_session(frame):
    session = MagicMock()
    session.table.return_value = frame
    return session


@pytest.fixture
def warehouse(mock_snowflake_session):
    breaker = CircuitBreaker(failure_threshold=2, timeout=60, name="test-warehouse")
    return SnowflakeRepository(mock_snowflake_session, circuit_breaker=breaker)


class TestSnowflakeRepository:
    """Test staffing reads and error translation."""

    def test_implements_full_backend(self, warehouse):
        assert isinstance(warehouse, WorkflowDataSource)
        assert isinstance(warehouse, LeaveRepository)

    def test_profile_with_uppercase_columns(self, warehouse, frame, mock_snowflake_session):
        frame.to_pandas.return_value = pd.DataFrame(
            [
                {
                    "USER_ID": "E001",
                    "FULL_NAME": "Alice Martin",
                    "ROLE": "employee",
                    "DEPARTMENT": "Finance",
                    "CELL": None,
                    "LEAVE_BALANCE": 25,
                }
            ]
        )
        profile = warehouse.get_profile("E001")

        assert profile.department == "Finance"
        assert profile.role == UserRole.EMPLOYEE
        assert warehouse.get_current_leave_balance("E001") == 25
        mock_snowflake_session.table.assert_called_with("employees")

    def test_missing_profile(self, warehouse, frame):
        frame.to_pandas.return_value = pd.DataFrame([])
        with pytest.raises(EmployeeNotFound):
            warehouse.get_profile("Z999")

    def test_rules(self, warehouse, frame):
        frame.to_pandas.return_value = pd.DataFrame(
            [
                {
                    "ID": "R1",
                    "DEPARTMENT": "Finance",
                    "PERIOD_START": None,
                    "PERIOD_END": None,
                    "MIN_EMPLOYEES_REQUIRED": 3,
                    "MAX_CONCURRENT_LEAVES": None,
                    "IS_ACTIVE": True,
                }
            ]
        )
        rules = warehouse.get_active_conflict_rules("Finance", date(2026, 11, 2), date(2026, 11, 6))

        assert len(rules) == 1
        assert rules[0].min_employees_required == 3
        assert rules[0].max_concurrent_leaves is None

    def test_overlapping_requests(self, warehouse, frame):
        members = pd.DataFrame([{"USER_ID": "E001"}, {"USER_ID": "E002"}])
        requests = pd.DataFrame(
            [
                {
                    "ID": "LR9",
                    "USER_ID": "E002",
                    "TYPE": "Annual Leave",
                    "START_DATE": "2026-11-02",
                    "END_DATE": "2026-11-04",
                    "STATUS": "pending",
                    "URGENCY": "normal",
                }
            ]
        )
        frame.to_pandas.side_effect = [members, requests]

        result = warehouse.get_overlapping_requests("Finance", date(2026, 11, 2), date(2026, 11, 6))

        assert [r.id for r in result] == ["LR9"]
        assert result[0].state == LeaveRequestState.PENDING_CELL_MANAGER
        assert result[0].days == 3

    def test_overlapping_requests_for_empty_department(self, warehouse, frame):
        frame.to_pandas.return_value = pd.DataFrame([])
        assert warehouse.get_overlapping_requests("Legal", date(2026, 11, 2), date(2026, 11, 6)) == []
        assert frame.to_pandas.call_count == 1

    def test_headcount(self, warehouse, frame):
        frame.to_pandas.return_value = pd.DataFrame([{"USER_ID": f"E{i}"} for i in range(7)])
        assert warehouse.get_department_headcount("Finance") == 7

    def test_sql_error_becomes_data_unavailable(self, warehouse, mock_snowflake_session):
        mock_snowflake_session.table.side_effect = SnowparkSQLException("warehouse suspended")

        with pytest.raises(DataUnavailable) as exc_info:
            warehouse.get_department_headcount("Finance")

        assert exc_info.value.operation == "get_department_headcount"

    def test_open_breaker_becomes_data_unavailable(self, warehouse, mock_snowflake_session):
        mock_snowflake_session.table.side_effect = SnowparkSQLException("warehouse suspended")
        for _ in range(2):
            with pytest.raises(DataUnavailable):
                warehouse.get_department_headcount("Finance")
        assert warehouse.circuit_breaker.state == CircuitState.OPEN

        calls = mock_snowflake_session.table.call_count
        with pytest.raises(DataUnavailable, match="open"):
            warehouse.get_department_headcount("Finance")
        assert mock_snowflake_session.table.call_count == calls

    def test_circuit_breaker_state(self, warehouse):
        state = warehouse.get_circuit_breaker_state()
        assert state["name"] == "test-warehouse"
        assert state["state"] == "closed"

    def test_close(self, warehouse, mock_snowflake_session):
        warehouse.close()
        mock_snowflake_session.close.assert_called_once()


class TestSnowflakeWrites:
    """Test the write side: requests, balances and administration."""

    def test_add_request_appends_row(self, warehouse, frame, mock_snowflake_session):
        frame.to_pandas.return_value = pd.DataFrame([])
        request = make_leave("N1", "E001", date(2026, 11, 16), date(2026, 11, 20), LeaveRequestState.DRAFT)

        stored = warehouse.add_leave_request(request)

        assert stored.version == 1
        values, = mock_snowflake_session.create_dataframe.call_args.args
        assert values[0][0] == "N1"
        writer = mock_snowflake_session.create_dataframe.return_value.write
        writer.save_as_table.assert_called_once_with(
            LEAVE_REQUESTS_TABLE, mode="append", column_order="name"
        )

    def test_get_request_with_history(self, warehouse, frame):
        history = pd.DataFrame(
            [
                {
                    "REQUEST_ID": "LR9",
                    "SEQ": 0,
                    "EVENT": "SUBMIT",
                    "TIMESTAMP": datetime(2026, 10, 18, 9, 0, tzinfo=timezone.utc),
                    "ACTOR_ID": "E002",
                    "FROM_STATE": "draft",
                    "TO_STATE": "pending_cell_manager",
                    "COMMENT": None,
                }
            ]
        )
        frame.to_pandas.side_effect = [pd.DataFrame([REQUEST_ROW]), history]

        request = warehouse.get_leave_request("LR9")

        assert request.version == 3
        assert [h.event for h in request.history] == [LeaveRequestEvent.SUBMIT]

    def test_save_updates_on_loaded_version(self, warehouse, frame, mock_snowflake_session):
        frame.update.return_value = MagicMock(rows_updated=1)
        frame.to_pandas.return_value = pd.DataFrame([])
        entry = HistoryEntry(
            event=LeaveRequestEvent.SUBMIT,
            timestamp=datetime(2026, 10, 18, 9, 0, tzinfo=timezone.utc),
            actor_id="E001",
            from_state=LeaveRequestState.DRAFT,
            to_state=LeaveRequestState.PENDING_CELL_MANAGER,
        )
        request = make_leave("N1", "E001", date(2026, 11, 16), date(2026, 11, 20))
        request.version = 1
        request.history = (entry,)

        saved = warehouse.save_leave_request(request)

        assert saved.version == 2
        assignments = frame.update.call_args.args[0]
        assert assignments["version"] == 2
        assert "id" not in assignments
        writer = mock_snowflake_session.create_dataframe.return_value.write
        writer.save_as_table.assert_called_once_with(
            LEAVE_REQUEST_HISTORY_TABLE, mode="append", column_order="name"
        )

    def test_stale_save(self, warehouse, frame):
        frame.update.return_value = MagicMock(rows_updated=0)
        frame.to_pandas.return_value = pd.DataFrame([REQUEST_ROW])
        request = make_leave("LR9", "E002", date(2026, 11, 2), date(2026, 11, 4))
        request.version = 2

        with pytest.raises(ConcurrentModification) as exc_info:
            warehouse.save_leave_request(request)

        assert exc_info.value.expected_version == 2
        assert exc_info.value.actual_version == 3

    def test_debit_balance(self, warehouse, frame, mock_snowflake_session):
        frame.update.return_value = MagicMock(rows_updated=1)
        frame.to_pandas.return_value = pd.DataFrame(
            [{"USER_ID": "E001", "ROLE": "employee", "DEPARTMENT": "Finance", "LEAVE_BALANCE": 20}]
        )

        assert warehouse.debit_leave_balance("E001", 5) == 20
        mock_snowflake_session.table.assert_any_call(EMPLOYEES_TABLE)
        assert "leave_balance" in frame.update.call_args.args[0]

    def test_debit_unknown_employee(self, warehouse, frame):
        frame.update.return_value = MagicMock(rows_updated=0)
        with pytest.raises(EmployeeNotFound):
            warehouse.debit_leave_balance("Z999", 5)

    def test_create_rule(self, warehouse, mock_snowflake_session):
        rule = warehouse.create_conflict_rule("IT", 2, max_concurrent_leaves=1)

        assert rule.id.startswith("R-")
        writer = mock_snowflake_session.create_dataframe.return_value.write
        writer.save_as_table.assert_called_once_with(
            CONFLICT_RULES_TABLE, mode="append", column_order="name"
        )

    def test_update_unknown_rule(self, warehouse, frame):
        frame.to_pandas.return_value = pd.DataFrame([])
        with pytest.raises(ConflictRuleNotFound):
            warehouse.update_conflict_rule("R999", is_active=False)

    def test_create_substitution_writes_row(self, warehouse, frame, mock_snowflake_session):
        frame.to_pandas.return_value = pd.DataFrame(
            [{"USER_ID": "E001", "ROLE": "employee", "DEPARTMENT": "Finance", "LEAVE_BALANCE": 20}]
        )

        warehouse.create_substitution("E001", "E005", "Finance", date(2026, 12, 1), date(2026, 12, 5))

        writer = mock_snowflake_session.create_dataframe.return_value.write
        writer.save_as_table.assert_called_once_with(
            SUBSTITUTIONS_TABLE, mode="append", column_order="name"
        )

    def test_delete_unknown_substitution(self, warehouse, frame):
        frame.delete.return_value = MagicMock(rows_deleted=0)
        with pytest.raises(SubstitutionNotFound):
            warehouse.delete_substitution("SUB999")

    def test_write_error_becomes_data_unavailable(self, warehouse, frame):
        frame.update.side_effect = SnowparkSQLException("insufficient privileges")
        with pytest.raises(DataUnavailable) as exc_info:
            warehouse.debit_leave_balance("E001", 1)
        assert exc_info.value.operation == "debit_leave_balance"
