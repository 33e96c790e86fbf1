"""
Pytest configuration and fixtures.
Shared repositories, actors and clients for the workflow tests.
"""

from datetime import date, datetime, timezone

import pytest
from fastapi.testclient import TestClient

from leave_workflow.conflict_detection import ConflictEngine
from leave_workflow.models import (
    Actor,
    EmployeeProfile,
    LeaveRequest,
    LeaveRequestState,
    UserRole,
    count_leave_days,
)
from leave_workflow.repository import InMemoryRepository
from leave_workflow.service import LeaveWorkflowService
from leave_workflow.state_machine import WorkflowContext

FIXED_NOW = datetime(2026, 10, 18, 9, 0, tzinfo=timezone.utc)


def make_leave(
    request_id: str,
    user_id: str,
    start: date,
    end: date,
    state: LeaveRequestState = LeaveRequestState.APPROVED,
) -> LeaveRequest:
    """Build a leave request row for staffing tests."""
    return LeaveRequest(
        id=request_id,
        requester_id=user_id,
        leave_type="Annual Leave",
        start_date=start,
        end_date=end,
        days=count_leave_days(start, end),
        state=state,
    )


def make_staff(department: str, count: int, prefix: str = "U") -> list[EmployeeProfile]:
    return [
        EmployeeProfile(
            user_id=f"{prefix}{i:02d}",
            full_name=f"Staff {i}",
            role=UserRole.EMPLOYEE,
            department=department,
            leave_balance=20,
        )
        for i in range(1, count + 1)
    ]


@pytest.fixture
def clock():
    """Deterministic timestamp source."""
    return lambda: FIXED_NOW


@pytest.fixture
def repository():
    """Fresh demo repository per test."""
    return InMemoryRepository.from_demo_data()


@pytest.fixture
def service(repository, clock):
    """Workflow service over the demo repository, failing loudly on data errors."""
    return LeaveWorkflowService(
        repository,
        conflict_engine=ConflictEngine(repository, on_error="raise"),
        clock=clock,
        allow_same_day=True,
    )


@pytest.fixture
def employee():
    return Actor("E001", UserRole.EMPLOYEE)


@pytest.fixture
def cell_manager():
    return Actor("M001", UserRole.CELL_MANAGER)


@pytest.fixture
def service_chief():
    return Actor("S001", UserRole.SERVICE_CHIEF)


@pytest.fixture
def hr():
    return Actor("H001", UserRole.HR)


@pytest.fixture
def workflow_context():
    """3-day request starting in 10 days, balance 10, no conflict."""
    return WorkflowContext(
        current_balance=10,
        days_requested=3,
        start_date=date(2026, 10, 28),
        end_date=date(2026, 10, 30),
    )


@pytest.fixture
def test_client(repository, service):
    """FastAPI test client wired to the per-test repository and service."""
    from leave_workflow.main import app, get_repository, get_service

    app.dependency_overrides[get_repository] = lambda: repository
    app.dependency_overrides[get_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()
