"""
Leave workflow orchestration.

Ties the pieces together for one operation on one request:

    load -> (conflict check) -> state machine transition -> record -> save -> dispatch

Architectural role
------------------
The state machine decides, the conflict engine measures staffing, and the
store persists. This module is the only place that sequences them. Side
effects declared by a transition (balance debit, notifications) are
dispatched only after the new state has been saved, so a stale save never
leaves a debited balance behind. A failing action after that point is
logged and reported on the outcome; the committed transition stands.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, replace
from datetime import date

from leave_workflow.config import settings
from leave_workflow.conflict_detection import ConflictCheck, ConflictEngine, ConflictResult
from leave_workflow.exceptions import (
    DataUnavailable,
    GuardViolation,
    InvalidTransition,
    LeaveRequestValidationError,
    ValidationError,
)
from leave_workflow.models import (
    Actor,
    ApprovalLevel,
    ApprovalRecord,
    LeaveRequest,
    LeaveRequestDraft,
    LeaveRequestEvent,
    LeaveRequestState,
    Urgency,
    count_leave_days,
    parse_date,
)
from leave_workflow.observability import trace_span
from leave_workflow.repository import LeaveRepository, LeaveRequestStore
from leave_workflow.state_machine import (
    HAS_NO_CONFLICT,
    Clock,
    LeaveRequestStateMachine,
    TransitionResult,
    TransitionRow,
    WorkflowAction,
    WorkflowContext,
    find_transition,
    first_failed_guard,
    get_available_transitions,
    get_next_approver,
    utcnow,
)

logger = logging.getLogger(__name__)

# Approval tier and outcome recorded by each decision event
DECISIONS: dict[LeaveRequestEvent, tuple[ApprovalLevel, bool]] = {
    LeaveRequestEvent.APPROVE_N1: (ApprovalLevel.CELL_MANAGER, True),
    LeaveRequestEvent.REJECT_N1: (ApprovalLevel.CELL_MANAGER, False),
    LeaveRequestEvent.APPROVE_N2: (ApprovalLevel.SERVICE_CHIEF, True),
    LeaveRequestEvent.REJECT_N2: (ApprovalLevel.SERVICE_CHIEF, False),
    LeaveRequestEvent.APPROVE_HR: (ApprovalLevel.HR, True),
    LeaveRequestEvent.REJECT_HR: (ApprovalLevel.HR, False),
}

APPROVAL_SLOTS: dict[ApprovalLevel, str] = {
    ApprovalLevel.CELL_MANAGER: "cell_manager_approval",
    ApprovalLevel.SERVICE_CHIEF: "service_chief_approval",
    ApprovalLevel.HR: "hr_approval",
}

# Actions that write the decision into the request before it is saved
RECORDING_ACTIONS = frozenset(
    {
        WorkflowAction.LOG_APPROVAL,
        WorkflowAction.LOG_REJECTION,
        WorkflowAction.UPDATE_APPROVAL_METADATA,
    }
)


@dataclass(frozen=True)
class WorkflowOutcome:
    """Saved request after an event, with what the transition declared."""

    request: LeaveRequest
    transition: TransitionResult
    conflict: ConflictResult | None = None
    failed_actions: tuple[WorkflowAction, ...] = ()

    @property
    def dispatched_actions(self) -> tuple[WorkflowAction, ...]:
        return self.transition.declared_actions


class ActionDispatcher:
    """
    Carries out the actions a transition declares.

    ``record()`` is pure: it folds the transition into a new request value
    (state, history, approval slot, submission time). ``dispatch()`` runs the
    external effects and must only be called once the record is saved.
    Notification delivery is out of scope; notifications are logged.
    """

    def __init__(self, store: LeaveRequestStore, conflict_engine: ConflictEngine | None = None):
        self.store = store
        self.conflict_engine = conflict_engine

    def record(
        self,
        request: LeaveRequest,
        result: TransitionResult,
        history: tuple,
        comment: str | None = None,
    ) -> LeaveRequest:
        entry = result.history_entry
        changes: dict = {"state": result.new_state, "history": history}

        if entry.event == LeaveRequestEvent.SUBMIT:
            changes["submitted_at"] = entry.timestamp

        decision = DECISIONS.get(entry.event)
        if decision and RECORDING_ACTIONS.intersection(result.declared_actions):
            level, approved = decision
            changes[APPROVAL_SLOTS[level]] = ApprovalRecord(
                approver_id=entry.actor_id,
                decided_at=entry.timestamp,
                approved=approved,
                comment=comment,
            )
        return replace(request, **changes)

    def dispatch(self, request: LeaveRequest, result: TransitionResult) -> tuple[WorkflowAction, ...]:
        """Run each declared action; returns the ones that failed."""
        failed = []
        for action in result.declared_actions:
            handler = getattr(self, f"_{action.value}", None)
            if handler is None:
                continue
            try:
                handler(request, result)
            except Exception as e:
                logger.error(
                    f"Action {action.value} failed for {request.id} "
                    f"after commit to {result.new_state.value}: {e}",
                    exc_info=True,
                )
                failed.append(action)
        return tuple(failed)

    def _notify_next_approver(self, request: LeaveRequest, result: TransitionResult) -> None:
        role = get_next_approver(result.new_state) or get_next_approver(result.previous_state)
        logger.info(
            f"[NOTIFY] {role.value if role else 'nobody'}: request {request.id} "
            f"is now {result.new_state.value}"
        )

    def _notify_employee(self, request: LeaveRequest, result: TransitionResult) -> None:
        logger.info(
            f"[NOTIFY] {request.requester_id}: request {request.id} is {result.new_state.value}"
        )

    def _notify_hr(self, request: LeaveRequest, result: TransitionResult) -> None:
        logger.info(f"[NOTIFY] hr: request {request.id} awaits final approval")

    def _log_transition(self, request: LeaveRequest, result: TransitionResult) -> None:
        entry = result.history_entry
        logger.info(
            f"[AUDIT] {request.id} {entry.from_state.value} -> {entry.to_state.value} "
            f"event={entry.event.value} actor={entry.actor_id}"
        )

    def _log_approval(self, request: LeaveRequest, result: TransitionResult) -> None:
        entry = result.history_entry
        logger.info(f"[AUDIT] {request.id} approved by {entry.actor_id} ({entry.event.value})")

    def _log_rejection(self, request: LeaveRequest, result: TransitionResult) -> None:
        entry = result.history_entry
        logger.info(
            f"[AUDIT] {request.id} rejected by {entry.actor_id} ({entry.event.value}): "
            f"{entry.comment or 'no comment'}"
        )

    def _adjust_leave_balance(self, request: LeaveRequest, result: TransitionResult) -> None:
        self.store.debit_leave_balance(request.requester_id, request.days)

    def _check_conflict(self, request: LeaveRequest, result: TransitionResult) -> None:
        # Post-approval recheck; the decision is already final
        if self.conflict_engine is None:
            return
        try:
            profile = self.conflict_engine.source.get_profile(request.requester_id)
            conflict = self.conflict_engine.detect_conflicts(
                ConflictCheck(
                    user_id=request.requester_id,
                    department=profile.department,
                    start_date=request.start_date,
                    end_date=request.end_date,
                    exclude_request_id=request.id,
                )
            )
        except DataUnavailable as e:
            logger.warning(f"Post-approval conflict check skipped for {request.id}: {e}")
            return
        if conflict.has_conflict:
            logger.warning(f"Approved request {request.id} now conflicts: {conflict.message}")


class LeaveWorkflowService:
    """
    Application service for leave requests.

    Args:
        repository: the deployment's backend, for both staffing reads and writes
        conflict_engine: defaults to an engine over ``repository``
        clock: timestamp source for history entries
        allow_same_day: whether start == end is a valid range
    """

    def __init__(
        self,
        repository: LeaveRepository,
        conflict_engine: ConflictEngine | None = None,
        clock: Clock | None = None,
        allow_same_day: bool | None = None,
    ):
        self.repository = repository
        self.conflict_engine = conflict_engine or ConflictEngine(repository)
        self.clock = clock or utcnow
        self.allow_same_day = (
            settings.allow_same_day_requests if allow_same_day is None else allow_same_day
        )
        self.dispatcher = ActionDispatcher(repository, self.conflict_engine)

    # --- Queries ------------------------------------------------------------

    def get_request(self, request_id: str) -> LeaveRequest:
        return self.repository.get_leave_request(request_id)

    def list_requests(
        self, requester_id: str | None = None, state: LeaveRequestState | None = None
    ) -> list[LeaveRequest]:
        return self.repository.list_leave_requests(requester_id=requester_id, state=state)

    def check_conflicts(
        self,
        user_id: str,
        start_date: date,
        end_date: date,
        exclude_request_id: str | None = None,
    ) -> ConflictResult:
        """Staffing verdict for a prospective absence of ``user_id``."""
        if start_date > end_date:
            raise ValidationError(["end_date must not be before start_date"])
        profile = self.repository.get_profile(user_id)
        return self.conflict_engine.detect_conflicts(
            ConflictCheck(
                user_id=user_id,
                department=profile.department,
                start_date=start_date,
                end_date=end_date,
                exclude_request_id=exclude_request_id,
            )
        )

    def available_events(self, request_id: str, actor: Actor) -> list[LeaveRequestEvent]:
        """Events ``actor`` could apply right now, with every guard evaluated."""
        request = self.repository.get_leave_request(request_id)
        rows = get_available_transitions(request.state)
        if not rows:
            return []
        context, _ = self._context_for(request, rows)
        context = context.for_actor(actor)
        return [row.event for row in rows if first_failed_guard(row, context) is None]

    # --- Commands -----------------------------------------------------------

    def create_request(
        self,
        requester_id: str | None,
        leave_type: str | None,
        start_date: date | str | None,
        end_date: date | str | None,
        reason: str | None = None,
        urgency: Urgency | str = Urgency.NORMAL,
    ) -> LeaveRequest:
        """Validate input and store a new DRAFT request."""
        errors: list[str] = []
        try:
            draft = LeaveRequestDraft(
                requester_id=requester_id,
                leave_type=leave_type,
                start_date=parse_date(start_date),
                end_date=parse_date(end_date),
                reason=reason,
                urgency=Urgency(urgency),
            )
        except ValueError as e:
            raise LeaveRequestValidationError([str(e)]) from e

        errors.extend(f"{name} is required" for name in draft.missing_fields())
        if errors:
            raise LeaveRequestValidationError(errors)

        if draft.start_date > draft.end_date:
            errors.append("end_date must not be before start_date")
        days = count_leave_days(draft.start_date, draft.end_date)
        if draft.start_date <= draft.end_date and days == 0:
            errors.append("the requested period contains no working days")

        leave_def = self.repository.get_leave_type(draft.leave_type)
        if leave_def is None:
            errors.append(f"Unknown leave type: {draft.leave_type}")
        elif days > leave_def.max_days:
            errors.append(
                f"{draft.leave_type} allows at most {leave_def.max_days} day(s), {days} requested"
            )
        if errors:
            raise LeaveRequestValidationError(errors)

        # Unknown requesters fail here, not at submission
        self.repository.get_profile(draft.requester_id)

        self._reject_own_overlaps(draft.requester_id, draft.start_date, draft.end_date)

        request = LeaveRequest(
            id=f"LR-{uuid.uuid4().hex[:8].upper()}",
            requester_id=draft.requester_id,
            leave_type=draft.leave_type,
            start_date=draft.start_date,
            end_date=draft.end_date,
            days=days,
            reason=draft.reason,
            urgency=draft.urgency,
            created_at=self.clock(),
        )
        stored = self.repository.add_leave_request(request)
        logger.info(
            f"Created leave request {stored.id} for {stored.requester_id}: "
            f"{stored.leave_type} {stored.start_date} to {stored.end_date} ({days} day(s))"
        )
        return stored

    def submit(self, request_id: str, actor: Actor, comment: str | None = None) -> WorkflowOutcome:
        return self.apply_event(request_id, LeaveRequestEvent.SUBMIT, actor, comment)

    def cancel(self, request_id: str, actor: Actor, comment: str | None = None) -> WorkflowOutcome:
        return self.apply_event(request_id, LeaveRequestEvent.CANCEL, actor, comment)

    def apply_event(
        self,
        request_id: str,
        event: LeaveRequestEvent | str,
        actor: Actor,
        comment: str | None = None,
    ) -> WorkflowOutcome:
        """
        Apply one workflow event and persist the result.

        Raises:
            ValidationError: unknown event name, or a SUBMIT overlapping another live
                request of the same employee
            InvalidTransition: no transition for the event from the current state
            GuardViolation: a guard failed (state and history unchanged)
            DataUnavailable: conflict data unreadable under the ``raise`` policy
            ConcurrentModification: the request changed since it was loaded
        """
        event = self._parse_event(event)
        with trace_span("apply_event", request=request_id, event=event.value, actor=actor.user_id):
            request = self.repository.get_leave_request(request_id)
            row = find_transition(request.state, event)
            if row is None:
                logger.warning(
                    f"Rejected {event.value} on {request_id}: no transition from {request.state.value}"
                )
                raise InvalidTransition(request.state, event)

            if event == LeaveRequestEvent.SUBMIT:
                self._reject_own_overlaps(
                    request.requester_id, request.start_date, request.end_date, request.id
                )

            context, conflict = self._context_for(request, [row])
            machine = LeaveRequestStateMachine.for_request(request, context, clock=self.clock)
            try:
                result = machine.transition(event, actor, comment)
            except GuardViolation as e:
                if e.guard_name == HAS_NO_CONFLICT.name and conflict is not None:
                    raise GuardViolation(e.guard_name, e.state, e.event, conflict.message) from e
                raise

            updated = self.dispatcher.record(request, result, machine.history, comment)
            saved = self.repository.save_leave_request(updated)
            failed = self.dispatcher.dispatch(saved, result)
            return WorkflowOutcome(
                request=saved, transition=result, conflict=conflict, failed_actions=failed
            )

    # --- Internals ----------------------------------------------------------

    def _reject_own_overlaps(
        self,
        requester_id: str,
        start_date: date,
        end_date: date,
        exclude_id: str | None = None,
    ) -> None:
        """An employee may not hold two live (not rejected or cancelled) requests for the same days."""
        clashes = [
            r
            for r in self.repository.list_leave_requests(requester_id=requester_id)
            if r.id != exclude_id
            and r.state not in (LeaveRequestState.REJECTED, LeaveRequestState.CANCELLED)
            and r.overlaps(start_date, end_date)
        ]
        if clashes:
            raise LeaveRequestValidationError(
                [
                    f"Overlaps existing request {r.id} "
                    f"({r.start_date} to {r.end_date}, {r.state.value})"
                    for r in clashes
                ]
            )

    @staticmethod
    def _parse_event(event: LeaveRequestEvent | str) -> LeaveRequestEvent:
        try:
            return LeaveRequestEvent(event)
        except ValueError as e:
            raise ValidationError([f"Unknown event: {event}"]) from e

    def _conflict_for(self, request: LeaveRequest) -> ConflictResult:
        return self.check_conflicts(
            request.requester_id,
            request.start_date,
            request.end_date,
            exclude_request_id=request.id,
        )

    def _context_for(
        self, request: LeaveRequest, rows: list[TransitionRow]
    ) -> tuple[WorkflowContext, ConflictResult | None]:
        """Guard context for the given rows; the conflict check only runs when a row needs it."""
        needs_conflict = any(HAS_NO_CONFLICT in row.guards for row in rows)
        conflict = self._conflict_for(request) if needs_conflict else None
        context = WorkflowContext.for_request(
            request,
            current_balance=self.repository.get_current_leave_balance(request.requester_id),
            has_conflict=bool(conflict and conflict.has_conflict),
            allow_same_day=self.allow_same_day,
        )
        return context, conflict
