import threading
import pytest
from datetime import date, timedelta
from decimal import Decimal

from leave_engine.core.exceptions import (
    InsufficientBalanceError,
    InvalidStateTransitionError,
    NotAuthorizedError,
    NotFoundError,
    OperationCancelledError,
    OverlappingRequestError,
    ValidationError,
)
from leave_engine.models.leave_request import LeaveAuditLog, LeaveRequest, LeaveStatus
from leave_engine.services.audit import AuditService
from leave_engine.services.leave_balance_ledger import LeaveBalanceLedger
from leave_engine.services.leave_request_service import LeaveRequestStore, compute_total_days, ranges_overlap


@pytest.fixture
def store(db_session, today):
    return LeaveRequestStore(db_session, today=today)


def _days(today, offset, length=1):
    start = today + timedelta(days=offset)
    return start, start + timedelta(days=length - 1)


def test_compute_total_days():
    """Inclusive span minus half days, never below half a day."""
    d = date(2031, 4, 7)
    assert compute_total_days(d, d + timedelta(days=4)) == Decimal("5.0")
    assert compute_total_days(d, d + timedelta(days=4), start_half_day=True) == Decimal("4.5")
    assert compute_total_days(d, d + timedelta(days=1), True, True) == Decimal("1.0")
    assert compute_total_days(d, d, start_half_day=True) == Decimal("0.5")


def test_single_day_with_both_half_days_is_half_day():
    """Both half-day flags on a single day clamp to 0.5, never zero."""
    d = date(2031, 4, 7)
    assert compute_total_days(d, d, True, True) == Decimal("0.5")


def test_ranges_overlap():
    d = date(2031, 4, 7)
    assert ranges_overlap(d, d + timedelta(days=2), d + timedelta(days=2), d + timedelta(days=5))
    assert not ranges_overlap(d, d + timedelta(days=2), d + timedelta(days=3), d + timedelta(days=5))


def test_create_pending_request(store, employee, manager, leave_types, today):
    """A new request is pending, assigned to the manager and audited."""
    start, end = _days(today, 14, 5)
    request = store.create(employee.id, leave_types["annual"].id, start, end, reason="Family trip",
                           contact_during_leave="+62 812 0000 1111")

    assert request.status == LeaveStatus.PENDING.value
    assert request.total_days == Decimal("5.0")
    assert request.approver_id == manager.id
    assert request.contact_during_leave == "+62 812 0000 1111"
    assert request._contact_during_leave != "+62 812 0000 1111"

    history = AuditService(store.db).history(request.id)
    assert [h.action for h in history] == ["create"]


def test_create_sanitizes_free_text(store, employee, leave_types, today):
    start, end = _days(today, 3)
    request = store.create(employee.id, leave_types["annual"].id, start, end,
                           reason="<script>alert(1)</script>Doctor <b>visit</b>")
    assert "<script>" not in request.reason
    assert "&lt;b&gt;" in request.reason


def test_create_validations(store, employee, outsider, leave_types, today):
    annual = leave_types["annual"].id
    start, end = _days(today, 10, 2)

    with pytest.raises(ValidationError):
        store.create(employee.id, annual, end, start)
    with pytest.raises(ValidationError):
        store.create(employee.id, annual, today - timedelta(days=2), today)
    with pytest.raises(NotFoundError):
        store.create(9999, annual, start, end)
    with pytest.raises(NotFoundError):
        store.create(employee.id, 9999, start, end)
    with pytest.raises(ValidationError):
        store.create(employee.id, annual, start, end, approver_id=employee.id)


def test_emergency_request_may_start_in_the_past(store, employee, leave_types, today):
    request = store.create(employee.id, leave_types["sick"].id, today - timedelta(days=1), today, is_emergency=True)
    assert request.status == LeaveStatus.PENDING.value


def test_inactive_employee_cannot_request(store, db_session, employee, leave_types, today):
    employee.is_active = False
    db_session.commit()
    start, end = _days(today, 5)
    with pytest.raises(ValidationError):
        store.create(employee.id, leave_types["annual"].id, start, end)


def test_overlapping_request_rejected(store, employee, leave_types, today):
    """Active requests block overlapping dates; a rejected one does not."""
    start, end = _days(today, 20, 3)
    first = store.create(employee.id, leave_types["annual"].id, start, end)

    with pytest.raises(OverlappingRequestError) as exc:
        store.create(employee.id, leave_types["sick"].id, end, end + timedelta(days=2))
    assert exc.value.details["conflicting_request_id"] == first.id


def test_same_dates_allowed_for_other_employee(store, employee, peer, leave_types, today):
    """Overlap is checked per employee; a teammate may book the same dates."""
    start, end = _days(today, 20, 3)
    store.create(employee.id, leave_types["annual"].id, start, end)

    other = store.create(peer.id, leave_types["annual"].id, start, end)
    assert other.employee_id == peer.id
    assert other.status == LeaveStatus.PENDING.value


def test_rejected_request_frees_dates(store, employee, manager, leave_types, actor_for, today):
    start, end = _days(today, 20, 3)
    first = store.create(employee.id, leave_types["annual"].id, start, end)
    store.reject(first.id, actor_for(manager, "MANAGER"), "Team offsite that week")

    second = store.create(employee.id, leave_types["annual"].id, start, end)
    assert second.id != first.id


def test_balance_scenario(store, employee, manager, leave_types, actor_for, today):
    """Entitlement 12: a 5-day approval leaves 7, so an 8-day request cannot be created."""
    annual = leave_types["annual"]
    start, end = _days(today, 7, 5)
    request = store.create(employee.id, annual.id, start, end)
    assert request.total_days == Decimal("5.0")

    approved = store.approve(request.id, actor_for(manager, "MANAGER"), comment="Enjoy")
    assert approved.status == LeaveStatus.APPROVED.value
    assert approved.approver_id == manager.id
    assert approved.approved_at is not None
    assert store.ledger.remaining(employee.id, annual.id, start.year) == Decimal("7.0")

    start, end = _days(today, 30, 8)
    with pytest.raises(InsufficientBalanceError):
        store.create(employee.id, annual.id, start, end)


def test_pending_requests_do_not_reserve_balance(store, employee, leave_types, today):
    annual = leave_types["annual"]
    store.create(employee.id, annual.id, *_days(today, 7, 5))
    store.create(employee.id, annual.id, *_days(today, 20, 5))
    assert store.ledger.remaining(employee.id, annual.id, today.year) == Decimal("12.0")
    assert store.ledger.pending_days(employee.id, annual.id, today.year) == Decimal("10.0")


def test_approval_revalidates_balance(store, db_session, employee, manager, leave_types, actor_for, today):
    """When two pending requests no longer both fit, the second approval fails and stays pending."""
    annual = leave_types["annual"]
    first = store.create(employee.id, annual.id, *_days(today, 7, 8))
    second = store.create(employee.id, annual.id, *_days(today, 30, 8))
    approver = actor_for(manager, "MANAGER")

    store.approve(first.id, approver)
    with pytest.raises(InsufficientBalanceError):
        store.approve(second.id, approver)

    db_session.expire_all()
    assert store.get(second.id).status == LeaveStatus.PENDING.value
    assert store.ledger.remaining(employee.id, annual.id, today.year) == Decimal("4.0")


def test_reject_requires_reason(store, employee, manager, leave_types, actor_for, today):
    request = store.create(employee.id, leave_types["annual"].id, *_days(today, 7))
    for reason in (None, "", "   "):
        with pytest.raises(ValidationError):
            store.reject(request.id, actor_for(manager, "MANAGER"), reason)
    assert store.get(request.id).status == LeaveStatus.PENDING.value


def test_reject_records_reason_and_actor(store, employee, manager, leave_types, actor_for, today):
    request = store.create(employee.id, leave_types["annual"].id, *_days(today, 7))
    rejected = store.reject(request.id, actor_for(manager, "MANAGER"), "Quarter-end close")
    assert rejected.status == LeaveStatus.REJECTED.value
    assert rejected.rejection_reason == "Quarter-end close"
    assert rejected.rejected_by == manager.id
    assert rejected.rejected_at is not None
    assert rejected.approved_at is None


def test_terminal_states_refuse_transitions(store, employee, manager, leave_types, actor_for, today):
    approver = actor_for(manager, "MANAGER")
    request = store.create(employee.id, leave_types["annual"].id, *_days(today, 7))
    store.reject(request.id, approver, "No cover")

    with pytest.raises(InvalidStateTransitionError):
        store.approve(request.id, approver)
    with pytest.raises(InvalidStateTransitionError):
        store.reject(request.id, approver, "Again")
    with pytest.raises(InvalidStateTransitionError):
        store.cancel(request.id, actor_for(employee))


def test_double_approval_fails(store, employee, manager, leave_types, actor_for, today):
    """Approving an already-approved request fails and does not debit twice."""
    annual = leave_types["annual"]
    approver = actor_for(manager, "MANAGER")
    request = store.create(employee.id, annual.id, *_days(today, 7, 2))
    store.approve(request.id, approver)
    with pytest.raises(InvalidStateTransitionError):
        store.approve(request.id, approver)
    assert store.ledger.remaining(employee.id, annual.id, today.year) == Decimal("10.0")


def test_unrelated_employee_cannot_approve(store, employee, peer, leave_types, actor_for, today):
    request = store.create(employee.id, leave_types["annual"].id, *_days(today, 7))
    with pytest.raises(NotAuthorizedError):
        store.approve(request.id, actor_for(peer))
    assert store.get(request.id).status == LeaveStatus.PENDING.value


def test_cancel_pending_by_requester(store, employee, leave_types, actor_for, today):
    request = store.create(employee.id, leave_types["annual"].id, *_days(today, 7))
    cancelled = store.cancel(request.id, actor_for(employee))
    assert cancelled.status == LeaveStatus.CANCELLED.value
    assert cancelled.cancelled_by == employee.id
    assert store.ledger.remaining(employee.id, leave_types["annual"].id, today.year) == Decimal("12.0")


def test_cancel_after_approval_credits_balance(store, employee, manager, leave_types, actor_for, today):
    """Cancelling approved leave before it starts returns the days."""
    annual = leave_types["annual"]
    request = store.create(employee.id, annual.id, *_days(today, 10, 4))
    store.approve(request.id, actor_for(manager, "MANAGER"))
    assert store.ledger.remaining(employee.id, annual.id, today.year) == Decimal("8.0")

    store.cancel(request.id, actor_for(employee))
    assert store.ledger.remaining(employee.id, annual.id, today.year) == Decimal("12.0")
    actions = [h.action for h in AuditService(store.db).history(request.id)]
    assert actions == ["create", "approve", "cancel"]


def test_started_approved_leave_cannot_be_cancelled(db_session, employee, manager, leave_types, actor_for, today):
    annual = leave_types["annual"]
    start, end = _days(today, 2, 3)
    store = LeaveRequestStore(db_session, today=today)
    request = store.create(employee.id, annual.id, start, end)
    store.approve(request.id, actor_for(manager, "MANAGER"))

    later = LeaveRequestStore(db_session, today=start)
    with pytest.raises(InvalidStateTransitionError):
        later.cancel(request.id, actor_for(employee))
    assert later.ledger.remaining(employee.id, annual.id, today.year) == Decimal("9.0")


def test_stranger_cannot_cancel(store, employee, peer, leave_types, actor_for, today):
    request = store.create(employee.id, leave_types["annual"].id, *_days(today, 7))
    with pytest.raises(NotAuthorizedError):
        store.cancel(request.id, actor_for(peer))


def test_balance_conservation(store, db_session, employee, manager, leave_types, actor_for, today):
    """remaining + approved days always equals the entitlement."""
    annual = leave_types["annual"]
    approver = actor_for(manager, "MANAGER")
    a = store.create(employee.id, annual.id, *_days(today, 5, 2))
    b = store.create(employee.id, annual.id, *_days(today, 10, 3))
    c = store.create(employee.id, annual.id, *_days(today, 20, 1))
    store.approve(a.id, approver)
    store.approve(b.id, approver)
    store.reject(c.id, approver, "Busy period")
    store.cancel(a.id, actor_for(employee))

    ledger = LeaveBalanceLedger(db_session, today=today)
    remaining = ledger.remaining(employee.id, annual.id, today.year)
    approved = ledger.approved_days(employee.id, annual.id, today.year)
    assert approved == Decimal("3.0")
    assert remaining + approved == Decimal("12.0")


def test_cancellation_signal_aborts_before_mutation(store, db_session, employee, manager, leave_types, actor_for, today):
    annual = leave_types["annual"]
    request = store.create(employee.id, annual.id, *_days(today, 7, 2))
    signal = threading.Event()
    signal.set()

    with pytest.raises(OperationCancelledError):
        store.approve(request.id, actor_for(manager, "MANAGER"), cancel_event=signal)
    with pytest.raises(OperationCancelledError):
        store.create(employee.id, annual.id, *_days(today, 30, 1), cancel_event=signal)

    db_session.expire_all()
    assert store.get(request.id).status == LeaveStatus.PENDING.value
    assert store.ledger.remaining(employee.id, annual.id, today.year) == Decimal("12.0")
    assert db_session.query(LeaveRequest).count() == 1


def test_is_on_leave(store, employee, manager, leave_types, actor_for, today):
    start, end = _days(today, 7, 3)
    request = store.create(employee.id, leave_types["annual"].id, start, end)
    assert not store.is_on_leave(employee.id, start)

    store.approve(request.id, actor_for(manager, "MANAGER"))
    assert store.is_on_leave(employee.id, start)
    assert store.is_on_leave(employee.id, end)
    assert not store.is_on_leave(employee.id, end + timedelta(days=1))


def test_list_filters_and_paginates(store, employee, peer, leave_types, today):
    annual = leave_types["annual"].id
    for offset in (5, 15, 25):
        store.create(employee.id, annual, *_days(today, offset))
    store.create(peer.id, leave_types["sick"].id, *_days(today, 5))

    items, total = store.list(employee_ids=[employee.id], page=1, per_page=2)
    assert total == 3
    assert len(items) == 2

    items, total = store.list(leave_type_id=leave_types["sick"].id)
    assert total == 1 and items[0].employee_id == peer.id

    window_start, window_end = _days(today, 14, 2)
    items, total = store.list(start_date=window_start, end_date=window_end)
    assert total == 1


def test_audit_log_captures_state(store, db_session, employee, manager, leave_types, actor_for, today):
    request = store.create(employee.id, leave_types["annual"].id, *_days(today, 7))
    store.approve(request.id, actor_for(manager, "MANAGER"), comment="ok")
    entry = db_session.query(LeaveAuditLog).filter_by(leave_request_id=request.id, action="approve").one()
    assert entry.actor_id == manager.id
    assert entry.before_state["status"] == "pending"
    assert entry.after_state["status"] == "approved"
