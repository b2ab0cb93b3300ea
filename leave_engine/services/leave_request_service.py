"""
Leave Request Service Layer

Owns leave request records and their state machine:

    pending  -> approved | rejected | cancelled
    approved -> cancelled   (only before the leave starts)

rejected and cancelled are terminal. Every transition runs as one unit of
work (see leave_balance_ledger.run_in_unit): approval debits and
cancellation-after-approval credits the ledger in the same transaction as the
status change. Requests carry a version column, so a second transition racing
on the same row fails with InvalidStateTransitionError instead of overwriting.
"""

import logging
import threading
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import and_, exists, func, or_, select, true
from sqlalchemy.orm import Session

from leave_engine.core.exceptions import (
    InvalidStateTransitionError,
    NotAuthorizedError,
    NotFoundError,
    OverlappingRequestError,
    ValidationError,
)
from leave_engine.core.security import sanitize_input
from leave_engine.models.employee import Employee, ApprovalDelegation
from leave_engine.models.leave_request import LeaveRequest, LeaveStatus, ACTIVE_STATUSES
from leave_engine.services.audit import AuditService, snapshot
from leave_engine.services.authorization import Actor, ApprovalAuthorizationGate
from leave_engine.services.leave_balance_ledger import LeaveBalanceLedger, check_cancelled, run_in_unit, to_days
from leave_engine.services.leave_type_catalog import LeaveTypeCatalog

logger = logging.getLogger(__name__)

MIN_LEAVE_DAYS = Decimal("0.5")


def compute_total_days(start_date: date, end_date: date, start_half_day: bool = False, end_half_day: bool = False) -> Decimal:
    """
    Inclusive calendar span less half a day for each half-day flag,
    never below half a day (a single half-day on both ends is still 0.5).
    """
    span = Decimal((end_date - start_date).days + 1)
    if start_half_day:
        span -= Decimal("0.5")
    if end_half_day:
        span -= Decimal("0.5")
    return to_days(max(span, MIN_LEAVE_DAYS))


def ranges_overlap(start_a: date, end_a: date, start_b: date, end_b: date) -> bool:
    return max(start_a, start_b) <= min(end_a, end_b)


def parse_status(status) -> Optional[str]:
    """Normalise a status filter; an unknown value is a ValidationError."""
    if not status:
        return None
    try:
        return LeaveStatus(status).value
    except ValueError:
        raise ValidationError(
            f"Unknown leave status '{status}'",
            details={"allowed": [s.value for s in LeaveStatus]},
        )


class LeaveRequestStore:
    def __init__(self, db: Session, today: Optional[date] = None):
        self.db = db
        self.today = today or date.today()
        self.catalog = LeaveTypeCatalog(db)
        self.ledger = LeaveBalanceLedger(db, today=self.today)
        self.gate = ApprovalAuthorizationGate(db, today=self.today)
        self.audit = AuditService(db)

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    def _as_of(self, request_start: date) -> date:
        # Accrual is evaluated on the leave's first day when it lies in the future
        return max(self.today, request_start)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, request_id: int) -> LeaveRequest:
        request = self.db.get(LeaveRequest, request_id)
        if request is None:
            raise NotFoundError("Leave request", request_id)
        return request

    def find_overlap(self, employee_id: int, start_date: date, end_date: date, exclude_id: Optional[int] = None) -> Optional[LeaveRequest]:
        query = select(LeaveRequest).where(
            LeaveRequest.employee_id == employee_id,
            LeaveRequest.status.in_(ACTIVE_STATUSES),
            LeaveRequest.start_date <= end_date,
            LeaveRequest.end_date >= start_date,
        )
        if exclude_id is not None:
            query = query.where(LeaveRequest.id != exclude_id)
        return self.db.execute(query.order_by(LeaveRequest.start_date).limit(1)).scalar_one_or_none()

    def list(
        self,
        employee_ids: Optional[List[int]] = None,
        status: Optional[str] = None,
        leave_type_id: Optional[int] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        page: int = 1,
        per_page: int = 20,
    ) -> Tuple[List[LeaveRequest], int]:
        """Filtered, paginated listing. A date window matches requests that overlap it."""
        conditions = []
        if employee_ids is not None:
            conditions.append(LeaveRequest.employee_id.in_(employee_ids))
        status = parse_status(status)
        if status:
            conditions.append(LeaveRequest.status == status)
        if leave_type_id is not None:
            conditions.append(LeaveRequest.leave_type_id == leave_type_id)
        if start_date is not None:
            conditions.append(LeaveRequest.end_date >= start_date)
        if end_date is not None:
            conditions.append(LeaveRequest.start_date <= end_date)

        where = and_(true(), *conditions)
        total = self.db.execute(select(func.count(LeaveRequest.id)).where(where)).scalar()
        items = self.db.execute(
            select(LeaveRequest)
            .where(where)
            .order_by(LeaveRequest.created_at.desc(), LeaveRequest.id.desc())
            .offset((max(page, 1) - 1) * per_page)
            .limit(per_page)
        ).scalars().all()
        return list(items), total

    def is_on_leave(self, employee_id: int, on_date: date) -> bool:
        return self.db.execute(
            select(exists().where(
                LeaveRequest.employee_id == employee_id,
                LeaveRequest.status == LeaveStatus.APPROVED.value,
                LeaveRequest.start_date <= on_date,
                LeaveRequest.end_date >= on_date,
            ))
        ).scalar()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def create(
        self,
        employee_id: int,
        leave_type_id: int,
        start_date: date,
        end_date: date,
        start_half_day: bool = False,
        end_half_day: bool = False,
        reason: Optional[str] = None,
        is_emergency: bool = False,
        work_handover: Optional[str] = None,
        contact_during_leave: Optional[str] = None,
        document_name: Optional[str] = None,
        document_path: Optional[str] = None,
        approver_id: Optional[int] = None,
        actor_id: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> LeaveRequest:
        if start_date > end_date:
            raise ValidationError("Start date must be on or before end date",
                                  details={"start_date": start_date.isoformat(), "end_date": end_date.isoformat()})
        if start_date < self.today and not is_emergency:
            raise ValidationError("Leave cannot start in the past unless it is flagged as emergency")

        employee = self.db.get(Employee, employee_id)
        if employee is None:
            raise NotFoundError("Employee", employee_id)
        if not employee.is_active:
            raise ValidationError(f"Employee {employee_id} is not active")

        leave_type = self.catalog.get(leave_type_id)
        if not leave_type.is_enabled_for(employee.company_id):
            raise ValidationError(f"Leave type '{leave_type.name}' is not available for this company")

        if approver_id is None:
            approver_id = employee.manager_id
        elif approver_id == employee_id:
            raise ValidationError("An employee cannot be the approver of their own request")
        elif self.db.get(Employee, approver_id) is None:
            raise NotFoundError("Employee", approver_id)

        total_days = compute_total_days(start_date, end_date, start_half_day, end_half_day)
        self.ledger.ensure_available(employee_id, leave_type, start_date.year, total_days, self._as_of(start_date))

        conflict = self.find_overlap(employee_id, start_date, end_date)
        if conflict is not None:
            raise OverlappingRequestError(conflict.id)

        def _create() -> LeaveRequest:
            request = LeaveRequest(
                employee_id=employee_id,
                leave_type_id=leave_type.id,
                approver_id=approver_id,
                start_date=start_date,
                end_date=end_date,
                start_half_day=start_half_day,
                end_half_day=end_half_day,
                total_days=total_days,
                reason=sanitize_input(reason) or None,
                is_emergency=is_emergency,
                work_handover=sanitize_input(work_handover) or None,
                contact_during_leave=contact_during_leave or None,
                document_name=document_name,
                document_path=document_path,
                status=LeaveStatus.PENDING.value,
            )
            self.db.add(request)
            self.db.flush()
            self.audit.log_transition(
                request, "create", actor_id if actor_id is not None else employee_id,
                after_state=snapshot(request),
                details={"total_days": total_days, "leave_type": leave_type.code, "is_emergency": is_emergency},
            )
            return request

        request = run_in_unit(self.db, _create, cancel_event)
        logger.info(
            f"Leave request {request.id} created for employee {employee_id}: "
            f"{leave_type.code} {start_date}..{end_date} ({total_days} days)"
        )
        return request

    def approve(
        self,
        request_id: int,
        actor: Actor,
        comment: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> LeaveRequest:
        def _approve() -> LeaveRequest:
            request = self.get(request_id)
            if request.status != LeaveStatus.PENDING.value:
                raise InvalidStateTransitionError(
                    f"Cannot approve a request that is already {request.status}",
                    details={"status": request.status},
                )
            if not self.gate.can_act(actor, request):
                raise NotAuthorizedError()

            before = snapshot(request)
            check_cancelled(cancel_event)
            # Balance is re-validated inside debit: other requests may have been approved since creation
            self.ledger.debit(
                request.employee_id, request.leave_type, request.start_date.year, request.total_days,
                leave_request_id=request.id, actor_id=actor.employee_id, as_of=self._as_of(request.start_date),
            )
            request.status = LeaveStatus.APPROVED.value
            request.approver_id = actor.employee_id
            request.approved_at = self._now()
            self.db.flush()
            self.audit.log_transition(request, "approve", actor.employee_id, before, snapshot(request),
                                      details={"comment": sanitize_input(comment)})
            return request

        try:
            request = run_in_unit(self.db, _approve, cancel_event)
        except (InvalidStateTransitionError, NotAuthorizedError) as e:
            logger.warning(f"Approval of leave request {request_id} by {actor.employee_id} refused: {e.message}")
            raise
        logger.info(f"Leave request {request.id} approved by {actor.employee_id} ({request.total_days} days debited)")
        return request

    def reject(
        self,
        request_id: int,
        actor: Actor,
        rejection_reason: Optional[str],
        cancel_event: Optional[threading.Event] = None,
    ) -> LeaveRequest:
        reason = sanitize_input(rejection_reason) if rejection_reason else ""
        if not reason:
            raise ValidationError("A rejection reason is required")

        def _reject() -> LeaveRequest:
            request = self.get(request_id)
            if request.status != LeaveStatus.PENDING.value:
                raise InvalidStateTransitionError(
                    f"Cannot reject a request that is already {request.status}",
                    details={"status": request.status},
                )
            if not self.gate.can_act(actor, request):
                raise NotAuthorizedError()

            before = snapshot(request)
            check_cancelled(cancel_event)
            request.status = LeaveStatus.REJECTED.value
            request.rejected_by = actor.employee_id
            request.rejected_at = self._now()
            request.rejection_reason = reason
            self.db.flush()
            self.audit.log_transition(request, "reject", actor.employee_id, before, snapshot(request))
            return request

        request = run_in_unit(self.db, _reject, cancel_event)
        logger.info(f"Leave request {request.id} rejected by {actor.employee_id}")
        return request

    def cancel(
        self,
        request_id: int,
        actor: Actor,
        cancel_event: Optional[threading.Event] = None,
    ) -> LeaveRequest:
        def _cancel() -> LeaveRequest:
            request = self.get(request_id)
            was_approved = request.status == LeaveStatus.APPROVED.value
            if request.status not in ACTIVE_STATUSES:
                raise InvalidStateTransitionError(
                    f"Cannot cancel a request that is already {request.status}",
                    details={"status": request.status},
                )
            if was_approved and self.today >= request.start_date:
                raise InvalidStateTransitionError(
                    "Approved leave can only be cancelled before it starts",
                    details={"start_date": request.start_date.isoformat()},
                )
            if not self.gate.can_cancel(actor, request):
                raise NotAuthorizedError("Only the requester or an approver may cancel this request")

            before = snapshot(request)
            check_cancelled(cancel_event)
            if was_approved:
                self.ledger.credit(
                    request.employee_id, request.leave_type, request.start_date.year, request.total_days,
                    leave_request_id=request.id, actor_id=actor.employee_id,
                )
            request.status = LeaveStatus.CANCELLED.value
            request.cancelled_by = actor.employee_id
            request.cancelled_at = self._now()
            self.db.flush()
            self.audit.log_transition(request, "cancel", actor.employee_id, before, snapshot(request),
                                      details={"credited_days": request.total_days if was_approved else 0})
            return request

        request = run_in_unit(self.db, _cancel, cancel_event)
        logger.info(f"Leave request {request.id} cancelled by {actor.employee_id}")
        return request

    def list_actionable(self, actor: Actor, status: Optional[str] = LeaveStatus.PENDING.value) -> List[LeaveRequest]:
        """
        Requests the actor may act on (the approval inbox). Candidates are
        narrowed in SQL to the actor's company and, without an override role,
        to requests they are assigned, manage, or cover as an active delegate.
        The gate then confirms each remaining row.
        """
        query = (
            select(LeaveRequest)
            .join(Employee, LeaveRequest.employee_id == Employee.id)
            .order_by(LeaveRequest.start_date, LeaveRequest.id)
        )
        status = parse_status(status)
        if status:
            query = query.where(LeaveRequest.status == status)
        if actor.company_id is not None:
            query = query.where(Employee.company_id == actor.company_id)
        if not actor.has_override:
            delegators = select(ApprovalDelegation.delegator_id).where(
                ApprovalDelegation.delegate_id == actor.employee_id,
                ApprovalDelegation.is_active.is_(True),
                ApprovalDelegation.start_date <= self.today,
                ApprovalDelegation.end_date >= self.today,
            )
            query = query.where(
                LeaveRequest.employee_id != actor.employee_id,
                or_(
                    LeaveRequest.approver_id == actor.employee_id,
                    Employee.manager_id == actor.employee_id,
                    Employee.manager_id.in_(delegators),
                ),
            )
        candidates = self.db.execute(query).scalars().all()
        return [r for r in candidates if self.gate.can_act(actor, r)]
