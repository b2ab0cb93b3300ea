"""
Approval Authorization Gate.

Decides whether an actor may move a leave request out of `pending`. The actor
is always passed in explicitly; reporting lines are read from the database on
every call because they can change between submission and approval.
"""
import enum
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import FrozenSet, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from leave_engine.core.config import settings
from leave_engine.models.employee import Employee, ApprovalDelegation
from leave_engine.models.leave_request import LeaveRequest

logger = logging.getLogger(__name__)


class UserRole(str, enum.Enum):
    """
    Roles issued by the identity provider.

    - SUPER_ADMIN: Platform-wide access (multi-company)
    - HR_ADMIN: Full HR access within the company
    - HR_MANAGER: Department-level HR access
    - MANAGER: Team manager (approvals for direct reports)
    - EMPLOYEE: Self-service access
    """
    SUPER_ADMIN = "SUPER_ADMIN"
    HR_ADMIN = "HR_ADMIN"
    HR_MANAGER = "HR_MANAGER"
    MANAGER = "MANAGER"
    EMPLOYEE = "EMPLOYEE"


@dataclass(frozen=True)
class Actor:
    employee_id: int
    company_id: Optional[int] = None
    roles: FrozenSet[str] = field(default_factory=frozenset)

    def has_role(self, *roles) -> bool:
        wanted = {r.value if isinstance(r, UserRole) else r for r in roles}
        return bool(wanted & set(self.roles))

    @property
    def has_override(self) -> bool:
        return self.has_role(*settings.admin_override_roles)


class ApprovalAuthorizationGate:
    def __init__(self, db: Session, today: Optional[date] = None):
        self.db = db
        self.today = today or date.today()

    def _reporting_line(self, employee_id: int):
        # Column select bypasses the identity map so a stale cached Employee is never consulted
        return self.db.execute(
            select(Employee.manager_id, Employee.company_id).where(Employee.id == employee_id)
        ).first()

    def _is_delegate_of(self, actor_id: int, manager_id: int) -> bool:
        return self.db.execute(
            select(ApprovalDelegation.id).where(
                ApprovalDelegation.delegator_id == manager_id,
                ApprovalDelegation.delegate_id == actor_id,
                ApprovalDelegation.is_active.is_(True),
                ApprovalDelegation.start_date <= self.today,
                ApprovalDelegation.end_date >= self.today,
            ).limit(1)
        ).first() is not None

    def can_act(self, actor: Actor, request: LeaveRequest) -> bool:
        """
        True if the actor is the assigned approver, the employee's direct
        manager, an active delegate of that manager, or holds an
        administrative override role within the employee's company.
        """
        line = self._reporting_line(request.employee_id)
        if line is None:
            return False
        manager_id, company_id = line

        if actor.has_override:
            if actor.has_role(UserRole.SUPER_ADMIN) or actor.company_id == company_id:
                return True

        if actor.employee_id == request.employee_id:
            # Self-approval is reserved for administrative override
            return False

        if request.approver_id is not None and actor.employee_id == request.approver_id:
            return True

        if manager_id is not None:
            if actor.employee_id == manager_id:
                return True
            if self._is_delegate_of(actor.employee_id, manager_id):
                return True

        logger.debug(f"Actor {actor.employee_id} denied on leave request {request.id}")
        return False

    def can_cancel(self, actor: Actor, request: LeaveRequest) -> bool:
        """The requester may always withdraw their own request; otherwise the approval rules apply."""
        return actor.employee_id == request.employee_id or self.can_act(actor, request)
