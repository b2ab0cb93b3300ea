"""
Leave Summary Aggregator

Read-only rollups over leave requests for the dashboard tiles
("Pending Approvals: N", "Approved this month: N days by type", ...).
Figures are raw counts and Decimal day totals; formatting belongs to the UI.
"""
import enum
import logging
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from leave_engine.models.employee import Employee
from leave_engine.models.leave_request import LeaveRequest, LeaveStatus
from leave_engine.models.leave_type import LeaveType, LeaveCategory
from leave_engine.services.authorization import Actor, UserRole
from leave_engine.services.leave_balance_ledger import to_days
from leave_engine.services.leave_request_service import parse_status
from leave_engine.services.leave_type_catalog import classify

logger = logging.getLogger(__name__)


NAMED_CATEGORIES = {c.value for c in LeaveCategory if c != LeaveCategory.OTHER}


class DashboardView(str, enum.Enum):
    SELF = "self"
    TEAM = "team"
    ORGANIZATION = "organization"


def category_of(leave_type: LeaveType) -> LeaveCategory:
    stored = leave_type.category
    if stored in NAMED_CATEGORIES:
        return LeaveCategory(stored)
    return classify(leave_type.code, leave_type.name)


class LeaveSummaryAggregator:
    def __init__(self, db: Session):
        self.db = db

    def _filters(self, team: Iterable[int], start_date: Optional[date], end_date: Optional[date]) -> list:
        conditions = [LeaveRequest.employee_id.in_(list(team))]
        # A window selects requests overlapping it
        if start_date is not None:
            conditions.append(LeaveRequest.end_date >= start_date)
        if end_date is not None:
            conditions.append(LeaveRequest.start_date <= end_date)
        return conditions

    def count_by_status(
        self,
        team: Iterable[int],
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> Dict[str, int]:
        rows = self.db.execute(
            select(LeaveRequest.status, func.count(LeaveRequest.id))
            .where(*self._filters(team, start_date, end_date))
            .group_by(LeaveRequest.status)
        ).all()
        counts = {s.value: 0 for s in LeaveStatus}
        for status, count in rows:
            counts[status] = count
        counts["total"] = sum(counts[s.value] for s in LeaveStatus)
        return counts

    def days_by_type(
        self,
        team: Iterable[int],
        status: Optional[str] = LeaveStatus.APPROVED.value,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> Dict[str, Decimal]:
        """
        Sum of total_days per leave category. Leave types that match none of
        the named categories are reported under "other".
        """
        conditions = self._filters(team, start_date, end_date)
        status = parse_status(status)
        if status:
            conditions.append(LeaveRequest.status == status)
        rows = self.db.execute(
            select(LeaveType, func.sum(LeaveRequest.total_days))
            .join(LeaveType, LeaveRequest.leave_type_id == LeaveType.id)
            .where(*conditions)
            .group_by(LeaveType.id)
        ).all()

        totals = {c.value: Decimal("0.0") for c in LeaveCategory}
        for leave_type, days in rows:
            totals[category_of(leave_type).value] += to_days(days)
        return totals

    def days_by_status(
        self,
        team: Iterable[int],
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> Dict[str, Decimal]:
        rows = self.db.execute(
            select(LeaveRequest.status, func.sum(LeaveRequest.total_days))
            .where(*self._filters(team, start_date, end_date))
            .group_by(LeaveRequest.status)
        ).all()
        sums = {status: to_days(days) for status, days in rows}
        return {
            "pending_days": sums.get(LeaveStatus.PENDING.value, Decimal("0.0")),
            "approved_days": sums.get(LeaveStatus.APPROVED.value, Decimal("0.0")),
        }

    def on_leave_count(self, team: Iterable[int], on_date: date) -> int:
        return self.db.execute(
            select(func.count(func.distinct(LeaveRequest.employee_id))).where(
                LeaveRequest.employee_id.in_(list(team)),
                LeaveRequest.status == LeaveStatus.APPROVED.value,
                LeaveRequest.start_date <= on_date,
                LeaveRequest.end_date >= on_date,
            )
        ).scalar()

    def summary(
        self,
        team: Iterable[int],
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        on_date: Optional[date] = None,
    ) -> dict:
        team = list(team)
        return {
            "team_size": len(team),
            "counts": self.count_by_status(team, start_date, end_date),
            "days": self.days_by_status(team, start_date, end_date),
            "approved_days_by_type": self.days_by_type(team, LeaveStatus.APPROVED.value, start_date, end_date),
            "on_leave_today": self.on_leave_count(team, on_date or date.today()),
        }

    # ------------------------------------------------------------------
    # Dashboard scoping
    # ------------------------------------------------------------------

    def resolve_view_mode(self, actor: Actor) -> DashboardView:
        if actor.has_override or actor.has_role(UserRole.HR_MANAGER):
            return DashboardView.ORGANIZATION
        if actor.has_role(UserRole.MANAGER) or self._direct_reports(actor.employee_id):
            return DashboardView.TEAM
        return DashboardView.SELF

    def team_for(self, actor: Actor, mode: Optional[DashboardView] = None) -> List[int]:
        mode = mode or self.resolve_view_mode(actor)
        if mode == DashboardView.SELF:
            return [actor.employee_id]
        if mode == DashboardView.TEAM:
            return self._direct_reports(actor.employee_id)

        query = select(Employee.id).order_by(Employee.id)
        if not actor.has_role(UserRole.SUPER_ADMIN):
            query = query.where(Employee.company_id == actor.company_id)
        return list(self.db.execute(query).scalars().all())

    def _direct_reports(self, manager_id: int) -> List[int]:
        return list(self.db.execute(
            select(Employee.id).where(Employee.manager_id == manager_id).order_by(Employee.id)
        ).scalars().all())
