import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from leave_engine.models.leave_request import LeaveAuditLog, LeaveRequest

logger = logging.getLogger(__name__)


def _jsonable(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {k: _jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_jsonable(i) for i in obj]
    if isinstance(obj, Decimal):
        return float(obj)
    if isinstance(obj, (date, datetime)):
        return obj.isoformat()
    return obj


def snapshot(request: LeaveRequest) -> dict:
    """The fields a transition can change, captured for before/after audit states."""
    return _jsonable({
        "status": request.status,
        "approver_id": request.approver_id,
        "rejected_by": request.rejected_by,
        "cancelled_by": request.cancelled_by,
        "approved_at": request.approved_at,
        "rejected_at": request.rejected_at,
        "cancelled_at": request.cancelled_at,
        "rejection_reason": request.rejection_reason,
    })


class AuditService:
    def __init__(self, db: Session):
        self.db = db

    def log_transition(
        self,
        request: LeaveRequest,
        action: str,
        actor_id: Optional[int],
        before_state: Optional[dict] = None,
        after_state: Optional[dict] = None,
        details: Optional[dict] = None,
    ) -> LeaveAuditLog:
        """
        Append an audit entry for a leave request transition.
        Does NOT commit: the entry belongs to the same transaction as the
        transition it describes, so a rolled-back transition leaves no trace.
        """
        entry = LeaveAuditLog(
            leave_request_id=request.id,
            action=action,
            actor_id=actor_id,
            before_state=_jsonable(before_state),
            after_state=_jsonable(after_state),
            details=_jsonable(details or {}),
        )
        self.db.add(entry)
        return entry

    def history(self, leave_request_id: int) -> List[LeaveAuditLog]:
        return list(self.db.execute(
            select(LeaveAuditLog)
            .where(LeaveAuditLog.leave_request_id == leave_request_id)
            .order_by(LeaveAuditLog.id)
        ).scalars().all())
