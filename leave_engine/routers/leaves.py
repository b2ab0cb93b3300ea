from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from leave_engine.core.exceptions import NotAuthorizedError, NotFoundError
from leave_engine.core.schemas import ApiResponse
from leave_engine.database import get_db
from leave_engine.models.employee import Employee
from leave_engine.models.leave_request import LeaveStatus
from leave_engine.routers.auth_deps import get_current_actor, require_hr, require_role
from leave_engine.schemas.leave import (
    BalanceAdjustRequest,
    BalanceAllocateRequest,
    BulkAllocateRequest,
    LeaveApprovalRequest,
    LeaveBalanceResponse,
    LeaveRejectionRequest,
    LeaveRequestCreate,
    LeaveRequestResponse,
    LeaveSummaryResponse,
    LeaveTypeResponse,
    LeaveTypeUpdate,
    OnLeaveResponse,
)
from leave_engine.services.authorization import Actor, UserRole
from leave_engine.services.leave_balance_ledger import LeaveBalanceLedger
from leave_engine.services.leave_request_service import LeaveRequestStore
from leave_engine.services.leave_summary import LeaveSummaryAggregator
from leave_engine.services.leave_type_catalog import LeaveTypeCatalog

router = APIRouter(prefix="/leaves")

HR_ROLES = [UserRole.SUPER_ADMIN, UserRole.HR_ADMIN, UserRole.HR_MANAGER]


def _visible_employee(db: Session, actor: Actor, employee_id: int) -> Employee:
    """The employee must exist and sit inside the actor's reporting scope."""
    employee = db.get(Employee, employee_id)
    if employee is None:
        raise NotFoundError("Employee", employee_id)
    if employee_id not in LeaveSummaryAggregator(db).team_for(actor) and employee_id != actor.employee_id:
        raise NotAuthorizedError("Employee is outside your reporting scope")
    return employee


# ==========================================
# LEAVE TYPES
# ==========================================

@router.get("/types", response_model=ApiResponse[List[LeaveTypeResponse]])
def list_leave_types(
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    types = LeaveTypeCatalog(db).list(company_id=actor.company_id)
    return ApiResponse.ok([LeaveTypeResponse.model_validate(t) for t in types])


@router.patch("/types/{leave_type_id}", response_model=ApiResponse[LeaveTypeResponse])
def update_leave_type(
    leave_type_id: int,
    changes: LeaveTypeUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_role([UserRole.SUPER_ADMIN, UserRole.HR_ADMIN])),
):
    leave_type = LeaveTypeCatalog(db).update(leave_type_id, **changes.model_dump(exclude_unset=True))
    return ApiResponse.ok(LeaveTypeResponse.model_validate(leave_type))


# ==========================================
# SELF-SERVICE
# ==========================================

@router.get("/me", response_model=ApiResponse[List[LeaveRequestResponse]])
def my_leaves(
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    items, total = LeaveRequestStore(db).list(employee_ids=[actor.employee_id], page=page, per_page=per_page)
    return ApiResponse.page([LeaveRequestResponse.model_validate(r) for r in items], page, per_page, total)


@router.get("/me/balances", response_model=ApiResponse[List[LeaveBalanceResponse]])
def my_balances(
    year: Optional[int] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    leave_types = LeaveTypeCatalog(db).list(company_id=actor.company_id)
    views = LeaveBalanceLedger(db).ensure_balances(actor.employee_id, year or date.today().year, leave_types)
    return ApiResponse.ok([LeaveBalanceResponse.model_validate(v) for v in views])


@router.post("", response_model=ApiResponse[LeaveRequestResponse])
def create_leave_request(
    payload: LeaveRequestCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    employee_id = actor.employee_id
    if payload.employee_id is not None and payload.employee_id != actor.employee_id:
        if not actor.has_role(*HR_ROLES):
            raise NotAuthorizedError("Only HR may file leave on behalf of another employee")
        employee_id = payload.employee_id

    request = LeaveRequestStore(db).create(
        employee_id=employee_id,
        leave_type_id=payload.leave_type_id,
        start_date=payload.start_date,
        end_date=payload.end_date,
        start_half_day=payload.start_half_day,
        end_half_day=payload.end_half_day,
        reason=payload.reason,
        is_emergency=payload.is_emergency,
        work_handover=payload.work_handover,
        contact_during_leave=payload.contact_during_leave,
        document_name=payload.document_name,
        document_path=payload.document_path,
        actor_id=actor.employee_id,
    )
    return ApiResponse.ok(LeaveRequestResponse.model_validate(request))


# ==========================================
# MANAGER
# ==========================================

@router.get("/pending-approvals", response_model=ApiResponse[List[LeaveRequestResponse]])
def pending_approvals(
    status: Optional[str] = Query(LeaveStatus.PENDING.value),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    requests = LeaveRequestStore(db).list_actionable(actor, status=None if status == "all" else status)
    return ApiResponse.ok([LeaveRequestResponse.model_validate(r) for r in requests])


@router.get("/summary", response_model=ApiResponse[LeaveSummaryResponse])
def leave_summary(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    aggregator = LeaveSummaryAggregator(db)
    mode = aggregator.resolve_view_mode(actor)
    summary = aggregator.summary(aggregator.team_for(actor, mode), start_date, end_date)
    return ApiResponse.ok(LeaveSummaryResponse(view_mode=mode.value, **summary))


@router.get("/on-leave", response_model=ApiResponse[OnLeaveResponse])
def on_leave(
    employee_id: int,
    on_date: Optional[date] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    employee = db.get(Employee, employee_id)
    if employee is None:
        raise NotFoundError("Employee", employee_id)
    if actor.company_id is not None and employee.company_id != actor.company_id and not actor.has_role(UserRole.SUPER_ADMIN):
        raise NotAuthorizedError("Employee belongs to a different company")
    target = on_date or date.today()
    return ApiResponse.ok(OnLeaveResponse(
        employee_id=employee_id,
        on_date=target,
        on_leave=LeaveRequestStore(db).is_on_leave(employee_id, target),
    ))


# ==========================================
# LEAVE BALANCES
# ==========================================

@router.get("/balances/list", response_model=ApiResponse[List[LeaveBalanceResponse]])
def list_balances(
    employee_id: Optional[int] = None,
    year: Optional[int] = None,
    leave_type_id: Optional[int] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    team = LeaveSummaryAggregator(db).team_for(actor)
    if employee_id is not None:
        _visible_employee(db, actor, employee_id)
        team = [employee_id]
    views = LeaveBalanceLedger(db).balances(employee_ids=team, year=year, leave_type_id=leave_type_id)
    return ApiResponse.ok([LeaveBalanceResponse.model_validate(v) for v in views])


@router.post("/balances/allocate", response_model=ApiResponse[LeaveBalanceResponse])
def allocate_balance(
    payload: BalanceAllocateRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_hr()),
):
    _visible_employee(db, actor, payload.employee_id)
    ledger = LeaveBalanceLedger(db)
    ledger.allocate(
        payload.employee_id, payload.leave_type_id, payload.year,
        payload.allocated_days, payload.carried_forward_days,
        actor_id=actor.employee_id, expires_at=payload.expires_at,
    )
    view = ledger.balances(employee_ids=[payload.employee_id], year=payload.year, leave_type_id=payload.leave_type_id)[0]
    return ApiResponse.ok(LeaveBalanceResponse.model_validate(view))


@router.post("/balances/allocate-bulk", response_model=ApiResponse[List[LeaveBalanceResponse]])
def allocate_balances_bulk(
    payload: BulkAllocateRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_hr()),
):
    for employee_id in payload.employee_ids:
        _visible_employee(db, actor, employee_id)
    ledger = LeaveBalanceLedger(db)
    ledger.allocate_prorated(payload.employee_ids, payload.leave_type_id, payload.year, actor_id=actor.employee_id)
    views = ledger.balances(employee_ids=payload.employee_ids, year=payload.year, leave_type_id=payload.leave_type_id)
    return ApiResponse.ok([LeaveBalanceResponse.model_validate(v) for v in views])


@router.post("/balances/adjust", response_model=ApiResponse[LeaveBalanceResponse])
def adjust_balance(
    payload: BalanceAdjustRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_hr()),
):
    _visible_employee(db, actor, payload.employee_id)
    ledger = LeaveBalanceLedger(db)
    ledger.adjust(
        payload.employee_id, payload.leave_type_id, payload.year,
        payload.adjustment_days, payload.adjustment_reason, actor_id=actor.employee_id,
    )
    view = ledger.balances(employee_ids=[payload.employee_id], year=payload.year, leave_type_id=payload.leave_type_id)[0]
    return ApiResponse.ok(LeaveBalanceResponse.model_validate(view))


# ==========================================
# HR / SINGLE REQUEST
# ==========================================

@router.get("", response_model=ApiResponse[List[LeaveRequestResponse]])
def list_leaves(
    employee_id: Optional[int] = None,
    status: Optional[str] = None,
    leave_type_id: Optional[int] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_hr()),
):
    team = LeaveSummaryAggregator(db).team_for(actor)
    if employee_id is not None:
        _visible_employee(db, actor, employee_id)
        team = [employee_id]
    items, total = LeaveRequestStore(db).list(
        employee_ids=team, status=status, leave_type_id=leave_type_id,
        start_date=start_date, end_date=end_date, page=page, per_page=per_page,
    )
    return ApiResponse.page([LeaveRequestResponse.model_validate(r) for r in items], page, per_page, total)


@router.get("/{leave_id}", response_model=ApiResponse[LeaveRequestResponse])
def get_leave(
    leave_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    store = LeaveRequestStore(db)
    request = store.get(leave_id)
    if request.employee_id != actor.employee_id and not store.gate.can_act(actor, request) \
            and not actor.has_role(*HR_ROLES):
        raise NotAuthorizedError("You may not view this leave request")
    return ApiResponse.ok(LeaveRequestResponse.model_validate(request))


@router.post("/{leave_id}/approve", response_model=ApiResponse[LeaveRequestResponse])
def approve_leave(
    leave_id: int,
    payload: Optional[LeaveApprovalRequest] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    request = LeaveRequestStore(db).approve(leave_id, actor, comment=payload.comment if payload else None)
    return ApiResponse.ok(LeaveRequestResponse.model_validate(request))


@router.post("/{leave_id}/reject", response_model=ApiResponse[LeaveRequestResponse])
def reject_leave(
    leave_id: int,
    payload: LeaveRejectionRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    request = LeaveRequestStore(db).reject(leave_id, actor, payload.reason)
    return ApiResponse.ok(LeaveRequestResponse.model_validate(request))


@router.post("/{leave_id}/cancel", response_model=ApiResponse[LeaveRequestResponse])
def cancel_leave(
    leave_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    request = LeaveRequestStore(db).cancel(leave_id, actor)
    return ApiResponse.ok(LeaveRequestResponse.model_validate(request))
