from pydantic import BaseModel, ConfigDict, Field, PlainSerializer, model_validator
from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Dict, List, Optional

from leave_engine.models.leave_type import AccrualCadence

# Day counts are Decimal internally but travel as JSON numbers
Days = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]

class LeaveTypeResponse(BaseModel):
    id: int
    code: str
    name: str
    description: Optional[str] = None
    color: Optional[str] = None
    category: str
    default_days: Days
    accrual: str
    is_paid: bool
    allow_negative_balance: bool
    is_active: bool
    company_id: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)

class LeaveTypeUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    color: Optional[str] = None
    is_active: Optional[bool] = None
    default_days: Optional[Decimal] = Field(default=None, ge=0)
    accrual: Optional[AccrualCadence] = None
    is_paid: Optional[bool] = None
    allow_negative_balance: Optional[bool] = None

class LeaveRequestCreate(BaseModel):
    leave_type_id: int
    start_date: date
    end_date: date
    start_half_day: bool = False
    end_half_day: bool = False
    reason: Optional[str] = Field(default=None, max_length=2000)
    is_emergency: bool = False
    work_handover: Optional[str] = Field(default=None, max_length=2000)
    contact_during_leave: Optional[str] = Field(default=None, max_length=255)
    document_name: Optional[str] = None
    document_path: Optional[str] = None
    # HR may file on behalf of an employee
    employee_id: Optional[int] = None

    @model_validator(mode="after")
    def check_date_order(self):
        if self.start_date > self.end_date:
            raise ValueError("start_date must be on or before end_date")
        return self

class LeaveRequestResponse(BaseModel):
    id: int
    employee_id: int
    leave_type_id: int
    approver_id: Optional[int] = None
    start_date: date
    end_date: date
    start_half_day: bool
    end_half_day: bool
    total_days: Days
    reason: Optional[str] = None
    is_emergency: bool
    work_handover: Optional[str] = None
    contact_during_leave: Optional[str] = None
    document_name: Optional[str] = None
    document_path: Optional[str] = None
    status: str
    rejection_reason: Optional[str] = None
    rejected_by: Optional[int] = None
    cancelled_by: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

class LeaveApprovalRequest(BaseModel):
    comment: Optional[str] = None

class LeaveRejectionRequest(BaseModel):
    # Emptiness is checked by the service so the failure carries the domain error code
    reason: Optional[str] = None

class LeaveBalanceResponse(BaseModel):
    id: int
    employee_id: int
    leave_type_id: int
    leave_type_code: str
    year: int
    allocated_days: Days
    carried_forward_days: Days
    entitlement: Days
    used_days: Days
    pending_days: Days
    remaining_days: Days
    expires_at: Optional[date] = None

    model_config = ConfigDict(from_attributes=True)

class BalanceAllocateRequest(BaseModel):
    employee_id: int
    leave_type_id: int
    year: int
    allocated_days: Decimal = Field(ge=0)
    carried_forward_days: Decimal = Field(default=Decimal("0"), ge=0)
    expires_at: Optional[date] = None

class BulkAllocateRequest(BaseModel):
    employee_ids: List[int]
    leave_type_id: int
    year: int

class BalanceAdjustRequest(BaseModel):
    employee_id: int
    leave_type_id: int
    year: int
    adjustment_days: Decimal
    adjustment_reason: str

class LeaveSummaryResponse(BaseModel):
    view_mode: str
    team_size: int
    counts: Dict[str, int]
    days: Dict[str, Days]
    approved_days_by_type: Dict[str, Days]
    on_leave_today: int

class OnLeaveResponse(BaseModel):
    employee_id: int
    on_date: date
    on_leave: bool
