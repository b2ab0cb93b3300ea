from sqlalchemy import Column, Integer, String, Text, Date, Boolean, Numeric, ForeignKey, DateTime, JSON, Index
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from leave_engine.database import Base
from leave_engine.core.security import encrypt_data, decrypt_data
import enum

class LeaveStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"

# Statuses that hold the employee's calendar and block overlapping requests
ACTIVE_STATUSES = (LeaveStatus.PENDING.value, LeaveStatus.APPROVED.value)

class LeaveRequest(Base):
    __tablename__ = "leave_requests"
    __table_args__ = (
        Index("ix_leave_requests_employee_dates", "employee_id", "start_date", "end_date"),
    )

    id = Column(Integer, primary_key=True, index=True)
    employee_id = Column(Integer, ForeignKey("employees.id"), index=True, nullable=False)
    leave_type_id = Column(Integer, ForeignKey("leave_types.id"), index=True, nullable=False)
    approver_id = Column(Integer, ForeignKey("employees.id"), nullable=True)

    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    start_half_day = Column(Boolean, default=False, nullable=False)
    end_half_day = Column(Boolean, default=False, nullable=False)
    total_days = Column(Numeric(6, 1), nullable=False)

    reason = Column(Text, nullable=True)
    is_emergency = Column(Boolean, default=False, nullable=False)
    work_handover = Column(Text, nullable=True)
    _contact_during_leave = Column("contact_during_leave", String, nullable=True)  # Fernet-encrypted

    # Opaque reference to an attachment held by the document store
    document_name = Column(String, nullable=True)
    document_path = Column(String, nullable=True)

    status = Column(String, default=LeaveStatus.PENDING.value, nullable=False, index=True)
    rejection_reason = Column(Text, nullable=True)
    rejected_by = Column(Integer, ForeignKey("employees.id"), nullable=True)
    cancelled_by = Column(Integer, ForeignKey("employees.id"), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    approved_at = Column(DateTime(timezone=True), nullable=True)
    rejected_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    # Optimistic lock: a second transition racing on a stale row raises StaleDataError
    version_id = Column(Integer, nullable=False, default=1)

    employee = relationship("Employee", foreign_keys=[employee_id], back_populates="leave_requests")
    approver = relationship("Employee", foreign_keys=[approver_id])
    leave_type = relationship("LeaveType")

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def contact_during_leave(self):
        return decrypt_data(self._contact_during_leave)

    @contact_during_leave.setter
    def contact_during_leave(self, value):
        self._contact_during_leave = encrypt_data(value)

    @property
    def is_terminal(self) -> bool:
        return self.status in (LeaveStatus.REJECTED.value, LeaveStatus.CANCELLED.value)

    def __repr__(self):
        return f"<LeaveRequest {self.id} {self.status} {self.start_date}..{self.end_date}>"


class LeaveAuditLog(Base):
    """One row per state transition of a leave request. Append-only."""
    __tablename__ = "leave_audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    leave_request_id = Column(Integer, ForeignKey("leave_requests.id"), index=True, nullable=False)
    action = Column(String, nullable=False)
    actor_id = Column(Integer, nullable=True)
    before_state = Column(JSON, nullable=True)
    after_state = Column(JSON, nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
