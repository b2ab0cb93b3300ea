from sqlalchemy import Column, Integer, String, Numeric, ForeignKey, Date, DateTime, UniqueConstraint, Index
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from leave_engine.database import Base
import enum


class LeaveBalance(Base):
    __tablename__ = "leave_balances"
    __table_args__ = (
        UniqueConstraint("employee_id", "leave_type_id", "year", name="uq_balance_period"),
    )

    id = Column(Integer, primary_key=True, index=True)
    employee_id = Column(Integer, ForeignKey("employees.id"), index=True, nullable=False)
    leave_type_id = Column(Integer, ForeignKey("leave_types.id"), index=True, nullable=False)
    year = Column(Integer, nullable=False)

    allocated_days = Column(Numeric(6, 1), default=0, nullable=False)
    carried_forward_days = Column(Numeric(6, 1), default=0, nullable=False)
    used_days = Column(Numeric(6, 1), default=0, nullable=False)
    expires_at = Column(Date, nullable=True)

    # Optimistic lock: concurrent debit/credit on the same row raises StaleDataError
    version_id = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    leave_type = relationship("LeaveType")

    __mapper_args__ = {"version_id_col": version_id}


class LedgerEntryType(str, enum.Enum):
    ALLOCATION = "allocation"
    DEBIT = "debit"
    CREDIT = "credit"
    ADJUSTMENT = "adjustment"


class LeaveLedgerEntry(Base):
    """Append-only record of every balance-affecting event."""
    __tablename__ = "leave_ledger_entries"
    __table_args__ = (
        Index("ix_ledger_employee_type_year", "employee_id", "leave_type_id", "year"),
    )

    id = Column(Integer, primary_key=True, index=True)
    employee_id = Column(Integer, ForeignKey("employees.id"), nullable=False)
    leave_type_id = Column(Integer, ForeignKey("leave_types.id"), nullable=False)
    year = Column(Integer, nullable=False)
    entry_type = Column(String, nullable=False)
    amount = Column(Numeric(6, 1), nullable=False)
    leave_request_id = Column(Integer, ForeignKey("leave_requests.id"), nullable=True, index=True)
    reason = Column(String, nullable=True)
    actor_id = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
