from sqlalchemy import Column, Integer, String, Text, Numeric, Boolean, DateTime
from sqlalchemy.sql import func
from leave_engine.database import Base
import enum


class LeaveCategory(str, enum.Enum):
    ANNUAL = "annual"
    SICK = "sick"
    MATERNITY = "maternity"
    PATERNITY = "paternity"
    MARRIAGE = "marriage"
    BEREAVEMENT = "bereavement"
    UNPAID = "unpaid"
    STUDY = "study"
    OTHER = "other"


class AccrualCadence(str, enum.Enum):
    ANNUAL = "annual"    # full entitlement available from the start of the period
    MONTHLY = "monthly"  # entitlement accrues 1/12 per elapsed month
    NONE = "none"        # no entitlement, e.g. unpaid leave


class LeaveType(Base):
    __tablename__ = "leave_types"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    color = Column(String, nullable=True)
    category = Column(String, default=LeaveCategory.OTHER.value, nullable=False)

    default_days = Column(Numeric(6, 1), default=0, nullable=False)
    accrual = Column(String, default=AccrualCadence.ANNUAL.value, nullable=False)
    is_paid = Column(Boolean, default=True, nullable=False)
    allow_negative_balance = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    # NULL means the type is offered to every company
    company_id = Column(Integer, index=True, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    def __repr__(self):
        return f"<LeaveType {self.code}>"

    def is_enabled_for(self, company_id: int) -> bool:
        return self.is_active and (self.company_id is None or self.company_id == company_id)
