"""
Employee boundary model.

Employee records are owned by the HR directory service; the leave engine keeps
the subset it needs for eligibility checks and reporting-line authorization.
"""
from sqlalchemy import Column, Integer, String, Date, DateTime, Boolean, ForeignKey
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from leave_engine.database import Base


class Employee(Base):
    __tablename__ = "employees"

    id = Column(Integer, primary_key=True, index=True)
    employee_code = Column(String, unique=True, index=True, nullable=True)
    name = Column(String, nullable=False)
    company_id = Column(Integer, index=True, nullable=False)
    department_id = Column(Integer, index=True, nullable=True)

    # Reporting line: direct manager
    manager_id = Column(Integer, ForeignKey("employees.id"), nullable=True, index=True)

    join_date = Column(Date, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    manager = relationship("Employee", remote_side=[id], back_populates="direct_reports")
    direct_reports = relationship("Employee", back_populates="manager")
    leave_requests = relationship("LeaveRequest", foreign_keys="LeaveRequest.employee_id", back_populates="employee")

    def __repr__(self):
        return f"<Employee {self.id}: {self.name}>"


class ApprovalDelegation(Base):
    """A manager hands their approval duties to another employee for a date window."""
    __tablename__ = "approval_delegations"

    id = Column(Integer, primary_key=True, index=True)
    delegator_id = Column(Integer, ForeignKey("employees.id"), nullable=False, index=True)
    delegate_id = Column(Integer, ForeignKey("employees.id"), nullable=False, index=True)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    delegator = relationship("Employee", foreign_keys=[delegator_id])
    delegate = relationship("Employee", foreign_keys=[delegate_id])
