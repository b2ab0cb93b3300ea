# Models package
# Importing modules here ensures they are registered with SQLAlchemy Base
from . import employee, leave_type, leave_balance, leave_request

# Explicit class exports for cleaner imports
from .employee import Employee, ApprovalDelegation
from .leave_type import LeaveType, LeaveCategory, AccrualCadence
from .leave_balance import LeaveBalance, LeaveLedgerEntry, LedgerEntryType
from .leave_request import LeaveRequest, LeaveStatus, LeaveAuditLog

__all__ = [
    "Employee",
    "ApprovalDelegation",
    "LeaveType",
    "LeaveCategory",
    "AccrualCadence",
    "LeaveBalance",
    "LeaveLedgerEntry",
    "LedgerEntryType",
    "LeaveRequest",
    "LeaveStatus",
    "LeaveAuditLog",
]
