"""
Leave Balance Ledger

Per-employee, per-leave-type, per-year balances and the append-only ledger of
every movement against them.

Architecture:
- LeaveRequestStore -> LeaveBalanceLedger -> Models
- debit/credit never commit; they join the caller's unit of work so that a
  status transition and its balance movement land in one transaction
- Balance rows are locked (SELECT ... FOR UPDATE where supported) and carry a
  version column; a unit that lost a race is rolled back and retried whole
"""

import calendar
import logging
import threading
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, ROUND_FLOOR, ROUND_HALF_UP
from typing import Callable, Iterable, List, Optional, TypeVar

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_fixed

from leave_engine.core.config import settings
from leave_engine.core.exceptions import (
    InsufficientBalanceError,
    InvalidStateTransitionError,
    NotFoundError,
    OperationCancelledError,
    ValidationError,
)
from leave_engine.models.employee import Employee
from leave_engine.models.leave_balance import LeaveBalance, LeaveLedgerEntry, LedgerEntryType
from leave_engine.models.leave_request import LeaveRequest, LeaveStatus
from leave_engine.models.leave_type import LeaveType, LeaveCategory, AccrualCadence

logger = logging.getLogger(__name__)

T = TypeVar("T")

ZERO = Decimal("0")
HALF = Decimal("0.5")


def to_days(value) -> Decimal:
    """Normalise a day count to one decimal place."""
    return Decimal(str(value or 0)).quantize(Decimal("0.1"))


def _round_down_to_half(value: Decimal) -> Decimal:
    return (value / HALF).to_integral_value(rounding=ROUND_FLOOR) * HALF


def _add_months(start: date, months: int) -> date:
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def accrued_entitlement(accrual: str, allocated: Decimal, year: int, as_of: date) -> Decimal:
    """
    Portion of the allocation available on `as_of`.
    Monthly cadence releases 1/12 per started month, rounded down to half days.
    """
    allocated = to_days(allocated)
    if accrual != AccrualCadence.MONTHLY.value:
        return allocated
    if as_of.year < year:
        return ZERO
    months = 12 if as_of.year > year else as_of.month
    return _round_down_to_half(allocated * months / 12)


def prorated_entitlement(
    join_date: Optional[date],
    default_days,
    category: str,
    year: int,
    today: date,
    probation_months: Optional[int] = None,
) -> Decimal:
    """
    Annual leave granted for `year` to an employee who joined on `join_date`.

    Only annual leave is prorated. Nothing is granted while the employee is on
    probation or when probation ends after the year; the full amount when it
    ended before the year started; otherwise the share of months left after
    probation ends.
    """
    default_days = to_days(default_days)
    if category != LeaveCategory.ANNUAL.value or join_date is None:
        return default_days

    months = settings.ledger.probation_months if probation_months is None else probation_months
    probation_end = _add_months(join_date, months)

    if probation_end > date(year, 12, 31):
        return ZERO
    if probation_end > today:
        return ZERO
    if probation_end < date(year, 1, 1):
        return default_days

    remaining_months = 12 - (probation_end.month - 1)
    prorated = (default_days * remaining_months / 12).to_integral_value(rounding=ROUND_HALF_UP)
    return to_days(prorated)


def check_cancelled(cancel_event: Optional[threading.Event]) -> None:
    """Abort if the caller withdrew the operation. Only call before mutating."""
    if cancel_event is not None and cancel_event.is_set():
        raise OperationCancelledError()


def lost_concurrent_write(exc: BaseException) -> bool:
    """
    True for failures caused by another writer getting there first: a stale
    version, or a balance row for the same period inserted concurrently.
    """
    if isinstance(exc, StaleDataError):
        return True
    if isinstance(exc, IntegrityError):
        # PostgreSQL names the constraint, SQLite lists its columns
        message = str(exc.orig)
        return "uq_balance_period" in message or "leave_balances.employee_id" in message
    return False


def run_in_unit(db: Session, operation: Callable[[], T], cancel_event: Optional[threading.Event] = None) -> T:
    """
    Run `operation` as one transaction: commit on success, roll back on any error.
    A unit that lost a race to another writer (stale version, or a duplicate
    first insert of a balance row) is retried from scratch; once retries are
    exhausted the race surfaces as InvalidStateTransitionError.
    """
    def _attempt() -> T:
        check_cancelled(cancel_event)
        try:
            result = operation()
            db.commit()
            return result
        except Exception:
            db.rollback()
            raise

    retrying = Retrying(
        stop=stop_after_attempt(settings.ledger.retry_attempts),
        wait=wait_fixed(settings.ledger.retry_wait_seconds),
        retry=retry_if_exception(lost_concurrent_write),
        reraise=True,
    )
    try:
        for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info(f"Retrying unit of work after concurrent update (attempt {attempt.retry_state.attempt_number})")
                result = _attempt()
        return result
    except (StaleDataError, IntegrityError) as e:
        if not lost_concurrent_write(e):
            raise
        logger.warning(f"Unit of work lost a concurrent update race: {e}")
        raise InvalidStateTransitionError(
            "The request or balance was modified concurrently; reload and try again"
        ) from e


@dataclass
class BalanceView:
    """Read-side projection of a balance row with derived figures."""
    id: int
    employee_id: int
    leave_type_id: int
    leave_type_code: str
    year: int
    allocated_days: Decimal
    carried_forward_days: Decimal
    entitlement: Decimal
    used_days: Decimal
    pending_days: Decimal
    remaining_days: Decimal
    expires_at: Optional[date] = None


class LeaveBalanceLedger:
    def __init__(self, db: Session, today: Optional[date] = None):
        self.db = db
        self.today = today or date.today()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _leave_type(self, leave_type_id: int) -> LeaveType:
        leave_type = self.db.get(LeaveType, leave_type_id)
        if leave_type is None:
            raise NotFoundError("Leave type", leave_type_id)
        return leave_type

    def _find(self, employee_id: int, leave_type_id: int, year: int, lock: bool = False) -> Optional[LeaveBalance]:
        query = select(LeaveBalance).where(
            LeaveBalance.employee_id == employee_id,
            LeaveBalance.leave_type_id == leave_type_id,
            LeaveBalance.year == year,
        )
        if lock:
            query = query.with_for_update()
        return self.db.execute(query).scalar_one_or_none()

    def get_or_create_balance(self, employee_id: int, leave_type: LeaveType, year: int, lock: bool = False) -> LeaveBalance:
        """
        Fetch the period's balance row, provisioning it from the leave type's
        annual entitlement on first use. Provisioning flushes but does not commit.
        """
        balance = self._find(employee_id, leave_type.id, year, lock=lock)
        if balance is not None:
            return balance

        allocated = ZERO if leave_type.accrual == AccrualCadence.NONE.value else to_days(leave_type.default_days)
        balance = LeaveBalance(
            employee_id=employee_id,
            leave_type_id=leave_type.id,
            year=year,
            allocated_days=allocated,
            carried_forward_days=ZERO,
            used_days=ZERO,
        )
        self.db.add(balance)
        self._record(employee_id, leave_type.id, year, LedgerEntryType.ALLOCATION, allocated, reason="Default entitlement")
        self.db.flush()
        logger.info(f"Provisioned {leave_type.code} balance for employee {employee_id} ({year}): {allocated} days")
        return balance

    def entitlement(self, balance: LeaveBalance, leave_type: LeaveType, as_of: Optional[date] = None) -> Decimal:
        accrued = accrued_entitlement(leave_type.accrual, balance.allocated_days, balance.year, as_of or self.today)
        return accrued + to_days(balance.carried_forward_days)

    def remaining(self, employee_id: int, leave_type_id: int, year: int, as_of: Optional[date] = None) -> Decimal:
        """
        entitlement - sum of approved debits for the period.
        Pending requests are not reserved against the balance.
        """
        leave_type = self._leave_type(leave_type_id)
        balance = self._find(employee_id, leave_type_id, year)
        if balance is None:
            if leave_type.accrual == AccrualCadence.NONE.value:
                return ZERO
            return accrued_entitlement(leave_type.accrual, leave_type.default_days, year, as_of or self.today)
        return self.entitlement(balance, leave_type, as_of) - to_days(balance.used_days)

    def approved_days(self, employee_id: int, leave_type_id: int, year: int) -> Decimal:
        total = self.db.execute(
            select(func.coalesce(func.sum(LeaveRequest.total_days), 0)).where(
                LeaveRequest.employee_id == employee_id,
                LeaveRequest.leave_type_id == leave_type_id,
                LeaveRequest.status == LeaveStatus.APPROVED.value,
                func.extract("year", LeaveRequest.start_date) == year,
            )
        ).scalar()
        return to_days(total)

    def pending_days(self, employee_id: int, leave_type_id: int, year: int) -> Decimal:
        total = self.db.execute(
            select(func.coalesce(func.sum(LeaveRequest.total_days), 0)).where(
                LeaveRequest.employee_id == employee_id,
                LeaveRequest.leave_type_id == leave_type_id,
                LeaveRequest.status == LeaveStatus.PENDING.value,
                func.extract("year", LeaveRequest.start_date) == year,
            )
        ).scalar()
        return to_days(total)

    def ensure_available(self, employee_id: int, leave_type: LeaveType, year: int, amount: Decimal, as_of: Optional[date] = None) -> Decimal:
        """Raise InsufficientBalanceError unless `amount` fits; returns the remaining balance."""
        remaining = self.remaining(employee_id, leave_type.id, year, as_of)
        if not leave_type.allow_negative_balance and to_days(amount) > remaining:
            raise InsufficientBalanceError(float(to_days(amount)), float(remaining), leave_type.name)
        return remaining

    def balances(
        self,
        employee_ids: Optional[Iterable[int]] = None,
        year: Optional[int] = None,
        leave_type_id: Optional[int] = None,
    ) -> List[BalanceView]:
        query = select(LeaveBalance).order_by(LeaveBalance.employee_id, LeaveBalance.leave_type_id)
        if employee_ids is not None:
            query = query.where(LeaveBalance.employee_id.in_(list(employee_ids)))
        if year is not None:
            query = query.where(LeaveBalance.year == year)
        if leave_type_id is not None:
            query = query.where(LeaveBalance.leave_type_id == leave_type_id)

        views = []
        for balance in self.db.execute(query).scalars().all():
            leave_type = balance.leave_type
            entitlement = self.entitlement(balance, leave_type)
            views.append(BalanceView(
                id=balance.id,
                employee_id=balance.employee_id,
                leave_type_id=balance.leave_type_id,
                leave_type_code=leave_type.code,
                year=balance.year,
                allocated_days=to_days(balance.allocated_days),
                carried_forward_days=to_days(balance.carried_forward_days),
                entitlement=entitlement,
                used_days=to_days(balance.used_days),
                pending_days=self.pending_days(balance.employee_id, balance.leave_type_id, balance.year),
                remaining_days=entitlement - to_days(balance.used_days),
                expires_at=balance.expires_at,
            ))
        return views

    def ensure_balances(self, employee_id: int, year: int, leave_types: Iterable[LeaveType]) -> List[BalanceView]:
        """Provision any missing balances for the employee and return all of them for the year."""
        leave_types = list(leave_types)

        def _provision() -> None:
            for leave_type in leave_types:
                self.get_or_create_balance(employee_id, leave_type, year)

        if any(self._find(employee_id, t.id, year) is None for t in leave_types):
            run_in_unit(self.db, _provision)
        return self.balances(employee_ids=[employee_id], year=year)

    # ------------------------------------------------------------------
    # Movements (join the caller's transaction)
    # ------------------------------------------------------------------

    def debit(
        self,
        employee_id: int,
        leave_type: LeaveType,
        year: int,
        amount,
        leave_request_id: Optional[int] = None,
        actor_id: Optional[int] = None,
        as_of: Optional[date] = None,
    ) -> LeaveBalance:
        amount = to_days(amount)
        balance = self.get_or_create_balance(employee_id, leave_type, year, lock=True)
        remaining = self.entitlement(balance, leave_type, as_of) - to_days(balance.used_days)
        if not leave_type.allow_negative_balance and amount > remaining:
            raise InsufficientBalanceError(float(amount), float(remaining), leave_type.name)

        balance.used_days = to_days(balance.used_days) + amount
        self._record(employee_id, leave_type.id, year, LedgerEntryType.DEBIT, -amount,
                     leave_request_id=leave_request_id, actor_id=actor_id)
        self.db.flush()
        return balance

    def credit(
        self,
        employee_id: int,
        leave_type: LeaveType,
        year: int,
        amount,
        leave_request_id: Optional[int] = None,
        actor_id: Optional[int] = None,
    ) -> LeaveBalance:
        amount = to_days(amount)
        balance = self.get_or_create_balance(employee_id, leave_type, year, lock=True)
        if amount > to_days(balance.used_days):
            # Crediting more than was consumed means the ledger and requests disagree
            raise ValidationError(
                "Credit exceeds consumed days for this period",
                details={"amount": float(amount), "used_days": float(to_days(balance.used_days))},
            )
        balance.used_days = to_days(balance.used_days) - amount
        self._record(employee_id, leave_type.id, year, LedgerEntryType.CREDIT, amount,
                     leave_request_id=leave_request_id, actor_id=actor_id)
        self.db.flush()
        return balance

    # ------------------------------------------------------------------
    # Administrative entitlement changes (own their transaction)
    # ------------------------------------------------------------------

    def _employee(self, employee_id: int) -> Employee:
        employee = self.db.get(Employee, employee_id)
        if employee is None:
            raise NotFoundError("Employee", employee_id)
        return employee

    def allocate(
        self,
        employee_id: int,
        leave_type_id: int,
        year: int,
        allocated_days,
        carried_forward_days=ZERO,
        actor_id: Optional[int] = None,
        expires_at: Optional[date] = None,
    ) -> LeaveBalance:
        """Set the period's entitlement, replacing the previous allocation. expires_at is recorded, not enforced."""
        allocated_days = to_days(allocated_days)
        carried_forward_days = to_days(carried_forward_days)
        if allocated_days < 0 or carried_forward_days < 0:
            raise ValidationError("Allocated and carried forward days cannot be negative")
        self._employee(employee_id)
        leave_type = self._leave_type(leave_type_id)

        def _allocate() -> LeaveBalance:
            balance = self.get_or_create_balance(employee_id, leave_type, year, lock=True)
            new_entitlement = allocated_days + carried_forward_days
            if not leave_type.allow_negative_balance and new_entitlement < to_days(balance.used_days):
                raise ValidationError(
                    "New entitlement is below days already consumed",
                    details={"entitlement": float(new_entitlement), "used_days": float(to_days(balance.used_days))},
                )
            delta = new_entitlement - to_days(balance.allocated_days) - to_days(balance.carried_forward_days)
            balance.allocated_days = allocated_days
            balance.carried_forward_days = carried_forward_days
            if expires_at is not None:
                balance.expires_at = expires_at
            self._record(employee_id, leave_type_id, year, LedgerEntryType.ALLOCATION, delta,
                         reason="Allocation", actor_id=actor_id)
            self.db.flush()
            return balance

        balance = run_in_unit(self.db, _allocate)
        logger.info(f"Allocated {allocated_days}+{carried_forward_days} {leave_type.code} days to employee {employee_id} ({year})")
        return balance

    def allocate_prorated(self, employee_ids: Iterable[int], leave_type_id: int, year: int, actor_id: Optional[int] = None) -> List[LeaveBalance]:
        """Bulk allocation from the leave type's default, prorated by join date for annual leave."""
        leave_type = self._leave_type(leave_type_id)
        results = []
        for employee_id in employee_ids:
            employee = self._employee(employee_id)
            days = prorated_entitlement(employee.join_date, leave_type.default_days, leave_type.category, year, self.today)
            results.append(self.allocate(employee_id, leave_type_id, year, days, actor_id=actor_id))
        return results

    def adjust(
        self,
        employee_id: int,
        leave_type_id: int,
        year: int,
        adjustment_days,
        reason: str,
        actor_id: Optional[int] = None,
    ) -> LeaveBalance:
        """Add (positive) or remove (negative) entitlement, with a mandatory reason."""
        adjustment_days = to_days(adjustment_days)
        if not reason or not reason.strip():
            raise ValidationError("Adjustment reason is required")
        if adjustment_days == 0:
            raise ValidationError("Adjustment must be non-zero")
        self._employee(employee_id)
        leave_type = self._leave_type(leave_type_id)

        def _adjust() -> LeaveBalance:
            balance = self.get_or_create_balance(employee_id, leave_type, year, lock=True)
            new_allocated = to_days(balance.allocated_days) + adjustment_days
            new_entitlement = new_allocated + to_days(balance.carried_forward_days)
            if new_allocated < 0 or (
                not leave_type.allow_negative_balance and new_entitlement < to_days(balance.used_days)
            ):
                raise ValidationError(
                    "Adjustment would drop entitlement below days already consumed",
                    details={"entitlement": float(new_entitlement), "used_days": float(to_days(balance.used_days))},
                )
            balance.allocated_days = new_allocated
            self._record(employee_id, leave_type_id, year, LedgerEntryType.ADJUSTMENT, adjustment_days,
                         reason=reason.strip(), actor_id=actor_id)
            self.db.flush()
            return balance

        balance = run_in_unit(self.db, _adjust)
        logger.info(f"Adjusted {leave_type.code} balance of employee {employee_id} ({year}) by {adjustment_days}: {reason}")
        return balance

    def entries(self, employee_id: int, leave_type_id: Optional[int] = None, year: Optional[int] = None) -> List[LeaveLedgerEntry]:
        query = select(LeaveLedgerEntry).where(LeaveLedgerEntry.employee_id == employee_id)
        if leave_type_id is not None:
            query = query.where(LeaveLedgerEntry.leave_type_id == leave_type_id)
        if year is not None:
            query = query.where(LeaveLedgerEntry.year == year)
        return list(self.db.execute(query.order_by(LeaveLedgerEntry.id)).scalars().all())

    def _record(
        self,
        employee_id: int,
        leave_type_id: int,
        year: int,
        entry_type: LedgerEntryType,
        amount: Decimal,
        leave_request_id: Optional[int] = None,
        reason: Optional[str] = None,
        actor_id: Optional[int] = None,
    ) -> None:
        self.db.add(LeaveLedgerEntry(
            employee_id=employee_id,
            leave_type_id=leave_type_id,
            year=year,
            entry_type=entry_type.value,
            amount=to_days(amount),
            leave_request_id=leave_request_id,
            reason=reason,
            actor_id=actor_id,
        ))
