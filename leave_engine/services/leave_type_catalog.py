"""
Leave Type Catalog

Owns the configurable list of leave categories and the rules for classifying
an arbitrary leave type into one of the named dashboard buckets.
"""
import logging
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from leave_engine.core.exceptions import NotFoundError, ValidationError
from leave_engine.models.leave_request import LeaveRequest
from leave_engine.models.leave_type import LeaveType, LeaveCategory, AccrualCadence

logger = logging.getLogger(__name__)

# Fields that stay editable after a request references the type (display metadata and the enable switch)
EDITABLE_AFTER_USE = {"name", "description", "color", "is_active"}

DEFAULT_LEAVE_TYPES: List[Dict] = [
    {"code": "annual", "name": "Annual Leave", "category": LeaveCategory.ANNUAL, "default_days": 12},
    {"code": "sick", "name": "Sick Leave", "category": LeaveCategory.SICK, "default_days": 14},
    {"code": "maternity", "name": "Maternity", "category": LeaveCategory.MATERNITY, "default_days": 90},
    {"code": "paternity", "name": "Paternity", "category": LeaveCategory.PATERNITY, "default_days": 2},
    {"code": "marriage", "name": "Marriage", "category": LeaveCategory.MARRIAGE, "default_days": 3},
    {"code": "bereavement", "name": "Bereavement", "category": LeaveCategory.BEREAVEMENT, "default_days": 2},
    {
        "code": "unpaid", "name": "Unpaid", "category": LeaveCategory.UNPAID, "default_days": 0,
        "accrual": AccrualCadence.NONE, "is_paid": False, "allow_negative_balance": True,
    },
    {"code": "study", "name": "Study Leave", "category": LeaveCategory.STUDY, "default_days": 5},
]

# Name fragments recognised per category, including the Indonesian labels used by the dashboard
_CATEGORY_KEYWORDS = [
    (LeaveCategory.ANNUAL, ("annual", "tahunan")),
    (LeaveCategory.SICK, ("sick", "sakit")),
    (LeaveCategory.MATERNITY, ("maternity", "melahirkan")),
    (LeaveCategory.PATERNITY, ("paternity",)),
    (LeaveCategory.MARRIAGE, ("marriage", "nikah")),
    (LeaveCategory.BEREAVEMENT, ("bereavement", "duka")),
    (LeaveCategory.UNPAID, ("unpaid", "tanpa gaji")),
    (LeaveCategory.STUDY, ("study", "belajar")),
]


def classify(code: Optional[str], name: Optional[str]) -> LeaveCategory:
    """
    Resolve the dashboard category of a leave type.
    An exact code match wins; otherwise the first keyword found in the name.
    Anything unrecognised lands in OTHER.
    """
    code = (code or "").strip().lower()
    name = (name or "").strip().lower()
    for category, _ in _CATEGORY_KEYWORDS:
        if code == category.value:
            return category
    for category, keywords in _CATEGORY_KEYWORDS:
        if any(k in name for k in keywords):
            return category
    return LeaveCategory.OTHER


def enum_value(enum_cls, value, field: str) -> str:
    try:
        return enum_cls(value).value
    except ValueError:
        raise ValidationError(
            f"Invalid {field} '{value}'",
            details={"allowed": [m.value for m in enum_cls]},
        )


class LeaveTypeCatalog:
    def __init__(self, db: Session):
        self.db = db

    def get(self, leave_type_id: int) -> LeaveType:
        leave_type = self.db.get(LeaveType, leave_type_id)
        if leave_type is None:
            raise NotFoundError("Leave type", leave_type_id)
        return leave_type

    def get_by_code(self, code: str) -> LeaveType:
        leave_type = self.db.execute(
            select(LeaveType).where(LeaveType.code == code)
        ).scalar_one_or_none()
        if leave_type is None:
            raise NotFoundError("Leave type", code)
        return leave_type

    def list(self, company_id: Optional[int] = None, include_inactive: bool = False) -> List[LeaveType]:
        query = select(LeaveType).order_by(LeaveType.id)
        if not include_inactive:
            query = query.where(LeaveType.is_active.is_(True))
        types = self.db.execute(query).scalars().all()
        if company_id is not None:
            types = [t for t in types if t.company_id is None or t.company_id == company_id]
        return list(types)

    def create(
        self,
        code: str,
        name: str,
        default_days: Decimal = Decimal("0"),
        accrual: AccrualCadence = AccrualCadence.ANNUAL,
        is_paid: bool = True,
        allow_negative_balance: bool = False,
        category: Optional[LeaveCategory] = None,
        company_id: Optional[int] = None,
        description: Optional[str] = None,
        color: Optional[str] = None,
    ) -> LeaveType:
        if Decimal(str(default_days)) < 0:
            raise ValidationError("Annual entitlement cannot be negative")
        existing = self.db.execute(select(LeaveType).where(LeaveType.code == code)).scalar_one_or_none()
        if existing is not None:
            raise ValidationError(f"Leave type code '{code}' already exists")

        leave_type = LeaveType(
            code=code,
            name=name,
            description=description,
            color=color,
            category=enum_value(LeaveCategory, category, "category") if category else classify(code, name).value,
            default_days=Decimal(str(default_days)),
            accrual=enum_value(AccrualCadence, accrual, "accrual"),
            is_paid=is_paid,
            allow_negative_balance=allow_negative_balance,
            company_id=company_id,
        )
        self.db.add(leave_type)
        self.db.flush()
        return leave_type

    def update(self, leave_type_id: int, **changes) -> LeaveType:
        """
        Apply changes to a leave type. Once any request references the type
        only display metadata may change.
        """
        leave_type = self.get(leave_type_id)
        changes = {k: v for k, v in changes.items() if v is not None}
        restricted = set(changes) - EDITABLE_AFTER_USE
        if restricted and self.is_referenced(leave_type_id):
            raise ValidationError(
                "Leave type is referenced by existing requests; only display fields may change",
                details={"fields": sorted(restricted)},
            )
        for field, value in changes.items():
            if field == "accrual":
                value = enum_value(AccrualCadence, value, "accrual")
            elif field == "category":
                value = enum_value(LeaveCategory, value, "category")
            elif field == "default_days":
                value = Decimal(str(value))
            setattr(leave_type, field, value)
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(leave_type)
        return leave_type

    def is_referenced(self, leave_type_id: int) -> bool:
        return self.db.execute(
            select(LeaveRequest.id).where(LeaveRequest.leave_type_id == leave_type_id).limit(1)
        ).first() is not None

    def seed_defaults(self) -> List[LeaveType]:
        """Create any missing default leave types. Existing codes are left untouched."""
        created = []
        for defaults in DEFAULT_LEAVE_TYPES:
            exists = self.db.execute(
                select(LeaveType.id).where(LeaveType.code == defaults["code"])
            ).first()
            if exists:
                continue
            created.append(self.create(**defaults))
        if created:
            try:
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise
            logger.info(f"Seeded {len(created)} default leave types")
        return created
