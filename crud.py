import math
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Query, Session

import models
import schemas

CENT = Decimal("0.01")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def utc_today() -> date:
    return utcnow().date()


def to_money(value: Union[Decimal, float, int, str, None]) -> Decimal:
    """Coerce a stored/aggregated amount to a two-place Decimal (0 for NULL)."""
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def compute_commission(amount: Decimal, percentage: Decimal) -> Decimal:
    """Commission on ``amount`` at ``percentage`` percent, rounded half-up to cents."""
    return (Decimal(str(amount)) * Decimal(str(percentage)) / Decimal(100)).quantize(
        CENT, rounding=ROUND_HALF_UP
    )


def is_unique_violation(exc: IntegrityError) -> bool:
    """True when the store rejected a write because of a unique index."""
    orig = getattr(exc, "orig", None)
    if getattr(orig, "pgcode", None) == "23505":
        return True
    message = str(orig if orig is not None else exc)
    return "UNIQUE constraint failed" in message or "duplicate key value" in message


def paginate(query: Query, page: int, per_page: int) -> tuple[list[Any], schemas.Pagination]:
    """Apply LIMIT/OFFSET for ``page`` (1-based) and build the pagination block."""
    page = max(1, page)
    total = query.order_by(None).count()
    items = query.limit(per_page).offset((page - 1) * per_page).all()
    total_pages = math.ceil(total / per_page) if per_page else 0
    pagination = schemas.Pagination(
        total=total,
        current_page=page,
        per_page=per_page,
        total_pages=total_pages,
        has_previous=page > 1,
        has_next=page < total_pages,
        previous_page=page - 1,
        next_page=page + 1,
    )
    return items, pagination


# --- Reference entity lookups ---
def get_user_by_id(db: Session, user_id: int) -> Optional[models.User]:
    """Get a user by their primary key ID."""
    return db.query(models.User).filter(models.User.id == user_id).first()


def get_employer(db: Session, employer_id: int) -> Optional[models.Employer]:
    return db.query(models.Employer).filter(models.Employer.id == employer_id).first()


def get_employer_by_user_id(db: Session, user_id: int) -> Optional[models.Employer]:
    return db.query(models.Employer).filter(models.Employer.user_id == user_id).first()


def get_talent(db: Session, talent_id: int) -> Optional[models.Talent]:
    return db.query(models.Talent).filter(models.Talent.id == talent_id).first()


def get_talent_by_user_id(db: Session, user_id: int) -> Optional[models.Talent]:
    return db.query(models.Talent).filter(models.Talent.user_id == user_id).first()


def get_skill(db: Session, skill_id: int) -> Optional[models.Skill]:
    return db.query(models.Skill).filter(models.Skill.id == skill_id).first()
