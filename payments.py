"""Payment ledger: settlements recorded against contracts."""
from collections import OrderedDict
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple, Union

import structlog
from sqlalchemy import func, or_
from sqlalchemy.orm import Session

import audit
import crud
import errors
import models
import schemas
from database import atomic
from observability import record_engine_metric
from settings import get_settings

logger = structlog.get_logger(__name__)

# Statuses a payment may be recorded with
CREATABLE_STATUSES = frozenset({models.PaymentStatus.COMPLETED, models.PaymentStatus.PENDING})


def _parse_status(value: Union[str, models.PaymentStatus]) -> models.PaymentStatus:
    try:
        return models.PaymentStatus(value)
    except ValueError:
        raise errors.InvalidTransitionError("payment", None, str(value)) from None


def _lock_payment(db: Session, payment_id: int) -> Optional[models.Payment]:
    return (
        db.query(models.Payment)
        .filter(models.Payment.id == payment_id)
        .with_for_update()
        .populate_existing()
        .first()
    )


def get_payment(db: Session, payment_id: int) -> Optional[models.Payment]:
    return db.query(models.Payment).filter(models.Payment.id == payment_id).first()


def create_payment(
    db: Session,
    contract_id: int,
    amount: Decimal,
    payment_method: str,
    notes: Optional[str] = None,
    commission_amount: Optional[Decimal] = None,
    status: Union[str, models.PaymentStatus] = models.PaymentStatus.COMPLETED,
    actor: Optional[models.Actor] = None,
    audit_sink: Optional[audit.AuditSink] = None,
) -> models.Payment:
    """Record a payment from the contract's employer to its talent.

    The commission is always derived from the contract's percentage. A
    caller-supplied ``commission_amount`` is only accepted when it agrees.
    """
    status = _parse_status(status)
    if status not in CREATABLE_STATUSES:
        raise errors.ValidationError(
            "Payments are recorded as completed or pending.", {"status": f"Cannot record a {status.value} payment"}
        )
    if amount is None or Decimal(str(amount)) <= 0:
        raise errors.ValidationError("Amount must be greater than zero.", {"amount": "Must be greater than zero"})
    if not payment_method:
        raise errors.ValidationError("Payment method is required.", {"payment_method": "This field is required"})
    amount = crud.to_money(amount)

    with atomic(db):
        contract = (
            db.query(models.Contract)
            .filter(models.Contract.id == contract_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if contract is None:
            raise errors.NotFoundError("Contract not found.")
        if contract.status == models.ContractStatus.TERMINATED:
            raise errors.ValidationError(
                "Payments cannot be recorded against a terminated contract.",
                {"contract_id": "Contract is terminated"},
            )

        derived = crud.compute_commission(amount, contract.commission_percentage)
        if commission_amount is not None and crud.to_money(commission_amount) != derived:
            raise errors.ValidationError(
                "Commission does not match the contract's commission percentage.",
                {"commission_amount": f"Expected {derived}"},
            )

        db_payment = models.Payment(
            contract_id=contract.id,
            payer_id=contract.employer.user_id,
            payee_id=contract.talent.user_id,
            amount=amount,
            commission_amount=derived,
            payment_method=payment_method,
            status=status,
            notes=notes,
            paid_at=crud.utcnow() if status == models.PaymentStatus.COMPLETED else None,
        )
        db.add(db_payment)
        db.flush()
        event = audit.AuditEvent(
            action="payment_recorded",
            entity_type="payment",
            entity_id=db_payment.id,
            actor=actor,
            to_status=status,
            details={"contract_id": contract.id, "amount": amount, "commission_amount": derived},
        )

    logger.info(
        "Payment recorded",
        payment_id=db_payment.id,
        contract_id=contract_id,
        amount=str(amount),
        commission_amount=str(derived),
        status=status.value,
    )
    audit.publish(db, [event], audit_sink)
    record_engine_metric("PaymentsRecorded", status=status.value)
    return db_payment


def update_payment_status(
    db: Session,
    payment_id: int,
    target: Union[str, models.PaymentStatus],
    actor: Optional[models.Actor] = None,
    audit_sink: Optional[audit.AuditSink] = None,
) -> int:
    """Settle, fail or refund a payment along the payment state machine."""
    target = _parse_status(target)

    with atomic(db):
        db_payment = _lock_payment(db, payment_id)
        if db_payment is None:
            raise errors.NotFoundError("Payment not found.")
        current = db_payment.status
        if target not in models.VALID_PAYMENT_TRANSITIONS[current]:
            raise errors.InvalidTransitionError("payment", current.value, target.value)

        values: Dict[Any, Any] = {models.Payment.status: target}
        if target == models.PaymentStatus.COMPLETED:
            values[models.Payment.paid_at] = crud.utcnow()
        rows = (
            db.query(models.Payment)
            .filter(models.Payment.id == payment_id, models.Payment.status == current)
            .update(values)
        )
        if rows == 0:
            raise errors.InvalidTransitionError("payment", current.value, target.value)
        event = audit.AuditEvent(
            action="payment_status_changed",
            entity_type="payment",
            entity_id=payment_id,
            actor=actor,
            from_status=current,
            to_status=target,
        )

    logger.info("Payment status changed", payment_id=payment_id, from_status=current.value, to_status=target.value)
    audit.publish(db, [event], audit_sink)
    if target == models.PaymentStatus.REFUNDED:
        record_engine_metric("PaymentsRefunded")
    return rows


def refund_payment(
    db: Session,
    payment_id: int,
    reason: Optional[str] = None,
    actor: Optional[models.Actor] = None,
    audit_sink: Optional[audit.AuditSink] = None,
) -> int:
    """Refund a completed payment; anything else raises ``NotRefundableError``."""
    with atomic(db):
        db_payment = _lock_payment(db, payment_id)
        if db_payment is None:
            raise errors.NotFoundError("Payment not found.")
        if db_payment.status != models.PaymentStatus.COMPLETED:
            raise errors.NotRefundableError()

        values: Dict[Any, Any] = {models.Payment.status: models.PaymentStatus.REFUNDED}
        if reason:
            line = f"Refund reason: {reason}"
            values[models.Payment.notes] = f"{db_payment.notes}\n{line}" if db_payment.notes else line
        rows = (
            db.query(models.Payment)
            .filter(
                models.Payment.id == payment_id,
                models.Payment.status == models.PaymentStatus.COMPLETED,
            )
            .update(values)
        )
        if rows == 0:
            raise errors.NotRefundableError()
        event = audit.AuditEvent(
            action="payment_refunded",
            entity_type="payment",
            entity_id=payment_id,
            actor=actor,
            from_status=models.PaymentStatus.COMPLETED,
            to_status=models.PaymentStatus.REFUNDED,
            details={"amount": db_payment.amount, "reason": reason},
        )

    logger.info("Payment refunded", payment_id=payment_id)
    audit.publish(db, [event], audit_sink)
    record_engine_metric("PaymentsRefunded")
    return rows


def get_admin_stats(db: Session) -> Dict[str, Any]:
    def total(column, status):
        value = (
            db.query(func.coalesce(func.sum(column), 0))
            .filter(models.Payment.status == status)
            .scalar()
        )
        return crud.to_money(value)

    return {
        "total_paid": total(models.Payment.amount, models.PaymentStatus.COMPLETED),
        "total_commission": total(models.Payment.commission_amount, models.PaymentStatus.COMPLETED),
        "pending_count": db.query(func.count(models.Payment.id))
        .filter(models.Payment.status == models.PaymentStatus.PENDING)
        .scalar(),
        "pending_amount": total(models.Payment.amount, models.PaymentStatus.PENDING),
        "total_count": db.query(func.count(models.Payment.id)).scalar(),
        "refunded": total(models.Payment.amount, models.PaymentStatus.REFUNDED),
    }


def _month_keys(months: int, today: Optional[date] = None) -> List[str]:
    """``YYYY-MM`` keys for the last ``months`` months, oldest first."""
    today = today or crud.utc_today()
    year, month = today.year, today.month
    keys = []
    for _ in range(months):
        keys.append(f"{year:04d}-{month:02d}")
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    return list(reversed(keys))


def _month_bucket(db: Session, column):
    """SQL expression rendering ``column`` as ``YYYY-MM`` on the bound dialect."""
    if db.get_bind().dialect.name == "sqlite":
        return func.strftime("%Y-%m", column)
    return func.to_char(column, "YYYY-MM")


def get_monthly_revenue(db: Session, months: int = 6, today: Optional[date] = None) -> List[Dict[str, Any]]:
    """Revenue and commission of completed payments per month.

    Only payments paid on or after the first day of the oldest month are read;
    months with no payments are reported with zeros.
    """
    if months < 1:
        raise errors.ValidationError("months must be at least 1.", {"months": "Must be at least 1"})
    keys = _month_keys(months, today)
    buckets: "OrderedDict[str, Dict[str, Decimal]]" = OrderedDict(
        (key, {"revenue": Decimal("0.00"), "commission": Decimal("0.00")}) for key in keys
    )
    year, month = (int(part) for part in keys[0].split("-"))
    window_start = datetime(year, month, 1, tzinfo=timezone.utc)

    month_key = _month_bucket(db, models.Payment.paid_at).label("month")
    rows = (
        db.query(
            month_key,
            func.coalesce(func.sum(models.Payment.amount), 0),
            func.coalesce(func.sum(models.Payment.commission_amount), 0),
        )
        .filter(
            models.Payment.status == models.PaymentStatus.COMPLETED,
            models.Payment.paid_at >= window_start,
        )
        .group_by(month_key)
        .all()
    )
    for key, revenue, commission in rows:
        if key in buckets:
            buckets[key]["revenue"] = crud.to_money(revenue)
            buckets[key]["commission"] = crud.to_money(commission)

    return [{"month": key, **values} for key, values in buckets.items()]


def list_payments(
    db: Session,
    status: Optional[models.PaymentStatus] = None,
    search: Optional[str] = None,
    page: int = 1,
    per_page: Optional[int] = None,
) -> Tuple[List[models.Payment], schemas.Pagination]:
    """Admin payment listing, newest first, searchable by talent or company name."""
    query = db.query(models.Payment)
    if status is not None:
        query = query.filter(models.Payment.status == status)
    if search:
        pattern = f"%{search}%"
        query = (
            query.join(models.Contract, models.Contract.id == models.Payment.contract_id)
            .join(models.Talent, models.Talent.id == models.Contract.talent_id)
            .join(models.Employer, models.Employer.id == models.Contract.employer_id)
            .filter(or_(models.Talent.full_name.ilike(pattern), models.Employer.company_name.ilike(pattern)))
        )
    query = query.order_by(models.Payment.created_at.desc(), models.Payment.id.desc())
    return crud.paginate(query, page, per_page or get_settings().items_per_page)
