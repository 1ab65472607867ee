"""Contract engine: the engagement formed when a candidate is hired.

``create_contract`` is the one place that writes across entities. The new
contract, the job's ``filled`` flag and the application's ``accepted`` flag
commit together or not at all; audit events go out only after that commit.
"""
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import structlog
from pydantic import BaseModel
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import audit
import crud
import errors
import jobs
import models
import schemas
from database import atomic
from observability import record_engine_metric
from settings import get_settings

logger = structlog.get_logger(__name__)

REQUIRED_FIELDS = ("job_id", "talent_id", "employer_id", "start_date", "rate", "rate_type")

# Postings a contract may be signed against; a filled posting can take more hires
HIRABLE_JOB_STATUSES = frozenset({models.JobStatus.ACTIVE, models.JobStatus.FILLED})

EDITABLE_FIELDS = ("end_date", "total_amount", "contract_document_url")

STATS_SCOPES = ("all", "employer", "talent")


def _parse_status(value: Union[str, models.ContractStatus]) -> models.ContractStatus:
    try:
        return models.ContractStatus(value)
    except ValueError:
        raise errors.InvalidTransitionError("contract", None, str(value)) from None


def _validate_new_contract(data: Dict[str, Any]) -> None:
    problems = {field: "This field is required" for field in REQUIRED_FIELDS if data.get(field) in (None, "")}
    if data.get("rate") is not None and data["rate"] <= 0:
        problems["rate"] = "Rate must be greater than zero"
    if problems:
        raise errors.ValidationError("Missing or invalid contract fields.", problems)
    if data.get("end_date") is not None and data["end_date"] < data["start_date"]:
        raise errors.ValidationError(
            "End date cannot be before start date.", {"end_date": "Must be on or after start_date"}
        )


def _lock_contract(db: Session, contract_id: int) -> Optional[models.Contract]:
    return (
        db.query(models.Contract)
        .filter(models.Contract.id == contract_id)
        .with_for_update()
        .populate_existing()
        .first()
    )


def get_contract(db: Session, contract_id: int) -> Optional[models.Contract]:
    return db.query(models.Contract).filter(models.Contract.id == contract_id).first()


def has_active_contract(db: Session, job_id: int, talent_id: int) -> bool:
    return (
        db.query(models.Contract.id)
        .filter(
            models.Contract.job_id == job_id,
            models.Contract.talent_id == talent_id,
            models.Contract.status == models.ContractStatus.ACTIVE,
        )
        .first()
        is not None
    )


def create_contract(
    db: Session,
    contract: schemas.ContractCreate,
    actor: Optional[models.Actor] = None,
    audit_sink: Optional[audit.AuditSink] = None,
) -> models.Contract:
    """Hire a talent for a job.

    Raises ``DuplicateActiveContractError`` when the pair already has an
    active contract, including when a concurrent request wins the race and
    the partial unique index rejects this insert.
    """
    data = contract.model_dump()
    if actor is not None and not actor.is_staff:
        if actor.role != models.Role.EMPLOYER:
            raise errors.AuthorizationError()
        if data.get("employer_id") not in (None, actor.id):
            raise errors.AuthorizationError()
        data["employer_id"] = actor.id
    _validate_new_contract(data)

    settings = get_settings()
    percentage = data.get("commission_percentage")
    if percentage is None:
        percentage = settings.default_commission_percentage
    percentage = Decimal(str(percentage))
    total_amount = data.get("total_amount")
    commission_amount = crud.compute_commission(total_amount, percentage) if total_amount is not None else None

    job_id, talent_id, employer_id = data["job_id"], data["talent_id"], data["employer_id"]
    events: List[audit.AuditEvent] = []
    try:
        with atomic(db):
            job = jobs.lock_job(db, job_id)
            if job is None or job.status == models.JobStatus.DELETED:
                raise errors.NotFoundError("Job not found.")
            if crud.get_talent(db, talent_id) is None:
                raise errors.NotFoundError("Talent not found.")
            if crud.get_employer(db, employer_id) is None:
                raise errors.NotFoundError("Employer not found.")
            if job.employer_id != employer_id:
                raise errors.AuthorizationError("This job does not belong to the employer.")
            if job.status not in HIRABLE_JOB_STATUSES:
                raise errors.ValidationError(
                    "Contracts can only be created for active or filled jobs.",
                    {"job_id": f"Job is {job.status.value}"},
                )

            application = None
            if data.get("application_id") is not None:
                application = (
                    db.query(models.Application)
                    .filter(models.Application.id == data["application_id"])
                    .with_for_update()
                    .populate_existing()
                    .first()
                )
                if application is None:
                    raise errors.NotFoundError("Application not found.")
                if application.job_id != job_id or application.talent_id != talent_id:
                    raise errors.ValidationError(
                        "Application does not match this job and talent.",
                        {"application_id": "Belongs to a different job or talent"},
                    )

            if has_active_contract(db, job_id, talent_id):
                raise errors.DuplicateActiveContractError()

            db_contract = models.Contract(
                job_id=job_id,
                talent_id=talent_id,
                employer_id=employer_id,
                application_id=application.id if application else None,
                start_date=data["start_date"],
                end_date=data.get("end_date"),
                rate=data["rate"],
                rate_type=data["rate_type"],
                currency=data.get("currency") or settings.default_currency,
                total_amount=total_amount,
                commission_percentage=percentage,
                commission_amount=commission_amount,
                status=models.ContractStatus.ACTIVE,
                contract_document_url=data.get("contract_document_url"),
            )
            db.add(db_contract)
            db.flush()

            events.append(
                audit.AuditEvent(
                    action="contract_created",
                    entity_type="contract",
                    entity_id=db_contract.id,
                    actor=actor,
                    to_status=models.ContractStatus.ACTIVE,
                    details={
                        "job_id": job_id,
                        "talent_id": talent_id,
                        "employer_id": employer_id,
                        "total_amount": total_amount,
                        "commission_percentage": percentage,
                        "commission_amount": commission_amount,
                    },
                )
            )
            events.append(jobs.mark_job_filled(db, job, actor))

            if application is not None:
                previous = application.status
                application.status = models.ApplicationStatus.ACCEPTED
                application.reviewed_at = crud.utcnow()
                db.flush()
                events.append(
                    audit.AuditEvent(
                        action="application_accepted",
                        entity_type="application",
                        entity_id=application.id,
                        actor=actor,
                        from_status=previous,
                        to_status=models.ApplicationStatus.ACCEPTED,
                        details={"contract_id": db_contract.id},
                    )
                )
    except IntegrityError as exc:
        if crud.is_unique_violation(exc):
            logger.info("Concurrent contract rejected by store", job_id=job_id, talent_id=talent_id)
            raise errors.DuplicateActiveContractError() from exc
        raise

    logger.info(
        "Contract created",
        contract_id=db_contract.id,
        job_id=job_id,
        talent_id=talent_id,
        commission_amount=str(commission_amount) if commission_amount is not None else None,
    )
    audit.publish(db, events, audit_sink)
    record_engine_metric("ContractsCreated")
    return db_contract


def ensure_party(contract: models.Contract, actor: Optional[models.Actor]) -> None:
    if actor is None or actor.is_staff:
        return
    if actor.role == models.Role.EMPLOYER and contract.employer_id == actor.id:
        return
    if actor.role == models.Role.TALENT and contract.talent_id == actor.id:
        return
    raise errors.AuthorizationError()


def update_contract_status(
    db: Session,
    contract_id: int,
    target: Union[str, models.ContractStatus],
    actor: Optional[models.Actor] = None,
    audit_sink: Optional[audit.AuditSink] = None,
) -> int:
    """Complete or terminate an active contract.

    The status write is conditional on the status just read, so a repeated or
    concurrent completion changes nothing and raises
    ``InvalidTransitionError``; the talent's completed-jobs counter moves
    exactly once.
    """
    target = _parse_status(target)

    with atomic(db):
        db_contract = _lock_contract(db, contract_id)
        if db_contract is None:
            raise errors.NotFoundError("Contract not found.")
        ensure_party(db_contract, actor)

        current = db_contract.status
        if target not in models.VALID_CONTRACT_TRANSITIONS[current]:
            raise errors.InvalidTransitionError("contract", current.value, target.value)

        rows = (
            db.query(models.Contract)
            .filter(models.Contract.id == contract_id, models.Contract.status == current)
            .update({models.Contract.status: target})
        )
        if rows == 0:
            raise errors.InvalidTransitionError("contract", current.value, target.value)
        if target == models.ContractStatus.COMPLETED:
            db.query(models.Talent).filter(models.Talent.id == db_contract.talent_id).update(
                {models.Talent.total_jobs_completed: models.Talent.total_jobs_completed + 1},
                synchronize_session=False,
            )
        event = audit.AuditEvent(
            action="contract_status_changed",
            entity_type="contract",
            entity_id=contract_id,
            actor=actor,
            from_status=current,
            to_status=target,
            details={"talent_id": db_contract.talent_id},
        )

    logger.info("Contract status changed", contract_id=contract_id, from_status=current.value, to_status=target.value)
    audit.publish(db, [event], audit_sink)
    if target == models.ContractStatus.COMPLETED:
        record_engine_metric("ContractsCompleted")
    else:
        record_engine_metric("ContractsTerminated")
    return rows


def update_contract(
    db: Session,
    contract_id: int,
    employer_id: int,
    fields: Union[schemas.ContractUpdate, Mapping[str, Any]],
) -> int:
    """Edit an active contract's end date, value or document link.

    Changing the value recomputes the commission at the contract's own
    percentage, which never changes after creation.
    """
    if isinstance(fields, BaseModel):
        changes = fields.model_dump(exclude_unset=True)
    else:
        changes = dict(fields)
    changes = {key: value for key, value in changes.items() if key in EDITABLE_FIELDS}
    if not changes:
        return 0

    with atomic(db):
        db_contract = _lock_contract(db, contract_id)
        if db_contract is None:
            raise errors.NotFoundError("Contract not found.")
        if db_contract.employer_id != employer_id:
            raise errors.AuthorizationError()
        if db_contract.status != models.ContractStatus.ACTIVE:
            raise errors.ConflictError("Only active contracts can be edited.")

        end_date = changes.get("end_date")
        if end_date is not None and end_date < db_contract.start_date:
            raise errors.ValidationError(
                "End date cannot be before start date.", {"end_date": "Must be on or after start_date"}
            )
        if "total_amount" in changes:
            total = changes["total_amount"]
            changes["commission_amount"] = (
                crud.compute_commission(total, db_contract.commission_percentage) if total is not None else None
            )

        for key, value in changes.items():
            setattr(db_contract, key, value)
        db.flush()

    logger.info("Contract updated", contract_id=contract_id, fields=sorted(changes))
    return 1


def get_contract_stats(db: Session, scope: str = "all", scope_id: Optional[int] = None) -> Dict[str, Any]:
    """Counts by status plus total value and commission for a scope."""
    if scope not in STATS_SCOPES:
        raise errors.ValidationError("Unknown stats scope.", {"scope": f"Must be one of {', '.join(STATS_SCOPES)}"})
    if scope != "all" and scope_id is None:
        raise errors.ValidationError(
            f"A {scope} scope needs an id.", {"scope_id": f"Required for the {scope} scope"}
        )

    def scoped(query):
        if scope == "employer":
            return query.filter(models.Contract.employer_id == scope_id)
        if scope == "talent":
            return query.filter(models.Contract.talent_id == scope_id)
        return query

    counts = dict(
        scoped(db.query(models.Contract.status, func.count(models.Contract.id)))
        .group_by(models.Contract.status)
        .all()
    )
    total_value, total_commission = scoped(
        db.query(
            func.coalesce(func.sum(models.Contract.total_amount), 0),
            func.coalesce(func.sum(models.Contract.commission_amount), 0),
        )
    ).one()

    stats: Dict[str, Any] = {status.value: counts.get(status, 0) for status in models.ContractStatus}
    stats["total"] = sum(counts.values())
    stats["total_value"] = crud.to_money(total_value)
    stats["total_commission"] = crud.to_money(total_commission)
    return stats


def list_contracts(
    db: Session,
    employer_id: Optional[int] = None,
    talent_id: Optional[int] = None,
    status: Optional[models.ContractStatus] = None,
    page: int = 1,
    per_page: Optional[int] = None,
) -> Tuple[List[models.Contract], schemas.Pagination]:
    query = db.query(models.Contract)
    if employer_id is not None:
        query = query.filter(models.Contract.employer_id == employer_id)
    if talent_id is not None:
        query = query.filter(models.Contract.talent_id == talent_id)
    if status is not None:
        query = query.filter(models.Contract.status == status)
    query = query.order_by(models.Contract.created_at.desc(), models.Contract.id.desc())
    return crud.paginate(query, page, per_page or get_settings().items_per_page)
