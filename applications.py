"""Candidate applications against job postings."""
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
from settings import get_settings

logger = structlog.get_logger(__name__)


def _parse_status(value: Union[str, models.ApplicationStatus]) -> models.ApplicationStatus:
    try:
        return models.ApplicationStatus(value)
    except ValueError:
        raise errors.InvalidTransitionError("application", None, str(value)) from None


def _empty_counts() -> Dict[str, int]:
    counts = {status.value: 0 for status in models.ApplicationStatus}
    counts["total"] = 0
    return counts


def _count_by_status(query) -> Dict[str, int]:
    counts = _empty_counts()
    for status, count in query.group_by(models.Application.status).all():
        counts[models.ApplicationStatus(status).value] = count
        counts["total"] += count
    return counts


def get_application(db: Session, application_id: int) -> Optional[models.Application]:
    return db.query(models.Application).filter(models.Application.id == application_id).first()


def _lock_application(db: Session, application_id: int) -> Optional[models.Application]:
    return (
        db.query(models.Application)
        .filter(models.Application.id == application_id)
        .with_for_update()
        .populate_existing()
        .first()
    )


def get_for_pair(db: Session, job_id: int, talent_id: int) -> Optional[models.Application]:
    return (
        db.query(models.Application)
        .filter(models.Application.job_id == job_id, models.Application.talent_id == talent_id)
        .first()
    )


def apply(
    db: Session,
    talent_id: int,
    job_id: int,
    application: Optional[schemas.ApplicationCreate] = None,
    actor: Optional[models.Actor] = None,
    audit_sink: Optional[audit.AuditSink] = None,
) -> models.Application:
    """Submit a pending application from ``talent_id`` to an active job.

    A second application for the same pair raises ``DuplicateApplicationError``
    whether the earlier row is caught by the pre-check or by the unique index.
    """
    try:
        with atomic(db):
            if crud.get_talent(db, talent_id) is None:
                raise errors.NotFoundError("Talent not found.")
            job = jobs.get_job(db, job_id, include_deleted=False)
            if job is None:
                raise errors.NotFoundError("Job not found.")
            if job.status != models.JobStatus.ACTIVE:
                raise errors.ValidationError(
                    "This job is not accepting applications.",
                    {"job_id": f"Job is {job.status.value}"},
                )
            if job.deadline is not None and job.deadline < crud.utc_today():
                raise errors.ValidationError(
                    "The application deadline for this job has passed.",
                    {"job_id": "Deadline passed"},
                )
            if get_for_pair(db, job_id, talent_id) is not None:
                raise errors.DuplicateApplicationError()

            db_application = models.Application(
                job_id=job_id,
                talent_id=talent_id,
                cover_letter=application.cover_letter if application else None,
                proposed_rate=application.proposed_rate if application else None,
                status=models.ApplicationStatus.PENDING,
                agency_recommended=False,
            )
            db.add(db_application)
            db.flush()
            event = audit.AuditEvent(
                action="application_submitted",
                entity_type="application",
                entity_id=db_application.id,
                actor=actor,
                to_status=models.ApplicationStatus.PENDING,
                details={"job_id": job_id, "talent_id": talent_id},
            )
    except IntegrityError as exc:
        if crud.is_unique_violation(exc):
            logger.info("Duplicate application rejected by store", job_id=job_id, talent_id=talent_id)
            raise errors.DuplicateApplicationError() from exc
        raise

    logger.info("Application submitted", application_id=db_application.id, job_id=job_id, talent_id=talent_id)
    audit.publish(db, [event], audit_sink)
    return db_application


def update_application_status(
    db: Session,
    application_id: int,
    target: Union[str, models.ApplicationStatus],
    actor: Optional[models.Actor] = None,
    audit_sink: Optional[audit.AuditSink] = None,
) -> int:
    """Manual review step by an employer or staff member.

    ``accepted`` cannot be set here; it only comes from contract creation.
    """
    target = _parse_status(target)

    with atomic(db):
        db_application = _lock_application(db, application_id)
        if db_application is None:
            raise errors.NotFoundError("Application not found.")
        if actor is not None and not actor.is_staff:
            if actor.role != models.Role.EMPLOYER or db_application.job.employer_id != actor.id:
                raise errors.AuthorizationError()

        current = db_application.status
        if target not in models.VALID_APPLICATION_TRANSITIONS[current]:
            raise errors.InvalidTransitionError("application", current.value, target.value)

        rows = (
            db.query(models.Application)
            .filter(models.Application.id == application_id, models.Application.status == current)
            .update(
                {
                    models.Application.status: target,
                    models.Application.reviewed_at: crud.utcnow(),
                }
            )
        )
        if rows == 0:
            raise errors.InvalidTransitionError("application", current.value, target.value)
        event = audit.AuditEvent(
            action="application_status_changed",
            entity_type="application",
            entity_id=application_id,
            actor=actor,
            from_status=current,
            to_status=target,
        )

    logger.info(
        "Application status changed",
        application_id=application_id,
        from_status=current.value,
        to_status=target.value,
    )
    audit.publish(db, [event], audit_sink)
    return rows


# Fields a talent may revise while the application is still pending
EDITABLE_FIELDS = ("cover_letter", "proposed_rate")


def update_application(
    db: Session,
    application_id: int,
    talent_id: int,
    fields: Union[schemas.ApplicationUpdate, Mapping[str, Any]],
    audit_sink: Optional[audit.AuditSink] = None,
) -> int:
    """Revise the cover letter or proposed rate of a pending application.

    Status is never touched here. Returns 0 when nothing editable was sent.
    """
    if isinstance(fields, BaseModel):
        changes = fields.model_dump(exclude_unset=True)
    else:
        changes = dict(fields)
    changes = {key: value for key, value in changes.items() if key in EDITABLE_FIELDS}
    if not changes:
        return 0
    rate = changes.get("proposed_rate")
    if rate is not None and Decimal(str(rate)) <= 0:
        raise errors.ValidationError(
            "Proposed rate must be greater than zero.", {"proposed_rate": "Must be greater than zero"}
        )

    with atomic(db):
        db_application = _lock_application(db, application_id)
        if db_application is None:
            raise errors.NotFoundError("Application not found.")
        if db_application.talent_id != talent_id:
            raise errors.AuthorizationError()
        if db_application.status != models.ApplicationStatus.PENDING:
            raise errors.ConflictError("Only pending applications can be edited.")

        rows = (
            db.query(models.Application)
            .filter(
                models.Application.id == application_id,
                models.Application.status == models.ApplicationStatus.PENDING,
            )
            .update({getattr(models.Application, key): value for key, value in changes.items()})
        )
        if rows == 0:
            raise errors.ConflictError("Only pending applications can be edited.")
        event = audit.AuditEvent(
            action="application_updated",
            entity_type="application",
            entity_id=application_id,
            actor=models.Actor(id=talent_id, role=models.Role.TALENT),
            details={"fields": sorted(changes)},
        )

    logger.info("Application updated", application_id=application_id, fields=sorted(changes))
    audit.publish(db, [event], audit_sink)
    return rows


def withdraw(
    db: Session,
    application_id: int,
    talent_id: int,
    audit_sink: Optional[audit.AuditSink] = None,
) -> int:
    """Hard-delete the talent's own application while it is still pending or reviewed."""
    with atomic(db):
        db_application = _lock_application(db, application_id)
        if db_application is None:
            raise errors.NotFoundError("Application not found.")
        if db_application.talent_id != talent_id:
            raise errors.AuthorizationError()
        current = db_application.status
        if current not in models.WITHDRAWABLE_APPLICATION_STATUSES:
            raise errors.NotWithdrawableError()
        job_id = db_application.job_id

        rows = (
            db.query(models.Application)
            .filter(
                models.Application.id == application_id,
                models.Application.status.in_(models.WITHDRAWABLE_APPLICATION_STATUSES),
            )
            .delete(synchronize_session="fetch")
        )
        if rows == 0:
            raise errors.NotWithdrawableError()
        event = audit.AuditEvent(
            action="application_withdrawn",
            entity_type="application",
            entity_id=application_id,
            actor=models.Actor(id=talent_id, role=models.Role.TALENT),
            from_status=current,
            details={"job_id": job_id},
        )

    logger.info("Application withdrawn", application_id=application_id, talent_id=talent_id)
    audit.publish(db, [event], audit_sink)
    return rows


def toggle_recommendation(
    db: Session,
    application_id: int,
    actor: Optional[models.Actor] = None,
    audit_sink: Optional[audit.AuditSink] = None,
) -> bool:
    """Flip the agency's recommendation flag; returns the new value."""
    with atomic(db):
        db_application = _lock_application(db, application_id)
        if db_application is None:
            raise errors.NotFoundError("Application not found.")
        db_application.agency_recommended = not db_application.agency_recommended
        recommended = db_application.agency_recommended
        db.flush()
        event = audit.AuditEvent(
            action="application_recommendation_toggled",
            entity_type="application",
            entity_id=application_id,
            actor=actor,
            details={"agency_recommended": recommended},
        )

    audit.publish(db, [event], audit_sink)
    return recommended


def get_application_stats(db: Session) -> Dict[str, int]:
    """Platform-wide counts per status plus total."""
    return _count_by_status(db.query(models.Application.status, func.count(models.Application.id)))


def get_status_counts(db: Session, job_id: int) -> Dict[str, int]:
    query = db.query(models.Application.status, func.count(models.Application.id)).filter(
        models.Application.job_id == job_id
    )
    return _count_by_status(query)


def get_talent_stats(db: Session, talent_id: int) -> Dict[str, int]:
    query = db.query(models.Application.status, func.count(models.Application.id)).filter(
        models.Application.talent_id == talent_id
    )
    return _count_by_status(query)


def list_job_applications(
    db: Session,
    job_id: int,
    status: Optional[models.ApplicationStatus] = None,
    page: int = 1,
    per_page: Optional[int] = None,
) -> Tuple[List[models.Application], schemas.Pagination]:
    """Applications for one job: agency-recommended first, then newest."""
    query = db.query(models.Application).filter(models.Application.job_id == job_id)
    if status is not None:
        query = query.filter(models.Application.status == status)
    query = query.order_by(
        models.Application.agency_recommended.desc(),
        models.Application.applied_at.desc(),
        models.Application.id.desc(),
    )
    return crud.paginate(query, page, per_page or get_settings().items_per_page)


def list_talent_applications(
    db: Session,
    talent_id: int,
    status: Optional[models.ApplicationStatus] = None,
    page: int = 1,
    per_page: Optional[int] = None,
) -> Tuple[List[models.Application], schemas.Pagination]:
    query = db.query(models.Application).filter(models.Application.talent_id == talent_id)
    if status is not None:
        query = query.filter(models.Application.status == status)
    query = query.order_by(models.Application.applied_at.desc(), models.Application.id.desc())
    return crud.paginate(query, page, per_page or get_settings().items_per_page)


def list_applications(
    db: Session,
    status: Optional[models.ApplicationStatus] = None,
    job_id: Optional[int] = None,
    talent_id: Optional[int] = None,
    agency_recommended: Optional[bool] = None,
    page: int = 1,
    per_page: Optional[int] = None,
) -> Tuple[List[models.Application], schemas.Pagination]:
    """Every application, newest first, for the staff console."""
    query = db.query(models.Application)
    if status is not None:
        query = query.filter(models.Application.status == status)
    if job_id is not None:
        query = query.filter(models.Application.job_id == job_id)
    if talent_id is not None:
        query = query.filter(models.Application.talent_id == talent_id)
    if agency_recommended is not None:
        query = query.filter(models.Application.agency_recommended == agency_recommended)
    query = query.order_by(models.Application.applied_at.desc(), models.Application.id.desc())
    return crud.paginate(query, page, per_page or get_settings().items_per_page)
