"""Job postings and their approval / fill / close lifecycle."""
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import structlog
from pydantic import BaseModel
from sqlalchemy import func, or_
from sqlalchemy.orm import Session

import audit
import crud
import errors
import models
import schemas
from database import atomic
from settings import get_settings

logger = structlog.get_logger(__name__)

# Columns an employer may change on an existing posting
EDITABLE_FIELDS = frozenset(
    {
        "title",
        "description",
        "job_type",
        "location_type",
        "location_address",
        "salary_min",
        "salary_max",
        "salary_type",
        "currency",
        "experience_required",
        "deadline",
        "skills",
    }
)

_NOT_NULL_FIELDS = frozenset(
    {"title", "description", "job_type", "location_type", "salary_type", "currency", "experience_required"}
)

# Targets each role may request through set_job_status
_EMPLOYER_TARGETS = frozenset({models.JobStatus.CLOSED, models.JobStatus.DELETED})
_STAFF_TARGETS = frozenset(
    {
        models.JobStatus.ACTIVE,
        models.JobStatus.REJECTED,
        models.JobStatus.CLOSED,
        models.JobStatus.DELETED,
    }
)


def _parse_status(value: Union[str, models.JobStatus]) -> models.JobStatus:
    try:
        return models.JobStatus(value)
    except ValueError:
        raise errors.InvalidTransitionError("job", None, str(value)) from None


def _check_salary_range(salary_min, salary_max) -> None:
    if salary_min is not None and salary_max is not None and salary_min > salary_max:
        raise errors.ValidationError(
            "Minimum salary cannot be greater than maximum salary.",
            {"salary_min": "Must not exceed salary_max"},
        )


def _skill_rows(db: Session, skills: List[schemas.JobSkillIn]) -> List[models.JobSkill]:
    """Validate skill references and collapse duplicates (last one wins)."""
    wanted: Dict[int, bool] = {}
    for skill in skills:
        wanted[skill.skill_id] = skill.required
    missing = [skill_id for skill_id in wanted if crud.get_skill(db, skill_id) is None]
    if missing:
        raise errors.ValidationError(
            "Unknown skill.", {"skills": f"Unknown skill ids: {sorted(missing)}"}
        )
    return [models.JobSkill(skill_id=skill_id, required=required) for skill_id, required in wanted.items()]


def get_job(db: Session, job_id: int, include_deleted: bool = True) -> Optional[models.Job]:
    query = db.query(models.Job).filter(models.Job.id == job_id)
    if not include_deleted:
        query = query.filter(models.Job.status != models.JobStatus.DELETED)
    return query.first()


def lock_job(db: Session, job_id: int) -> Optional[models.Job]:
    # FOR UPDATE is dropped by the SQLite dialect, where BEGIN IMMEDIATE serializes writers
    return (
        db.query(models.Job)
        .filter(models.Job.id == job_id)
        .with_for_update()
        .populate_existing()
        .first()
    )


def belongs_to_employer(db: Session, job_id: int, employer_id: int) -> bool:
    return (
        db.query(models.Job.id)
        .filter(models.Job.id == job_id, models.Job.employer_id == employer_id)
        .first()
        is not None
    )


def create_job(
    db: Session,
    employer_id: int,
    job: schemas.JobCreate,
    actor: Optional[models.Actor] = None,
    audit_sink: Optional[audit.AuditSink] = None,
) -> models.Job:
    """Create a posting in ``pending_approval`` for ``employer_id``."""
    if crud.get_employer(db, employer_id) is None:
        raise errors.NotFoundError("Employer not found.")
    _check_salary_range(job.salary_min, job.salary_max)

    data = job.model_dump(exclude={"skills"})
    data["currency"] = data.get("currency") or get_settings().default_currency

    with atomic(db):
        db_job = models.Job(
            employer_id=employer_id,
            status=models.JobStatus.PENDING_APPROVAL,
            filled_at=None,
            **data,
        )
        db_job.skills = _skill_rows(db, job.skills)
        db.add(db_job)
        db.flush()
        event = audit.AuditEvent(
            action="job_created",
            entity_type="job",
            entity_id=db_job.id,
            actor=actor,
            to_status=models.JobStatus.PENDING_APPROVAL,
            details={"employer_id": employer_id, "title": db_job.title},
        )

    logger.info("Job created", job_id=db_job.id, employer_id=employer_id)
    audit.publish(db, [event], audit_sink)
    return db_job


def update_job(
    db: Session,
    job_id: int,
    fields: Union[schemas.JobUpdate, Mapping[str, Any]],
    actor: Optional[models.Actor] = None,
    audit_sink: Optional[audit.AuditSink] = None,
) -> int:
    """Apply an edit and send the posting back for approval.

    Only keys in ``EDITABLE_FIELDS`` are applied; anything else is ignored.
    Returns the number of rows changed (0 or 1).
    """
    if isinstance(fields, BaseModel):
        changes = fields.model_dump(exclude_unset=True)
    else:
        changes = dict(fields)
    changes = {key: value for key, value in changes.items() if key in EDITABLE_FIELDS}

    nulls = {key: "This field cannot be empty" for key in _NOT_NULL_FIELDS if key in changes and changes[key] is None}
    if nulls:
        raise errors.ValidationError("Invalid job update.", nulls)

    with atomic(db):
        db_job = lock_job(db, job_id)
        if db_job is None or db_job.status == models.JobStatus.DELETED:
            raise errors.NotFoundError("Job not found.")
        if actor is not None and actor.role == models.Role.EMPLOYER and db_job.employer_id != actor.id:
            raise errors.AuthorizationError()

        _check_salary_range(
            changes.get("salary_min", db_job.salary_min),
            changes.get("salary_max", db_job.salary_max),
        )

        skills = changes.pop("skills", None)
        if skills is not None:
            db_job.skills = _skill_rows(db, [schemas.JobSkillIn.model_validate(s) for s in skills])
        for key, value in changes.items():
            setattr(db_job, key, value)

        previous = db_job.status
        db_job.status = models.JobStatus.PENDING_APPROVAL
        db_job.filled_at = None
        db.flush()
        event = audit.AuditEvent(
            action="job_updated",
            entity_type="job",
            entity_id=db_job.id,
            actor=actor,
            from_status=previous,
            to_status=models.JobStatus.PENDING_APPROVAL,
            details={"fields": sorted(changes) + (["skills"] if skills is not None else [])},
        )

    logger.info("Job updated; awaiting approval", job_id=job_id, previous_status=previous.value)
    audit.publish(db, [event], audit_sink)
    return 1


def _authorize_status_change(job: models.Job, target: models.JobStatus, actor: Optional[models.Actor]) -> None:
    if actor is None:
        # System caller (contract cascade, maintenance scripts)
        return
    if target == models.JobStatus.FILLED:
        raise errors.AuthorizationError("Jobs are marked filled when a contract is created.")
    if actor.is_staff:
        if target not in _STAFF_TARGETS:
            raise errors.AuthorizationError()
        return
    if actor.role == models.Role.EMPLOYER:
        if target not in _EMPLOYER_TARGETS or job.employer_id != actor.id:
            raise errors.AuthorizationError()
        return
    raise errors.AuthorizationError()


def set_job_status(
    db: Session,
    job_id: int,
    target: Union[str, models.JobStatus],
    actor: Optional[models.Actor] = None,
    audit_sink: Optional[audit.AuditSink] = None,
) -> int:
    """Move a job along its state machine; returns rows affected."""
    target = _parse_status(target)

    with atomic(db):
        db_job = lock_job(db, job_id)
        if db_job is None:
            raise errors.NotFoundError("Job not found.")
        _authorize_status_change(db_job, target, actor)

        current = db_job.status
        if target not in models.VALID_JOB_TRANSITIONS[current]:
            raise errors.InvalidTransitionError("job", current.value, target.value)

        filled_at = crud.utcnow() if target == models.JobStatus.FILLED else None
        rows = (
            db.query(models.Job)
            .filter(models.Job.id == job_id, models.Job.status == current)
            .update({models.Job.status: target, models.Job.filled_at: filled_at})
        )
        if rows == 0:
            raise errors.InvalidTransitionError("job", current.value, target.value)
        event = audit.AuditEvent(
            action="job_status_changed",
            entity_type="job",
            entity_id=job_id,
            actor=actor,
            from_status=current,
            to_status=target,
        )

    logger.info("Job status changed", job_id=job_id, from_status=current.value, to_status=target.value)
    audit.publish(db, [event], audit_sink)
    return rows


def mark_job_filled(db: Session, job: models.Job, actor: Optional[models.Actor] = None) -> audit.AuditEvent:
    """Flag ``job`` as filled inside the caller's transaction.

    Does not commit. Returns the audit event for the caller to publish once
    its own transaction has committed.
    """
    current = job.status
    if models.JobStatus.FILLED not in models.VALID_JOB_TRANSITIONS[current]:
        raise errors.InvalidTransitionError("job", current.value, models.JobStatus.FILLED.value)
    job.status = models.JobStatus.FILLED
    job.filled_at = crud.utcnow()
    db.flush()
    return audit.AuditEvent(
        action="job_filled",
        entity_type="job",
        entity_id=job.id,
        actor=actor,
        from_status=current,
        to_status=models.JobStatus.FILLED,
    )


def search_jobs(
    db: Session,
    filters: Optional[schemas.JobSearchFilters] = None,
    page: int = 1,
    per_page: Optional[int] = None,
) -> Tuple[List[models.Job], schemas.Pagination]:
    """Public job board: active postings whose deadline has not passed."""
    settings = get_settings()
    filters = filters or schemas.JobSearchFilters()
    per_page = min(per_page or settings.jobs_per_page, settings.search_limit)

    query = db.query(models.Job).filter(
        models.Job.status == models.JobStatus.ACTIVE,
        or_(models.Job.deadline.is_(None), models.Job.deadline >= crud.utc_today()),
    )

    if filters.keyword:
        pattern = f"%{filters.keyword}%"
        query = query.filter(or_(models.Job.title.ilike(pattern), models.Job.description.ilike(pattern)))
    if filters.job_type:
        query = query.filter(models.Job.job_type == filters.job_type)
    if filters.location_type:
        query = query.filter(models.Job.location_type == filters.location_type)
    if filters.location:
        # Remote postings match any location
        query = query.filter(
            or_(
                models.Job.location_type == models.LocationType.REMOTE,
                models.Job.location_address.ilike(f"%{filters.location}%"),
            )
        )
    if filters.min_salary is not None:
        query = query.filter(models.Job.salary_max >= filters.min_salary)
    if filters.max_salary is not None:
        query = query.filter(models.Job.salary_min <= filters.max_salary)
    if filters.experience_max is not None:
        query = query.filter(models.Job.experience_required <= filters.experience_max)
    if filters.skills:
        skill_jobs = db.query(models.JobSkill.job_id).filter(models.JobSkill.skill_id.in_(filters.skills))
        query = query.filter(models.Job.id.in_(skill_jobs))

    if filters.sort == "salary_high":
        query = query.order_by(models.Job.salary_max.desc(), models.Job.id.desc())
    elif filters.sort == "salary_low":
        query = query.order_by(models.Job.salary_min.asc(), models.Job.id.desc())
    elif filters.sort == "deadline":
        # Postings without a deadline go last
        query = query.order_by(models.Job.deadline.is_(None), models.Job.deadline.asc(), models.Job.id.desc())
    else:
        query = query.order_by(models.Job.created_at.desc(), models.Job.id.desc())

    return crud.paginate(query, page, per_page)


def list_jobs(
    db: Session,
    status: Optional[models.JobStatus] = None,
    employer_id: Optional[int] = None,
    job_type: Optional[models.JobType] = None,
    location_type: Optional[models.LocationType] = None,
    search: Optional[str] = None,
    page: int = 1,
    per_page: Optional[int] = None,
) -> Tuple[List[models.Job], schemas.Pagination]:
    """Every posting in any status, newest first, for the staff console."""
    query = db.query(models.Job)
    if status is not None:
        query = query.filter(models.Job.status == status)
    if employer_id is not None:
        query = query.filter(models.Job.employer_id == employer_id)
    if job_type is not None:
        query = query.filter(models.Job.job_type == job_type)
    if location_type is not None:
        query = query.filter(models.Job.location_type == location_type)
    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(models.Job.title.ilike(pattern), models.Job.description.ilike(pattern)))
    query = query.order_by(models.Job.created_at.desc(), models.Job.id.desc())
    return crud.paginate(query, page, per_page or get_settings().jobs_per_page)


def list_employer_jobs(
    db: Session,
    employer_id: int,
    status: Optional[models.JobStatus] = None,
    page: int = 1,
    per_page: Optional[int] = None,
) -> Tuple[List[Tuple[models.Job, int]], schemas.Pagination]:
    """An employer's postings with their application counts, newest first.

    Deleted postings are hidden unless asked for by status.
    """
    per_page = per_page or get_settings().items_per_page
    query = (
        db.query(models.Job, func.count(models.Application.id))
        .outerjoin(models.Application, models.Application.job_id == models.Job.id)
        .filter(models.Job.employer_id == employer_id)
        .group_by(models.Job.id)
    )
    if status is not None:
        query = query.filter(models.Job.status == status)
    else:
        query = query.filter(models.Job.status != models.JobStatus.DELETED)
    query = query.order_by(models.Job.created_at.desc(), models.Job.id.desc())
    rows, pagination = crud.paginate(query, page, per_page)
    return [(job, count) for job, count in rows], pagination


# --- Job skills ---
def get_job_skills(db: Session, job_id: int) -> List[models.JobSkill]:
    return (
        db.query(models.JobSkill)
        .join(models.Skill, models.Skill.id == models.JobSkill.skill_id)
        .filter(models.JobSkill.job_id == job_id)
        .order_by(models.JobSkill.required.desc(), models.Skill.name.asc())
        .all()
    )


def add_job_skill(db: Session, job_id: int, skill_id: int, required: bool = True) -> models.JobSkill:
    """Attach a skill to a posting, or update its required flag if already attached."""
    with atomic(db):
        if get_job(db, job_id, include_deleted=False) is None:
            raise errors.NotFoundError("Job not found.")
        if crud.get_skill(db, skill_id) is None:
            raise errors.NotFoundError("Skill not found.")
        row = db.get(models.JobSkill, (job_id, skill_id))
        if row is None:
            row = models.JobSkill(job_id=job_id, skill_id=skill_id, required=required)
            db.add(row)
        else:
            row.required = required
        db.flush()
    return row


def remove_job_skill(db: Session, job_id: int, skill_id: int) -> int:
    with atomic(db):
        rows = (
            db.query(models.JobSkill)
            .filter(models.JobSkill.job_id == job_id, models.JobSkill.skill_id == skill_id)
            .delete(synchronize_session="fetch")
        )
    return rows
