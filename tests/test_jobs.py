from datetime import datetime, timedelta
from decimal import Decimal

import pytest

import crud
import errors
import jobs
import models
import schemas
from models import JobStatus


def _job_payload(**overrides) -> schemas.JobCreate:
    data = dict(
        title="Mobile Developer",
        description="Flutter app for field agents",
        job_type="contract",
        location_type="hybrid",
        location_address="Jakarta Selatan",
        salary_min=Decimal("8000000"),
        salary_max=Decimal("12000000"),
        salary_type="monthly",
        experience_required=3,
    )
    data.update(overrides)
    return schemas.JobCreate(**data)


def _reload(db_session, job) -> models.Job:
    return db_session.get(models.Job, job.id, populate_existing=True)


def test_create_job_starts_pending_with_default_currency(db_session, factory):
    employer = factory.employer()
    flutter, dart = factory.skill("Flutter"), factory.skill("Dart")

    job = jobs.create_job(
        db_session,
        employer.id,
        _job_payload(skills=[{"skill_id": flutter.id}, {"skill_id": dart.id, "required": False}]),
    )

    stored = _reload(db_session, job)
    assert stored.status == JobStatus.PENDING_APPROVAL
    assert stored.filled_at is None
    assert stored.currency == "IDR"
    assert {(s.skill_id, s.required) for s in stored.skills} == {(flutter.id, True), (dart.id, False)}


def test_create_job_rejects_inverted_salary_range(db_session, factory):
    employer = factory.employer()
    with pytest.raises(errors.ValidationError) as exc_info:
        jobs.create_job(db_session, employer.id, _job_payload(salary_min=Decimal("9"), salary_max=Decimal("5")))
    assert "salary_min" in exc_info.value.errors


def test_create_job_for_unknown_employer(db_session):
    with pytest.raises(errors.NotFoundError):
        jobs.create_job(db_session, 999, _job_payload())


def test_create_job_with_unknown_skill(db_session, factory):
    employer = factory.employer()
    with pytest.raises(errors.ValidationError):
        jobs.create_job(db_session, employer.id, _job_payload(skills=[{"skill_id": 4242}]))
    assert db_session.query(models.Job).count() == 0


def test_staff_approves_and_rejects(db_session, factory):
    employer = factory.employer()
    staff = factory.actor(factory.staff())
    approved = factory.job(employer, status=JobStatus.PENDING_APPROVAL)
    rejected = factory.job(employer, status=JobStatus.PENDING_APPROVAL)

    assert jobs.set_job_status(db_session, approved.id, "active", actor=staff) == 1
    assert jobs.set_job_status(db_session, rejected.id, JobStatus.REJECTED, actor=staff) == 1

    assert _reload(db_session, approved).status == JobStatus.ACTIVE
    assert _reload(db_session, rejected).status == JobStatus.REJECTED


def test_employer_cannot_approve_own_job(db_session, factory):
    employer = factory.employer()
    job = factory.job(employer, status=JobStatus.PENDING_APPROVAL)
    with pytest.raises(errors.AuthorizationError):
        jobs.set_job_status(db_session, job.id, JobStatus.ACTIVE, actor=factory.actor(employer))


def test_employer_closes_only_own_job(db_session, factory):
    owner, other = factory.employer(), factory.employer("Other Co")
    job = factory.job(owner)

    with pytest.raises(errors.AuthorizationError):
        jobs.set_job_status(db_session, job.id, JobStatus.CLOSED, actor=factory.actor(other))

    jobs.set_job_status(db_session, job.id, JobStatus.CLOSED, actor=factory.actor(owner))
    assert _reload(db_session, job).status == JobStatus.CLOSED


def test_closed_job_cannot_be_reopened(db_session, factory):
    employer = factory.employer()
    job = factory.job(employer, status=JobStatus.CLOSED)
    with pytest.raises(errors.InvalidTransitionError):
        jobs.set_job_status(db_session, job.id, JobStatus.ACTIVE, actor=factory.actor(factory.staff()))


def test_unknown_status_is_rejected(db_session, factory):
    job = factory.job(factory.employer())
    with pytest.raises(errors.InvalidTransitionError) as exc_info:
        jobs.set_job_status(db_session, job.id, "archived")
    assert exc_info.value.from_status is None


def test_filled_is_system_only_and_stamps_filled_at(db_session, factory):
    employer = factory.employer()
    job = factory.job(employer)

    with pytest.raises(errors.AuthorizationError):
        jobs.set_job_status(db_session, job.id, JobStatus.FILLED, actor=factory.actor(factory.staff()))

    jobs.set_job_status(db_session, job.id, JobStatus.FILLED)
    stored = _reload(db_session, job)
    assert stored.status == JobStatus.FILLED
    assert stored.filled_at is not None

    # Closing a filled posting clears the stamp again
    jobs.set_job_status(db_session, job.id, JobStatus.CLOSED, actor=factory.actor(employer))
    stored = _reload(db_session, job)
    assert stored.status == JobStatus.CLOSED
    assert stored.filled_at is None


def test_update_job_resets_filled_job_to_pending(db_session, factory):
    employer = factory.employer()
    job = factory.job(employer, status=JobStatus.FILLED)

    rows = jobs.update_job(
        db_session,
        job.id,
        {"title": "Senior Mobile Developer", "status": "active", "employer_id": 12345},
        actor=factory.actor(employer),
    )

    stored = _reload(db_session, job)
    assert rows == 1
    assert stored.title == "Senior Mobile Developer"
    assert stored.status == JobStatus.PENDING_APPROVAL
    assert stored.filled_at is None
    assert stored.employer_id == employer.id


def test_update_job_replaces_skills(db_session, factory):
    employer = factory.employer()
    old_skill, new_skill = factory.skill(), factory.skill()
    job = jobs.create_job(db_session, employer.id, _job_payload(skills=[{"skill_id": old_skill.id}]))

    jobs.update_job(db_session, job.id, schemas.JobUpdate(skills=[{"skill_id": new_skill.id, "required": False}]))

    assert [(s.skill_id, s.required) for s in jobs.get_job_skills(db_session, job.id)] == [(new_skill.id, False)]


def test_update_job_validation(db_session, factory):
    employer = factory.employer()
    job = factory.job(employer, salary_min=Decimal("100"), salary_max=Decimal("200"))

    with pytest.raises(errors.ValidationError):
        jobs.update_job(db_session, job.id, {"salary_min": Decimal("500")})
    with pytest.raises(errors.ValidationError):
        jobs.update_job(db_session, job.id, {"title": None})
    with pytest.raises(errors.AuthorizationError):
        jobs.update_job(db_session, job.id, {"title": "x"}, actor=factory.actor(factory.employer("Other")))
    assert _reload(db_session, job).status == JobStatus.ACTIVE


def test_deleted_job_cannot_be_edited(db_session, factory):
    job = factory.job(factory.employer(), status=JobStatus.DELETED)
    with pytest.raises(errors.NotFoundError):
        jobs.update_job(db_session, job.id, {"title": "Back from the dead"})


def test_belongs_to_employer(db_session, factory):
    owner, other = factory.employer(), factory.employer("Other")
    job = factory.job(owner)
    assert jobs.belongs_to_employer(db_session, job.id, owner.id)
    assert not jobs.belongs_to_employer(db_session, job.id, other.id)


def test_search_only_returns_open_postings(db_session, factory):
    employer = factory.employer()
    open_job = factory.job(employer, title="Open role")
    factory.job(employer, title="Waiting", status=JobStatus.PENDING_APPROVAL)
    factory.job(employer, title="Taken", status=JobStatus.FILLED)
    factory.job(employer, title="Expired", deadline=crud.utc_today() - timedelta(days=1))
    due_today = factory.job(employer, title="Due today", deadline=crud.utc_today())

    items, pagination = jobs.search_jobs(db_session, schemas.JobSearchFilters())

    assert {job.id for job in items} == {open_job.id, due_today.id}
    assert pagination.total == 2
    assert pagination.current_page == 1
    assert not pagination.has_next


def test_search_filters(db_session, factory):
    employer = factory.employer()
    python = factory.skill("Python")
    remote = factory.job(employer, title="Python API", location_type=models.LocationType.REMOTE,
                         salary_min=Decimal("5000"), salary_max=Decimal("9000"), experience_required=1)
    bandung = factory.job(employer, title="Onsite QA", description="Manual testing",
                          location_type=models.LocationType.ONSITE, location_address="Bandung",
                          salary_min=Decimal("3000"), salary_max=Decimal("4000"), experience_required=5)
    jobs.add_job_skill(db_session, remote.id, python.id)

    def ids(**filters):
        items, _ = jobs.search_jobs(db_session, schemas.JobSearchFilters(**filters))
        return [job.id for job in items]

    assert ids(keyword="python") == [remote.id]
    assert set(ids(location="Jakarta")) == {remote.id}
    assert set(ids(location="bandung")) == {remote.id, bandung.id}
    assert ids(min_salary=Decimal("8000")) == [remote.id]
    assert ids(max_salary=Decimal("4500")) == [bandung.id]
    assert ids(experience_max=2) == [remote.id]
    assert ids(skills=[python.id]) == [remote.id]
    assert ids(sort="salary_high") == [remote.id, bandung.id]
    assert ids(sort="salary_low") == [bandung.id, remote.id]


def test_search_sorts_by_deadline_with_open_ended_last(db_session, factory):
    employer = factory.employer()
    today = crud.utc_today()
    later = factory.job(employer, title="Later", deadline=today + timedelta(days=10))
    open_ended = factory.job(employer, title="Open ended")
    soon = factory.job(employer, title="Soon", deadline=today + timedelta(days=2))

    items, _ = jobs.search_jobs(db_session, schemas.JobSearchFilters(sort="deadline"))

    assert [job.id for job in items] == [soon.id, later.id, open_ended.id]


def test_search_sorts_newest_first_by_default(db_session, factory):
    employer = factory.employer()
    old = factory.job(employer, title="Old", created_at=datetime(2026, 1, 5, 8, 0))
    new = factory.job(employer, title="New", created_at=datetime(2026, 3, 1, 8, 0))
    middle = factory.job(employer, title="Middle", created_at=datetime(2026, 2, 1, 8, 0))

    default, _ = jobs.search_jobs(db_session, schemas.JobSearchFilters())
    newest, _ = jobs.search_jobs(db_session, schemas.JobSearchFilters(sort="newest"))

    assert [job.id for job in default] == [new.id, middle.id, old.id]
    assert [job.id for job in newest] == [new.id, middle.id, old.id]


def test_list_jobs_covers_every_status(db_session, factory):
    employer, other = factory.employer(), factory.employer("Other")
    active = factory.job(employer, title="Data analyst", created_at=datetime(2026, 1, 1))
    waiting = factory.job(employer, title="Waiting", status=JobStatus.PENDING_APPROVAL,
                          created_at=datetime(2026, 1, 2))
    deleted = factory.job(employer, title="Gone", status=JobStatus.DELETED, created_at=datetime(2026, 1, 3))
    onsite = factory.job(other, title="Warehouse lead", description="Night shift with data entry",
                         job_type=models.JobType.FULL_TIME, location_type=models.LocationType.ONSITE,
                         created_at=datetime(2026, 1, 4))

    def ids(**filters):
        items, _ = jobs.list_jobs(db_session, **filters)
        return [job.id for job in items]

    assert ids() == [onsite.id, deleted.id, waiting.id, active.id]
    assert ids(status=JobStatus.PENDING_APPROVAL) == [waiting.id]
    assert ids(status=JobStatus.DELETED) == [deleted.id]
    assert ids(employer_id=other.id) == [onsite.id]
    assert ids(job_type=models.JobType.FULL_TIME) == [onsite.id]
    assert ids(location_type=models.LocationType.REMOTE) == [deleted.id, waiting.id, active.id]
    assert ids(search="data") == [onsite.id, active.id]

    items, pagination = jobs.list_jobs(db_session, per_page=3, page=2)
    assert [job.id for job in items] == [active.id]
    assert pagination.total == 4
    assert pagination.has_previous


def test_list_employer_jobs_counts_applications(db_session, factory):
    employer = factory.employer()
    busy = factory.job(employer, title="Busy")
    quiet = factory.job(employer, title="Quiet")
    factory.job(employer, title="Gone", status=JobStatus.DELETED)
    factory.application(busy, factory.talent("A"))
    factory.application(busy, factory.talent("B"))

    rows, pagination = jobs.list_employer_jobs(db_session, employer.id)

    counts = {job.id: count for job, count in rows}
    assert counts == {busy.id: 2, quiet.id: 0}
    assert pagination.total == 2


def test_job_skill_upsert_and_remove(db_session, factory):
    job = factory.job(factory.employer())
    skill = factory.skill()

    jobs.add_job_skill(db_session, job.id, skill.id, required=True)
    jobs.add_job_skill(db_session, job.id, skill.id, required=False)
    skills = jobs.get_job_skills(db_session, job.id)
    assert [(s.skill_id, s.required) for s in skills] == [(skill.id, False)]

    assert jobs.remove_job_skill(db_session, job.id, skill.id) == 1
    assert jobs.get_job_skills(db_session, job.id) == []

    with pytest.raises(errors.NotFoundError):
        jobs.add_job_skill(db_session, job.id, 9999)
