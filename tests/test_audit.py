from datetime import date
from decimal import Decimal

import pytest

import audit
import contracts
import models
import schemas


class RecordingSink:
    def __init__(self):
        self.events = []

    def write(self, db, event):
        self.events.append(event)


class BrokenSink:
    def write(self, db, event):
        raise RuntimeError("audit store offline")


def _hire(db_session, factory, application=True, **kwargs):
    employer = factory.employer()
    talent = factory.talent()
    job = factory.job(employer)
    app = factory.application(job, talent) if application else None
    contract = contracts.create_contract(
        db_session,
        schemas.ContractCreate(
            job_id=job.id,
            talent_id=talent.id,
            employer_id=employer.id,
            application_id=app.id if app else None,
            start_date=date(2026, 4, 1),
            rate=Decimal("750000"),
            rate_type="monthly",
        ),
        actor=factory.actor(employer),
        **kwargs,
    )
    return contract, job, app


def test_hire_is_recorded_in_activity_log(db_session, factory):
    contract, job, application = _hire(db_session, factory)

    rows = db_session.query(models.ActivityLog).order_by(models.ActivityLog.id).all()

    assert [(r.action, r.entity_type, r.entity_id) for r in rows] == [
        ("contract_created", "contract", contract.id),
        ("job_filled", "job", job.id),
        ("application_accepted", "application", application.id),
    ]
    assert rows[0].actor_role == "employer"
    assert rows[0].actor_id == contract.employer_id
    assert rows[0].to_status == "active"
    assert rows[0].details["commission_percentage"] == "15.00"
    assert (rows[1].from_status, rows[1].to_status) == ("active", "filled")
    assert (rows[2].from_status, rows[2].to_status) == ("pending", "accepted")


def test_custom_sink_receives_events_after_commit(db_session, factory):
    sink = RecordingSink()
    contract, _, _ = _hire(db_session, factory, application=False, audit_sink=sink)

    assert [event.action for event in sink.events] == ["contract_created", "job_filled"]
    assert sink.events[0].entity_id == contract.id
    assert db_session.query(models.ActivityLog).count() == 0


def test_sink_failure_keeps_business_write(db_session, factory):
    contract, job, application = _hire(db_session, factory, audit_sink=BrokenSink())

    assert db_session.get(models.Contract, contract.id, populate_existing=True) is not None
    assert db_session.get(models.Job, job.id, populate_existing=True).status == models.JobStatus.FILLED
    stored = db_session.get(models.Application, application.id, populate_existing=True)
    assert stored.status == models.ApplicationStatus.ACCEPTED


def test_set_audit_sink_swaps_default(db_session, factory):
    sink = RecordingSink()
    previous = audit.set_audit_sink(sink)
    try:
        _hire(db_session, factory, application=False)
    finally:
        audit.set_audit_sink(previous)

    assert len(sink.events) == 2
    assert audit.get_audit_sink() is previous


@pytest.mark.parametrize(
    "value, expected",
    [
        (models.JobStatus.FILLED, "filled"),
        (Decimal("1.50"), "1.50"),
        (date(2026, 1, 2), "2026-01-02"),
        ({"a": [Decimal("2")]}, {"a": ["2"]}),
        (None, None),
    ],
)
def test_event_values_are_json_safe(value, expected):
    assert audit._jsonable(value) == expected
