from datetime import date
from decimal import Decimal

import models
from models import JobStatus


JOB_BODY = {
    "title": "Data Engineer",
    "description": "Pipelines for the logistics team",
    "job_type": "full-time",
    "location_type": "remote",
    "salary_min": "9000000",
    "salary_max": "14000000",
    "salary_type": "monthly",
    "experience_required": 2,
}


def test_health(test_client):
    response = test_client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_employer_posts_job(test_client, factory):
    employer = factory.employer()

    response = test_client.post("/jobs", json=JOB_BODY, headers=factory.headers(employer))

    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "pending_approval"
    assert body["employer_id"] == employer.id
    assert body["currency"] == "IDR"


def test_talent_cannot_post_job(test_client, factory):
    response = test_client.post("/jobs", json=JOB_BODY, headers=factory.headers(factory.talent()))

    assert response.status_code == 403
    error = response.json()["error"]
    assert error["code"] == "ACCESS_DENIED"
    assert error["path"] == "/jobs"
    assert error["method"] == "POST"


def test_missing_identity_is_unauthorized(test_client):
    response = test_client.post("/jobs", json=JOB_BODY)
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "HTTP_EXCEPTION"


def test_role_header_must_match_user(test_client, factory):
    employer = factory.employer()
    headers = {"X-User-Id": str(employer.user_id), "X-User-Role": "staff"}
    assert test_client.get("/contracts", headers=headers).status_code == 401


def test_inactive_user_is_denied(test_client, factory):
    suspended = factory.user(models.Role.STAFF, status="suspended")
    response = test_client.get("/payments", headers=factory.headers(suspended))
    assert response.status_code == 403


def test_body_validation_errors_are_wrapped(test_client, factory):
    response = test_client.post(
        "/jobs", json={"title": "No description"}, headers=factory.headers(factory.employer())
    )

    assert response.status_code == 422
    error = response.json()["error"]
    assert error["code"] == "VALIDATION_ERROR"
    assert any(detail["loc"][-1] == "description" for detail in error["details"])


def test_domain_validation_errors_carry_field_map(test_client, factory):
    body = dict(JOB_BODY, salary_min="20000000")
    response = test_client.post("/jobs", json=body, headers=factory.headers(factory.employer()))

    assert response.status_code == 422
    assert "salary_min" in response.json()["error"]["details"]


def test_staff_approval_publishes_job(test_client, factory):
    employer = factory.employer()
    staff = factory.staff()
    job = factory.job(employer, status=JobStatus.PENDING_APPROVAL)

    assert test_client.get(f"/jobs/{job.id}", headers=factory.headers(factory.talent())).status_code == 404
    assert test_client.post(f"/jobs/{job.id}/approve", headers=factory.headers(employer)).status_code == 403

    response = test_client.post(f"/jobs/{job.id}/approve", headers=factory.headers(staff))
    assert response.status_code == 200
    assert response.json()["status"] == "active"

    search = test_client.get("/jobs/search", params={"keyword": "backend"})
    assert search.status_code == 200
    assert [item["id"] for item in search.json()["data"]] == [job.id]
    assert search.json()["pagination"]["total"] == 1


def test_closed_job_cannot_be_reopened(test_client, factory):
    employer = factory.employer()
    job = factory.job(employer, status=JobStatus.CLOSED)

    response = test_client.post(
        f"/jobs/{job.id}/status", json={"status": "active"}, headers=factory.headers(factory.staff())
    )

    assert response.status_code == 409
    assert response.json()["error"]["code"] == "INVALID_TRANSITION"


def test_duplicate_application_is_a_conflict(test_client, factory):
    job = factory.job(factory.employer())
    talent = factory.talent()
    headers = factory.headers(talent)

    first = test_client.post("/applications", json={"job_id": job.id, "cover_letter": "Hi"}, headers=headers)
    second = test_client.post("/applications", json={"job_id": job.id}, headers=headers)

    assert first.status_code == 201
    assert first.json()["status"] == "pending"
    assert second.status_code == 409
    assert second.json()["error"]["code"] == "DUPLICATE_APPLICATION"


def test_withdraw_application(test_client, factory):
    talent = factory.talent()
    application = factory.application(factory.job(factory.employer()), talent)

    response = test_client.delete(f"/applications/{application.id}", headers=factory.headers(talent))

    assert response.status_code == 200
    assert response.json() == {"status": "withdrawn", "application_id": application.id}
    again = test_client.delete(f"/applications/{application.id}", headers=factory.headers(talent))
    assert again.status_code == 404


def test_hire_to_refund_flow(test_client, factory):
    employer = factory.employer()
    talent = factory.talent()
    staff = factory.staff()
    job = factory.job(employer)
    employer_headers = factory.headers(employer)
    staff_headers = factory.headers(staff)

    applied = test_client.post("/applications", json={"job_id": job.id}, headers=factory.headers(talent))
    application_id = applied.json()["id"]
    reviewed = test_client.post(
        f"/applications/{application_id}/status", json={"status": "shortlisted"}, headers=employer_headers
    )
    assert reviewed.json()["status"] == "shortlisted"

    hired = test_client.post(
        "/contracts",
        json={
            "job_id": job.id,
            "talent_id": talent.id,
            "application_id": application_id,
            "start_date": "2026-02-01",
            "rate": "1000000",
            "rate_type": "monthly",
            "total_amount": "1000000",
        },
        headers=employer_headers,
    )
    assert hired.status_code == 201
    contract = hired.json()
    assert Decimal(contract["commission_amount"]) == Decimal("150000.00")
    assert contract["employer_id"] == employer.id

    assert test_client.get(f"/jobs/{job.id}", headers=employer_headers).json()["status"] == "filled"
    counts = test_client.get(f"/jobs/{job.id}/applications/counts", headers=employer_headers).json()
    assert counts["accepted"] == 1

    again = test_client.post(
        "/contracts",
        json={
            "job_id": job.id,
            "talent_id": talent.id,
            "start_date": "2026-02-01",
            "rate": "1000000",
            "rate_type": "monthly",
        },
        headers=employer_headers,
    )
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "DUPLICATE_ACTIVE_CONTRACT"

    paid = test_client.post(
        "/payments",
        json={"contract_id": contract["id"], "amount": "1000000", "payment_method": "bank_transfer"},
        headers=staff_headers,
    )
    assert paid.status_code == 201
    payment = paid.json()
    assert payment["status"] == "completed"
    assert Decimal(payment["commission_amount"]) == Decimal("150000.00")

    refunded = test_client.post(
        f"/payments/{payment['id']}/refund", json={"reason": "Cancelled project"}, headers=staff_headers
    )
    assert refunded.status_code == 200
    assert refunded.json()["status"] == "refunded"
    assert refunded.json()["notes"] == "Refund reason: Cancelled project"

    twice = test_client.post(f"/payments/{payment['id']}/refund", headers=staff_headers)
    assert twice.status_code == 409
    assert twice.json()["error"]["code"] == "NOT_REFUNDABLE"

    completed = test_client.post(
        f"/contracts/{contract['id']}/status", json={"status": "completed"}, headers=factory.headers(talent)
    )
    assert completed.json()["status"] == "completed"

    stats = test_client.get("/contracts/stats", headers=employer_headers).json()
    assert stats["completed"] == 1
    assert stats["total"] == 1


def test_contract_visible_to_parties_only(test_client, factory):
    employer = factory.employer()
    talent = factory.talent()
    contract = models.Contract(
        job_id=factory.job(employer).id,
        talent_id=talent.id,
        employer_id=employer.id,
        start_date=date(2026, 1, 1),
        rate=Decimal("100"),
        rate_type=models.SalaryType.HOURLY,
        currency="IDR",
        commission_percentage=Decimal("15.00"),
        status=models.ContractStatus.ACTIVE,
    )
    factory.db.add(contract)
    factory.db.commit()

    assert test_client.get(f"/contracts/{contract.id}", headers=factory.headers(talent)).status_code == 200
    assert test_client.get(f"/contracts/{contract.id}", headers=factory.headers(factory.staff())).status_code == 200
    outsider = test_client.get(f"/contracts/{contract.id}", headers=factory.headers(factory.talent("Outsider")))
    assert outsider.status_code == 403


def test_request_id_is_echoed_on_errors(test_client):
    response = test_client.get("/jobs/1", headers={"X-Request-ID": "trace-123"})

    assert response.status_code == 401
    assert response.headers["X-Request-ID"] == "trace-123"
    assert response.json()["error"]["request_id"] == "trace-123"


def test_revenue_months_are_bounded(test_client, factory):
    response = test_client.get("/payments/revenue", params={"months": 0}, headers=factory.headers(factory.staff()))
    assert response.status_code == 422


def test_staff_lists_every_job(test_client, factory):
    employer = factory.employer()
    waiting = factory.job(employer, status=JobStatus.PENDING_APPROVAL)
    live = factory.job(employer)
    staff_headers = factory.headers(factory.staff())

    everything = test_client.get("/jobs", headers=staff_headers)
    assert everything.status_code == 200
    assert {item["id"] for item in everything.json()["data"]} == {waiting.id, live.id}

    filtered = test_client.get(
        "/jobs", params={"status": "pending_approval", "employer_id": employer.id}, headers=staff_headers
    )
    assert [item["id"] for item in filtered.json()["data"]] == [waiting.id]
    assert test_client.get("/jobs", headers=factory.headers(employer)).status_code == 403


def test_staff_lists_and_counts_applications(test_client, factory):
    job = factory.job(factory.employer())
    talent = factory.talent()
    mine = factory.application(job, talent)
    factory.application(job, factory.talent("Other"), status=models.ApplicationStatus.REJECTED)
    staff_headers = factory.headers(factory.staff())

    listed = test_client.get("/applications", params={"talent_id": talent.id}, headers=staff_headers)
    assert listed.status_code == 200
    assert [item["id"] for item in listed.json()["data"]] == [mine.id]
    assert test_client.get("/applications", headers=factory.headers(talent)).status_code == 403

    platform = test_client.get("/applications/stats", headers=staff_headers).json()
    assert platform["total"] == 2
    assert platform["rejected"] == 1
    own = test_client.get("/applications/stats", headers=factory.headers(talent)).json()
    assert own["total"] == 1
    assert own["pending"] == 1
    employer_view = test_client.get("/applications/stats", headers=factory.headers(factory.employer("Nosy")))
    assert employer_view.status_code == 403


def test_talent_edits_pending_application(test_client, factory):
    talent = factory.talent()
    application = factory.application(factory.job(factory.employer()), talent)

    response = test_client.patch(
        f"/applications/{application.id}",
        json={"cover_letter": "Revised", "proposed_rate": "650000", "status": "accepted"},
        headers=factory.headers(talent),
    )

    assert response.status_code == 200
    body = response.json()
    assert body["cover_letter"] == "Revised"
    assert Decimal(body["proposed_rate"]) == Decimal("650000")
    assert body["status"] == "pending"

    stranger = test_client.patch(
        f"/applications/{application.id}", json={"cover_letter": "Mine now"}, headers=factory.headers(factory.talent("X"))
    )
    assert stranger.status_code == 403
