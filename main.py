from decimal import Decimal
from typing import Dict, List, Optional

import structlog
from fastapi import Body, Depends, FastAPI, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException
from structlog.contextvars import get_contextvars

import applications
import auth
import contracts
import errors
import jobs
import models
import payments
import schemas
from database import create_db_and_tables, get_db
from observability import init_observability
from request_id_middleware import RequestIdMiddleware
from settings import get_settings

# Initialise observability before creating app
init_observability()
logger = structlog.get_logger(__name__)

# Create DB tables on startup
create_db_and_tables()

app = FastAPI(
    title="Engagement Engine",
    description="Job, application, contract and payment lifecycles for the talent marketplace",
    version="0.1.0",
)

# --- CORS Middleware ---
origins = [
    "http://localhost",
    "http://localhost:8000",
    "http://127.0.0.1",
    "http://127.0.0.1:8000",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(RequestIdMiddleware)


# --- Error handling ---
def _error_response(
    request: Request,
    status_code: int,
    code: str,
    message: str,
    details=None,
) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None) or get_contextvars().get("request_id")
    body = schemas.ErrorResponse(
        error=schemas.ErrorBody(
            code=code,
            message=message,
            path=request.url.path,
            method=request.method,
            details=details,
            request_id=request_id,
        )
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


def setup_error_handlers(app: FastAPI) -> None:
    """Map domain errors to 4xx responses and everything else to a bare 500."""

    @app.exception_handler(errors.EngineError)
    async def engine_error_handler(request: Request, exc: errors.EngineError):
        details = exc.errors if isinstance(exc, errors.ValidationError) and exc.errors else None
        logger.info(
            "Request rejected",
            error_code=exc.code,
            status_code=exc.status_code,
            message=exc.message,
            path=request.url.path,
        )
        return _error_response(request, exc.status_code, exc.code, exc.message, details)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return _error_response(request, exc.status_code, "HTTP_EXCEPTION", str(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        details = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
            for err in exc.errors()
        ]
        return _error_response(
            request,
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            "VALIDATION_ERROR",
            "Request validation failed",
            details,
        )

    @app.exception_handler(SQLAlchemyError)
    async def database_error_handler(request: Request, exc: SQLAlchemyError):
        logger.error("Database error", path=request.url.path, method=request.method, exc_info=exc)
        return _error_response(
            request, status.HTTP_500_INTERNAL_SERVER_ERROR, "DATABASE_ERROR", "A database error occurred"
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error("Unhandled error", path=request.url.path, method=request.method, exc_info=exc)
        details = {"type": type(exc).__name__} if get_settings().debug else None
        return _error_response(
            request,
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "INTERNAL_SERVER_ERROR",
            "An unexpected error occurred",
            details,
        )


setup_error_handlers(app)


# --- Role dependencies ---
STAFF = (models.Role.STAFF, models.Role.SUPER_ADMIN)

require_employer = auth.require_roles(models.Role.EMPLOYER)
require_talent = auth.require_roles(models.Role.TALENT)
require_staff = auth.require_roles(*STAFF)
require_employer_or_staff = auth.require_roles(models.Role.EMPLOYER, *STAFF)


def _page(schema, items, pagination: schemas.Pagination) -> Dict:
    return {"data": [schema.model_validate(item) for item in items], "pagination": pagination}


def _job_or_404(db: Session, job_id: int) -> models.Job:
    job = jobs.get_job(db, job_id, include_deleted=False)
    if job is None:
        raise errors.NotFoundError("Job not found.")
    return job


def _ensure_job_access(job: models.Job, actor: models.Actor) -> None:
    if actor.is_staff:
        return
    if actor.role == models.Role.EMPLOYER and job.employer_id == actor.id:
        return
    raise errors.AuthorizationError()


@app.get("/health", tags=["Health"])
def health():
    return {"status": "ok"}


# --- Job Endpoints ---
@app.post("/jobs", response_model=schemas.Job, status_code=status.HTTP_201_CREATED, tags=["Jobs"])
def create_job_endpoint(
    job: schemas.JobCreate,
    actor: models.Actor = Depends(require_employer),
    db: Session = Depends(get_db),
):
    return jobs.create_job(db, actor.id, job, actor=actor)


@app.get("/jobs", response_model=schemas.Page[schemas.Job], tags=["Jobs"])
def list_jobs_endpoint(
    status_filter: Optional[models.JobStatus] = Query(None, alias="status"),
    employer_id: Optional[int] = None,
    job_type: Optional[models.JobType] = None,
    location_type: Optional[models.LocationType] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    actor: models.Actor = Depends(require_staff),
    db: Session = Depends(get_db),
):
    items, pagination = jobs.list_jobs(
        db,
        status=status_filter,
        employer_id=employer_id,
        job_type=job_type,
        location_type=location_type,
        search=search,
        page=page,
    )
    return _page(schemas.Job, items, pagination)


@app.get("/jobs/search", response_model=schemas.Page[schemas.Job], tags=["Jobs"])
def search_jobs_endpoint(
    keyword: Optional[str] = None,
    job_type: Optional[models.JobType] = None,
    location_type: Optional[models.LocationType] = None,
    location: Optional[str] = None,
    min_salary: Optional[Decimal] = None,
    max_salary: Optional[Decimal] = None,
    experience_max: Optional[int] = Query(None, ge=0),
    skills: List[int] = Query(default=[]),
    sort: schemas.JobSort = "newest",
    page: int = Query(1, ge=1),
    db: Session = Depends(get_db),
):
    filters = schemas.JobSearchFilters(
        keyword=keyword,
        job_type=job_type,
        location_type=location_type,
        location=location,
        min_salary=min_salary,
        max_salary=max_salary,
        experience_max=experience_max,
        skills=skills,
        sort=sort,
    )
    items, pagination = jobs.search_jobs(db, filters, page)
    return _page(schemas.Job, items, pagination)


@app.get("/jobs/{job_id}", response_model=schemas.Job, tags=["Jobs"])
def get_job_endpoint(
    job_id: int,
    actor: auth.CurrentActor,
    db: Session = Depends(get_db),
):
    job = _job_or_404(db, job_id)
    # Unpublished postings are visible to their owner and staff only
    if job.status not in (models.JobStatus.ACTIVE, models.JobStatus.FILLED):
        if not actor.is_staff and not (actor.role == models.Role.EMPLOYER and job.employer_id == actor.id):
            raise errors.NotFoundError("Job not found.")
    return job


@app.put("/jobs/{job_id}", response_model=schemas.Job, tags=["Jobs"])
def update_job_endpoint(
    job_id: int,
    fields: schemas.JobUpdate,
    actor: models.Actor = Depends(require_employer),
    db: Session = Depends(get_db),
):
    jobs.update_job(db, job_id, fields, actor=actor)
    return jobs.get_job(db, job_id)


@app.post("/jobs/{job_id}/approve", response_model=schemas.Job, tags=["Jobs"])
def approve_job_endpoint(
    job_id: int,
    actor: models.Actor = Depends(require_staff),
    db: Session = Depends(get_db),
):
    jobs.set_job_status(db, job_id, models.JobStatus.ACTIVE, actor=actor)
    return jobs.get_job(db, job_id)


@app.post("/jobs/{job_id}/reject", response_model=schemas.Job, tags=["Jobs"])
def reject_job_endpoint(
    job_id: int,
    actor: models.Actor = Depends(require_staff),
    db: Session = Depends(get_db),
):
    jobs.set_job_status(db, job_id, models.JobStatus.REJECTED, actor=actor)
    return jobs.get_job(db, job_id)


@app.post("/jobs/{job_id}/status", response_model=schemas.Job, tags=["Jobs"])
def set_job_status_endpoint(
    job_id: int,
    payload: schemas.JobStatusUpdate,
    actor: models.Actor = Depends(require_employer_or_staff),
    db: Session = Depends(get_db),
):
    jobs.set_job_status(db, job_id, payload.status, actor=actor)
    return jobs.get_job(db, job_id)


@app.post("/jobs/{job_id}/skills", response_model=schemas.JobSkillOut, tags=["Jobs"])
def add_job_skill_endpoint(
    job_id: int,
    skill: schemas.JobSkillIn,
    actor: models.Actor = Depends(require_employer_or_staff),
    db: Session = Depends(get_db),
):
    _ensure_job_access(_job_or_404(db, job_id), actor)
    return jobs.add_job_skill(db, job_id, skill.skill_id, skill.required)


@app.delete("/jobs/{job_id}/skills/{skill_id}", tags=["Jobs"])
def remove_job_skill_endpoint(
    job_id: int,
    skill_id: int,
    actor: models.Actor = Depends(require_employer_or_staff),
    db: Session = Depends(get_db),
):
    _ensure_job_access(_job_or_404(db, job_id), actor)
    removed = jobs.remove_job_skill(db, job_id, skill_id)
    return {"job_id": job_id, "skill_id": skill_id, "removed": removed}


@app.get("/employers/me/jobs", response_model=schemas.Page[schemas.EmployerJob], tags=["Jobs"])
def list_my_jobs_endpoint(
    status_filter: Optional[models.JobStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    actor: models.Actor = Depends(require_employer),
    db: Session = Depends(get_db),
):
    rows, pagination = jobs.list_employer_jobs(db, actor.id, status=status_filter, page=page)
    data = [
        schemas.EmployerJob(**schemas.Job.model_validate(job).model_dump(), application_count=count)
        for job, count in rows
    ]
    return {"data": data, "pagination": pagination}


@app.get("/jobs/{job_id}/applications", response_model=schemas.Page[schemas.Application], tags=["Applications"])
def list_job_applications_endpoint(
    job_id: int,
    status_filter: Optional[models.ApplicationStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    actor: models.Actor = Depends(require_employer_or_staff),
    db: Session = Depends(get_db),
):
    _ensure_job_access(_job_or_404(db, job_id), actor)
    items, pagination = applications.list_job_applications(db, job_id, status=status_filter, page=page)
    return _page(schemas.Application, items, pagination)


@app.get("/jobs/{job_id}/applications/counts", response_model=Dict[str, int], tags=["Applications"])
def job_application_counts_endpoint(
    job_id: int,
    actor: models.Actor = Depends(require_employer_or_staff),
    db: Session = Depends(get_db),
):
    _ensure_job_access(_job_or_404(db, job_id), actor)
    return applications.get_status_counts(db, job_id)


# --- Application Endpoints ---
@app.post(
    "/applications",
    response_model=schemas.Application,
    status_code=status.HTTP_201_CREATED,
    tags=["Applications"],
)
def apply_endpoint(
    application: schemas.ApplicationCreate,
    actor: models.Actor = Depends(require_talent),
    db: Session = Depends(get_db),
):
    return applications.apply(db, actor.id, application.job_id, application, actor=actor)


@app.get("/applications", response_model=schemas.Page[schemas.Application], tags=["Applications"])
def list_applications_endpoint(
    status_filter: Optional[models.ApplicationStatus] = Query(None, alias="status"),
    job_id: Optional[int] = None,
    talent_id: Optional[int] = None,
    agency_recommended: Optional[bool] = None,
    page: int = Query(1, ge=1),
    actor: models.Actor = Depends(require_staff),
    db: Session = Depends(get_db),
):
    items, pagination = applications.list_applications(
        db,
        status=status_filter,
        job_id=job_id,
        talent_id=talent_id,
        agency_recommended=agency_recommended,
        page=page,
    )
    return _page(schemas.Application, items, pagination)


@app.get("/applications/stats", response_model=Dict[str, int], tags=["Applications"])
def application_stats_endpoint(
    actor: auth.CurrentActor,
    db: Session = Depends(get_db),
):
    # Talents see their own counts, staff see the whole platform
    if actor.role == models.Role.TALENT:
        return applications.get_talent_stats(db, actor.id)
    if actor.is_staff:
        return applications.get_application_stats(db)
    raise errors.AuthorizationError()


@app.get("/talents/me/applications", response_model=schemas.Page[schemas.Application], tags=["Applications"])
def list_my_applications_endpoint(
    status_filter: Optional[models.ApplicationStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    actor: models.Actor = Depends(require_talent),
    db: Session = Depends(get_db),
):
    items, pagination = applications.list_talent_applications(db, actor.id, status=status_filter, page=page)
    return _page(schemas.Application, items, pagination)


@app.patch("/applications/{application_id}", response_model=schemas.Application, tags=["Applications"])
def update_application_endpoint(
    application_id: int,
    fields: schemas.ApplicationUpdate,
    actor: models.Actor = Depends(require_talent),
    db: Session = Depends(get_db),
):
    applications.update_application(db, application_id, actor.id, fields)
    return applications.get_application(db, application_id)


@app.post("/applications/{application_id}/status", response_model=schemas.Application, tags=["Applications"])
def update_application_status_endpoint(
    application_id: int,
    payload: schemas.ApplicationStatusUpdate,
    actor: models.Actor = Depends(require_employer_or_staff),
    db: Session = Depends(get_db),
):
    applications.update_application_status(db, application_id, payload.status, actor=actor)
    return applications.get_application(db, application_id)


@app.post(
    "/applications/{application_id}/recommendation",
    response_model=schemas.RecommendationToggled,
    tags=["Applications"],
)
def toggle_recommendation_endpoint(
    application_id: int,
    actor: models.Actor = Depends(require_staff),
    db: Session = Depends(get_db),
):
    flag = applications.toggle_recommendation(db, application_id, actor=actor)
    return {"id": application_id, "agency_recommended": flag}


@app.delete("/applications/{application_id}", tags=["Applications"])
def withdraw_application_endpoint(
    application_id: int,
    actor: models.Actor = Depends(require_talent),
    db: Session = Depends(get_db),
):
    applications.withdraw(db, application_id, actor.id)
    return {"status": "withdrawn", "application_id": application_id}


# --- Contract Endpoints ---
@app.post("/contracts", response_model=schemas.Contract, status_code=status.HTTP_201_CREATED, tags=["Contracts"])
def create_contract_endpoint(
    contract: schemas.ContractCreate,
    actor: models.Actor = Depends(require_employer_or_staff),
    db: Session = Depends(get_db),
):
    return contracts.create_contract(db, contract, actor=actor)


@app.get("/contracts", response_model=schemas.Page[schemas.Contract], tags=["Contracts"])
def list_contracts_endpoint(
    actor: auth.CurrentActor,
    status_filter: Optional[models.ContractStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    db: Session = Depends(get_db),
):
    employer_id = actor.id if actor.role == models.Role.EMPLOYER else None
    talent_id = actor.id if actor.role == models.Role.TALENT else None
    items, pagination = contracts.list_contracts(
        db, employer_id=employer_id, talent_id=talent_id, status=status_filter, page=page
    )
    return _page(schemas.Contract, items, pagination)


@app.get("/contracts/stats", response_model=schemas.ContractStats, tags=["Contracts"])
def contract_stats_endpoint(
    actor: auth.CurrentActor,
    db: Session = Depends(get_db),
):
    if actor.role == models.Role.EMPLOYER:
        return contracts.get_contract_stats(db, "employer", actor.id)
    if actor.role == models.Role.TALENT:
        return contracts.get_contract_stats(db, "talent", actor.id)
    return contracts.get_contract_stats(db)


@app.get("/contracts/{contract_id}", response_model=schemas.Contract, tags=["Contracts"])
def get_contract_endpoint(
    contract_id: int,
    actor: auth.CurrentActor,
    db: Session = Depends(get_db),
):
    contract = contracts.get_contract(db, contract_id)
    if contract is None:
        raise errors.NotFoundError("Contract not found.")
    contracts.ensure_party(contract, actor)
    return contract


@app.post("/contracts/{contract_id}/status", response_model=schemas.Contract, tags=["Contracts"])
def update_contract_status_endpoint(
    contract_id: int,
    payload: schemas.ContractStatusUpdate,
    actor: auth.CurrentActor,
    db: Session = Depends(get_db),
):
    contracts.update_contract_status(db, contract_id, payload.status, actor=actor)
    return contracts.get_contract(db, contract_id)


@app.patch("/contracts/{contract_id}", response_model=schemas.Contract, tags=["Contracts"])
def update_contract_endpoint(
    contract_id: int,
    fields: schemas.ContractUpdate,
    actor: models.Actor = Depends(require_employer),
    db: Session = Depends(get_db),
):
    contracts.update_contract(db, contract_id, actor.id, fields)
    return contracts.get_contract(db, contract_id)


# --- Payment Endpoints ---
@app.post("/payments", response_model=schemas.Payment, status_code=status.HTTP_201_CREATED, tags=["Payments"])
def create_payment_endpoint(
    payment: schemas.PaymentCreate,
    actor: models.Actor = Depends(require_staff),
    db: Session = Depends(get_db),
):
    return payments.create_payment(
        db,
        payment.contract_id,
        payment.amount,
        payment.payment_method,
        notes=payment.notes,
        commission_amount=payment.commission_amount,
        status=payment.status,
        actor=actor,
    )


@app.get("/payments", response_model=schemas.Page[schemas.Payment], tags=["Payments"])
def list_payments_endpoint(
    status_filter: Optional[models.PaymentStatus] = Query(None, alias="status"),
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    actor: models.Actor = Depends(require_staff),
    db: Session = Depends(get_db),
):
    items, pagination = payments.list_payments(db, status=status_filter, search=search, page=page)
    return _page(schemas.Payment, items, pagination)


@app.get("/payments/stats", response_model=schemas.PaymentStats, tags=["Payments"])
def payment_stats_endpoint(
    actor: models.Actor = Depends(require_staff),
    db: Session = Depends(get_db),
):
    return payments.get_admin_stats(db)


@app.get("/payments/revenue", response_model=List[schemas.MonthlyRevenue], tags=["Payments"])
def monthly_revenue_endpoint(
    months: int = Query(6, ge=1, le=36),
    actor: models.Actor = Depends(require_staff),
    db: Session = Depends(get_db),
):
    return payments.get_monthly_revenue(db, months)


@app.get("/payments/{payment_id}", response_model=schemas.Payment, tags=["Payments"])
def get_payment_endpoint(
    payment_id: int,
    actor: models.Actor = Depends(require_staff),
    db: Session = Depends(get_db),
):
    payment = payments.get_payment(db, payment_id)
    if payment is None:
        raise errors.NotFoundError("Payment not found.")
    return payment


@app.post("/payments/{payment_id}/status", response_model=schemas.Payment, tags=["Payments"])
def update_payment_status_endpoint(
    payment_id: int,
    payload: schemas.PaymentStatusUpdate,
    actor: models.Actor = Depends(require_staff),
    db: Session = Depends(get_db),
):
    payments.update_payment_status(db, payment_id, payload.status, actor=actor)
    return payments.get_payment(db, payment_id)


@app.post("/payments/{payment_id}/refund", response_model=schemas.Payment, tags=["Payments"])
def refund_payment_endpoint(
    payment_id: int,
    payload: Optional[schemas.PaymentRefund] = Body(None),
    actor: models.Actor = Depends(require_staff),
    db: Session = Depends(get_db),
):
    payments.refund_payment(db, payment_id, reason=payload.reason if payload else None, actor=actor)
    return payments.get_payment(db, payment_id)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)
