from datetime import date, datetime
from decimal import Decimal
from typing import Any, Generic, List, Literal, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from models import (
    ApplicationStatus,
    ContractStatus,
    JobStatus,
    JobType,
    LocationType,
    PaymentStatus,
    SalaryType,
)

T = TypeVar("T")


# --- Pagination ---
class Pagination(BaseModel):
    total: int
    current_page: int
    per_page: int
    total_pages: int
    has_previous: bool
    has_next: bool
    previous_page: int
    next_page: int


class Page(BaseModel, Generic[T]):
    data: List[T]
    pagination: Pagination


# --- Jobs ---
class JobSkillIn(BaseModel):
    skill_id: int
    required: bool = True


class JobSkillOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    skill_id: int
    required: bool


class JobBase(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: str = Field(..., min_length=1)
    job_type: JobType
    location_type: LocationType
    location_address: Optional[str] = Field(None, max_length=255)
    salary_min: Optional[Decimal] = Field(None, ge=0)
    salary_max: Optional[Decimal] = Field(None, ge=0)
    salary_type: SalaryType = SalaryType.MONTHLY
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    experience_required: int = Field(0, ge=0)
    deadline: Optional[date] = None


class JobCreate(JobBase):
    skills: List[JobSkillIn] = Field(default_factory=list)


class JobUpdate(BaseModel):
    """Partial edit of a posting; only fields that were sent are applied."""

    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = Field(None, min_length=1)
    job_type: Optional[JobType] = None
    location_type: Optional[LocationType] = None
    location_address: Optional[str] = Field(None, max_length=255)
    salary_min: Optional[Decimal] = Field(None, ge=0)
    salary_max: Optional[Decimal] = Field(None, ge=0)
    salary_type: Optional[SalaryType] = None
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    experience_required: Optional[int] = Field(None, ge=0)
    deadline: Optional[date] = None
    skills: Optional[List[JobSkillIn]] = None


class JobStatusUpdate(BaseModel):
    status: JobStatus


class Job(JobBase):
    model_config = ConfigDict(from_attributes=True)

    id: int
    employer_id: int
    currency: str
    status: JobStatus
    filled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    skills: List[JobSkillOut] = Field(default_factory=list)


class EmployerJob(Job):
    application_count: int = 0


JobSort = Literal["newest", "salary_high", "salary_low", "deadline"]


class JobSearchFilters(BaseModel):
    keyword: Optional[str] = None
    job_type: Optional[JobType] = None
    location_type: Optional[LocationType] = None
    location: Optional[str] = None
    min_salary: Optional[Decimal] = None
    max_salary: Optional[Decimal] = None
    experience_max: Optional[int] = None
    skills: List[int] = Field(default_factory=list)
    sort: JobSort = "newest"


# --- Applications ---
class ApplicationCreate(BaseModel):
    job_id: int
    cover_letter: Optional[str] = None
    proposed_rate: Optional[Decimal] = Field(None, gt=0)


class ApplicationUpdate(BaseModel):
    cover_letter: Optional[str] = None
    proposed_rate: Optional[Decimal] = Field(None, gt=0)


class ApplicationStatusUpdate(BaseModel):
    status: ApplicationStatus


class Application(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    job_id: int
    talent_id: int
    cover_letter: Optional[str] = None
    proposed_rate: Optional[Decimal] = None
    status: ApplicationStatus
    agency_recommended: bool
    applied_at: Optional[datetime] = None
    reviewed_at: Optional[datetime] = None


class RecommendationToggled(BaseModel):
    id: int
    agency_recommended: bool


# --- Contracts ---
class ContractCreate(BaseModel):
    job_id: int
    talent_id: int
    employer_id: Optional[int] = None  # taken from the actor for employers
    application_id: Optional[int] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    rate: Optional[Decimal] = None
    rate_type: Optional[SalaryType] = None
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    total_amount: Optional[Decimal] = Field(None, gt=0)
    commission_percentage: Optional[Decimal] = Field(None, ge=0, le=100)
    contract_document_url: Optional[str] = Field(None, max_length=500)


class ContractUpdate(BaseModel):
    end_date: Optional[date] = None
    total_amount: Optional[Decimal] = Field(None, gt=0)
    contract_document_url: Optional[str] = Field(None, max_length=500)


class ContractStatusUpdate(BaseModel):
    status: ContractStatus


class Contract(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    job_id: int
    talent_id: int
    employer_id: int
    application_id: Optional[int] = None
    start_date: date
    end_date: Optional[date] = None
    rate: Decimal
    rate_type: SalaryType
    currency: str
    total_amount: Optional[Decimal] = None
    commission_percentage: Decimal
    commission_amount: Optional[Decimal] = None
    status: ContractStatus
    contract_document_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ContractStats(BaseModel):
    total: int
    active: int
    completed: int
    terminated: int
    total_value: Decimal
    total_commission: Decimal


# --- Payments ---
class PaymentCreate(BaseModel):
    contract_id: int
    amount: Decimal = Field(..., gt=0)
    payment_method: str = Field(..., min_length=1, max_length=50)
    notes: Optional[str] = None
    commission_amount: Optional[Decimal] = Field(None, ge=0)
    # Settled by default; pending records an invoice awaiting confirmation
    status: PaymentStatus = PaymentStatus.COMPLETED


class PaymentStatusUpdate(BaseModel):
    status: PaymentStatus


class PaymentRefund(BaseModel):
    reason: Optional[str] = None


class Payment(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    contract_id: int
    payer_id: int
    payee_id: int
    amount: Decimal
    commission_amount: Decimal
    payment_method: str
    status: PaymentStatus
    notes: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class PaymentStats(BaseModel):
    total_paid: Decimal
    total_commission: Decimal
    pending_count: int
    pending_amount: Decimal
    total_count: int
    refunded: Decimal


class MonthlyRevenue(BaseModel):
    month: str
    revenue: Decimal
    commission: Decimal


# --- Errors ---
class ErrorBody(BaseModel):
    code: str
    message: str
    path: str
    method: str
    details: Optional[Any] = None
    request_id: Optional[str] = None


class ErrorResponse(BaseModel):
    error: ErrorBody

