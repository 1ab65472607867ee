import enum
from dataclasses import dataclass
from typing import Dict, FrozenSet

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import relationship

from database import Base


def _enum_column(enum_cls, **kwargs):
    """Store the enum's string value, not the member name."""
    return Column(
        SQLEnum(
            enum_cls,
            native_enum=False,
            length=32,
            values_callable=lambda members: [m.value for m in members],
            validate_strings=True,
        ),
        **kwargs,
    )


# --- Roles & actors ---
class Role(str, enum.Enum):
    TALENT = "talent"
    EMPLOYER = "employer"
    STAFF = "staff"
    SUPER_ADMIN = "super_admin"


STAFF_ROLES = frozenset({Role.STAFF, Role.SUPER_ADMIN})


@dataclass(frozen=True)
class Actor:
    """The authenticated caller of an operation.

    ``id`` is the employer id for employers, the talent id for talents and
    the user id for staff and admins.
    """

    id: int
    role: Role

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES


# --- Status enums & transition tables ---
class JobStatus(str, enum.Enum):
    PENDING_APPROVAL = "pending_approval"
    ACTIVE = "active"
    FILLED = "filled"
    CLOSED = "closed"
    REJECTED = "rejected"
    DELETED = "deleted"


class ApplicationStatus(str, enum.Enum):
    PENDING = "pending"
    REVIEWED = "reviewed"
    SHORTLISTED = "shortlisted"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class ContractStatus(str, enum.Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    TERMINATED = "terminated"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


VALID_JOB_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PENDING_APPROVAL: frozenset(
        {JobStatus.ACTIVE, JobStatus.REJECTED, JobStatus.CLOSED, JobStatus.DELETED}
    ),
    JobStatus.ACTIVE: frozenset({JobStatus.FILLED, JobStatus.CLOSED, JobStatus.DELETED}),
    # A filled posting can take further hires and can still be closed
    JobStatus.FILLED: frozenset({JobStatus.FILLED, JobStatus.CLOSED, JobStatus.DELETED}),
    JobStatus.CLOSED: frozenset({JobStatus.DELETED}),
    JobStatus.REJECTED: frozenset({JobStatus.DELETED}),
    JobStatus.DELETED: frozenset(),
}

# Statuses an employer or staff member may set by hand
MANUAL_APPLICATION_STATUSES = frozenset(
    {
        ApplicationStatus.PENDING,
        ApplicationStatus.REVIEWED,
        ApplicationStatus.SHORTLISTED,
        ApplicationStatus.REJECTED,
    }
)

VALID_APPLICATION_TRANSITIONS: Dict[ApplicationStatus, FrozenSet[ApplicationStatus]] = {
    **{status: MANUAL_APPLICATION_STATUSES for status in MANUAL_APPLICATION_STATUSES},
    ApplicationStatus.ACCEPTED: frozenset(),
}

WITHDRAWABLE_APPLICATION_STATUSES = frozenset(
    {ApplicationStatus.PENDING, ApplicationStatus.REVIEWED}
)

VALID_CONTRACT_TRANSITIONS: Dict[ContractStatus, FrozenSet[ContractStatus]] = {
    ContractStatus.ACTIVE: frozenset({ContractStatus.COMPLETED, ContractStatus.TERMINATED}),
    ContractStatus.COMPLETED: frozenset(),
    ContractStatus.TERMINATED: frozenset(),
}

VALID_PAYMENT_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED}),
    PaymentStatus.COMPLETED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}


class JobType(str, enum.Enum):
    FULL_TIME = "full-time"
    PART_TIME = "part-time"
    CONTRACT = "contract"
    FREELANCE = "freelance"


class LocationType(str, enum.Enum):
    ONSITE = "onsite"
    REMOTE = "remote"
    HYBRID = "hybrid"


class SalaryType(str, enum.Enum):
    HOURLY = "hourly"
    MONTHLY = "monthly"
    PROJECT = "project"


# --- Reference entities (owned by the identity/profile services) ---
class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    role = _enum_column(Role, nullable=False)
    status = Column(String(20), nullable=False, default="active")
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Employer(Base):
    __tablename__ = "employers"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    company_name = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    user = relationship("User")
    jobs = relationship("Job", back_populates="employer")


class Talent(Base):
    __tablename__ = "talents"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    full_name = Column(String(255), nullable=False)
    total_jobs_completed = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    user = relationship("User")


class Skill(Base):
    __tablename__ = "skills"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), unique=True, nullable=False)
    category = Column(String(100), nullable=True)


# --- Engagement lifecycle ---
class Job(Base):
    __tablename__ = "jobs"
    __table_args__ = (
        CheckConstraint(
            "(status = 'filled' AND filled_at IS NOT NULL) "
            "OR (status != 'filled' AND filled_at IS NULL)",
            name="ck_jobs_filled_at",
        ),
        Index("ix_jobs_status_created", "status", "created_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    employer_id = Column(Integer, ForeignKey("employers.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=False)
    job_type = _enum_column(JobType, nullable=False)
    location_type = _enum_column(LocationType, nullable=False)
    location_address = Column(String(255), nullable=True)
    salary_min = Column(Numeric(14, 2), nullable=True)
    salary_max = Column(Numeric(14, 2), nullable=True)
    salary_type = _enum_column(SalaryType, nullable=False, default=SalaryType.MONTHLY)
    currency = Column(String(3), nullable=False)
    experience_required = Column(Integer, nullable=False, default=0)
    status = _enum_column(JobStatus, nullable=False, default=JobStatus.PENDING_APPROVAL)
    deadline = Column(Date, nullable=True)
    filled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    employer = relationship("Employer", back_populates="jobs")
    skills = relationship("JobSkill", back_populates="job", cascade="all, delete-orphan")
    applications = relationship("Application", back_populates="job")


class JobSkill(Base):
    __tablename__ = "job_skills"

    job_id = Column(Integer, ForeignKey("jobs.id"), primary_key=True)
    skill_id = Column(Integer, ForeignKey("skills.id"), primary_key=True)
    required = Column(Boolean, nullable=False, default=True)

    job = relationship("Job", back_populates="skills")
    skill = relationship("Skill")


class Application(Base):
    __tablename__ = "applications"
    __table_args__ = (
        # One application per (job, talent), whatever its status
        UniqueConstraint("job_id", "talent_id", name="uq_applications_job_talent"),
        Index("ix_applications_job_status", "job_id", "status"),
    )

    id = Column(Integer, primary_key=True, index=True)
    job_id = Column(Integer, ForeignKey("jobs.id"), nullable=False)
    talent_id = Column(Integer, ForeignKey("talents.id"), nullable=False, index=True)
    cover_letter = Column(Text, nullable=True)
    proposed_rate = Column(Numeric(14, 2), nullable=True)
    status = _enum_column(ApplicationStatus, nullable=False, default=ApplicationStatus.PENDING)
    agency_recommended = Column(Boolean, nullable=False, default=False)
    applied_at = Column(DateTime(timezone=True), server_default=func.now())
    reviewed_at = Column(DateTime(timezone=True), nullable=True)

    job = relationship("Job", back_populates="applications")
    talent = relationship("Talent")


class Contract(Base):
    __tablename__ = "contracts"
    __table_args__ = (
        # At most one active engagement per (job, talent)
        Index(
            "uq_contracts_active_job_talent",
            "job_id",
            "talent_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
        Index("ix_contracts_employer_status", "employer_id", "status"),
        Index("ix_contracts_talent_status", "talent_id", "status"),
    )

    id = Column(Integer, primary_key=True, index=True)
    job_id = Column(Integer, ForeignKey("jobs.id"), nullable=False)
    talent_id = Column(Integer, ForeignKey("talents.id"), nullable=False)
    employer_id = Column(Integer, ForeignKey("employers.id"), nullable=False)
    application_id = Column(Integer, ForeignKey("applications.id", ondelete="SET NULL"), nullable=True)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=True)
    rate = Column(Numeric(14, 2), nullable=False)
    rate_type = _enum_column(SalaryType, nullable=False)
    currency = Column(String(3), nullable=False)
    total_amount = Column(Numeric(14, 2), nullable=True)
    commission_percentage = Column(Numeric(5, 2), nullable=False)
    commission_amount = Column(Numeric(14, 2), nullable=True)
    status = _enum_column(ContractStatus, nullable=False, default=ContractStatus.ACTIVE)
    contract_document_url = Column(String(500), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    job = relationship("Job")
    talent = relationship("Talent")
    employer = relationship("Employer")
    payments = relationship("Payment", back_populates="contract")


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (Index("ix_payments_status_paid_at", "status", "paid_at"),)

    id = Column(Integer, primary_key=True, index=True)
    contract_id = Column(Integer, ForeignKey("contracts.id"), nullable=False, index=True)
    payer_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    payee_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    amount = Column(Numeric(14, 2), nullable=False)
    commission_amount = Column(Numeric(14, 2), nullable=False)
    payment_method = Column(String(50), nullable=False)
    status = _enum_column(PaymentStatus, nullable=False, default=PaymentStatus.COMPLETED)
    notes = Column(Text, nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    contract = relationship("Contract", back_populates="payments")


class ActivityLog(Base):
    """Persisted audit trail, one row per state transition."""

    __tablename__ = "activity_logs"
    __table_args__ = (Index("ix_activity_logs_entity", "entity_type", "entity_id"),)

    id = Column(Integer, primary_key=True, index=True)
    actor_id = Column(Integer, nullable=True)
    actor_role = Column(String(32), nullable=True)
    action = Column(String(64), nullable=False)
    entity_type = Column(String(32), nullable=False)
    entity_id = Column(Integer, nullable=False)
    from_status = Column(String(32), nullable=True)
    to_status = Column(String(32), nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
