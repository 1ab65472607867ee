import os
from pathlib import Path

import pytest

TEST_DATABASE_URL = "sqlite:///./engagement-test.db"
_DB_PATH = Path(TEST_DATABASE_URL.split("///")[-1])

# Point the app at the test database before anything imports `database`
os.environ["DATABASE_URL"] = TEST_DATABASE_URL
os.environ.setdefault("METRICS_ENABLED", "false")
os.environ.setdefault("AWS_EMF_ENVIRONMENT", "Local")
os.environ.setdefault("LOG_FORMAT", "console")


def _remove_db_files() -> None:
    for suffix in ("", "-wal", "-shm"):
        path = Path(f"{_DB_PATH}{suffix}")
        if path.exists():
            path.unlink()


_remove_db_files()

from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

# --- Alembic Imports ---
from alembic.config import Config  # noqa: E402
from alembic import command  # noqa: E402

# Import app and DB dependency function first
from main import app, get_db  # noqa: E402

import crud  # noqa: E402
import database  # noqa: E402
import models  # noqa: E402
from database import Base, build_engine  # noqa: E402

test_engine = build_engine(TEST_DATABASE_URL)
TestSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, expire_on_commit=False, bind=test_engine
)


@pytest.fixture(scope="session", autouse=True)
def setup_test_database():
    """Create the test database from models and stamp with Alembic head."""
    Base.metadata.create_all(bind=test_engine)

    alembic_cfg = Config("alembic.ini")
    alembic_cfg.set_main_option("sqlalchemy.url", TEST_DATABASE_URL)
    command.stamp(alembic_cfg, "head")

    yield

    test_engine.dispose()
    database.engine.dispose()
    _remove_db_files()


def _clear_tables() -> None:
    with test_engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture(scope="function")
def db_session(setup_test_database):
    """Yields a SQLAlchemy session; every table is emptied afterwards."""
    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.close()
        _clear_tables()


@pytest.fixture(scope="function")
def override_get_db(db_session):
    """Serve API calls from the test's own session.

    Sharing one connection keeps the API and the test's direct reads inside
    the same SQLite lock holder.
    """

    def _override_get_db():
        yield db_session

    original = app.dependency_overrides.get(get_db)
    app.dependency_overrides[get_db] = _override_get_db

    yield

    if original:
        app.dependency_overrides[get_db] = original
    else:
        del app.dependency_overrides[get_db]


@pytest.fixture(scope="function")
def test_client(override_get_db):
    """Provides a test client configured with our test database session."""
    return TestClient(app)


# --- Reference data ---
class Factory:
    """Creates users, profiles and postings straight in the database."""

    def __init__(self, db):
        self.db = db
        self._seq = 0

    def _next(self) -> int:
        self._seq += 1
        return self._seq

    def user(self, role: models.Role, status: str = "active") -> models.User:
        user = models.User(email=f"{role.value}{self._next()}@example.com", role=role, status=status)
        self.db.add(user)
        self.db.commit()
        return user

    def employer(self, company_name: str = "Acme Studio") -> models.Employer:
        user = self.user(models.Role.EMPLOYER)
        employer = models.Employer(user_id=user.id, company_name=company_name)
        self.db.add(employer)
        self.db.commit()
        return employer

    def talent(self, full_name: str = "Dewi Lestari") -> models.Talent:
        user = self.user(models.Role.TALENT)
        talent = models.Talent(user_id=user.id, full_name=full_name, total_jobs_completed=0)
        self.db.add(talent)
        self.db.commit()
        return talent

    def staff(self, role: models.Role = models.Role.STAFF) -> models.User:
        return self.user(role)

    def skill(self, name: str = None) -> models.Skill:
        skill = models.Skill(name=name or f"skill-{self._next()}", category="engineering")
        self.db.add(skill)
        self.db.commit()
        return skill

    def job(self, employer: models.Employer, status: models.JobStatus = models.JobStatus.ACTIVE, **fields) -> models.Job:
        values = dict(
            title="Backend Engineer",
            description="Build and run the booking API",
            job_type=models.JobType.CONTRACT,
            location_type=models.LocationType.REMOTE,
            salary_min=None,
            salary_max=None,
            salary_type=models.SalaryType.MONTHLY,
            currency="IDR",
            experience_required=2,
        )
        values.update(fields)
        job = models.Job(
            employer_id=employer.id,
            status=status,
            filled_at=crud.utcnow() if status == models.JobStatus.FILLED else None,
            **values,
        )
        self.db.add(job)
        self.db.commit()
        return job

    def application(
        self,
        job: models.Job,
        talent: models.Talent,
        status: models.ApplicationStatus = models.ApplicationStatus.PENDING,
    ) -> models.Application:
        application = models.Application(job_id=job.id, talent_id=talent.id, status=status, agency_recommended=False)
        self.db.add(application)
        self.db.commit()
        return application

    @staticmethod
    def actor(profile) -> models.Actor:
        """The actor a profile or staff user row acts as."""
        if isinstance(profile, models.Employer):
            return models.Actor(id=profile.id, role=models.Role.EMPLOYER)
        if isinstance(profile, models.Talent):
            return models.Actor(id=profile.id, role=models.Role.TALENT)
        return models.Actor(id=profile.id, role=models.Role(profile.role))

    @staticmethod
    def headers(profile) -> dict:
        """Identity headers the upstream gateway would send for a profile or staff user."""
        if isinstance(profile, models.Employer):
            return {"X-User-Id": str(profile.user_id), "X-User-Role": "employer"}
        if isinstance(profile, models.Talent):
            return {"X-User-Id": str(profile.user_id), "X-User-Role": "talent"}
        return {"X-User-Id": str(profile.id), "X-User-Role": models.Role(profile.role).value}


@pytest.fixture(scope="function")
def factory(db_session) -> Factory:
    return Factory(db_session)


@pytest.fixture(scope="function")
def session_factory(db_session):
    """Independent sessions for tests that need more than one connection."""
    return TestSessionLocal
