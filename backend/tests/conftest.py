import itertools
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from medibook.core import encryption
from medibook.core.encryption import FieldCodec
from medibook.models import (
    Base,
    BookingStage,
    BookingStatus,
    Organization,
    Specialist,
    User,
)
from medibook.services.bookings.progress import ProgressTrail
from medibook.services.bookings.repository import BookingRepository

TEST_ENCRYPTION_KEY = "test-encryption-key-for-medibook-suite-0001"


@pytest.fixture(scope="session")
def codec():
    return FieldCodec(TEST_ENCRYPTION_KEY)


@pytest.fixture(autouse=True)
def _field_codec(monkeypatch, codec):
    monkeypatch.setattr(encryption, "_codec", codec)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def seeded(db_session):
    db_session.add_all(
        [
            Organization(id="org-1", name="Harbour IME"),
            User(id="system-user", email="system@example.com", name="System"),
            User(id="admin-1", email="admin@example.com", name="Admin", is_admin=True),
            User(id="staff-1", email="staff@example.com", name="Staff"),
            Specialist(id="spec-1", external_calendar_id="100", position=1),
        ]
    )
    db_session.commit()
    return SimpleNamespace(
        organization_id="org-1",
        system_user_id="system-user",
        admin_id="admin-1",
        staff_id="staff-1",
        specialist_id="spec-1",
    )


@pytest.fixture
def make_booking(db_session, seeded, codec):
    counter = itertools.count(1)

    def _make(
        external_appointment_id: str,
        *,
        status: BookingStatus = BookingStatus.active,
        stage: BookingStage | None = BookingStage.scheduled,
        date_time: datetime | None = datetime(2025, 10, 5, 9, 0, tzinfo=timezone.utc),
        first_name: str = "Jane",
        last_name: str = "Doe",
        notes: str | None = None,
        cancelled_at: datetime | None = None,
    ) -> str:
        n = next(counter)
        repo = BookingRepository(db_session, codec)
        referrer = repo.add_referrer(
            {
                "id": f"ref-{n}",
                "organization_id": seeded.organization_id,
                "first_name": "Riley",
                "last_name": "Referrer",
                "email": "riley@example.com",
            }
        )
        examinee = repo.add_examinee(
            {
                "id": f"exam-{n}",
                "referrer_id": referrer.id,
                "first_name": first_name,
                "last_name": last_name,
                "date_of_birth": "1980-01-01",
                "address": "1 Harbour St",
                "email": "examinee@example.com",
                "condition": "Lower back injury",
                "case_type": "Workers compensation",
            }
        )
        booking = repo.add_booking(
            {
                "id": f"booking-{n}",
                "organization_id": seeded.organization_id,
                "created_by_id": seeded.staff_id,
                "referrer_id": referrer.id,
                "specialist_id": seeded.specialist_id,
                "examinee_id": examinee.id,
                "status": status,
                "duration": 60,
                "location": "Sydney clinic",
                "date_time": date_time,
                "external_appointment_id": external_appointment_id,
                "external_calendar_id": "100",
                "notes": notes,
                "cancelled_at": cancelled_at,
            }
        )
        if stage is not None:
            ProgressTrail(db_session).append(
                booking.id,
                to_status=stage,
                changed_by=seeded.staff_id,
                created_at=datetime(2025, 9, 1, 9, 0, tzinfo=timezone.utc),
            )
        db_session.commit()
        return booking.id

    return _make


LEGACY_DDL = (
    "CREATE TABLE specialists (id TEXT PRIMARY KEY, acuity_calendar_id INTEGER, created_at TEXT)",
    "CREATE TABLE referrers (id TEXT PRIMARY KEY, user_id TEXT, first_name TEXT, last_name TEXT, "
    "email TEXT, phone TEXT, job_title TEXT, created_at TEXT, updated_at TEXT)",
    "CREATE TABLE examinees (id TEXT PRIMARY KEY, referrer_id TEXT, first_name TEXT, last_name TEXT, "
    "date_of_birth TEXT, address TEXT, email TEXT, phone_number TEXT, authorized_contact INTEGER, "
    "condition TEXT, case_type TEXT, created_at TEXT, updated_at TEXT)",
    "CREATE TABLE bookings (id TEXT PRIMARY KEY, referrer_id TEXT, specialist_id TEXT, examinee_id TEXT, "
    "status TEXT, type TEXT, duration INTEGER, location TEXT, datetime TEXT, "
    "acuity_appointment_id INTEGER, acuity_calendar_id INTEGER, scheduled_at TEXT, "
    "completed_at TEXT, cancelled_at TEXT, created_at TEXT, updated_at TEXT)",
    "CREATE TABLE progress (id TEXT PRIMARY KEY, booking_id TEXT, from_status TEXT, to_status TEXT, "
    "changed_by TEXT, created_at TEXT)",
)

LEGACY_ROWS = (
    "INSERT INTO specialists VALUES ('old-spec-1', 100, '2023-01-01T00:00:00')",
    "INSERT INTO specialists VALUES ('old-spec-2', 999, '2023-01-02T00:00:00')",
    "INSERT INTO referrers VALUES ('ref-a', NULL, 'Riley', 'Referrer', 'riley@example.com', "
    "'0400 000 000', 'Case manager', '2024-01-01T09:00:00', '2024-01-01T09:00:00')",
    "INSERT INTO examinees VALUES ('exam-a', 'ref-a', 'Jane', 'Doe', '1980-01-01', '1 Harbour St', "
    "'jane@example.com', NULL, 1, 'Lower back injury', 'Workers compensation', "
    "'2024-01-02T09:00:00', '2024-01-02T09:00:00')",
    "INSERT INTO bookings VALUES ('book-a', 'ref-a', 'old-spec-1', 'exam-a', 'confirmed', 'Telehealth', "
    "60, 'Online', '2024-02-01T10:00:00', 5001, 100, '2024-01-03T09:00:00', NULL, NULL, "
    "'2024-01-03T09:00:00', '2024-01-03T09:00:00')",
    "INSERT INTO bookings VALUES ('book-b', 'ref-a', 'old-spec-2', 'exam-a', 'active', 'in-person', "
    "45, 'Sydney clinic', '2024-02-02T10:00:00', 5002, 999, NULL, NULL, NULL, "
    "'2024-01-04T09:00:00', '2024-01-04T09:00:00')",
    "INSERT INTO progress VALUES ('prog-1', 'book-a', NULL, 'scheduled', NULL, '2024-01-03T09:00:00')",
    "INSERT INTO progress VALUES ('prog-2', 'book-a', 'scheduled', 'Re-Scheduled', NULL, "
    "'2024-01-10T09:00:00')",
)


@pytest.fixture
def legacy_engine(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'legacy.db'}")
    with engine.begin() as conn:
        for statement in LEGACY_DDL + LEGACY_ROWS:
            conn.execute(text(statement))
    yield engine
    engine.dispose()
