import json

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from medibook.models import Base, Booking, Organization, Specialist, User
from medibook.scripts import migrate_bookings


@pytest.fixture
def target_url(tmp_path):
    url = f"sqlite:///{tmp_path / 'target.db'}"
    engine = create_engine(url)
    Base.metadata.create_all(engine)
    engine.dispose()
    return url


def _seed(url):
    engine = create_engine(url)
    with Session(engine) as session:
        session.add_all(
            [
                Organization(id="org-1", name="Harbour IME"),
                User(id="system-user", email="system@example.com", name="System"),
                Specialist(id="spec-1", external_calendar_id="100", position=1),
            ]
        )
        session.commit()
    engine.dispose()


def _args(legacy_engine, target_url):
    return [
        "--legacy-database-url",
        str(legacy_engine.url),
        "--database-url",
        target_url,
        "--organization-id",
        "org-1",
        "--system-user-id",
        "system-user",
    ]


def test_missing_configuration_exits_fatal(monkeypatch, capsys):
    monkeypatch.setattr(migrate_bookings.settings, "legacy_database_url", None)
    monkeypatch.setattr(migrate_bookings.settings, "default_organization_id", None)
    monkeypatch.setattr(migrate_bookings.settings, "system_user_id", None)

    assert migrate_bookings.main([]) == migrate_bookings.EXIT_FATAL
    err = capsys.readouterr().err
    assert "OLD_DATABASE_URL" in err
    assert "DEFAULT_ORGANIZATION_ID" in err


def test_failed_precondition_exits_fatal(legacy_engine, target_url, capsys):
    assert migrate_bookings.main(_args(legacy_engine, target_url)) == migrate_bookings.EXIT_FATAL
    assert "Precondition failed: Organization org-1 does not exist" in capsys.readouterr().err


def test_migration_run_prints_summary(legacy_engine, target_url, capsys):
    _seed(target_url)

    assert migrate_bookings.main(_args(legacy_engine, target_url)) == migrate_bookings.EXIT_OK

    output = capsys.readouterr().out
    assert "Legacy booking migration report" in output
    summary = json.loads(output[output.index("\n{") + 1 :])
    assert summary["phases"]["bookings"]["migrated"] == 1
    assert summary["phases"]["bookings"]["skip_reasons"] == {"missingSpecialist": 1}
    assert summary["specialists"] == {"mapped": 1, "unmapped": 1}

    engine = create_engine(target_url)
    with Session(engine) as session:
        assert session.get(Booking, "book-a").external_appointment_id == "5001"
    engine.dispose()
