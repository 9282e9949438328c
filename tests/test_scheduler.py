from datetime import date

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from models import Event, EventType, UserWorkspace
from scheduler import TotalsAuditScheduler

USER = "user-1"


def make_factory():
    engine = create_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def test_audit_job_counts_drifted_events() -> None:
    factory = make_factory()
    with factory() as session:
        session.add(UserWorkspace(id=USER, email="ana@example.com", name="Ana"))
        session.add(
            Event(
                user_id=USER,
                name="Wedding",
                type=EventType.wedding,
                event_date=date(2099, 6, 1),
                total_budgeted_cents=500,
            )
        )
        session.commit()

    manager = TotalsAuditScheduler(session_factory=factory)

    assert manager._run_job("test") == 1
    with factory() as session:
        assert session.query(Event).one().total_budgeted_cents == 500


def test_disabled_audit_does_not_start() -> None:
    manager = TotalsAuditScheduler(session_factory=make_factory())
    manager.enabled = False

    manager.start()

    assert manager.scheduler.running is False
    assert manager.scheduler.get_jobs() == []
    manager.stop()
