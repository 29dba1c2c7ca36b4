"""
Pytest configuration and fixtures
"""
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Add backend directory to path for imports
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

# Keep tests off the configured database and off the log directory
os.environ["DATABASE_DSN"] = "sqlite://"
os.environ.setdefault("LOG_FILE_ENABLED", "false")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("NOTIFICATION_WEBHOOK_URL", "")

import caseflow.models  # noqa: E402,F401
from caseflow.core.database import Base, init_db  # noqa: E402
from caseflow.models.course_template import CourseTemplate  # noqa: E402
from caseflow.services.case_lifecycle import CaseLifecycleService  # noqa: E402
from caseflow.services.notification_dispatcher import (  # noqa: E402
    NotificationDispatcher, NotificationEvent)

COURSE_IDS = ["math-101", "eng-201", "sci-301"]
INACTIVE_COURSE_ID = "hist-999"


class RecordingDispatcher(NotificationDispatcher):
    """Dispatcher that keeps every notification in memory"""

    def __init__(self, fail_for: Optional[NotificationEvent] = None):
        self.sent: List[Tuple[str, NotificationEvent, Dict[str, Any]]] = []
        self.fail_for = fail_for

    def dispatch(self, recipient_id, event_type, payload):
        if self.fail_for is not None and event_type == self.fail_for:
            raise ConnectionError("notification service unreachable")
        self.sent.append((recipient_id, event_type, payload))

    def events(self) -> List[NotificationEvent]:
        return [event for _, event, _ in self.sent]

    def recipients_of(self, event: NotificationEvent) -> List[str]:
        return [recipient for recipient, e, _ in self.sent if e == event]


def run_now(func, *args, **kwargs):
    """Scheduler that delivers notifications before the operation returns"""
    func(*args, **kwargs)


@pytest.fixture(scope="function")
def engine():
    """In-memory SQLite engine shared by every connection of one test"""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture(scope="function")
def db(engine) -> Session:
    """Create a database session for testing"""
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture(scope="function")
def courses(db: Session) -> List[str]:
    """Seed the synced course catalog"""
    for course_id in COURSE_IDS:
        db.add(CourseTemplate(id=course_id, name=course_id.upper(), is_active=True))
    db.add(CourseTemplate(id=INACTIVE_COURSE_ID, name="Retired course", is_active=False))
    db.commit()
    return list(COURSE_IDS)


@pytest.fixture(scope="function")
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture(scope="function")
def service(db: Session, dispatcher: RecordingDispatcher, courses) -> CaseLifecycleService:
    return CaseLifecycleService(db, dispatcher=dispatcher, schedule=run_now)


@pytest.fixture(scope="function")
def client(db: Session, dispatcher: RecordingDispatcher, courses):
    """Create test client with database and dispatcher overrides"""
    from fastapi.testclient import TestClient

    from caseflow.api.routes.cases import get_dispatcher
    from caseflow.core.database import get_db
    from caseflow.main import app

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    test_client = TestClient(app)
    yield test_client
    app.dependency_overrides.clear()
