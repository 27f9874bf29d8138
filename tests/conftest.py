"""Shared fixtures: a file-backed SQLite database per test, seed data and a recording dispatcher."""
import threading
from types import SimpleNamespace

import pytest
from sqlalchemy.orm import sessionmaker

from fixflow_core.config import Settings
from fixflow_core.database import build_engine
from fixflow_core.engine import RequestLifecycleEngine
from fixflow_core.models import (
    Base,
    Category,
    Location,
    Request,
    RequestLog,
    Technician,
    User,
    UserRole,
)
from fixflow_core.notifications import NotificationDispatcher
from fixflow_core.state_machine import Actor


class RecordingDispatcher(NotificationDispatcher):
    """Keeps every dispatched task in memory."""

    def __init__(self):
        self.tasks = []
        self._lock = threading.Lock()

    def dispatch(self, task):
        with self._lock:
            self.tasks.append(task)

    def of_type(self, action):
        return [t for t in self.tasks if t.event_type == action]


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'fixflow-test.db'}",
        notifications_enabled=False,
        app_url="http://fixflow.test",
        request_number_max_attempts=5,
    )


@pytest.fixture
def db_engine(settings):
    engine = build_engine(settings.database_url)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def seed(session_factory):
    """Users, technicians, a category and a location."""
    with session_factory() as session:
        requester = User(name="Somchai Requester", email="requester@example.com", role=UserRole.REQUESTER)
        other_requester = User(name="Malee Requester", email="other@example.com", role=UserRole.REQUESTER)
        admin = User(name="Admin", email="admin@example.com", role=UserRole.ADMIN)
        tech_user = User(name="Niran Tech", email="tech@example.com", role=UserRole.TECHNICIAN)
        other_tech_user = User(name="Arun Tech", email="tech2@example.com", role=UserRole.TECHNICIAN)
        busy_tech_user = User(name="Busy Tech", email="busy@example.com", role=UserRole.TECHNICIAN)
        inactive_user = User(name="Former Staff", email="former@example.com", is_active=False)
        session.add_all([
            requester, other_requester, admin, tech_user, other_tech_user, busy_tech_user, inactive_user,
        ])
        session.flush()

        technician = Technician(user_id=tech_user.id, specialty="plumbing")
        other_technician = Technician(user_id=other_tech_user.id, specialty="electrical")
        busy_technician = Technician(user_id=busy_tech_user.id, is_available=False)
        category = Category(name="Plumbing", name_th="ประปา")
        retired_category = Category(name="Typewriters", is_active=False)
        location = Location(building="Building A", floor="3", room="301")
        session.add_all([technician, other_technician, busy_technician, category, retired_category, location])
        session.commit()

        return SimpleNamespace(
            requester=Actor(requester.id, UserRole.REQUESTER),
            other_requester=Actor(other_requester.id, UserRole.REQUESTER),
            admin=Actor(admin.id, UserRole.ADMIN),
            tech=Actor(tech_user.id, UserRole.TECHNICIAN),
            other_tech=Actor(other_tech_user.id, UserRole.TECHNICIAN),
            inactive=Actor(inactive_user.id, UserRole.REQUESTER),
            technician_id=technician.id,
            other_technician_id=other_technician.id,
            busy_technician_id=busy_technician.id,
            category_id=category.id,
            retired_category_id=retired_category.id,
            location_id=location.id,
        )


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def lifecycle(session_factory, dispatcher, settings):
    return RequestLifecycleEngine(session_factory, dispatcher, settings=settings)


@pytest.fixture
def new_request(lifecycle, seed):
    """Factory creating a pending request owned by the seeded requester."""

    def factory(title="Leaking faucet", actor=None):
        return lifecycle.create(
            actor or seed.requester,
            title=title,
            category_id=seed.category_id,
            location_id=seed.location_id,
            description="Kitchen sink drips all night",
        )

    return factory


@pytest.fixture
def request_in(lifecycle, seed, new_request):
    """Factory driving a fresh request to the given status."""

    def factory(status):
        request = new_request()
        steps = {
            "pending": [],
            "assigned": ["assign"],
            "accepted": ["assign", "accept"],
            "in_progress": ["assign", "accept", "start"],
            "on_hold": ["assign", "accept", "start", "hold"],
            "completed": ["assign", "accept", "start", "complete"],
            "rejected": ["assign", "reject"],
            "cancelled": ["cancel"],
        }[getattr(status, "value", status)]

        for step in steps:
            if step == "assign":
                request = lifecycle.assign(request.id, seed.admin, seed.technician_id)
            elif step == "reject":
                request = lifecycle.reject(request.id, seed.tech, "Not my specialty")
            elif step == "hold":
                request = lifecycle.hold(request.id, seed.tech, "Waiting for parts")
            elif step == "cancel":
                request = lifecycle.cancel(request.id, seed.requester)
            else:
                request = getattr(lifecycle, step)(request.id, seed.tech)
        return request

    return factory


@pytest.fixture
def log_count(session_factory):
    """Number of audit entries stored for a request."""

    def count(request_id):
        with session_factory() as session:
            return session.query(RequestLog).filter(RequestLog.request_id == request_id).count()

    return count


@pytest.fixture
def reload(session_factory):
    """Fresh copy of a request straight from the database."""

    def load(request_id):
        with session_factory() as session:
            request = session.get(Request, request_id)
            session.expunge(request)
            return request

    return load
