import sys
from collections.abc import Callable, Generator
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from backend.config import Base  # noqa: E402
import backend.config as app_config  # noqa: E402
import backend.main as app_main  # noqa: E402
# Import the full models module so all tables (including audit_logs) register with Base metadata.
from backend.models import models as _all_models  # noqa: E402,F401
from backend.models.models import (  # noqa: E402
    DeveloperProposal,
    RedevelopmentProject,
    Role,
    Society,
    SocietyMember,
    User,
    utcnow,
)
from backend.services import membership as membership_service  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def _configure_global_test_db(tmp_path_factory):
    """Configure the app-wide SessionLocal/engine so TestClient uses a DB with all tables."""
    db_dir = tmp_path_factory.mktemp("globaldb")
    db_path = db_dir / "app.db"
    engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine)
    app_config.SessionLocal = SessionLocal
    app_config.engine = engine
    app_main.SessionLocal = SessionLocal
    app_main.engine = engine
    app_config.settings.scheduler_enabled = False
    yield
    engine.dispose()


@pytest.fixture
def db_engine(tmp_path):
    """Provide a fresh SQLite database for each test."""
    db_path = tmp_path / "test.db"
    engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> sessionmaker:
    return sessionmaker(bind=db_engine)


@pytest.fixture
def db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


class FakeNotifier:
    """Records realtime calls instead of pushing them to sockets."""

    def __init__(self) -> None:
        self.calls: List[Tuple[str, int, str, Dict[str, Any]]] = []

    def notify_user(self, user_id: int, event: str, payload: Dict[str, Any]) -> bool:
        self.calls.append(("user", user_id, event, payload))
        return True

    def notify_society(self, society_id: int, event: str, payload: Dict[str, Any]) -> bool:
        self.calls.append(("society", society_id, event, payload))
        return True

    def notify_project(self, project_id: int, event: str, payload: Dict[str, Any]) -> bool:
        self.calls.append(("project", project_id, event, payload))
        return True

    def events(self, scope: Optional[str] = None) -> List[str]:
        return [event for call_scope, _, event, _ in self.calls if scope is None or call_scope == scope]


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def create_role(db_session: Session) -> Callable[[str], Role]:
    def _create(name: str) -> Role:
        existing = db_session.query(Role).filter(Role.name == name).first()
        if existing:
            return existing
        role = Role(name=name)
        db_session.add(role)
        db_session.commit()
        return role

    return _create


@pytest.fixture
def create_user(db_session: Session, create_role: Callable[[str], Role]) -> Callable[..., User]:
    def _create(email: str = "user@example.com", role_name: str = "SOCIETY_MEMBER", full_name: Optional[str] = None) -> User:
        role = create_role(role_name)
        user = User(email=email, full_name=full_name, role_id=role.id)
        user.primary_role = role
        user.roles.append(role)
        db_session.add(user)
        db_session.commit()
        return user

    return _create


@pytest.fixture
def create_society(db_session: Session) -> Callable[..., Society]:
    def _create(owner: User, name: str = "Sunrise Co-operative Housing Society") -> Society:
        society = Society(name=name, address="12 Linking Road", owner_user_id=owner.id, total_flats=24)
        db_session.add(society)
        db_session.commit()
        return society

    return _create


@pytest.fixture
def add_member(db_session: Session) -> Callable[[Society, User], SocietyMember]:
    def _add(society: Society, user: User) -> SocietyMember:
        return membership_service.add_member(db_session, society, user, flat_number=f"A-{user.id}")

    return _add


@pytest.fixture
def create_members(create_user, add_member) -> Callable[..., List[User]]:
    counter = {"value": 0}

    def _create(society: Society, count: int) -> List[User]:
        users = []
        for _ in range(count):
            counter["value"] += 1
            user = create_user(email=f"member{counter['value']}@example.com")
            add_member(society, user)
            users.append(user)
        return users

    return _create


@pytest.fixture
def create_project(db_session: Session) -> Callable[..., RedevelopmentProject]:
    def _create(
        society: Society,
        owner: User,
        status: str = "planning",
        voting_deadline: Optional[datetime] = None,
        **fields: Any,
    ) -> RedevelopmentProject:
        values: Dict[str, Any] = {
            "title": "Sunrise Towers Redevelopment",
            "description": "Redevelopment of wings A and B",
            "society_id": society.id,
            "owner_user_id": owner.id,
            "status": status,
            "voting_session": "proposal_selection",
            "minimum_approval_percentage": 51,
        }
        if status == "voting":
            values["voting_status"] = "open"
            values["voting_opened_at"] = utcnow()
            values["voting_deadline"] = voting_deadline or utcnow() + timedelta(days=7)
        elif voting_deadline is not None:
            values["voting_deadline"] = voting_deadline
        values.update(fields)
        project = RedevelopmentProject(**values)
        db_session.add(project)
        db_session.commit()
        return project

    return _create


@pytest.fixture
def create_proposal(db_session: Session) -> Callable[..., DeveloperProposal]:
    def _create(
        project: RedevelopmentProject,
        developer: User,
        title: str = "Proposal",
        status: str = "submitted",
        submitted_at: Optional[datetime] = None,
    ) -> DeveloperProposal:
        proposal = DeveloperProposal(
            project_id=project.id,
            developer_id=developer.id,
            title=title,
            description=f"{title} for {project.title}",
            corpus_amount=2500000,
            rent_amount=35000,
            fsi=2.5,
            status=status,
            submitted_at=submitted_at or utcnow(),
            developer_info={"company_name": f"{title} Builders"},
        )
        db_session.add(proposal)
        db_session.commit()
        return proposal

    return _create
