import unittest
from datetime import datetime, timezone

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from rbt_dashboard.auth.security import create_access_token, get_password_hash
from rbt_dashboard.db import Base, get_db
from rbt_dashboard.main import app
from rbt_dashboard.models.models import Client, Site, Robot, User
from rbt_dashboard.ratelimit import limiter
from rbt_dashboard.services.access import Actor, Role
from rbt_dashboard.services.part_issues import default_part_issues


engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
    future=True,
)
TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)

NOW = datetime(2024, 3, 10, 9, 30, tzinfo=timezone.utc)
PASSWORD = "correct-horse"


def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


def make_actor(role: Role = Role.admin, email: str = "ops@brightbots.in") -> Actor:
    return Actor(uid="u-1", email=email, role=role)


class DatabaseTestCase(unittest.TestCase):
    """Fresh in-memory schema per test."""

    def setUp(self):
        Base.metadata.create_all(bind=engine)
        self.db = TestingSessionLocal()

    def tearDown(self):
        self.db.close()
        Base.metadata.drop_all(bind=engine)

    def make_robot(self, client_name="Juniper", site_name="Parola", rbt_id="RBT3", **fields) -> Robot:
        client = self.db.query(Client).filter(Client.name == client_name).first()
        if client is None:
            client = Client(name=client_name)
            self.db.add(client)
            self.db.flush()
        site = self.db.query(Site).filter(Site.client_id == client.id, Site.name == site_name).first()
        if site is None:
            site = Site(client_id=client.id, name=site_name)
            self.db.add(site)
            self.db.flush()
        robot = Robot(
            site_id=site.id,
            rbt_id=rbt_id,
            running_status=fields.pop("running_status", "Auto"),
            breakdown_status=fields.pop("breakdown_status", "N/A"),
            part_issues=fields.pop("part_issues", default_part_issues()),
            last_updated=fields.pop("last_updated", NOW),
            **fields,
        )
        self.db.add(robot)
        self.db.commit()
        self.db.refresh(robot)
        return robot

    def make_user(self, email: str, role: str = "viewer", verified: bool = True, password: str = PASSWORD) -> User:
        user = User(
            email=email,
            password_hash=get_password_hash(password),
            role=role,
            email_verified=verified,
        )
        self.db.add(user)
        self.db.commit()
        self.db.refresh(user)
        return user


class ApiTestCase(DatabaseTestCase):
    def setUp(self):
        super().setUp()
        app.dependency_overrides[get_db] = override_get_db
        limiter.reset()
        # No context manager: startup hooks stay off the test database
        self.client = TestClient(app)

    def tearDown(self):
        app.dependency_overrides.clear()
        super().tearDown()

    def auth_headers(self, user: User) -> dict:
        return {"Authorization": f"Bearer {create_access_token(str(user.id), role=user.role)}"}

    def robot_url(self, client="Juniper", site="Parola", rbt_id="RBT3") -> str:
        return f"/clients/{client}/sites/{site}/rbts/{rbt_id}"
