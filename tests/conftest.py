import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SEED_DEMO_DATA"] = "0"

from datetime import timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from canteen import auth, crud, models
from canteen.db import Base, SessionLocal, engine
from canteen.notifier import Notifier


class FakeConnection:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    async def send_json(self, data):
        if self.fail:
            raise RuntimeError("connection closed")
        self.sent.append(data)

    def types(self):
        return [message["type"] for message in self.sent]


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def notifier():
    return Notifier()


def make_user(db, username, role, name=None):
    return crud.create_user(
        db,
        username,
        "secret123",
        name or username.title(),
        f"{username}@example.com",
        role,
    )


@pytest.fixture
def student(db):
    return make_user(db, "asha", models.Role.student, "Asha Rao")


@pytest.fixture
def other_student(db):
    return make_user(db, "vikram", models.Role.student, "Vikram Singh")


@pytest.fixture
def kitchen(db):
    return make_user(db, "chef", models.Role.kitchen, "Head Chef")


@pytest.fixture
def admin(db):
    return make_user(db, "boss", models.Role.admin, "Canteen Admin")


@pytest.fixture
def menu(db):
    category = crud.create_category(db, "Meals")
    dosa = crud.create_menu_item(
        db, {"name": "Masala Dosa", "price": Decimal("60.00"), "category_id": category.id}
    )
    thali = crud.create_menu_item(
        db, {"name": "Veg Thali", "price": Decimal("70.00"), "category_id": category.id}
    )
    return dosa, thali


@pytest.fixture
def ngo(db):
    return crud.create_ngo(
        db,
        {
            "name": "Food For All",
            "contact_name": "Priya",
            "contact_email": "priya@foodforall.org",
            "contact_phone": "+910000000000",
            "address": "12 Market Road",
        },
    )


def in_hours(hours):
    return models.utcnow() + timedelta(hours=hours)


def token_for(user):
    return auth.create_access_token({"sub": str(user.id)})


def auth_headers(user):
    return {"Authorization": f"Bearer {token_for(user)}"}


@pytest.fixture
def client(db):
    from canteen.main import app

    app.state.notifier = Notifier()
    with TestClient(app) as test_client:
        yield test_client
