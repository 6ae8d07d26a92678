from datetime import timedelta

import mongomock
import pytest
from fastapi.testclient import TestClient

from accounts import user_identity
from blood_banks import bank_identity
from config import Settings
from database import Database, utcnow
from main import Services, create_app

PASSWORD = "password123"


def profile(email, **overrides):
    data = {
        "first_name": "Dana",
        "last_name": "Donor",
        "email": email,
        "phone": "+1 555 010 2000",
        "blood_type": "O+",
        "date_of_birth": "1990-04-12",
        "city": "Springfield",
        "state": "IL",
    }
    data.update(overrides)
    return data


def event_payload(**overrides):
    start = utcnow() + timedelta(days=3)
    data = {
        "title": "Downtown Blood Drive",
        "description": "Community donation drive at the civic center",
        "start_date": start,
        "end_date": start + timedelta(hours=6),
        "location": "Springfield Civic Center",
        "max_capacity": 10,
        "contact_phone": "+1 555 010 3000",
        "contact_email": "drives@example.org",
    }
    data.update(overrides)
    return data


def auth(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def settings():
    return Settings(
        database_name="blood_donor_test",
        jwt_secret="test-secret-for-blood-donor-api-0123456789",
        bcrypt_rounds=4,
        environment="test",
    )


@pytest.fixture()
def database(settings):
    db = Database(name=settings.database_name, client=mongomock.MongoClient(), geo_index=False).open()
    db.ensure_indexes()
    yield db
    db.close()


@pytest.fixture()
def services(settings, database):
    return Services(settings, database)


@pytest.fixture()
def client(settings, database):
    with TestClient(create_app(settings, database)) as test_client:
        yield test_client


@pytest.fixture()
def donor(services):
    user = services.accounts.register(profile("donor@example.com"), PASSWORD)
    return {"user": user, "identity": user_identity(user), "token": services.accounts.issue_token(user)}


@pytest.fixture()
def other_donor(services):
    user = services.accounts.register(profile("second@example.com", first_name="Sam"), PASSWORD)
    return {"user": user, "identity": user_identity(user), "token": services.accounts.issue_token(user)}


@pytest.fixture()
def admin(services):
    user = services.accounts.create_admin(profile("admin@example.com", first_name="Ada"), PASSWORD)
    return {"user": user, "identity": user_identity(user), "token": services.accounts.issue_token(user)}


@pytest.fixture()
def bank(services, admin):
    created = services.blood_banks.create("City Blood Bank", "bank@example.org", "bankpass", created_by=admin["user"]["_id"])
    login = services.blood_banks.login("bank@example.org", "bankpass")
    return {"bank": created, "identity": bank_identity(created), "token": login["token"]}


@pytest.fixture()
def approved_event(services, bank, admin):
    def make(**overrides):
        event = services.events.create(event_payload(**overrides), bank["bank"]["_id"], bank["bank"]["name"])
        return services.events.approve(event["_id"], admin["user"]["_id"])

    return make
