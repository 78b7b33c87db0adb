import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from auth import CurrentUser, get_current_user
from database import get_db
from main import app


@pytest.fixture
def db():
    return mongomock.MongoClient().storefront_test


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def login(client):
    """Pretend the given CurrentUser (or None) made the request."""
    def _login(user):
        app.dependency_overrides[get_current_user] = lambda: user
        return user
    return _login


@pytest.fixture
def regular_user():
    return CurrentUser(id=str(ObjectId()), is_admin=False)


@pytest.fixture
def admin_user():
    return CurrentUser(id=str(ObjectId()), is_admin=True)


@pytest.fixture
def stranger_id():
    return str(ObjectId())
