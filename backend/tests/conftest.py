import mongomock
import pytest
from flask_jwt_extended import create_access_token

from xtraequip.app import create_app

TEST_SECRET = "test-secret-key-with-enough-length-for-hs256"


@pytest.fixture
def database():
    return mongomock.MongoClient().xtraEquip


@pytest.fixture
def app(database):
    return create_app({"TESTING": True, "JWT_SECRET_KEY": TEST_SECRET}, database=database)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_headers(app, database):
    """Return a builder that stores a user (when a role is given) and signs a token for it."""

    def build(email, role=None):
        if role:
            database.users.insert_one({"email": email, "userRole": role})
        with app.app_context():
            token = create_access_token(identity=email)
        return {"Authorization": f"Bearer {token}"}

    return build
