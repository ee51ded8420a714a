from types import SimpleNamespace

import pytest

from library_service.app import create_app
from library_service.config import TestConfig
from library_service.sql_store import SqlDataStore

PASSWORD = "secret-password"


def populate(store):
    """Two accounts, one category and three books (2 copies, 1 copy, none)."""
    fiction = store.add_category("Fiction", "Novels and stories")
    admin = store.create_profile("admin@example.com", PASSWORD, "Ada", "Admin", role="admin")
    member = store.create_profile("member@example.com", PASSWORD, "Sam", "Reader")
    dune = store.insert_book(
        {
            "isbn": "9780441013593",
            "title": "Dune",
            "author": "Frank Herbert",
            "category_id": fiction["id"],
            "total_copies": 2,
        }
    )
    solaris = store.insert_book(
        {"isbn": "9780156027601", "title": "Solaris", "author": "Stanislaw Lem", "total_copies": 1}
    )
    gone = store.insert_book(
        {"isbn": "9780060850524", "title": "Brave New World", "author": "Aldous Huxley", "total_copies": 0}
    )
    return SimpleNamespace(
        store=store,
        fiction=fiction,
        admin=admin,
        member=member,
        dune=dune,
        solaris=solaris,
        gone=gone,
    )


@pytest.fixture
def store(tmp_path):
    store = SqlDataStore(f"sqlite:///{tmp_path / 'library.db'}")
    store.create_all()
    yield store
    store.engine.dispose()


@pytest.fixture
def library(store):
    return populate(store)


@pytest.fixture
def app(tmp_path):
    app = create_app(TestConfig, {"SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'app.db'}"})
    yield app
    app.extensions["datastore"].engine.dispose()


@pytest.fixture
def app_library(app):
    return populate(app.extensions["datastore"])


@pytest.fixture
def client(app):
    return app.test_client()


def sign_in(client, email, password=PASSWORD):
    return client.post("/auth/sign-in", data={"email": email, "password": password})


def api_sign_in(client, email, password=PASSWORD):
    return client.post("/api/auth/sign-in", json={"email": email, "password": password})
