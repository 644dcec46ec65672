import itertools

import pytest

import smart_library.database as database
from smart_library import auth
from smart_library.config import settings
from smart_library.library import Library
from smart_library.models import Role

TEST_PASSWORD = "secret123"


@pytest.fixture(autouse=True)
def db_file(tmp_path, request, monkeypatch):
    # Every test gets its own database file
    path = str(tmp_path / f"test_{request.node.name}.db")
    monkeypatch.setattr(database, "DATABASE_FILE", path)
    # bcrypt's minimum cost keeps the suite fast
    monkeypatch.setattr(settings, "bcrypt_rounds", 4)
    database.initialize_database()
    yield path


@pytest.fixture
def lib(db_file):
    lib = Library()
    yield lib
    lib.close()


@pytest.fixture
def make_user(db_file):
    counter = itertools.count(1)

    def factory(name=None, email=None, role=Role.STUDENT, password=TEST_PASSWORD):
        n = next(counter)
        return auth.create_user(
            name or f"User {n}",
            email or f"user{n}@example.com",
            password,
            role,
        )

    return factory


@pytest.fixture
def student(make_user):
    return make_user(name="Ada Student", email="ada@example.com")


@pytest.fixture
def other_student(make_user):
    return make_user(name="Ben Student", email="ben@example.com")


@pytest.fixture
def admin(make_user):
    return make_user(name="Libby Admin", email="admin@example.com", role=Role.ADMIN)


@pytest.fixture
def make_book(lib):
    def factory(title="Clean Code", author="Robert C. Martin", category="programming",
                total_copies=1, available_copies=None, **extra):
        if available_copies is None:
            available_copies = total_copies
        return lib.add_book(title, author, category, total_copies, available_copies, **extra)

    return factory
