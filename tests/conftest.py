import mongomock
import pytest
from fastapi.testclient import TestClient

import main
from database import get_db, ensure_indexes, create_document
from schemas import User

PASSWORD = "secret123"


@pytest.fixture
def db():
    database = mongomock.MongoClient()["bookreviews_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def client(db):
    main.app.dependency_overrides[get_db] = lambda: db
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


@pytest.fixture(scope="session")
def password_hash():
    return main.hash_password(PASSWORD)


@pytest.fixture
def make_user(db, password_hash):
    def _make(username="reader", role="user", **extra):
        user = User(
            username=username,
            email=f"{username}@example.com",
            password_hash=password_hash,
            role=role,
            **extra,
        )
        uid = create_document(db, "user", user)
        token = main.create_access_token({"sub": uid})
        return {"id": uid, "username": username, "headers": {"Authorization": f"Bearer {token}"}}
    return _make


@pytest.fixture
def admin(make_user):
    return make_user("admin", role="admin")


@pytest.fixture
def reader(make_user):
    return make_user("reader")


@pytest.fixture
def make_book(client, admin):
    def _make(title="Dune", **fields):
        payload = {
            "title": title,
            "author": "Frank Herbert",
            "genre": "Sci-Fi",
            "description": "Politics and ecology on a desert planet.",
            "publishedDate": "1965-08-01",
            **fields,
        }
        res = client.post("/books", json=payload, headers=admin["headers"])
        assert res.status_code == 201, res.text
        return res.json()
    return _make


@pytest.fixture
def post_review(client):
    def _post(user, book_id, rating, comment="A thoroughly enjoyable read."):
        return client.post(
            "/reviews",
            json={"bookId": book_id, "rating": rating, "comment": comment},
            headers=user["headers"],
        )
    return _post
