import mongomock
import pytest
from fastapi.testclient import TestClient

import database
from main import app


@pytest.fixture
def mongo_db():
    original_db, original_client = database.db, database._client
    client = mongomock.MongoClient(tz_aware=True)
    db = client["social_test"]
    database.set_db(db)
    database.ensure_indexes(db)
    try:
        yield db
    finally:
        database.set_db(original_db, original_client)
        client.close()


@pytest.fixture
def client(mongo_db):
    return TestClient(app)


@pytest.fixture
def make_user(client):
    counter = {"n": 0}

    def _make(name=None, email=None, **extra):
        counter["n"] += 1
        n = counter["n"]
        payload = {
            "name": name or f"User {n}",
            "email": email or f"user{n}@example.com",
            "password": "secret123",
        }
        payload.update(extra)
        response = client.post("/api/users", json=payload)
        assert response.status_code == 201, response.text
        return response.json()["data"]["id"]

    return _make


@pytest.fixture
def make_post(client, make_user):
    def _make(author=None, **extra):
        payload = {
            "title": "A post title",
            "content": "Some content that is long enough",
            "category": "general",
            "author": author or make_user(),
        }
        payload.update(extra)
        response = client.post("/api/posts", json=payload)
        assert response.status_code == 201, response.text
        return response.json()["data"]["id"]

    return _make


@pytest.fixture
def make_comment(client, make_user):
    def _make(post, author=None, **extra):
        payload = {"content": "Nice post", "post": post, "author": author or make_user()}
        payload.update(extra)
        response = client.post("/api/comments", json=payload)
        assert response.status_code == 201, response.text
        return response.json()["data"]["id"]

    return _make


@pytest.fixture
def make_community(client, make_user):
    counter = {"n": 0}

    def _make(admin=None, **extra):
        counter["n"] += 1
        payload = {
            "name": f"Community {counter['n']}",
            "description": "A place to talk",
            "admin": admin or make_user(),
        }
        payload.update(extra)
        response = client.post("/api/communities", json=payload)
        assert response.status_code == 201, response.text
        return response.json()["data"]["id"]

    return _make
