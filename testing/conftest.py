"""
Shared fixtures: an in-memory database, a test client and a signed-in teacher.
"""

import io
import os
import sys

# must be set before the app module is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("APP_SECRET", "test-secret")

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import pytest

from app import app as flask_app
from models import db


@pytest.fixture
def app():
    flask_app.config["TESTING"] = True
    with flask_app.app_context():
        db.drop_all()
        db.create_all()
    yield flask_app
    with flask_app.app_context():
        db.session.remove()


@pytest.fixture
def client(app):
    return app.test_client()


def _signup(client, name, email, password="secret123"):
    resp = client.post("/auth/signup", json={"name": name, "email": email, "password": password})
    assert resp.status_code == 200, resp.get_json()
    body = resp.get_json()
    # drop the signup cookie so requests authenticate only through explicit headers
    client.post("/auth/signout")
    return {"id": body["teacher"]["id"], "token": body["token"],
            "headers": {"Authorization": f"Bearer {body['token']}"}}


@pytest.fixture
def teacher(client):
    return _signup(client, "Dr. Sarah Smith", "smith@school.edu")


@pytest.fixture
def other_teacher(client):
    return _signup(client, "Prof. Michael Johnson", "johnson@school.edu")


@pytest.fixture
def auth(teacher):
    return teacher["headers"]


@pytest.fixture
def make_room(client, auth):
    def _make(name="Algebra", roster=("Ann", "Bo"), headers=None):
        payload = {"name": name}
        if roster is not None:
            payload["roster"] = "\n".join(roster)
        resp = client.post("/rooms", json=payload, headers=headers or auth)
        assert resp.status_code == 200, resp.get_json()
        return resp.get_json()
    return _make


@pytest.fixture
def students(client):
    """name -> row from the public roster view of a room."""
    def _students(room_id):
        resp = client.get(f"/rooms/{room_id}/students")
        assert resp.status_code == 200
        return {s["name"]: s for s in resp.get_json()["students"]}
    return _students


@pytest.fixture
def submit(client):
    def _submit(room_id, name, points, ptype=None):
        payload = {"studentName": name, "roomId": room_id, "points": points}
        if ptype:
            payload["type"] = ptype
        return client.post("/participations/submit", json=payload)
    return _submit


@pytest.fixture
def csv_file():
    def _file(text, filename="roster.csv"):
        return (io.BytesIO(text.encode("utf-8")), filename)
    return _file
