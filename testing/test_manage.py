import json

import pytest

from manage import import_roster, seed_teachers
from models import Room, Student, Teacher


def test_seed_teachers_creates_and_updates(app, tmp_path, capsys):
    path = tmp_path / "teachers.json"
    path.write_text(json.dumps([
        {"name": "Dr. Sarah Smith", "email": "Smith@School.edu", "password": "secret123"},
        {"name": "Prof. Michael Johnson", "email": "johnson@school.edu"},
    ]))
    seed_teachers(app, str(path))
    out = capsys.readouterr().out
    assert "smith@school.edu: secret123 (created)" in out
    assert "johnson@school.edu:" in out

    with app.app_context():
        assert Teacher.query.count() == 2
        assert Teacher.query.filter_by(email="smith@school.edu").one().check_password("secret123")

    path.write_text(json.dumps([{"name": "Dr. S. Smith", "email": "smith@school.edu", "password": "newpass1"}]))
    seed_teachers(app, str(path))
    assert "(updated)" in capsys.readouterr().out
    with app.app_context():
        t = Teacher.query.filter_by(email="smith@school.edu").one()
        assert t.name == "Dr. S. Smith"
        assert t.check_password("newpass1")


def test_import_roster(app, client, make_room, tmp_path, capsys):
    room = make_room()
    path = tmp_path / "roster.csv"
    path.write_text("Ann\nCy\n\"Dee\"\n")
    import_roster(app, room["code"].lower(), str(path))
    assert "added 2, skipped 1" in capsys.readouterr().out
    with app.app_context():
        names = {s.name for s in Student.query.filter_by(room_id=room["id"]).all()}
        assert names == {"Ann", "Bo", "Cy", "Dee"}


def test_import_roster_unknown_room(app, tmp_path):
    path = tmp_path / "roster.csv"
    path.write_text("Ann\n")
    with pytest.raises(SystemExit):
        import_roster(app, "ZZZZZZ", str(path))
    with app.app_context():
        assert Room.query.count() == 0
