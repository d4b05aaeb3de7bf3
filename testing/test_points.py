import app as app_module
from models import Participation, Student


def _approve(client, auth, pid):
    assert client.post(f"/participations/{pid}/approve", headers=auth).status_code == 200


def _student_id(students, room_id, name):
    return students(room_id)[name]["id"]


def test_single_add_and_subtract(client, auth, make_room, students):
    room = make_room()
    sid = _student_id(students, room["id"], "Ann")

    resp = client.post(f"/students/{sid}/points", headers=auth, json={"action": "add"})
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["student"]["totalPoints"] == 1
    assert body["participation"]["points"] == 1

    resp = client.post(f"/students/{sid}/points", headers=auth, json={"action": "subtract"})
    assert resp.status_code == 200
    assert resp.get_json()["student"]["totalPoints"] == 0
    assert resp.get_json()["participation"]["points"] == -1
    assert students(room["id"])["Ann"]["totalPoints"] == 0


def test_single_subtract_floor(client, auth, make_room, students):
    room = make_room()
    sid = _student_id(students, room["id"], "Bo")
    resp = client.post(f"/students/{sid}/points", headers=auth, json={"action": "subtract"})
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "Student already has 0 points"


def test_single_adjust_errors(client, auth, make_room, students):
    room = make_room()
    sid = _student_id(students, room["id"], "Ann")
    assert client.post(f"/students/{sid}/points", headers=auth, json={"action": "double"}).status_code == 400
    assert client.post("/students/9999/points", headers=auth, json={"action": "add"}).status_code == 404


def test_adjustment_is_recorded_as_approved_participation(app, client, auth, make_room, students):
    room = make_room()
    sid = _student_id(students, room["id"], "Ann")
    client.post(f"/students/{sid}/points", headers=auth, json={"action": "add"})
    with app.app_context():
        rows = Participation.query.filter_by(student_id=sid).all()
        assert len(rows) == 1
        assert rows[0].status == "APPROVED"
        assert rows[0].approved_at is not None
        assert rows[0].points == 1


def test_bulk_add(client, auth, make_room, students):
    room = make_room()
    resp = client.post(f"/rooms/{room['id']}/bulk-points", headers=auth, json={"action": "add"})
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["studentsUpdated"] == 2
    assert [(r["studentName"], r["oldPoints"], r["newPoints"]) for r in body["results"]] == [
        ("Ann", 0, 1), ("Bo", 0, 1)]
    assert {n: s["totalPoints"] for n, s in students(room["id"]).items()} == {"Ann": 1, "Bo": 1}


def test_bulk_subtract_on_zero_balances_leaves_audit_records(app, client, auth, make_room, students):
    room = make_room()
    resp = client.post(f"/rooms/{room['id']}/bulk-points", headers=auth, json={"action": "subtract"})
    assert resp.status_code == 200
    results = resp.get_json()["results"]
    assert [r["pointChange"] for r in results] == [0, 0]
    assert all(r["newPoints"] == 0 for r in results)
    assert {n: s["totalPoints"] for n, s in students(room["id"]).items()} == {"Ann": 0, "Bo": 0}
    with app.app_context():
        rows = Participation.query.filter_by(room_id=room["id"]).all()
        assert len(rows) == 2
        assert {r.points for r in rows} == {0}
        assert {r.status for r in rows} == {"APPROVED"}


def test_bulk_subtract_clamps_per_student(client, auth, make_room, submit, students):
    room = make_room()
    _approve(client, auth, submit(room["id"], "Ann", 2).get_json()["participation"]["id"])
    results = client.post(f"/rooms/{room['id']}/bulk-points", headers=auth,
                          json={"action": "subtract"}).get_json()["results"]
    by_name = {r["studentName"]: r for r in results}
    assert by_name["Ann"]["pointChange"] == -1
    assert by_name["Ann"]["newPoints"] == 1
    assert by_name["Bo"]["pointChange"] == 0
    assert {n: s["totalPoints"] for n, s in students(room["id"]).items()} == {"Ann": 1, "Bo": 0}


def test_bulk_errors(client, auth, make_room):
    room = make_room()
    assert client.post(f"/rooms/{room['id']}/bulk-points", headers=auth,
                       json={"action": "reset"}).status_code == 400
    assert client.post("/rooms/9999/bulk-points", headers=auth, json={"action": "add"}).status_code == 404

    empty = make_room("Empty", roster=None)
    assert client.post(f"/rooms/{empty['id']}/bulk-points", headers=auth,
                       json={"action": "add"}).status_code == 400

    session_id = client.get(f"/sessions/{room['id']}", headers=auth).get_json()[0]["id"]
    client.post(f"/sessions/{room['id']}/toggle", headers=auth, json={"sessionId": session_id, "isActive": False})
    resp = client.post(f"/rooms/{room['id']}/bulk-points", headers=auth, json={"action": "add"})
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "No active session found"


def test_bulk_failure_rolls_back_everything(app, client, auth, make_room, monkeypatch):
    room = make_room()

    def boom():
        raise RuntimeError("disk full")

    monkeypatch.setattr(app_module, "_commit", boom)
    resp = client.post(f"/rooms/{room['id']}/bulk-points", headers=auth, json={"action": "add"})

    assert resp.status_code == 500
    assert resp.get_json() == {"error": "Internal server error"}
    with app.app_context():
        assert Participation.query.count() == 0
        assert Student.query.count() == 2


def test_totals_only_count_active_session(client, auth, make_room, submit, students):
    room = make_room()
    _approve(client, auth, submit(room["id"], "Ann", 3).get_json()["participation"]["id"])
    assert students(room["id"])["Ann"]["totalPoints"] == 3

    client.post(f"/sessions/{room['id']}", headers=auth, json={"name": "Week 2"})
    assert students(room["id"])["Ann"]["totalPoints"] == 0
    sid = students(room["id"])["Ann"]["id"]
    assert client.post(f"/students/{sid}/points", headers=auth,
                       json={"action": "subtract"}).status_code == 400
