import os, io, re, csv, math, random, string, secrets, argparse, functools, logging
from datetime import datetime
from flask import Flask, request, jsonify, abort, g, Response, send_file
from werkzeug.exceptions import HTTPException
from itsdangerous import URLSafeTimedSerializer, BadData
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
import qrcode

from models import (db, Teacher, Room, Student, Session, Participation,
                    PARTICIPATION_TYPES, PARTICIPATION_STATUSES, _as_naive_utc, _iso, utcnow)

# --------------------------------------------------------------------
# Config
# --------------------------------------------------------------------
APP_SECRET = os.environ.get("APP_SECRET") or secrets.token_hex(32)
DB_PATH = os.path.abspath(os.environ.get("PARTICIPATION_DB", "participation.db"))
DB_URI  = os.environ.get("DATABASE_URL") or f"sqlite:///{DB_PATH}"
SHARE_HOST = os.environ.get("PARTICIPATION_SHARE_HOST")  # optional override for QR links
TOKEN_MAX_AGE = int(os.environ.get("TOKEN_MAX_AGE", str(60*60*24*7)))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

ROOM_CODE_LENGTH = 6
ROOM_CODE_ALPHABET = "".join(c for c in string.ascii_uppercase + string.digits if c not in "0O1I")
ROOM_CODE_RE = re.compile(r"[A-Z0-9]{%d}" % ROOM_CODE_LENGTH)
ROOM_CODE_ATTEMPTS = 10
MAX_ROSTER_SIZE = 50
MIN_PASSWORD_LENGTH = 6
TOP_STUDENTS = 10
JOIN_PATH = "/student"

EXPORT_COLUMNS = ["Student Name", "Points", "Status", "Submitted At",
                  "Approved/Rejected At", "Session", "Room", "Teacher"]

def configure_logging():
    """Configure basic logging for the service and return its logger."""
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    return logging.getLogger("participation")

def create_app(db_path=DB_URI):
    configure_logging()
    app = Flask(__name__)
    app.config["SECRET_KEY"] = APP_SECRET
    app.config["SQLALCHEMY_DATABASE_URI"] = db_path
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    db.init_app(app)
    with app.app_context():
        db.create_all()
    return app

app = create_app()

# --------------------------------------------------------------------
# Utils
# --------------------------------------------------------------------
class RoomCodeExhausted(RuntimeError):
    """No free room code was found within the attempt budget."""

def gen_code(n=ROOM_CODE_LENGTH):
    return ''.join(random.choice(ROOM_CODE_ALPHABET) for _ in range(n))

def is_valid_room_code(code):
    """True for 6 uppercase letters/digits; input is trimmed and upper-cased first."""
    if not isinstance(code, str):
        return False
    return ROOM_CODE_RE.fullmatch(code.strip().upper()) is not None

def unique_room_code(attempts=ROOM_CODE_ATTEMPTS):
    for _ in range(attempts):
        code = gen_code()
        if Room.query.filter_by(code=code).first() is None:
            return code
    raise RoomCodeExhausted(f"no unique room code after {attempts} attempts")

def parse_roster(text):
    """First comma-separated field of every non-blank line, unquoted and trimmed."""
    names = []
    for line in (text or "").splitlines():
        line = line.strip()
        if not line:
            continue
        if line.startswith('"'):
            line = line[1:]
        if line.endswith('"'):
            line = line[:-1]
        name = line.split(",", 1)[0].strip()
        if name:
            names.append(name)
    return names

def validate_submission(ptype, points):
    if ptype not in ("POINTS", "RAISE_HAND"):
        raise ValueError("Type must be POINTS or RAISE_HAND")
    if isinstance(points, bool) or not isinstance(points, int):
        raise ValueError("Points must be an integer")
    if ptype == "POINTS" and not 1 <= points <= 3:
        raise ValueError("Points must be between 1 and 3")
    if ptype == "RAISE_HAND" and points != 0:
        raise ValueError("Hand raises must carry 0 points")

def parse_ts(value):
    """Parse an ISO-8601 timestamp from an undo payload into naive UTC."""
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ValueError(f"bad timestamp {value!r}")
    return _as_naive_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))

def _as_int(value):
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None

def _text(data, key):
    value = data.get(key)
    return "" if value is None else str(value).strip()

def _as_bool(value):
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("true", "1", "yes", "on"):
        return True
    if text in ("false", "0", "no", "off", ""):
        return False
    abort(400, "isActive must be true or false")

def _session_scope(value):
    """None when no session was named, else the session id; 400 when malformed."""
    if value in (None, ""):
        return None
    session_id = _as_int(value)
    if session_id is None:
        abort(400, "Invalid session ID")
    return session_id

def _payload():
    if request.is_json:
        return request.get_json(silent=True) or {}
    return request.form.to_dict()

def _uploaded_text(field="csvFile"):
    f = request.files.get(field)
    if f is None:
        return None
    return f.read().decode("utf-8-sig", errors="replace")

def _commit():
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

# --------------------------------------------------------------------
# Totals (always recomputed from APPROVED participations)
# --------------------------------------------------------------------
def active_session(room_id):
    return (Session.query.filter_by(room_id=room_id, is_active=True)
            .order_by(Session.id.desc()).first())

def student_total(student_id, session_id):
    if session_id is None:
        return 0
    total = (db.session.query(func.coalesce(func.sum(Participation.points), 0))
             .filter(Participation.student_id == student_id,
                     Participation.session_id == session_id,
                     Participation.status == "APPROVED")
             .scalar())
    return int(total or 0)

def room_totals(room_id, session_id):
    """student_id -> approved point sum in the given session."""
    if session_id is None:
        return {}
    rows = (db.session.query(Participation.student_id, func.sum(Participation.points))
            .filter(Participation.room_id == room_id,
                    Participation.session_id == session_id,
                    Participation.status == "APPROVED")
            .group_by(Participation.student_id)
            .all())
    return {sid: int(total or 0) for sid, total in rows}

def upsert_student(room, name):
    st = Student.query.filter_by(room_id=room.id, name=name).first()
    if st:
        st.updated_at = utcnow()
    else:
        st = Student(name=name, room=room)
        db.session.add(st)
    return st

def add_roster(room, names):
    """Add names not already on the roster; returns (added_names, skipped_count)."""
    existing = {s.name for s in Student.query.filter_by(room_id=room.id).all()}
    added = [n for n in dict.fromkeys(names) if n not in existing]
    for n in added:
        db.session.add(Student(name=n, room=room))
    return added, len(names) - len(added)

def rotate_session(room, name=None):
    """Deactivate the room's active sessions and open a new one."""
    now = utcnow()
    for s in Session.query.filter_by(room_id=room.id, is_active=True).all():
        s.is_active = False
        s.ended_at = now
    count = Session.query.filter_by(room_id=room.id).count()
    new = Session(name=name or f"Session {count + 1}", room=room, is_active=True, started_at=now)
    db.session.add(new)
    return new

# ---------- Fairness helper ----------
def pick_student(students, call_counts):
    # Weighted random: weight = 1 / (1 + times called this session)
    weights = [1.0 / (1 + call_counts.get(st.id, 0)) for st in students]
    return random.choices(students, weights=weights, k=1)[0]

# --------------------------------------------------------------------
# Auth helpers
# --------------------------------------------------------------------
signer = URLSafeTimedSerializer(APP_SECRET, salt="teacher-token")
TEACHER_COOKIE = "cp_teacher"

def issue_token(teacher):
    return signer.dumps({"id": teacher.id})

def set_teacher_cookie(resp, token):
    resp.set_cookie(TEACHER_COOKIE, token, max_age=TOKEN_MAX_AGE, httponly=True, samesite="Lax")
    return resp

def _request_token():
    header = request.headers.get("Authorization", "")
    if header.startswith("Bearer "):
        return header.split(" ", 1)[1].strip()
    return request.cookies.get(TEACHER_COOKIE)

def current_teacher():
    if "teacher" in g:
        return g.teacher
    g.teacher = None
    token = _request_token()
    if token:
        try:
            data = signer.loads(token, max_age=TOKEN_MAX_AGE)
        except BadData:
            data = None
        if isinstance(data, dict):
            g.teacher = db.session.get(Teacher, _as_int(data.get("id")))
    return g.teacher

def require_teacher(fn):
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        if not current_teacher():
            abort(401, "Authentication required")
        return fn(*args, **kwargs)
    return wrapper

def _check_claimed_teacher(claimed):
    """A client-supplied teacherId must match the bearer."""
    if claimed in (None, ""):
        return
    if _as_int(claimed) != current_teacher().id:
        abort(403, "teacherId does not match the authenticated teacher")

def _owned_room(room_id):
    room = db.session.get(Room, room_id) if room_id is not None else None
    if room is None:
        abort(404, "Room not found")
    if room.teacher_id != current_teacher().id:
        abort(403, "Room belongs to another teacher")
    return room

# --------------------------------------------------------------------
# Errors
# --------------------------------------------------------------------
@app.errorhandler(HTTPException)
def _http_error(e):
    return jsonify({"error": e.description}), e.code

@app.errorhandler(Exception)
def _unexpected_error(e):
    db.session.rollback()
    app.logger.exception("Unhandled error on %s %s", request.method, request.path)
    return jsonify({"error": "Internal server error"}), 500

# --------------------------------------------------------------------
# Teachers & auth
# --------------------------------------------------------------------
def _create_teacher(data):
    name = _text(data, "name")
    email = _text(data, "email").lower()
    pw = str(data.get("password") or "")
    if not name or not email or not pw:
        abort(400, "Name, email, and password are required")
    if len(pw) < MIN_PASSWORD_LENGTH:
        abort(400, f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    if Teacher.query.filter_by(email=email).first():
        abort(409, "Teacher with this email already exists")
    t = Teacher(name=name, email=email)
    t.set_password(pw)
    db.session.add(t)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        abort(409, "Teacher with this email already exists")
    app.logger.info("Teacher %s signed up", t.email)
    token = issue_token(t)
    resp = jsonify({"success": True, "teacher": t.to_dict(), "token": token})
    return set_teacher_cookie(resp, token)

@app.post("/auth/signup")
def signup():
    return _create_teacher(_payload())

@app.post("/auth/signin")
def signin():
    data = _payload()
    email = _text(data, "email").lower()
    pw = str(data.get("password") or "")
    if not email or not pw:
        abort(400, "Email and password are required")
    t = Teacher.query.filter_by(email=email).first()
    if not t or not t.check_password(pw):
        abort(401, "Invalid credentials")
    token = issue_token(t)
    resp = jsonify({"success": True, "teacher": t.to_dict(), "token": token})
    return set_teacher_cookie(resp, token)

@app.post("/auth/signout")
def signout():
    resp = jsonify({"success": True})
    resp.delete_cookie(TEACHER_COOKIE)
    return resp

@app.get("/auth/me")
@require_teacher
def me():
    return jsonify(current_teacher().to_dict())

@app.post("/teachers")
def teachers_create():
    return _create_teacher(_payload())

@app.get("/teachers")
@require_teacher
def teachers_list():
    items = []
    for t in Teacher.query.order_by(Teacher.name.asc()).all():
        d = t.to_dict()
        d["roomCount"] = len(t.rooms)
        items.append(d)
    return jsonify(items)

# --------------------------------------------------------------------
# Rooms
# --------------------------------------------------------------------
def _room_summary(room):
    d = room.to_dict()
    d["counts"] = {
        "students": len(room.students),
        "sessions": len(room.sessions),
        "participations": len(room.participations),
    }
    return d

@app.post("/rooms")
@require_teacher
def rooms_create():
    data = _payload()
    _check_claimed_teacher(data.get("teacherId"))
    name = _text(data, "name")
    description = _text(data, "description") or None
    if not name:
        abort(400, "Room name is required")

    names = []
    roster_text = _uploaded_text("csvFile")
    if roster_text is None:
        roster_text = data.get("roster")
        if isinstance(roster_text, list) and all(isinstance(n, str) for n in roster_text):
            roster_text = "\n".join(roster_text)
        elif roster_text is not None and not isinstance(roster_text, str):
            abort(400, "Roster must be text or a list of names")
    if roster_text is not None:
        names = parse_roster(roster_text)
        if not names:
            abort(400, "CSV file must contain at least one student name")
        if len(names) > MAX_ROSTER_SIZE:
            abort(400, f"Maximum {MAX_ROSTER_SIZE} students allowed per room")

    try:
        code = unique_room_code()
    except RoomCodeExhausted:
        app.logger.error("Room code space exhausted while creating %r", name)
        abort(500, "Failed to generate unique room code")

    # room, first session and roster land together or not at all
    room = Room(code=code, name=name, description=description, teacher=current_teacher())
    db.session.add(room)
    db.session.add(Session(name=f"{name} - Session 1", room=room, is_active=True))
    added, _ = add_roster(room, names)
    _commit()
    app.logger.info("Room %s (%s) created with %d students", room.code, room.name, len(added))

    payload = _room_summary(room)
    payload["studentsAdded"] = len(added)
    return jsonify(payload)

@app.get("/rooms")
@require_teacher
def rooms_list():
    _check_claimed_teacher(request.args.get("teacherId"))
    rooms = (Room.query.filter_by(teacher_id=current_teacher().id)
             .order_by(Room.updated_at.desc(), Room.id.desc()).all())
    return jsonify([_room_summary(r) for r in rooms])

@app.post("/rooms/validate")
def rooms_validate():
    data = _payload()
    code = data.get("code")
    if not is_valid_room_code(code):
        return jsonify({"valid": False, "error": "Invalid room code format"}), 400
    room = Room.query.filter_by(code=code.strip().upper()).first()
    if not room:
        return jsonify({"valid": False, "error": "Room not found"}), 404
    if not room.is_active:
        return jsonify({"valid": False, "error": "Room is not active"}), 400
    return jsonify({
        "valid": True,
        "room": {
            "id": room.id,
            "name": room.name,
            "code": room.code,
            "teacher": room.teacher.name,
            "hasActiveSession": active_session(room.id) is not None,
        },
    })

@app.post("/rooms/<int:room_id>/toggle")
@require_teacher
def rooms_toggle(room_id):
    room = _owned_room(room_id)
    data = _payload()
    room.is_active = _as_bool(data["isActive"]) if "isActive" in data else not room.is_active
    _commit()
    return jsonify(room.to_dict())

@app.get("/rooms/<int:room_id>/students")
def room_students(room_id):
    room = db.session.get(Room, room_id)
    if not room:
        abort(404, "Room not found")
    current = active_session(room.id)
    approved, pending, totals = {}, {}, {}
    if current:
        for p in Participation.query.filter_by(room_id=room.id, session_id=current.id).all():
            if p.status == "APPROVED":
                totals[p.student_id] = totals.get(p.student_id, 0) + p.points
                approved[p.student_id] = approved.get(p.student_id, 0) + 1
            elif p.status == "PENDING":
                pending[p.student_id] = pending.get(p.student_id, 0) + 1
    students = [{
        "id": st.id,
        "name": st.name,
        "totalPoints": totals.get(st.id, 0),
        "participationsCount": approved.get(st.id, 0),
        "pendingCount": pending.get(st.id, 0),
        "createdAt": _iso(st.created_at),
    } for st in Student.query.filter_by(room_id=room.id).order_by(Student.name.asc()).all()]
    return jsonify({
        "room": {"id": room.id, "name": room.name, "code": room.code},
        "students": students,
        "activeSession": current.to_dict() if current else None,
    })

@app.post("/rooms/<int:room_id>/students")
def room_students_add(room_id):
    data = _payload()
    name = str(data.get("studentName") or "").strip()
    if not name:
        abort(400, "Student name is required")
    room = Room.query.filter_by(id=room_id, is_active=True).first()
    if not room:
        abort(404, "Room not found or inactive")
    st = upsert_student(room, name)
    _commit()
    return jsonify(st.to_dict())

@app.post("/rooms/<int:room_id>/upload-students")
@require_teacher
def room_upload_students(room_id):
    room = _owned_room(room_id)
    text = _uploaded_text("csvFile")
    if text is None:
        abort(400, "CSV file is required")
    names = parse_roster(text)
    if not names:
        abort(400, "CSV file must contain at least one student name")
    added, skipped = add_roster(room, names)
    if not added:
        abort(400, "All students in the CSV already exist in this room")
    _commit()
    app.logger.info("Room %s: %d students added, %d skipped", room.code, len(added), skipped)
    return jsonify({
        "success": True,
        "studentsAdded": len(added),
        "duplicatesSkipped": skipped,
        "newStudents": added,
    })

@app.post("/rooms/<int:room_id>/bulk-points")
@require_teacher
def room_bulk_points(room_id):
    action = _payload().get("action")
    if action not in ("add", "subtract"):
        abort(400, 'Action must be "add" or "subtract"')
    room = _owned_room(room_id)
    current = active_session(room.id)
    if not current:
        abort(400, "No active session found")
    students = Student.query.filter_by(room_id=room.id).order_by(Student.name.asc()).all()
    if not students:
        abort(400, "No students in this room")

    totals = room_totals(room.id, current.id)
    change = 1 if action == "add" else -1
    now = utcnow()
    staged = []
    for st in students:
        before = totals.get(st.id, 0)
        # clamp at zero but still leave an audit record
        actual = 0 if action == "subtract" and before <= 0 else change
        p = Participation(student=st, room=room, session=current, points=actual,
                          status="APPROVED", submitted_at=now, approved_at=now)
        db.session.add(p)
        staged.append((st, before, actual, p))
    _commit()
    app.logger.info("Room %s: bulk %s applied to %d students", room.code, action, len(staged))

    results = [{
        "studentId": st.id,
        "studentName": st.name,
        "oldPoints": before,
        "newPoints": before + actual,
        "pointChange": actual,
        "participationId": p.id,
    } for st, before, actual, p in staged]
    return jsonify({"success": True, "action": action, "studentsUpdated": len(results), "results": results})

@app.post("/rooms/<int:room_id>/call-random")
@require_teacher
def room_call_random(room_id):
    room = _owned_room(room_id)
    students = Student.query.filter_by(room_id=room.id).order_by(Student.id.asc()).all()
    if not students:
        abort(400, "No students found in this room")
    current = active_session(room.id)
    if not current:
        abort(400, "No active session found for this room")

    calls = dict(db.session.query(Participation.student_id, func.count(Participation.id))
                 .filter(Participation.session_id == current.id, Participation.type == "TEACHER_CALL")
                 .group_by(Participation.student_id).all())
    st = pick_student(students, calls)
    p = Participation(student=st, room=room, session=current, type="TEACHER_CALL",
                      points=1, status="PENDING")
    db.session.add(p)
    _commit()
    return jsonify({"success": True, "participation": p.to_dict()})

@app.delete("/rooms/<int:room_id>/delete")
@require_teacher
def rooms_delete(room_id):
    room = _owned_room(room_id)
    counts = {
        "students": len(room.students),
        "participations": len(room.participations),
        "sessions": len(room.sessions),
    }
    code = room.code
    db.session.delete(room)
    _commit()
    app.logger.info("Room %s deleted (%s)", code, counts)
    return jsonify({"success": True, "message": "Room deleted successfully", "deletedCounts": counts})

@app.get("/rooms/<int:room_id>/stats")
@require_teacher
def rooms_stats(room_id):
    room = _owned_room(room_id)
    parts = Participation.query.filter_by(room_id=room.id).all()
    by_status = {s: 0 for s in PARTICIPATION_STATUSES}
    for p in parts:
        by_status[p.status] = by_status.get(p.status, 0) + 1
    total = len(parts)
    approved = by_status["APPROVED"]

    student_stats = []
    for st in Student.query.filter_by(room_id=room.id).order_by(Student.id.asc()).all():
        mine = [p for p in parts if p.student_id == st.id]
        ok = [p for p in mine if p.status == "APPROVED"]
        student_stats.append({
            "id": st.id,
            "name": st.name,
            "totalPoints": sum(p.points for p in ok),
            "participationsCount": len(ok),
            "pendingCount": sum(1 for p in mine if p.status == "PENDING"),
        })
    student_stats.sort(key=lambda s: s["totalPoints"], reverse=True)

    session_stats = []
    for s in Session.query.filter_by(room_id=room.id).order_by(Session.id.asc()).all():
        mine = [p for p in parts if p.session_id == s.id]
        session_stats.append({
            "id": s.id,
            "name": s.name,
            "isActive": s.is_active,
            "participationsCount": len(mine),
            "approvedCount": sum(1 for p in mine if p.status == "APPROVED"),
            "startedAt": _iso(s.started_at),
            "endedAt": _iso(s.ended_at),
        })

    return jsonify({
        "room": {
            "id": room.id,
            "name": room.name,
            "code": room.code,
            "teacher": room.teacher.name,
            "isActive": room.is_active,
            "createdAt": _iso(room.created_at),
        },
        "stats": {
            "totalStudents": len(student_stats),
            "totalSessions": len(session_stats),
            "totalParticipations": total,
            "approvedParticipations": approved,
            "pendingParticipations": by_status["PENDING"],
            "rejectedParticipations": by_status["REJECTED"],
            "approvalRate": math.floor(approved * 100 / total + 0.5) if total else 0,
        },
        "topStudents": student_stats[:TOP_STUDENTS],
        "allStudents": student_stats,
        "sessions": session_stats,
    })

@app.get("/rooms/<int:room_id>/qr.png")
@require_teacher
def rooms_qr_png(room_id):
    room = _owned_room(room_id)
    base = (SHARE_HOST or request.url_root).rstrip("/")
    target = f"{base}{JOIN_PATH}?code={room.code}"

    qr = qrcode.QRCode(
        version=None,  # auto
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=8,
        border=2,
    )
    qr.add_data(target)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")

    buf = io.BytesIO()
    img.save(buf, format="PNG")
    buf.seek(0)
    return send_file(buf, mimetype="image/png",
                     as_attachment=False,
                     download_name=f"{room.code}.png")

# --------------------------------------------------------------------
# Participations
# --------------------------------------------------------------------
@app.post("/participations/submit")
def participations_submit():
    data = _payload()
    student_name = str(data.get("studentName") or "").strip()
    room_id = _as_int(data.get("roomId"))
    ptype = data.get("type") or "POINTS"
    points = data.get("points")
    if ptype == "RAISE_HAND" and points is None:
        points = 0
    if not student_name or room_id is None:
        abort(400, "Student name and room ID are required")
    try:
        validate_submission(ptype, points)
    except ValueError as e:
        abort(400, str(e))

    room = Room.query.filter_by(id=room_id, is_active=True).first()
    if not room:
        abort(404, "Room not found or inactive")
    current = active_session(room.id)
    if not current:
        abort(400, "No active session found")

    st = upsert_student(room, student_name)
    p = Participation(student=st, room=room, session=current, points=points,
                      type=ptype, status="PENDING")
    db.session.add(p)
    _commit()
    return jsonify({"success": True, "participation": p.to_dict()})

def _decide(participation_id):
    p = db.session.get(Participation, participation_id)
    if not p:
        abort(404, "Participation not found")
    _owned_room(p.room_id)
    return p

@app.post("/participations/<int:participation_id>/approve")
@require_teacher
def participations_approve(participation_id):
    p = _decide(participation_id)
    p.status = "APPROVED"
    p.approved_at = utcnow()
    _commit()
    return jsonify({"success": True, "participation": p.to_dict()})

@app.post("/participations/<int:participation_id>/reject")
@require_teacher
def participations_reject(participation_id):
    p = _decide(participation_id)
    p.status = "REJECTED"
    p.rejected_at = utcnow()
    _commit()
    return jsonify({"success": True, "participation": p.to_dict()})

@app.post("/participations/<int:participation_id>/acknowledge")
@require_teacher
def participations_acknowledge(participation_id):
    p = _decide(participation_id)
    if p.type != "RAISE_HAND":
        abort(400, "Only hand raises can be acknowledged")
    p.status = "APPROVED"
    p.acknowledged_at = utcnow()
    _commit()
    return jsonify({"success": True, "participation": p.to_dict()})

@app.get("/participations/pending")
@require_teacher
def participations_pending():
    room_id = _as_int(request.args.get("roomId"))
    if room_id is None:
        abort(400, "Room ID is required")
    room = _owned_room(room_id)
    current = active_session(room.id)
    if not current:
        return jsonify([])
    rows = (Participation.query
            .filter_by(room_id=room.id, session_id=current.id, status="PENDING")
            .order_by(Participation.submitted_at.asc(), Participation.id.asc())
            .all())
    return jsonify([{
        "id": p.id,
        "studentId": p.student_id,
        "studentName": p.student.name,
        "points": p.points,
        "type": p.type,
        "submittedAt": _iso(p.submitted_at),
        "sessionName": current.name,
    } for p in rows])

# --------------------------------------------------------------------
# Students
# --------------------------------------------------------------------
@app.post("/students/<int:student_id>/points")
@require_teacher
def students_points(student_id):
    action = _payload().get("action")
    if action not in ("add", "subtract"):
        abort(400, 'Action must be "add" or "subtract"')
    st = db.session.get(Student, student_id)
    if not st:
        abort(404, "Student not found")
    room = _owned_room(st.room_id)
    current = active_session(room.id)
    if not current:
        abort(400, "No active session found")

    before = student_total(st.id, current.id)
    if action == "subtract" and before <= 0:
        abort(400, "Student already has 0 points")
    change = 1 if action == "add" else -1
    now = utcnow()
    p = Participation(student=st, room=room, session=current, points=change,
                      status="APPROVED", submitted_at=now, approved_at=now)
    db.session.add(p)
    _commit()
    return jsonify({
        "success": True,
        "student": {"id": st.id, "name": st.name, "totalPoints": before + change},
        "participation": {"id": p.id, "points": p.points, "action": action},
    })

# --------------------------------------------------------------------
# Sessions
# --------------------------------------------------------------------
@app.get("/sessions/<int:room_id>")
@require_teacher
def sessions_list(room_id):
    room = _owned_room(room_id)
    items = []
    for s in Session.query.filter_by(room_id=room.id).order_by(Session.created_at.desc(), Session.id.desc()).all():
        d = s.to_dict()
        d["participationsCount"] = len(s.participations)
        items.append(d)
    return jsonify(items)

@app.post("/sessions/<int:room_id>")
@require_teacher
def sessions_create(room_id):
    room = _owned_room(room_id)
    name = _text(_payload(), "name")
    new = rotate_session(room, name or None)
    _commit()
    app.logger.info("Room %s: session %r started", room.code, new.name)
    return jsonify(new.to_dict())

@app.post("/sessions/<int:room_id>/toggle")
@require_teacher
def sessions_toggle(room_id):
    room = _owned_room(room_id)
    data = _payload()
    session_id = _as_int(data.get("sessionId"))
    if session_id is None:
        abort(400, "Session ID is required")
    target = Session.query.filter_by(id=session_id, room_id=room.id).first()
    if not target:
        abort(404, "Session not found")
    make_active = _as_bool(data.get("isActive"))
    now = utcnow()
    if make_active:
        for s in Session.query.filter_by(room_id=room.id, is_active=True).all():
            if s.id != target.id:
                s.is_active = False
                s.ended_at = now
    if make_active:
        target.ended_at = None
    elif target.is_active:
        target.ended_at = now
    target.is_active = make_active
    _commit()
    return jsonify(target.to_dict())

# --------------------------------------------------------------------
# Reset & undo
# --------------------------------------------------------------------
def _delete_scoped(query, session_id):
    session_id = _session_scope(session_id)
    if session_id is not None:
        query = query.filter(Participation.session_id == session_id)
    else:
        # no session given: current session only
        query = query.join(Participation.session).filter(Session.is_active.is_(True))
    rows = query.order_by(Participation.id.asc()).all()
    undo = [p.snapshot() for p in rows]
    names = list(dict.fromkeys(p.student.name for p in rows))
    for p in rows:
        db.session.delete(p)
    _commit()
    return rows, names, undo

@app.post("/reset/class")
@require_teacher
def reset_class():
    data = _payload()
    room_id = _as_int(data.get("roomId"))
    if room_id is None:
        abort(400, "Room ID is required")
    room = _owned_room(room_id)
    rows, names, undo = _delete_scoped(Participation.query.filter(Participation.room_id == room.id),
                                       data.get("sessionId"))
    app.logger.info("Room %s: reset removed %d participations", room.code, len(rows))
    return jsonify({
        "success": True,
        "deletedCount": len(rows),
        "affectedStudents": names,
        "undoData": undo,
    })

@app.post("/reset/student")
@require_teacher
def reset_student():
    data = _payload()
    student_id = _as_int(data.get("studentId"))
    if student_id is None:
        abort(400, "Student ID is required")
    st = db.session.get(Student, student_id)
    if not st:
        abort(404, "Student not found")
    room = _owned_room(st.room_id)
    name = st.name
    rows, _, undo = _delete_scoped(Participation.query.filter(Participation.student_id == st.id),
                                   data.get("sessionId"))
    app.logger.info("Room %s: reset removed %d participations for %s", room.code, len(rows), name)
    return jsonify({
        "success": True,
        "deletedCount": len(rows),
        "studentName": name,
        "undoData": undo,
    })

@app.post("/reset/session")
@require_teacher
def reset_session():
    room_id = _as_int(_payload().get("roomId"))
    if room_id is None:
        abort(400, "Room ID is required")
    room = _owned_room(room_id)
    previous = active_session(room.id)
    if not previous:
        abort(404, "No active session found")
    prev_summary = {"id": previous.id, "name": previous.name,
                    "participationsCount": len(previous.participations)}
    new = rotate_session(room)
    _commit()
    app.logger.info("Room %s: session %r replaced by %r", room.code, previous.name, new.name)
    return jsonify({
        "success": True,
        "previousSession": prev_summary,
        "newSession": {"id": new.id, "name": new.name},
    })

def _restore(item):
    """Build a Participation from one undo snapshot; ValueError when malformed."""
    if not isinstance(item, dict):
        raise ValueError("entries must be objects")
    st = db.session.get(Student, _as_int(item.get("studentId")) or 0)
    room = db.session.get(Room, _as_int(item.get("roomId")) or 0)
    sess = db.session.get(Session, _as_int(item.get("sessionId")) or 0)
    if not (st and room and sess) or st.room_id != room.id or sess.room_id != room.id:
        raise ValueError("unknown student, room, or session")
    if room.teacher_id != current_teacher().id:
        abort(403, "Room belongs to another teacher")
    points = item.get("points")
    if isinstance(points, bool) or not isinstance(points, int):
        raise ValueError("points must be an integer")
    ptype = item.get("type") or "POINTS"
    status = item.get("status")
    if ptype not in PARTICIPATION_TYPES or status not in PARTICIPATION_STATUSES:
        raise ValueError("bad type or status")
    return Participation(
        student_id=st.id, room_id=room.id, session_id=sess.id,
        points=points, type=ptype, status=status,
        submitted_at=parse_ts(item.get("submittedAt")) or utcnow(),
        approved_at=parse_ts(item.get("approvedAt")),
        rejected_at=parse_ts(item.get("rejectedAt")),
        acknowledged_at=parse_ts(item.get("acknowledgedAt")),
    )

@app.post("/reset/undo")
@require_teacher
def reset_undo():
    undo = _payload().get("undoData")
    if not isinstance(undo, list):
        abort(400, "Invalid undo data")
    try:
        restored = [_restore(item) for item in undo]
    except ValueError as e:
        db.session.rollback()
        abort(400, f"Invalid undo data: {e}")
    db.session.add_all(restored)
    _commit()
    app.logger.info("Undo restored %d participations", len(restored))
    return jsonify({"success": True, "restoredCount": len(restored)})

# --------------------------------------------------------------------
# Export
# --------------------------------------------------------------------
def export_row(p, room):
    if p.status == "APPROVED":
        changed = p.approved_at or p.acknowledged_at
    elif p.status == "REJECTED":
        changed = p.rejected_at
    else:
        changed = None
    return [
        p.student.name,
        str(p.points),
        p.status,
        p.submitted_at.isoformat(),
        changed.isoformat() if changed else "",
        p.session.name,
        room.name,
        room.teacher.name if room.teacher else "Unknown Teacher",
    ]

@app.get("/export/csv")
@require_teacher
def export_csv():
    room_id = _as_int(request.args.get("roomId"))
    if room_id is None:
        abort(400, "Room ID is required")
    room = _owned_room(room_id)
    q = (Participation.query.filter(Participation.room_id == room.id)
         .join(Participation.session).join(Participation.student))
    session_id = request.args.get("sessionId")
    if session_id != "all":
        session_id = _session_scope(session_id)
        if session_id is not None:
            q = q.filter(Participation.session_id == session_id)
    rows = q.order_by(Session.created_at.asc(), Session.id.asc(), Student.name.asc(),
                      Participation.submitted_at.asc(), Participation.id.asc()).all()

    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(EXPORT_COLUMNS)
    for p in rows:
        writer.writerow(export_row(p, room))

    filename = f"participation_data_{room.code}_{utcnow().date().isoformat()}.csv"
    headers = {
        "Content-Disposition": f'attachment; filename="{filename}"'
    }
    return Response(buf.getvalue(), mimetype="text/csv", headers=headers)

@app.get("/")
def index():
    return jsonify({"status": "ok", "app": "Classroom Participation API"})

# --------------------------------------------------------------------
# Dev entry
# --------------------------------------------------------------------
def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=5000)
    args = parser.parse_args()
    app.run(host=args.host, port=args.port)

if __name__ == "__main__":
    main()
