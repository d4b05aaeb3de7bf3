from datetime import datetime, timezone
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import UniqueConstraint
from werkzeug.security import generate_password_hash, check_password_hash


db = SQLAlchemy()

PARTICIPATION_TYPES = ("POINTS", "RAISE_HAND", "TEACHER_CALL")
PARTICIPATION_STATUSES = ("PENDING", "APPROVED", "REJECTED")

def _as_naive_utc(dt):
    """Return dt as naive UTC (or None). Handles aware/naive inputs safely."""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt

def utcnow():
    return _as_naive_utc(datetime.now(timezone.utc))

class Teacher(db.Model):
    __tablename__ = 'teachers'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(255), unique=True, index=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def set_password(self, pw): self.password_hash = generate_password_hash(pw)
    def check_password(self, pw): return check_password_hash(self.password_hash, pw)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }

class Room(db.Model):
    __tablename__ = 'rooms'
    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(6), unique=True, index=True, nullable=False)  # join code
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    teacher_id = db.Column(db.Integer, db.ForeignKey('teachers.id', ondelete="CASCADE"), index=True, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    teacher = db.relationship('Teacher', backref=db.backref('rooms', cascade="all,delete-orphan"))

    def to_dict(self):
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "description": self.description,
            "isActive": self.is_active,
            "teacherId": self.teacher_id,
            "teacher": self.teacher.name if self.teacher else None,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }

class Student(db.Model):
    __tablename__ = 'students'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    room_id = db.Column(db.Integer, db.ForeignKey('rooms.id', ondelete="CASCADE"), index=True, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)  # last seen

    room = db.relationship('Room', backref=db.backref('students', cascade="all,delete-orphan", order_by='Student.name'))

    # names are unique per room, not globally
    __table_args__ = (
        UniqueConstraint('name', 'room_id', name='uq_student_name_room'),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "roomId": self.room_id,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }

class Session(db.Model):
    __tablename__ = 'sessions'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    room_id = db.Column(db.Integer, db.ForeignKey('rooms.id', ondelete="CASCADE"), index=True, nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    started_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    ended_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    room = db.relationship('Room', backref=db.backref('sessions', cascade="all,delete-orphan", order_by='Session.id'))

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "roomId": self.room_id,
            "isActive": self.is_active,
            "startedAt": _iso(self.started_at),
            "endedAt": _iso(self.ended_at),
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }

class Participation(db.Model):
    __tablename__ = 'participations'
    id = db.Column(db.Integer, primary_key=True)
    points = db.Column(db.Integer, nullable=False)  # signed; adjustments may be negative
    type = db.Column(db.String(16), nullable=False, default="POINTS")  # POINTS | RAISE_HAND | TEACHER_CALL
    status = db.Column(db.String(16), nullable=False, default="PENDING")  # PENDING | APPROVED | REJECTED
    student_id = db.Column(db.Integer, db.ForeignKey('students.id', ondelete="CASCADE"), index=True, nullable=False)
    room_id = db.Column(db.Integer, db.ForeignKey('rooms.id', ondelete="CASCADE"), index=True, nullable=False)
    session_id = db.Column(db.Integer, db.ForeignKey('sessions.id', ondelete="CASCADE"), index=True, nullable=False)
    submitted_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    approved_at = db.Column(db.DateTime, nullable=True)
    rejected_at = db.Column(db.DateTime, nullable=True)
    acknowledged_at = db.Column(db.DateTime, nullable=True)  # hand raises only
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    student = db.relationship('Student', backref=db.backref('participations', cascade="all,delete-orphan"))
    room = db.relationship('Room', backref=db.backref('participations', cascade="all,delete-orphan"))
    session = db.relationship('Session', backref=db.backref('participations', cascade="all,delete-orphan"))

    __table_args__ = (
        db.Index('idx_participation_room_status', 'room_id', 'status'),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "studentId": self.student_id,
            "studentName": self.student.name if self.student else None,
            "roomId": self.room_id,
            "sessionId": self.session_id,
            "points": self.points,
            "type": self.type,
            "status": self.status,
            "submittedAt": _iso(self.submitted_at),
            "approvedAt": _iso(self.approved_at),
            "rejectedAt": _iso(self.rejected_at),
            "acknowledgedAt": _iso(self.acknowledged_at),
        }

    def snapshot(self):
        """Field values needed to recreate this row after a reset."""
        return {
            "studentId": self.student_id,
            "roomId": self.room_id,
            "sessionId": self.session_id,
            "points": self.points,
            "type": self.type,
            "status": self.status,
            "submittedAt": _iso(self.submitted_at),
            "approvedAt": _iso(self.approved_at),
            "rejectedAt": _iso(self.rejected_at),
            "acknowledgedAt": _iso(self.acknowledged_at),
        }

def _iso(dt):
    return dt.isoformat() if dt else None
