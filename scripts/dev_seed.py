# scripts/dev_seed.py
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app import create_app, add_roster
from models import db, Teacher, Room, Session

DEMO_ROSTER = ["Ann", "Bo", "Carmen", "Dev", "Elif"]

def upsert_teacher(name, email, password):
    t = Teacher.query.filter_by(email=email).one_or_none()
    if t is None:
        t = Teacher(name=name, email=email)
        t.set_password(password)
        db.session.add(t)
        print(f"[seed] created teacher: {email}")
    else:
        print(f"[seed] teacher already exists: {email}")
    return t

def upsert_room(teacher, code, name, description):
    r = Room.query.filter_by(code=code).one_or_none()
    if r is None:
        r = Room(code=code, name=name, description=description, teacher=teacher)
        db.session.add(r)
        db.session.add(Session(name=f"{name} - Session 1", room=r, is_active=True))
        print(f"[seed] created room: {code}")
    else:
        print(f"[seed] room already exists: {code}")
    return r

def main():
    app = create_app()
    with app.app_context():
        db.create_all()   # safe if tables already exist

        smith = upsert_teacher("Dr. Sarah Smith", "dr.smith@university.edu", "password123")
        room = upsert_room(smith, "MATH01", "Advanced Mathematics 101",
                           "Advanced calculus and linear algebra")
        added, _ = add_roster(room, DEMO_ROSTER)
        print(f"[seed] roster: {len(added)} new students")

        db.session.commit()
        print("[seed] done.")

if __name__ == "__main__":
    main()
