import argparse, json, secrets, string
from app import create_app, add_roster, parse_roster
from models import db, Teacher, Room

def rand_password(n=10):
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(n))

def seed_teachers(app, json_path):
    """
    JSON: [{"name":"Dr. Smith","email":"smith@school.edu","password":"..."}]
    If password omitted, one is generated and printed.
    """
    with app.app_context():
        with open(json_path, "r") as fh:
            items = json.load(fh)
        out = []
        for it in items:
            name = it["name"].strip()
            email = it["email"].strip().lower()
            pw = it.get("password") or rand_password()
            t = Teacher.query.filter_by(email=email).first()
            if not t:
                t = Teacher(name=name, email=email)
                t.set_password(pw)
                db.session.add(t)
                action = "created"
            else:
                t.name = name
                t.set_password(pw)
                action = "updated"
            out.append({"email": email, "password": pw, "action": action})
        db.session.commit()
        print("Seeded/updated:", len(out))
        for r in out:
            print(f"{r['email']}: {r['password']} ({r['action']})")

def import_roster(app, room_code, csv_path):
    with app.app_context():
        room = Room.query.filter_by(code=room_code.strip().upper()).first()
        if not room:
            raise SystemExit(f"Room {room_code} not found")
        with open(csv_path, "r", encoding="utf-8-sig") as fh:
            names = parse_roster(fh.read())
        added, skipped = add_roster(room, names)
        db.session.commit()
        print(f"{room.code}: added {len(added)}, skipped {skipped}")
        for n in added:
            print(f"  + {n}")

if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    sub = parser.add_subparsers(dest="cmd", required=True)
    p_seed = sub.add_parser("seed-teachers")
    p_seed.add_argument("json_path")
    p_roster = sub.add_parser("import-roster")
    p_roster.add_argument("room_code")
    p_roster.add_argument("csv_path")
    args = parser.parse_args()

    app = create_app()
    if args.cmd == "seed-teachers":
        seed_teachers(app, args.json_path)
    else:
        import_roster(app, args.room_code, args.csv_path)
