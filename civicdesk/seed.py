"""
Seed script: demo users and sample complaints for a local MongoDB.
Safe to re-run; existing users and complaints are skipped.
"""
from datetime import timedelta

from pymongo import MongoClient

from . import config
from .auth import hash_password
from .config import new_id, now_utc
from .models import ComplaintStatus

USERS = [
    {"username": "admin", "password": "admin123", "full_name": "City Admin",
     "email": "admin@example.com", "role": "admin"},
    {"username": "citizen1", "password": "citizen123", "full_name": "Asha Rao",
     "email": "citizen1@example.com", "role": "citizen"},
    {"username": "citizen2", "password": "citizen123", "full_name": "Ravi Kumar",
     "email": "citizen2@example.com", "role": "citizen"},
]

# (author, title, category, sub_category, location, priority, status, days_ago, days_to_update)
COMPLAINTS = [
    ("citizen1", "Deep pothole near bus stop", "Road Damage", "Pothole", "MG Road, Ward 4",
     "High", ComplaintStatus.RESOLVED, 40, 3),
    ("citizen1", "No water since Monday", "Water Supply", "No Water Supply", "Lake View Colony",
     "Critical", ComplaintStatus.IN_PROGRESS, 12, 1),
    ("citizen1", "Streetlight flickering all night", "Streetlight", "Flickering Light", "Park Street",
     "Low", ComplaintStatus.PENDING, 2, 0),
    ("citizen2", "Garbage not collected for a week", "Garbage Disposal", "No Garbage Collection",
     "Sector 9 Market", "Medium", ComplaintStatus.PENDING, 5, 0),
    ("citizen2", "Loud construction after midnight", "Noise Pollution", "Construction Noise",
     "Hill Road", "Medium", ComplaintStatus.REJECTED, 70, 4),
    ("citizen2", "Drain overflowing onto the street", "Drainage", "Drain Overflow",
     "Station Road", "High", ComplaintStatus.RESOLVED, 95, 9),
]


def seed_users(db) -> dict:
    created = skipped = 0
    users = {}
    for user_data in USERS:
        existing = db[config.USERS].find_one({"username": user_data["username"]})
        if existing:
            print(f"  SKIP  {user_data['username']} (already exists)")
            users[user_data["username"]] = existing
            skipped += 1
            continue
        doc = {
            "_id": new_id(),
            "username": user_data["username"],
            "hashed_password": hash_password(user_data["password"]),
            "full_name": user_data["full_name"],
            "email": user_data["email"],
            "role": user_data["role"],
            "created_at": now_utc(),
        }
        db[config.USERS].insert_one(doc)
        print(f"  OK    {user_data['username']} (role: {user_data['role']})")
        users[user_data["username"]] = doc
        created += 1
    print(f"Users: created {created}, skipped {skipped}")
    return users


def seed_complaints(db, users: dict) -> None:
    created = skipped = 0
    now = now_utc()
    admin_email = users["admin"]["email"]
    for author, title, category, sub, location, priority, status, days_ago, days_to_update in COMPLAINTS:
        if db[config.COMPLAINTS].find_one({"title": title}):
            print(f"  SKIP  {title}")
            skipped += 1
            continue
        user = users[author]
        created_at = now - timedelta(days=days_ago)
        db[config.COMPLAINTS].insert_one({
            "_id": new_id(),
            "title": title,
            "description": f"{title}. Reported at {location}.",
            "category": category,
            "sub_category": sub,
            "priority": priority,
            "location": location,
            "geolocation": None,
            "status": status.value,
            "progress": 100 if status == ComplaintStatus.RESOLVED else 0,
            "assigned_to": admin_email if status != ComplaintStatus.PENDING else None,
            "rejection_reason": "Outside municipal jurisdiction" if status == ComplaintStatus.REJECTED else None,
            "media": [],
            "author_id": user["_id"],
            "author_email": user["email"],
            "created_at": created_at,
            "updated_at": created_at + timedelta(days=days_to_update),
        })
        print(f"  OK    {title} ({status.value})")
        created += 1
    print(f"Complaints: created {created}, skipped {skipped}")


def main():
    print(f"Connecting to: {config.MONGODB_URL} / {config.MONGODB_DB}")
    client = MongoClient(config.MONGODB_URL, tz_aware=True)
    try:
        db = client[config.MONGODB_DB]
        users = seed_users(db)
        seed_complaints(db, users)
        print("\nDone!")
    finally:
        client.close()


if __name__ == "__main__":
    main()
