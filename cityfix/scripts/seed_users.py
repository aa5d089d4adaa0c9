"""
Seed staff accounts and the default category list.

    python -m cityfix.scripts.seed_users

Existing accounts are left untouched. Passwords come from SEED_PASSWORD.
"""

import asyncio
import os

from cityfix.core.config import USERS
from cityfix.models.user_model import Role
from cityfix.services.config_service import ConfigService
from cityfix.services.mongodb_service import MongoDBService
from cityfix.utils.helpers import new_id, utcnow
from cityfix.utils.security import get_password_hash

STAFF = [
    ("admin@cityfix.org", "City Admin", Role.ADMIN),
    ("dispatcher@cityfix.org", "Dispatch Desk", Role.DISPATCHER),
    ("engineer@cityfix.org", "Field Engineer", Role.ENGINEER),
    ("qa@cityfix.org", "QA Inspector", Role.QA),
]

DEFAULT_CATEGORIES = ["Pothole", "Streetlight", "Graffiti", "Waste", "Water Leak", "Other"]


async def seed_users():
    print("🔧 Seeding CityFix staff accounts...")
    print("=" * 50)

    mongo = MongoDBService()
    if not await mongo.connect():
        print("❌ Connection failed")
        return
    store = mongo.get_store()
    password = os.getenv("SEED_PASSWORD", "cityfix123")

    try:
        for email, name, role in STAFF:
            existing = await store.find(USERS, {"email": email}, limit=1)
            if existing:
                print(f"⚠️  {email} already exists ({existing[0].get('role')})")
                continue
            await store.insert(USERS, {
                "_id": new_id(),
                "email": email,
                "name": name,
                "role": role.value,
                "disabled": False,
                "passwordHash": get_password_hash(password),
                "createdAt": utcnow(),
            })
            print(f"👤 Created {role.value}: {email}")

        config = ConfigService(store)
        if not await config.get_categories():
            await config.set_categories(DEFAULT_CATEGORIES)
            print(f"📝 Categories: {', '.join(DEFAULT_CATEGORIES)}")
    finally:
        await mongo.disconnect()

    print("=" * 50)
    print("⚠️  Please change the seeded passwords after first login!")


if __name__ == "__main__":
    asyncio.run(seed_users())
