"""Create (or reuse) a user and issue an API key for it.

Usage: python scripts/create_api_key.py <username> <email> [PARTICIPANT|ORGANIZER|ADMIN]
"""
import sys

from sqlalchemy import select

from eventpay.config import get_settings
from eventpay.db import Database
from eventpay.models import ApiKey, User, UserRole
from eventpay.utils.apikey import gen_key


def main(argv: list[str]) -> int:
    if len(argv) < 3:
        print(__doc__)
        return 1
    username, email = argv[1], argv[2]
    role = UserRole(argv[3].upper()) if len(argv) > 3 else UserRole.ADMIN

    database = Database(get_settings().database_url)
    try:
        with database.session() as db:
            user = db.scalar(select(User).where(User.username == username))
            if user is None:
                user = User(username=username, email=email, role=role)
                db.add(user)
                db.flush()
            raw, prefix, key_hash = gen_key()
            db.add(ApiKey(user_id=user.id, name=f"{username}-cli", prefix=prefix, key_hash=key_hash))
            db.commit()

            print("==========================================")
            print(f"API key created for {user.username} ({user.role.value})")
            print("Use this key in your Authorization header:")
            print(f"    Authorization: Bearer {raw}")
            print("==========================================")
    finally:
        database.close()
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv))
