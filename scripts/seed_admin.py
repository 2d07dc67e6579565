"""
Provision the superuser account from ADMIN_EMAIL / ADMIN_PASSWORD.
Run once after scripts/migrate.py upgrade: python scripts/seed_admin.py
Existing account with that email: only the superuser role is (re)assigned.
"""
import os
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from identity_service.config import get_settings
from identity_service.database import SessionLocal
from identity_service.errors import IdentityServiceError
from identity_service.logging_config import configure_logging
from identity_service.models.user_role import ROLE_SUPERUSER
from identity_service.services import users as users_service


def main():
    settings = get_settings()
    configure_logging(settings.log_level)
    if not settings.admin_email or not settings.admin_password:
        print("Set ADMIN_EMAIL and ADMIN_PASSWORD (env or .env)")
        sys.exit(1)

    db = SessionLocal()
    try:
        user = users_service.find_by_email(db, settings.admin_email)
        if user is None:
            user = users_service.register(db, settings.admin_email, settings.admin_password)
            print(f"Created user: {user.email} (id={user.id})")
        else:
            print(f"User exists: {user.email} (id={user.id})")
        users_service.assign_role(db, user, ROLE_SUPERUSER)
        print(f"Done. {user.email} is {ROLE_SUPERUSER}")
    except IdentityServiceError as e:
        print(f"Error: {e.message}")
        sys.exit(1)
    finally:
        db.close()


if __name__ == "__main__":
    main()
