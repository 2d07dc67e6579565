"""
Delete the user with the given email. Identity, role and delivery addresses go with it;
outstanding reset tokens for the email are removed too.
Usage: python scripts/delete_user_by_email.py <email>
"""
import os
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from identity_service.database import SessionLocal
from identity_service.errors import IdentityServiceError
from identity_service.models.common import normalize_email
from identity_service.models.reset_token import ResetToken
from identity_service.services import users as users_service


def main():
    email = normalize_email(sys.argv[1] if len(sys.argv) > 1 else "")
    if not email:
        print("Usage: python scripts/delete_user_by_email.py <email>")
        sys.exit(1)

    db = SessionLocal()
    try:
        user = users_service.find_by_email(db, email)
        if user is None:
            print(f"No user found with email: {email}")
            sys.exit(0)
        uid = user.id
        users_service.delete_user(db, user)
        print(f"Deleted user: {email} (id={uid})")

        tokens = db.query(ResetToken).filter(ResetToken.email == email).delete()
        db.commit()
        print(f"Done. Removed {tokens} outstanding token(s)")
    except IdentityServiceError as e:
        db.rollback()
        print(f"Error: {e.message}")
        sys.exit(1)
    finally:
        db.close()


if __name__ == "__main__":
    main()
