"""
All SQLAlchemy models. Schema is the source of truth for new DBs.
Base.metadata.create_all() creates every table; existing DBs go through identity_service.migrations.
"""
from identity_service.models.user import User
from identity_service.models.identity import Identity
from identity_service.models.user_role import UserRole
from identity_service.models.reset_token import ResetToken
from identity_service.models.delivery_address import UserDeliveryAddress

__all__ = [
    "User",
    "Identity",
    "UserRole",
    "ResetToken",
    "UserDeliveryAddress",
]
