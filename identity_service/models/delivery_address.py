"""Delivery addresses owned by a user; removed with the user."""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, Index
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from identity_service.database import Base
from identity_service.models.common import utcnow


class UserDeliveryAddress(Base):
    __tablename__ = "user_delivery_address"
    __table_args__ = (Index("user_delivery_address_user_id_idx", "user_id"),)

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    administrative_area_level_1 = Column(String(255), nullable=True)
    administrative_area_level_2 = Column(String(255), nullable=True)
    country = Column(String(255), nullable=False)
    locality = Column(String(255), nullable=True)
    political = Column(String(255), nullable=True)
    postal_code = Column(String(32), nullable=False)
    route = Column(String(255), nullable=True)
    street_number = Column(String(32), nullable=True)
    address = Column(String(500), nullable=True)
    is_priority = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False)

    user = relationship("User", back_populates="delivery_addresses")
