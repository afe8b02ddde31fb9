"""Player credential model."""
from sqlalchemy import Column, String, DateTime, Boolean
from datetime import datetime, timezone

from .base import Base


class Player(Base):
    """A client identity (Unciv user UUID) and its bcrypt password hash."""
    __tablename__ = "players"

    player_id = Column(String(36), primary_key=True)  # UUID
    password_hash = Column(String(128), nullable=False)
    whitelisted = Column(Boolean, default=False, nullable=False, index=True)
    remark = Column(String(500), nullable=False, default="")
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False, index=True)
    create_ip = Column(String(64), nullable=True)
    update_ip = Column(String(64), nullable=True)
