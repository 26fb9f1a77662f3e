"""
TradieConnect Integration Models
Database models for storing TradieConnect SSO credentials
"""

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import relationship

from .database import Base


class TradieConnectConnection(Base):
    """Store the encrypted TradieConnect tokens for one local user"""

    __tablename__ = "tradieconnect_connections"
    __table_args__ = (
        Index("ix_tradieconnect_connections_user_active", "user_id", "is_active"),
        # At most one active connection per user
        Index(
            "uq_tradieconnect_connections_active_user",
            "user_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    tc_user_id = Column(String(255), nullable=False)  # TradieConnect user GUID
    tc_token = Column(Text, nullable=False)  # Encrypted
    tc_refresh_token = Column(Text, nullable=True)  # Encrypted
    tc_token_expires_at = Column(DateTime, nullable=True)
    # unknown, valid, expired, refreshing, invalid
    session_state = Column(String(20), nullable=False, default="unknown")
    is_active = Column(Boolean, default=True, nullable=False)
    connected_at = Column(DateTime, default=datetime.utcnow)
    last_synced_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User")
