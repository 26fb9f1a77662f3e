"""TradieConnect repository - Database operations for stored connections"""

import logging
from dataclasses import dataclass, fields
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ....models_tradieconnect import TradieConnectConnection

logger = logging.getLogger(__name__)

_UNSET: Any = object()


@dataclass
class ConnectionUpdate:
    """Partial update of a connection row. Fields left unset are not touched."""

    tc_user_id: Optional[str] = _UNSET
    tc_token: Optional[str] = _UNSET
    tc_refresh_token: Optional[str] = _UNSET
    tc_token_expires_at: Optional[datetime] = _UNSET
    session_state: Optional[str] = _UNSET
    is_active: Optional[bool] = _UNSET
    last_synced_at: Optional[datetime] = _UNSET

    def changes(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not _UNSET}


class TradieConnectRepository:
    """Repository for TradieConnect connection rows"""

    @staticmethod
    def get_active_connection(db: Session, user_id: int) -> Optional[TradieConnectConnection]:
        """Most recent active connection for a user"""
        return (
            db.query(TradieConnectConnection)
            .filter(TradieConnectConnection.user_id == user_id, TradieConnectConnection.is_active.is_(True))
            .order_by(TradieConnectConnection.id.desc())
            .first()
        )

    @staticmethod
    def lock_connection(db: Session, connection_id: int) -> Optional[TradieConnectConnection]:
        """Re-read a connection with a row lock so concurrent refreshes see each other's writes"""
        return (
            db.query(TradieConnectConnection)
            .filter(TradieConnectConnection.id == connection_id)
            .with_for_update()
            .populate_existing()
            .first()
        )

    @staticmethod
    def upsert_connection(
        db: Session,
        user_id: int,
        organization_id: int,
        tc_user_id: str,
        tc_token: str,
        tc_refresh_token: Optional[str],
    ) -> TradieConnectConnection:
        """Store freshly issued (already encrypted) credentials, replacing any existing row for the user"""
        values = {
            "organization_id": organization_id,
            "tc_user_id": tc_user_id,
            "tc_token": tc_token,
            "tc_refresh_token": tc_refresh_token,
            "tc_token_expires_at": None,
            "session_state": "valid",
            "is_active": True,
        }
        try:
            return TradieConnectRepository._store_connection(db, user_id, values)
        except IntegrityError:
            # A concurrent callback inserted the active row first; update that one instead
            db.rollback()
            logger.info(f"🔁 Active TradieConnect connection for user {user_id} created concurrently, updating it")
            return TradieConnectRepository._store_connection(db, user_id, values)

    @staticmethod
    def _store_connection(db: Session, user_id: int, values: dict[str, Any]) -> TradieConnectConnection:
        # Prefer the active row so activating an older one can't collide with it
        connection = (
            db.query(TradieConnectConnection)
            .filter(TradieConnectConnection.user_id == user_id)
            .order_by(TradieConnectConnection.is_active.desc(), TradieConnectConnection.id.desc())
            .first()
        )

        if connection is None:
            connection = TradieConnectConnection(user_id=user_id)
            db.add(connection)
        for key, value in values.items():
            setattr(connection, key, value)
        connection.connected_at = datetime.utcnow()

        db.commit()
        db.refresh(connection)
        return connection

    @staticmethod
    def update_connection(
        db: Session, connection: TradieConnectConnection, update: ConnectionUpdate
    ) -> TradieConnectConnection:
        for key, value in update.changes().items():
            setattr(connection, key, value)
        db.commit()
        db.refresh(connection)
        return connection

    @staticmethod
    def deactivate_for_user(db: Session, user_id: int) -> int:
        """Mark every active connection for a user as inactive. Returns the number of rows changed."""
        count = (
            db.query(TradieConnectConnection)
            .filter(TradieConnectConnection.user_id == user_id, TradieConnectConnection.is_active.is_(True))
            .update({"is_active": False, "session_state": "invalid"}, synchronize_session="fetch")
        )
        db.commit()
        return count
