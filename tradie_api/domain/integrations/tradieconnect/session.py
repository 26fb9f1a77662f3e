"""
Remote session management for TradieConnect

Wraps every remote call so that an expired access token is refreshed once and the call
retried once. TradieConnect refresh tokens are single use, so refreshes for the same
connection are serialized: an asyncio.Lock per connection inside this process and a
SELECT ... FOR UPDATE on the row across processes. A caller that gets the lock after
someone else already refreshed picks up the new token instead of refreshing again.
"""

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar
from weakref import WeakValueDictionary

from sqlalchemy.orm import Session

from ....models_tradieconnect import TradieConnectConnection
from .client import Credentials, TradieConnectClient
from .crypto import CredentialVault
from .exceptions import (
    DecryptionError,
    ReconnectRequired,
    RemoteRequestError,
    RemoteUnauthorized,
    RemoteUnavailable,
)
from .repository import ConnectionUpdate, TradieConnectRepository
from .schemas import ValidationResult

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SessionState(str, Enum):
    UNKNOWN = "unknown"
    VALID = "valid"
    EXPIRED = "expired"
    REFRESHING = "refreshing"
    INVALID = "invalid"


_refresh_locks: "WeakValueDictionary[int, asyncio.Lock]" = WeakValueDictionary()


def _refresh_lock(connection_id: int) -> asyncio.Lock:
    lock = _refresh_locks.get(connection_id)
    if lock is None:
        lock = asyncio.Lock()
        _refresh_locks[connection_id] = lock
    return lock


def _parse_expiry(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"⚠️ Unparseable TradieConnect token expiry: {value}")
        return None
    # Stored naive UTC like every other timestamp column
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class RemoteSessionManager:
    """Runs remote operations against a stored connection, refreshing credentials as needed"""

    def __init__(
        self,
        db: Session,
        vault: Optional[CredentialVault] = None,
        client: Optional[TradieConnectClient] = None,
    ):
        self.db = db
        self.vault = vault or CredentialVault()
        self.client = client or TradieConnectClient()
        self.repo = TradieConnectRepository()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def call(
        self,
        connection: TradieConnectConnection,
        operation: Callable[[Credentials], Awaitable[T]],
    ) -> T:
        """
        Run operation(credentials). On a 401 refresh once and retry once; a second 401
        means the credential is dead and the user has to reconnect.
        """
        credentials, used_token = self._current_credentials(connection)

        try:
            result = await operation(credentials)
        except RemoteUnauthorized:
            logger.info(f"🔑 TradieConnect token expired for connection {connection.id}, refreshing")
            credentials = await self.refresh(connection, stale_token=used_token)
            try:
                result = await operation(credentials)
            except RemoteUnauthorized as e:
                self._invalidate(connection, deactivate=True)
                raise ReconnectRequired(
                    "TradieConnect rejected the refreshed token", connection_id=connection.id
                ) from e

        if connection.session_state != SessionState.VALID.value:
            self.repo.update_connection(self.db, connection, ConnectionUpdate(session_state=SessionState.VALID.value))
        return result

    async def validate(self, connection: TradieConnectConnection, force: bool = False) -> ValidationResult:
        """Check the stored token, refreshing when it is rejected or when forced"""
        try:
            if not force:
                credentials, _ = self._current_credentials(connection)
                try:
                    await self.client.validate_token(credentials)
                except RemoteUnauthorized:
                    logger.info(f"🔑 Token validation failed for connection {connection.id}, attempting refresh")
                else:
                    self.repo.update_connection(
                        self.db,
                        connection,
                        ConnectionUpdate(session_state=SessionState.VALID.value, last_synced_at=datetime.utcnow()),
                    )
                    return ValidationResult(valid=True, message="Token is valid")

            await self.refresh(connection, stale_token=connection.tc_token)
            return ValidationResult(valid=True, refreshed=True, message="Token refreshed successfully")
        except ReconnectRequired as e:
            return ValidationResult(valid=False, needs_reconnect=True, message=e.reason)

    async def refresh(self, connection: TradieConnectConnection, stale_token: str) -> Credentials:
        """
        Refresh the connection's tokens unless another caller already did.

        stale_token is the encrypted access token the caller used when it was rejected.
        """
        async with _refresh_lock(connection.id):
            locked = self.repo.lock_connection(self.db, connection.id)
            if locked is None or not locked.is_active:
                self.db.rollback()
                raise ReconnectRequired("TradieConnect connection is no longer active", connection_id=connection.id)

            if locked.tc_token != stale_token:
                # Someone refreshed while we were waiting
                self.db.commit()
                logger.debug(f"Reusing token refreshed by another request for connection {connection.id}")
                return self._decrypt_or_invalidate(locked)[0]

            if not locked.tc_refresh_token:
                logger.warning(f"⚠️ No refresh token on file for connection {locked.id}")
                self._invalidate(locked, deactivate=True)
                raise ReconnectRequired("No refresh token available", connection_id=locked.id)

            try:
                refresh_token = self.vault.decrypt(locked.tc_refresh_token)
            except DecryptionError as e:
                logger.error(f"❌ Stored refresh token for connection {locked.id} cannot be decrypted")
                self._invalidate(locked, deactivate=True)
                raise ReconnectRequired("Stored refresh token cannot be decrypted", connection_id=locked.id) from e

            # Flush only: committing here would release the row lock during the remote call
            locked.session_state = SessionState.REFRESHING.value
            self.db.flush()

            try:
                tokens = await self.client.refresh_token(locked.tc_user_id, refresh_token)
            except RemoteUnavailable:
                logger.warning(f"⚠️ TradieConnect unavailable while refreshing connection {locked.id}")
                self.repo.update_connection(
                    self.db, locked, ConnectionUpdate(session_state=SessionState.EXPIRED.value)
                )
                raise
            except (RemoteUnauthorized, RemoteRequestError) as e:
                logger.warning(f"⚠️ TradieConnect rejected refresh for connection {locked.id}: {e}")
                self._invalidate(locked, deactivate=True)
                raise ReconnectRequired("TradieConnect rejected the refresh token", connection_id=locked.id) from e

            update = ConnectionUpdate(
                tc_token=self.vault.encrypt(tokens.token),
                tc_token_expires_at=_parse_expiry(tokens.expiry),
                session_state=SessionState.VALID.value,
                last_synced_at=datetime.utcnow(),
            )
            # Keep the old refresh token if none came back
            if tokens.refreshToken:
                update.tc_refresh_token = self.vault.encrypt(tokens.refreshToken)
            self.repo.update_connection(self.db, locked, update)

            logger.info(f"✅ TradieConnect token refreshed for connection {locked.id}")
            return Credentials(tc_user_id=locked.tc_user_id, access_token=tokens.token)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _current_credentials(self, connection: TradieConnectConnection) -> tuple[Credentials, str]:
        if not connection.is_active:
            raise ReconnectRequired("TradieConnect connection is not active", connection_id=connection.id)
        return self._decrypt_or_invalidate(connection)

    def _decrypt_or_invalidate(self, connection: TradieConnectConnection) -> tuple[Credentials, str]:
        stored_token = connection.tc_token
        try:
            access_token = self.vault.decrypt(stored_token)
        except DecryptionError as e:
            logger.error(f"❌ Stored access token for connection {connection.id} cannot be decrypted")
            self._invalidate(connection, deactivate=True)
            raise ReconnectRequired("Stored access token cannot be decrypted", connection_id=connection.id) from e
        return Credentials(tc_user_id=connection.tc_user_id, access_token=access_token), stored_token

    def _invalidate(self, connection: TradieConnectConnection, deactivate: bool) -> None:
        update = ConnectionUpdate(session_state=SessionState.INVALID.value)
        if deactivate:
            update.is_active = False
        self.repo.update_connection(self.db, connection, update)
