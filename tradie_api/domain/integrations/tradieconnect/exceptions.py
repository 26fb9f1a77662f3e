"""TradieConnect error taxonomy"""

from typing import Optional


class TradieConnectError(Exception):
    """Base class for every TradieConnect integration failure"""

    pass


class TradieConnectNotConfigured(TradieConnectError):
    """Raised when the encryption key or API settings are missing"""

    pass


class DecryptionError(TradieConnectError):
    """Stored or inbound ciphertext is malformed or was produced with another key"""

    pass


class RemoteUnauthorized(TradieConnectError):
    """TradieConnect rejected the access token (HTTP 401)"""

    pass


class RemoteUnavailable(TradieConnectError):
    """Network failure, timeout or 5xx from TradieConnect. Safe to retry."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RemoteRequestError(TradieConnectError):
    """Any other non-2xx response from TradieConnect"""

    def __init__(self, message: str, status_code: int, detail: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class ReconnectRequired(TradieConnectError):
    """The stored credential can no longer be used; the user must sign in to TradieConnect again"""

    def __init__(self, reason: str, connection_id: Optional[int] = None):
        super().__init__(reason)
        self.reason = reason
        self.connection_id = connection_id


class TranslationInvariantViolation(TradieConnectError):
    """A synced answer references a question that is not on the current form"""

    def __init__(self, message: str, question_ids: list[str]):
        super().__init__(message)
        self.question_ids = question_ids
