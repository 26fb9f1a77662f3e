"""
Inbound SSO callback from TradieConnect

TradieConnect always redirects to GET /admin/secure/setauth with every parameter
encrypted using the URL parameter transform:

- u: TradieConnect user GUID (required)
- t: access token (required)
- rt: refresh token
- r: referer, where to send the user afterwards
- s: shared secret, decrypted to check it was produced with our key and then discarded
"""

import logging
from typing import Mapping, Optional

from sqlalchemy.orm import Session

from ....config import TRADIECONNECT_DEFAULT_REFERER
from ....models import OrganizationMember, User
from ....shared.validators import append_query_param, is_safe_relative_redirect
from .client import Credentials, TradieConnectClient
from .crypto import CredentialVault
from .exceptions import DecryptionError, TradieConnectError
from .repository import TradieConnectRepository

logger = logging.getLogger(__name__)

INTEGRATIONS_PATH = "/dashboard/integrations"
SIGN_IN_PATH = f"/sign-in?redirect_url={INTEGRATIONS_PATH}"


def _error_redirect(code: str) -> str:
    return f"{INTEGRATIONS_PATH}?error={code}"


class InboundCallbackHandler:
    """Turns a TradieConnect SSO callback into a stored connection and a redirect path"""

    def __init__(self, db: Session, vault: CredentialVault, client: Optional[TradieConnectClient] = None):
        self.db = db
        self.vault = vault
        self.client = client or TradieConnectClient()
        self.repo = TradieConnectRepository()

    async def handle(self, params: Mapping[str, str], user: Optional[User]) -> str:
        """Process the callback and return the relative path to redirect to"""
        logger.info(
            "🔐 TradieConnect SSO callback received: "
            + ", ".join(f"{key}={'yes' if params.get(key) else 'no'}" for key in ("r", "s", "u", "t", "rt"))
        )

        if not params.get("u") or not params.get("t"):
            logger.error("❌ Missing required TradieConnect callback parameters")
            return _error_redirect("missing_params")

        try:
            tc_user_id = self.vault.decrypt_url_parameter(params["u"])
            tc_token = self.vault.decrypt_url_parameter(params["t"])
            tc_refresh_token = self.vault.decrypt_url_parameter(params["rt"]) if params.get("rt") else None
            referer = self.vault.decrypt_url_parameter(params["r"]) if params.get("r") else None
            if params.get("s"):
                self.vault.decrypt_url_parameter(params["s"])
        except DecryptionError as e:
            logger.error(f"❌ Failed to decrypt TradieConnect callback parameters: {e}")
            return _error_redirect("decryption_failed")

        if user is None:
            logger.warning("⚠️ TradieConnect callback without a signed-in user")
            return SIGN_IN_PATH

        try:
            return await self._store_connection(user, tc_user_id, tc_token, tc_refresh_token, referer)
        except Exception as e:
            self.db.rollback()
            logger.error(f"❌ Error in TradieConnect SSO callback: {type(e).__name__}: {e}", exc_info=True)
            return _error_redirect("server_error")

    async def _store_connection(
        self,
        user: User,
        tc_user_id: str,
        tc_token: str,
        tc_refresh_token: Optional[str],
        referer: Optional[str],
    ) -> str:
        membership = (
            self.db.query(OrganizationMember)
            .filter(OrganizationMember.user_id == user.id, OrganizationMember.status == "active")
            .first()
        )
        if not membership:
            logger.error(f"❌ No active organization membership for user {user.id}")
            return _error_redirect("user_not_found")

        # Best effort: the connection is still usable without a provider id
        try:
            tc_user = await self.client.fetch_user(Credentials(tc_user_id=tc_user_id, access_token=tc_token))
            if tc_user.providerId:
                user.tc_provider_id = tc_user.providerId
                logger.info(f"👷 Linked user {user.id} to TradieConnect provider {tc_user.providerId}")
        except TradieConnectError as e:
            logger.warning(f"⚠️ Could not fetch TradieConnect user details: {e}")

        self.repo.upsert_connection(
            self.db,
            user_id=user.id,
            organization_id=membership.organization_id,
            tc_user_id=tc_user_id,
            tc_token=self.vault.encrypt(tc_token),
            tc_refresh_token=self.vault.encrypt(tc_refresh_token) if tc_refresh_token else None,
        )
        logger.info(f"✅ TradieConnect connected for user {user.id}")

        if referer and is_safe_relative_redirect(referer):
            return append_query_param(referer, "success", "connected")
        if referer:
            logger.warning("⚠️ Ignoring non-relative TradieConnect referer")
        return append_query_param(TRADIECONNECT_DEFAULT_REFERER, "success", "connected")
