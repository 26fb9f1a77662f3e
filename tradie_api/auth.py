"""
Request authentication

Callers are authenticated by an ordered chain of strategies: the web session token issued
by the identity provider (Firebase), then the mobile app's bearer JWT. The first strategy
that authenticates wins. If none does the request is rejected with 401, or 503 when a
strategy could not reach its provider.
"""

import base64
import json
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import httpx
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding
from cryptography.x509 import load_pem_x509_certificate
from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from .config import FIREBASE_PROJECT_ID
from .database import get_db
from .models import User
from .security_utils import extract_bearer_token, mask_sensitive_data, verify_mobile_token

logger = logging.getLogger(__name__)

GOOGLE_CERTS_URL = "https://www.googleapis.com/robot/v1/metadata/x509/securetoken@system.gserviceaccount.com"
SESSION_COOKIE = "__session"

# Cache for Google's public keys
_cached_keys: Optional[dict] = None


class IdentityTokenInvalid(Exception):
    pass


class IdentityProviderUnavailable(Exception):
    pass


class AuthOutcome(str, Enum):
    AUTHENTICATED = "authenticated"
    NOT_AUTHENTICATED = "not_authenticated"
    PROVIDER_ERROR = "provider_error"


@dataclass
class AuthResult:
    outcome: AuthOutcome
    user: Optional[User] = None
    reason: str = ""

    @classmethod
    def authenticated(cls, user: User) -> "AuthResult":
        return cls(AuthOutcome.AUTHENTICATED, user=user)

    @classmethod
    def not_authenticated(cls, reason: str = "") -> "AuthResult":
        return cls(AuthOutcome.NOT_AUTHENTICATED, reason=reason)

    @classmethod
    def provider_error(cls, reason: str) -> "AuthResult":
        return cls(AuthOutcome.PROVIDER_ERROR, reason=reason)


# ============================================================================
# IDENTITY PROVIDER TOKEN VERIFICATION
# ============================================================================


async def get_google_public_keys(force_refresh: bool = False) -> dict:
    """Fetch Google's public keys for Firebase token verification"""
    global _cached_keys
    if _cached_keys and not force_refresh:
        return _cached_keys

    try:
        async with httpx.AsyncClient(timeout=httpx.Timeout(10.0)) as client:
            response = await client.get(GOOGLE_CERTS_URL)
    except httpx.RequestError as e:
        logger.error(f"❌ Error fetching Google public keys: {e}")
        raise IdentityProviderUnavailable("Unable to fetch identity provider keys") from e

    if response.status_code != 200:
        logger.error(f"❌ Failed to fetch Google public keys: HTTP {response.status_code}")
        raise IdentityProviderUnavailable(f"Identity provider key endpoint returned {response.status_code}")

    _cached_keys = response.json()
    logger.info(f"✅ Fetched {len(_cached_keys)} Google public keys")
    return _cached_keys


def _b64url_decode(segment: str) -> bytes:
    return base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))


async def verify_identity_token(token: str) -> dict:
    """
    Verify a Firebase ID token with full RS256 signature verification.

    Raises IdentityTokenInvalid for anything wrong with the token itself and
    IdentityProviderUnavailable when the signing keys cannot be fetched.
    """
    if not FIREBASE_PROJECT_ID:
        raise IdentityProviderUnavailable("FIREBASE_PROJECT_ID not configured")

    parts = token.split(".")
    if len(parts) != 3:
        raise IdentityTokenInvalid("Invalid token format")
    header_b64, payload_b64, signature_b64 = parts

    try:
        header = json.loads(_b64url_decode(header_b64))
        payload = json.loads(_b64url_decode(payload_b64))
        signature = _b64url_decode(signature_b64)
    except ValueError as e:
        raise IdentityTokenInvalid("Token is not valid base64url JSON") from e
    if not isinstance(header, dict) or not isinstance(payload, dict):
        raise IdentityTokenInvalid("Token header and payload must be JSON objects")

    if header.get("alg") != "RS256":
        raise IdentityTokenInvalid(f"Unexpected token algorithm: {header.get('alg')}")
    kid = header.get("kid")
    if not kid or not isinstance(kid, str):
        raise IdentityTokenInvalid("Token missing key ID")

    public_keys = await get_google_public_keys()
    if kid not in public_keys:
        logger.warning(f"⚠️ Key ID {kid} not found in public keys, refreshing cache")
        public_keys = await get_google_public_keys(force_refresh=True)
        if kid not in public_keys:
            raise IdentityTokenInvalid("Unable to verify token signature")

    try:
        public_key = load_pem_x509_certificate(public_keys[kid].encode()).public_key()
        public_key.verify(signature, f"{header_b64}.{payload_b64}".encode(), padding.PKCS1v15(), hashes.SHA256())
    except InvalidSignature as e:
        raise IdentityTokenInvalid("Invalid token signature") from e
    except (ValueError, TypeError, AttributeError) as e:
        logger.warning(f"⚠️ Could not load public key {kid}: {e}")
        raise IdentityTokenInvalid("Unable to verify token signature") from e

    if payload.get("aud") != FIREBASE_PROJECT_ID:
        raise IdentityTokenInvalid("Invalid token audience")
    if payload.get("iss") != f"https://securetoken.google.com/{FIREBASE_PROJECT_ID}":
        raise IdentityTokenInvalid("Invalid token issuer")

    exp = payload.get("exp", 0)
    iat = payload.get("iat", 0)
    # bool is an int subclass but never a valid timestamp
    for claim in (exp, iat):
        if isinstance(claim, bool) or not isinstance(claim, (int, float)):
            raise IdentityTokenInvalid("Token timestamps must be numeric")

    now = time.time()
    if exp < now:
        raise IdentityTokenInvalid("Token has expired")
    # Allow 60 seconds clock skew
    if iat > now + 60:
        raise IdentityTokenInvalid("Token issued in the future")
    if not payload.get("sub") or not isinstance(payload["sub"], str):
        raise IdentityTokenInvalid("Token missing subject")

    return payload


# ============================================================================
# STRATEGIES
# ============================================================================


class AuthenticationStrategy:
    name = "base"

    async def authenticate(self, request: Request, db: Session) -> AuthResult:
        raise NotImplementedError


class IdentityProviderSessionStrategy(AuthenticationStrategy):
    """Web sessions: Firebase ID token from the session cookie or a Bearer header"""

    name = "identity_provider"

    async def authenticate(self, request: Request, db: Session) -> AuthResult:
        token = request.cookies.get(SESSION_COOKIE) or extract_bearer_token(request.headers.get("authorization"))
        if not token:
            return AuthResult.not_authenticated("No session token")

        try:
            claims = await verify_identity_token(token)
        except IdentityProviderUnavailable as e:
            return AuthResult.provider_error(str(e))
        except IdentityTokenInvalid as e:
            return AuthResult.not_authenticated(str(e))

        return AuthResult.authenticated(self._find_or_create_user(db, claims))

    @staticmethod
    def _find_or_create_user(db: Session, claims: dict) -> User:
        identity_uid = claims["sub"]
        email = claims.get("email")

        user = db.query(User).filter(User.identity_uid == identity_uid).first()
        if user:
            return user

        # Same email signed in through another provider (e.g. password then Google)
        if email:
            user = db.query(User).filter(User.email == email).first()
            if user:
                logger.info(f"🔄 Linking user {user.id} to new identity {mask_sensitive_data(identity_uid)}")
                user.identity_uid = identity_uid
                db.commit()
                db.refresh(user)
                return user

        logger.info(f"🆕 Creating user for identity {mask_sensitive_data(identity_uid)}")
        user = User(identity_uid=identity_uid, email=email or f"{identity_uid}@users.invalid", full_name=claims.get("name"))
        db.add(user)
        db.commit()
        db.refresh(user)
        return user


class MobileTokenStrategy(AuthenticationStrategy):
    """Mobile app: HS256 bearer token issued by this API"""

    name = "mobile_token"

    async def authenticate(self, request: Request, db: Session) -> AuthResult:
        token = extract_bearer_token(request.headers.get("authorization"))
        if not token:
            return AuthResult.not_authenticated("No bearer token")

        payload = verify_mobile_token(token)
        if not payload or not payload.get("sub"):
            return AuthResult.not_authenticated("Invalid mobile token")

        user = db.query(User).filter(User.identity_uid == payload["sub"]).first()
        if not user:
            return AuthResult.not_authenticated("Unknown user")
        return AuthResult.authenticated(user)


AUTH_STRATEGIES: list[AuthenticationStrategy] = [
    IdentityProviderSessionStrategy(),
    MobileTokenStrategy(),
]


async def authenticate_request(
    request: Request, db: Session, strategies: Optional[list[AuthenticationStrategy]] = None
) -> AuthResult:
    """Run the chain. Returns the first authenticated result, else a provider error if any, else not authenticated."""
    provider_error: Optional[AuthResult] = None
    for strategy in strategies if strategies is not None else AUTH_STRATEGIES:
        result = await strategy.authenticate(request, db)
        if result.outcome == AuthOutcome.AUTHENTICATED:
            logger.debug(f"✅ Authenticated user {result.user.id} via {strategy.name}")
            return result
        if result.outcome == AuthOutcome.PROVIDER_ERROR:
            logger.warning(f"⚠️ {strategy.name} provider error: {result.reason}")
            provider_error = provider_error or result
        else:
            logger.debug(f"{strategy.name}: {result.reason}")
    return provider_error or AuthResult.not_authenticated("No strategy authenticated the request")


async def get_current_user(request: Request, db: Session = Depends(get_db)) -> User:
    """Get the authenticated user or reject the request"""
    result = await authenticate_request(request, db)
    if result.outcome == AuthOutcome.AUTHENTICATED:
        return result.user
    if result.outcome == AuthOutcome.PROVIDER_ERROR:
        raise HTTPException(status_code=503, detail="Authentication provider unavailable")
    raise HTTPException(status_code=401, detail="Not authenticated")


async def get_optional_user(request: Request, db: Session = Depends(get_db)) -> Optional[User]:
    """Like get_current_user but returns None instead of rejecting"""
    result = await authenticate_request(request, db)
    return result.user if result.outcome == AuthOutcome.AUTHENTICATED else None
