"""
HTTP client for the TradieConnect v2 API

Every call authenticates with HTTP Basic (user GUID : access token) except the refresh
endpoint, which carries the refresh token in the query string. Status handling is uniform:

- 401 -> RemoteUnauthorized (the session manager refreshes and retries once)
- timeouts, connection errors and 5xx -> RemoteUnavailable
- any other non-2xx -> RemoteRequestError
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from ....config import TRADIECONNECT_API_URL, TRADIECONNECT_TIMEOUT_SECONDS
from ....security_utils import mask_sensitive_data
from .crypto import basic_auth_header
from .exceptions import RemoteRequestError, RemoteUnauthorized, RemoteUnavailable
from .schemas import (
    RefreshedTokens,
    RemoteFormDefinition,
    RemoteSyncPayload,
    TCJobDetails,
    TCTeam,
    TCUser,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Credentials:
    """Decrypted credentials for a single remote call"""

    tc_user_id: str
    access_token: str

    def auth_header(self) -> str:
        return basic_auth_header(self.tc_user_id, self.access_token)


def _first(data: dict, *keys: str):
    for key in keys:
        value = data.get(key)
        if value:
            return value
    return None


def parse_refresh_response(data: dict) -> RefreshedTokens:
    """TradieConnect returns either camelCase or PascalCase keys from the refresh endpoint"""
    token = _first(data, "token", "Token")
    if not token:
        raise RemoteRequestError("Refresh response did not include a token", status_code=200)
    return RefreshedTokens(
        token=token,
        refreshToken=_first(data, "refreshToken", "RefreshToken"),
        userGuId=_first(data, "userGuId", "UserGuId"),
        expiry=_first(data, "expiry", "Expiry"),
    )


def to_job_details(raw: dict, job_id: int) -> TCJobDetails:
    """Normalize the job payload, which nests ids and coordinates inconsistently"""
    prop = raw.get("property") or {}
    lat_long = raw.get("latLong") or {}
    return TCJobDetails(
        jobId=prop.get("jobId") or job_id,
        code=raw.get("code") or "",
        calendarLink=raw.get("calendarLink") or "",
        lat=raw.get("lat") or lat_long.get("lat") or 0,
        long=raw.get("long") or raw.get("lng") or lat_long.get("long") or 0,
        addressState=raw.get("addressState"),
        addressLocality=raw.get("addressLocality"),
        addressPostcode=raw.get("addressPostcode"),
        entryNotes=raw.get("entryNotes"),
        propertyMeStatus=raw.get("propertyMeStatus") or "",
        isInspection=bool(raw.get("isInspection")),
        hasGas=bool(raw.get("hasGas")),
        jobContactEmail=raw.get("jobContactEmail"),
        jobContactMobile=raw.get("jobContactMobile"),
        pricing=raw.get("pricing"),
        property=prop or None,
        questions=raw.get("questions"),
        files=raw.get("files"),
        history=raw.get("history"),
    )


class TradieConnectClient:
    """Thin async wrapper over the TradieConnect REST API"""

    def __init__(
        self,
        base_url: str = TRADIECONNECT_API_URL,
        timeout: float = TRADIECONNECT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(self.timeout, connect=10.0),
            transport=self._transport,
        )

    async def _request(
        self,
        method: str,
        path: str,
        credentials: Optional[Credentials],
        params: Optional[dict] = None,
        json: Any = None,
    ) -> httpx.Response:
        headers = {"Content-Type": "application/json"}
        if credentials is not None:
            headers["Authorization"] = credentials.auth_header()

        try:
            async with self._client() as client:
                response = await client.request(method, path, headers=headers, params=params, json=json)
        except httpx.TimeoutException as e:
            logger.warning(f"⏱️ TradieConnect {method} {path} timed out")
            raise RemoteUnavailable(f"TradieConnect request timed out: {path}") from e
        except httpx.RequestError as e:
            logger.warning(f"⚠️ TradieConnect {method} {path} failed: {type(e).__name__}")
            raise RemoteUnavailable(f"TradieConnect unreachable: {e}") from e

        if response.status_code == 401:
            raise RemoteUnauthorized(f"TradieConnect rejected credentials for {path}")
        if response.status_code >= 500:
            logger.warning(f"⚠️ TradieConnect {method} {path} returned {response.status_code}")
            raise RemoteUnavailable(
                f"TradieConnect returned {response.status_code}", status_code=response.status_code
            )
        if response.status_code >= 400:
            logger.error(f"❌ TradieConnect {method} {path} returned {response.status_code}: {response.text[:500]}")
            raise RemoteRequestError(
                f"TradieConnect request failed: {response.status_code}",
                status_code=response.status_code,
                detail=response.text[:500],
            )
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise RemoteRequestError(
                "TradieConnect returned a non-JSON body", status_code=response.status_code
            ) from e

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    async def validate_token(self, credentials: Credentials) -> bool:
        """True if the access token is accepted. Raises RemoteUnauthorized on 401."""
        await self._request("GET", "/api/v2/Auth/validate", credentials)
        return True

    async def refresh_token(self, tc_user_id: str, refresh_token: str) -> RefreshedTokens:
        logger.info(
            f"🔄 Refreshing TradieConnect token for user {tc_user_id} "
            f"(refresh token {mask_sensitive_data(refresh_token)})"
        )
        response = await self._request(
            "GET",
            "/api/v2/Auth/",
            None,
            params={"param1": "refresh", "id": tc_user_id, "token": refresh_token},
        )
        return parse_refresh_response(self._json(response) or {})

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------

    async def fetch_user(self, credentials: Credentials) -> TCUser:
        response = await self._request("GET", f"/api/v2/User/{credentials.tc_user_id}", credentials)
        return TCUser.model_validate(self._json(response) or {})

    async def fetch_job(self, credentials: Credentials, job_id: int, pid: int = 0) -> TCJobDetails:
        response = await self._request("GET", f"/api/v2/Job/{job_id}", credentials, params={"pid": pid})
        return to_job_details(self._json(response) or {}, job_id)

    async def fetch_form_definition(self, credentials: Credentials, job_id: int) -> RemoteFormDefinition:
        response = await self._request("GET", f"/api/v2/JobForm/{job_id}", credentials)
        data = self._json(response)
        if not isinstance(data, dict):
            raise RemoteRequestError(
                f"TradieConnect returned no form for job {job_id}", status_code=response.status_code
            )
        return RemoteFormDefinition.model_validate(data)

    async def post_job_form(self, credentials: Credentials, payload: RemoteSyncPayload) -> Any:
        response = await self._request(
            "POST", "/api/v2/JobForm", credentials, json=payload.model_dump(mode="json")
        )
        return self._json(response)

    async def fetch_provider_calendar(
        self, credentials: Credentials, date: str, team_id: int = 0, offset: int = 0
    ) -> list[TCTeam]:
        response = await self._request(
            "GET",
            "/api/v2/ProviderCalendar",
            credentials,
            params={"date": date, "teamId": team_id, "offset": offset},
        )
        return [TCTeam.model_validate(team) for team in self._json(response) or []]
