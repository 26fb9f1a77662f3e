"""TradieConnect router - SSO callback and integration endpoints"""

import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from ....auth import get_current_user, get_optional_user
from ....config import FRONTEND_URL
from ....database import get_db
from ....models import User
from ....shared.validators import validate_iso_date
from .callback import InboundCallbackHandler
from .client import TradieConnectClient
from .crypto import CredentialVault, get_credential_vault
from .schemas import (
    CalendarResponse,
    ConnectResponse,
    DisconnectResponse,
    LocalAnswerSet,
    LocalFormDefinition,
    RemoteSyncResult,
    TCJobDetails,
    TradieConnectStatusResponse,
    ValidationResult,
)
from .service import TradieConnectService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/integrations/tradieconnect", tags=["TradieConnect"])
callback_router = APIRouter(tags=["TradieConnect"])


def get_tradieconnect_client() -> TradieConnectClient:
    return TradieConnectClient()


def get_tradieconnect_service(
    db: Session = Depends(get_db),
    vault: CredentialVault = Depends(get_credential_vault),
    client: TradieConnectClient = Depends(get_tradieconnect_client),
) -> TradieConnectService:
    """Dependency injection for TradieConnectService"""
    return TradieConnectService(db, vault=vault, client=client)


# ============================================================================
# SSO CALLBACK
# ============================================================================


@callback_router.get("/admin/secure/setauth")
async def tradieconnect_sso_callback(
    request: Request,
    current_user: Optional[User] = Depends(get_optional_user),
    db: Session = Depends(get_db),
    vault: CredentialVault = Depends(get_credential_vault),
    client: TradieConnectClient = Depends(get_tradieconnect_client),
):
    """Fixed URL TradieConnect redirects to after SSO. Every query parameter is encrypted."""
    handler = InboundCallbackHandler(db, vault, client)
    path = await handler.handle(request.query_params, current_user)
    return RedirectResponse(url=f"{FRONTEND_URL.rstrip('/')}{path}")


# ============================================================================
# CONNECTION
# ============================================================================


@router.get("/connect", response_model=ConnectResponse)
async def connect(
    current_user: User = Depends(get_current_user),
    service: TradieConnectService = Depends(get_tradieconnect_service),
):
    """Get the TradieConnect SSO URL for the client to redirect to"""
    return ConnectResponse(authUrl=service.get_auth_url())


@router.get("/status", response_model=TradieConnectStatusResponse)
async def get_status(
    current_user: User = Depends(get_current_user),
    service: TradieConnectService = Depends(get_tradieconnect_service),
):
    return service.get_status(current_user)


@router.post("/disconnect", response_model=DisconnectResponse)
async def disconnect(
    current_user: User = Depends(get_current_user),
    service: TradieConnectService = Depends(get_tradieconnect_service),
):
    return service.disconnect(current_user)


@router.post("/validate", response_model=ValidationResult)
async def validate(
    force_refresh: bool = Query(False),
    current_user: User = Depends(get_current_user),
    service: TradieConnectService = Depends(get_tradieconnect_service),
):
    """Check the stored token, refreshing it if TradieConnect rejects it (or always, with force_refresh)"""
    return await service.validate(current_user, force_refresh=force_refresh)


# ============================================================================
# JOBS, FORMS AND CALENDAR
# ============================================================================


@router.get("/calendar", response_model=CalendarResponse)
async def get_calendar(
    day: Optional[str] = Query(None, alias="date", description="YYYY-MM-DD, defaults to today"),
    current_user: User = Depends(get_current_user),
    service: TradieConnectService = Depends(get_tradieconnect_service),
):
    try:
        validate_iso_date(day)
        parsed = date.fromisoformat(day) if day else None
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return await service.get_calendar(current_user, parsed)


@router.get("/jobs/{job_id}", response_model=TCJobDetails)
async def get_job(
    job_id: int,
    current_user: User = Depends(get_current_user),
    service: TradieConnectService = Depends(get_tradieconnect_service),
):
    return await service.get_job(current_user, job_id)


@router.get("/jobs/{job_id}/form-definition", response_model=LocalFormDefinition)
async def get_form_definition(
    job_id: int,
    current_user: User = Depends(get_current_user),
    service: TradieConnectService = Depends(get_tradieconnect_service),
):
    """The job's TradieConnect completion form, converted for our form renderer"""
    return await service.get_local_form(current_user, job_id)


@router.post("/jobs/{job_id}/sync-answers", response_model=RemoteSyncResult)
async def sync_answers(
    job_id: int,
    data: LocalAnswerSet,
    current_user: User = Depends(get_current_user),
    service: TradieConnectService = Depends(get_tradieconnect_service),
):
    """Push answers for one page (group_no) or the whole form back to TradieConnect"""
    return await service.sync_answers(current_user, job_id, data)
