"""TradieConnect service - Business logic for the TradieConnect integration"""

import logging
from datetime import date, datetime
from typing import Optional

from fastapi import HTTPException
from sqlalchemy.orm import Session

from ....config import TRADIECONNECT_AUTH_URL, TRADIECONNECT_DEFAULT_REFERER
from ....models import User
from ....models_tradieconnect import TradieConnectConnection
from .client import TradieConnectClient
from .crypto import CredentialVault
from .repository import ConnectionUpdate, TradieConnectRepository
from .schemas import (
    CalendarResponse,
    CalendarTeam,
    DisconnectResponse,
    LocalAnswerSet,
    LocalFormDefinition,
    RemoteFormDefinition,
    RemoteSyncResult,
    SyncOptions,
    TCJobDetails,
    TCProvider,
    TCJob,
    TradieConnectStatusResponse,
    ValidationResult,
)
from .session import RemoteSessionManager
from .translator import build_remote_payload, to_local_form

logger = logging.getLogger(__name__)


class TradieConnectService:
    """Service layer for the TradieConnect integration"""

    def __init__(
        self,
        db: Session,
        vault: Optional[CredentialVault] = None,
        client: Optional[TradieConnectClient] = None,
    ):
        self.db = db
        self.repo = TradieConnectRepository()
        self.vault = vault or CredentialVault()
        self.client = client or TradieConnectClient()
        self.sessions = RemoteSessionManager(db, vault=self.vault, client=self.client)

    # ============================================================================
    # CONNECTION
    # ============================================================================

    def get_auth_url(self, referer: Optional[str] = None) -> str:
        """SSO URL; TradieConnect sends the user back to /admin/secure/setauth with r=<referer>"""
        encrypted_referer = self.vault.encrypt_url_parameter(referer or TRADIECONNECT_DEFAULT_REFERER)
        return f"{TRADIECONNECT_AUTH_URL.rstrip('/')}/?r={encrypted_referer}"

    def get_connection(self, user: User) -> TradieConnectConnection:
        connection = self.repo.get_active_connection(self.db, user.id)
        if not connection:
            raise HTTPException(
                status_code=400,
                detail={
                    "error": "TradieConnect not connected",
                    "message": "Please connect your TradieConnect account first",
                    "needs_connect": True,
                },
            )
        return connection

    def get_status(self, user: User) -> TradieConnectStatusResponse:
        connection = self.repo.get_active_connection(self.db, user.id)
        if not connection:
            return TradieConnectStatusResponse(connected=False, message="TradieConnect is not connected")

        return TradieConnectStatusResponse(
            connected=True,
            tc_user_id=connection.tc_user_id,
            session_state=connection.session_state,
            connected_at=connection.connected_at,
            last_synced_at=connection.last_synced_at,
        )

    def disconnect(self, user: User) -> DisconnectResponse:
        count = self.repo.deactivate_for_user(self.db, user.id)
        if count == 0:
            return DisconnectResponse(success=True, message="No active TradieConnect connection")

        logger.info(f"🔌 Disconnected TradieConnect for user {user.id}")
        return DisconnectResponse(success=True, message="TradieConnect disconnected successfully")

    async def validate(self, user: User, force_refresh: bool = False) -> ValidationResult:
        connection = self.repo.get_active_connection(self.db, user.id)
        if not connection:
            return ValidationResult(valid=False, needs_reconnect=True, message="No active TradieConnect connection")
        return await self.sessions.validate(connection, force=force_refresh)

    # ============================================================================
    # JOBS AND CALENDAR
    # ============================================================================

    async def get_job(self, user: User, job_id: int) -> TCJobDetails:
        connection = self.get_connection(user)
        return await self.sessions.call(connection, lambda creds: self.client.fetch_job(creds, job_id))

    async def get_calendar(self, user: User, day: Optional[date] = None) -> CalendarResponse:
        """Provider calendar for one day, flattened across teams and schedules"""
        connection = self.get_connection(user)
        day_str = (day or date.today()).isoformat()
        teams = await self.sessions.call(
            connection, lambda creds: self.client.fetch_provider_calendar(creds, day_str)
        )

        jobs: list[TCJob] = []
        providers: dict[int, TCProvider] = {}
        calendar_teams = []
        for team in teams:
            calendar_teams.append(CalendarTeam(teamId=team.teamId, teamName=team.name))
            for schedule in team.schedules:
                for job in schedule.jobs:
                    if job.teamId is None:
                        job.teamId = team.teamId
                    jobs.append(job)
                for provider in schedule.providers:
                    providers.setdefault(provider.providerId, provider)

        return CalendarResponse(date=day_str, jobs=jobs, teams=calendar_teams, providers=list(providers.values()))

    # ============================================================================
    # FORMS
    # ============================================================================

    async def fetch_remote_form(self, connection: TradieConnectConnection, job_id: int) -> RemoteFormDefinition:
        return await self.sessions.call(
            connection, lambda creds: self.client.fetch_form_definition(creds, job_id)
        )

    async def get_local_form(self, user: User, job_id: int) -> LocalFormDefinition:
        connection = self.get_connection(user)
        remote_form = await self.fetch_remote_form(connection, job_id)
        local_form = to_local_form(remote_form, job_id)
        logger.info(
            f"📋 Loaded TradieConnect form {remote_form.jobTypeFormId} for job {job_id}: "
            f"{len(local_form.groups)} groups, {len(remote_form.questions)} questions"
        )
        return local_form

    async def sync_answers(self, user: User, job_id: int, answer_set: LocalAnswerSet) -> RemoteSyncResult:
        """Translate local answers and post them to TradieConnect"""
        connection = self.get_connection(user)
        if not user.tc_provider_id:
            raise HTTPException(
                status_code=400,
                detail={
                    "error": "TradieConnect provider ID not found",
                    "message": "Please reconnect your TradieConnect account",
                },
            )

        # The current form definition is needed to resolve option ids
        remote_form = await self.fetch_remote_form(connection, job_id)
        payload = build_remote_payload(
            remote_form,
            job_id,
            answer_set,
            SyncOptions(
                user_id=user.tc_provider_id,
                provider_id=user.tc_provider_id,
                scope_to_group=answer_set.group_no,
                complete=answer_set.is_complete,
            ),
        )

        answer_count = len(payload.jobTypeForm.jobAnswers)
        logger.info(
            f"📤 Syncing {answer_count} answers to TradieConnect job {job_id} "
            f"(group={answer_set.group_no}, complete={answer_set.is_complete})"
        )
        tc_response = await self.sessions.call(connection, lambda creds: self.client.post_job_form(creds, payload))

        self.repo.update_connection(self.db, connection, ConnectionUpdate(last_synced_at=datetime.utcnow()))
        logger.info(f"✅ Synced {answer_count} answers to TradieConnect job {job_id}")

        return RemoteSyncResult(
            success=True,
            synced_answers=answer_count,
            is_complete=answer_set.is_complete,
            group_no=answer_set.group_no,
            tc_response=tc_response,
        )
