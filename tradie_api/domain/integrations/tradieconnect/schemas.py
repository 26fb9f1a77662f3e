"""TradieConnect schemas - remote wire formats and our local form representation"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


def _none_to_list(v):
    return [] if v is None else v


# ============================================================================
# REMOTE FORM DEFINITION (GET /api/v2/JobForm/{jobId})
# ============================================================================


class TCFormAnswerOption(BaseModel):
    """Answer option for radio/dropdown/checkbox questions"""

    jobTypeFormAnswerId: int
    description: str = ""
    sortOrder: Optional[int] = None

    class Config:
        extra = "allow"


class TCFormQuestion(BaseModel):
    """Question in the remote form. Unknown fields are kept so they can be echoed back."""

    jobTypeFormQuestionId: int
    description: str = ""
    answerFormat: str = "textbox"  # textbox, textarea, radioboxlist, dropdown, file, iscompliant, checkbox
    groupNo: int = 0
    groupName: Optional[str] = None
    sortOrder: int = 0
    required: bool = False
    answers: list[TCFormAnswerOption] = Field(default_factory=list)
    hint: Optional[str] = None

    class Config:
        extra = "allow"

    @field_validator("answers", mode="before")
    @classmethod
    def answers_default(cls, v):
        return _none_to_list(v)


class TCFormGroup(BaseModel):
    jobTypeFormGroupId: int
    name: str = ""
    sortOrder: Optional[int] = None

    class Config:
        extra = "allow"


class RemoteFormDefinition(BaseModel):
    """Form definition returned by TradieConnect for a job"""

    id: int = 0
    jobTypeFormId: int
    name: str = ""
    description: Optional[str] = None
    questions: list[TCFormQuestion] = Field(default_factory=list)
    groups: list[TCFormGroup] = Field(default_factory=list)
    jobId: Optional[int] = None
    jobTypeId: Optional[int] = None
    jobTypeName: Optional[str] = None

    class Config:
        extra = "allow"

    @field_validator("questions", "groups", mode="before")
    @classmethod
    def lists_default(cls, v):
        return _none_to_list(v)

    def question_ids(self) -> set[int]:
        return {q.jobTypeFormQuestionId for q in self.questions}


# ============================================================================
# LOCAL FORM DEFINITION (what the web and mobile renderers consume)
# ============================================================================


class LocalAnswerOption(BaseModel):
    id: str
    text: str
    tc_answer_id: Optional[int] = None


class LocalFormQuestion(BaseModel):
    id: str  # tc_q_<jobTypeFormQuestionId>
    question_text: str
    field_type: str
    csv_question_id: int
    csv_group_id: int
    group_name: Optional[str] = None
    sort_order: int
    required: bool = False
    answer_options: Optional[list[LocalAnswerOption]] = None
    hint: Optional[str] = None


class LocalFormGroup(BaseModel):
    id: str  # tc_g_<groupNo>
    name: str
    csv_group_id: int
    sort_order: int
    questions: list[LocalFormQuestion]


class LocalFormDefinition(BaseModel):
    template_id: str
    template_name: str
    tc_form_id: int
    tc_job_id: int
    groups: list[LocalFormGroup]


# ============================================================================
# LOCAL ANSWERS AND REMOTE SYNC PAYLOAD (POST /api/v2/JobForm)
# ============================================================================


class LocalAnswerSet(BaseModel):
    """Answers collected by the form renderer, keyed by local question id"""

    answers: dict[str, Any]
    photo_urls: dict[str, list[str]] = Field(default_factory=dict)
    group_no: Optional[int] = None  # Sync only this page
    is_complete: bool = False

    @field_validator("photo_urls", mode="before")
    @classmethod
    def photo_urls_default(cls, v):
        return {} if v is None else v


class SyncOptions(BaseModel):
    user_id: int
    provider_id: int
    scope_to_group: Optional[int] = None
    complete: bool = False


class TCFileReference(BaseModel):
    link: str
    name: str


class TCJobAnswer(BaseModel):
    jobId: int
    jobTypeFormQuestionId: int
    jobTypeFormAnswerId: Optional[int] = None
    answerText: str
    value: str
    groupNo: int
    file: Optional[TCFileReference] = None


class TCJobTypeFormPayload(BaseModel):
    id: int
    jobTypeFormId: int
    name: str
    questions: list[dict[str, Any]]  # Remote question echoed back with value / fieldValue
    jobAnswers: list[TCJobAnswer]


class RemoteSyncPayload(BaseModel):
    jobId: int
    formGroupId: int = 0
    userId: int
    providerId: int
    submissionTypeId: int = 0
    isExternal: bool = True
    shouldCreatePdf: bool = False
    shouldCompleteJob: bool = False
    shouldSaveToQueue: bool = True
    jobTypeForm: TCJobTypeFormPayload


class RemoteSyncResult(BaseModel):
    success: bool
    synced_answers: int
    is_complete: bool
    group_no: Optional[int] = None
    tc_response: Any = None


# ============================================================================
# REMOTE USER, JOBS AND CALENDAR
# ============================================================================


class TCUser(BaseModel):
    userId: Optional[int] = None
    providerId: Optional[int] = None
    firstName: Optional[str] = None
    lastName: Optional[str] = None
    email: Optional[str] = None
    mobile: Optional[str] = None

    class Config:
        extra = "allow"


class RefreshedTokens(BaseModel):
    token: str
    refreshToken: Optional[str] = None
    userGuId: Optional[str] = None
    expiry: Optional[str] = None


class TCJobHistoryItem(BaseModel):
    id: Optional[int] = None
    jobId: Optional[int] = None
    description: Optional[str] = None
    timestamp: Optional[str] = None
    statusId: Optional[int] = None
    statusName: Optional[str] = None
    fullname: Optional[str] = None

    class Config:
        extra = "allow"


class TCJobDetails(BaseModel):
    """Job details. Nested property and pricing blocks are passed through as returned."""

    jobId: int
    code: str = ""
    calendarLink: str = ""
    lat: float = 0
    long: float = 0
    addressState: Optional[str] = None
    addressLocality: Optional[str] = None
    addressPostcode: Optional[str] = None
    entryNotes: Optional[str] = None
    propertyMeStatus: str = ""
    isInspection: bool = False
    hasGas: bool = False
    jobContactEmail: Optional[str] = None
    jobContactMobile: Optional[str] = None
    pricing: Optional[dict[str, Any]] = None
    property: Optional[dict[str, Any]] = None
    questions: list[dict[str, Any]] = Field(default_factory=list)
    files: list[dict[str, Any]] = Field(default_factory=list)
    history: list[TCJobHistoryItem] = Field(default_factory=list)

    @field_validator("questions", "files", "history", mode="before")
    @classmethod
    def lists_default(cls, v):
        return _none_to_list(v)


class TCProvider(BaseModel):
    providerId: int
    firstName: Optional[str] = None
    lastName: Optional[str] = None
    name: Optional[str] = None

    class Config:
        extra = "allow"


class TCJob(BaseModel):
    jobId: int
    teamId: Optional[int] = None
    statusName: Optional[str] = None
    title: Optional[str] = None
    address: Optional[str] = None
    start: Optional[str] = None
    duration: Optional[int] = None

    class Config:
        extra = "allow"


class TCSchedule(BaseModel):
    jobDate: Optional[str] = None
    providers: list[TCProvider] = Field(default_factory=list)
    jobs: list[TCJob] = Field(default_factory=list)

    @field_validator("providers", "jobs", mode="before")
    @classmethod
    def lists_default(cls, v):
        return _none_to_list(v)


class TCTeam(BaseModel):
    teamId: int
    name: str = ""
    schedules: list[TCSchedule] = Field(default_factory=list)

    @field_validator("schedules", mode="before")
    @classmethod
    def lists_default(cls, v):
        return _none_to_list(v)


class CalendarTeam(BaseModel):
    teamId: int
    teamName: str


class CalendarResponse(BaseModel):
    date: str
    jobs: list[TCJob]
    teams: list[CalendarTeam]
    providers: list[TCProvider]


# ============================================================================
# API RESPONSES
# ============================================================================


class ConnectResponse(BaseModel):
    authUrl: str
    message: str = "Redirect to this URL to authenticate with TradieConnect"


class TradieConnectStatusResponse(BaseModel):
    connected: bool
    tc_user_id: Optional[str] = None
    session_state: Optional[str] = None
    connected_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None
    message: Optional[str] = None


class ValidationResult(BaseModel):
    valid: bool
    refreshed: bool = False
    needs_reconnect: bool = False
    message: str = ""


class DisconnectResponse(BaseModel):
    success: bool
    message: str
