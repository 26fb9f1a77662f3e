"""
Schema translation between TradieConnect job forms and our form representation

Local identifiers are derived from remote ones so the mapping is stable across fetches:
questions are ``tc_q_<jobTypeFormQuestionId>``, groups ``tc_g_<groupNo>`` and the form
template ``tc_form_<jobTypeFormId>``.
"""

import logging
from typing import Any, Optional

from .exceptions import TranslationInvariantViolation
from .schemas import (
    LocalAnswerOption,
    LocalAnswerSet,
    LocalFormDefinition,
    LocalFormGroup,
    LocalFormQuestion,
    RemoteFormDefinition,
    RemoteSyncPayload,
    SyncOptions,
    TCFileReference,
    TCFormQuestion,
    TCJobAnswer,
    TCJobTypeFormPayload,
)

logger = logging.getLogger(__name__)

QUESTION_PREFIX = "tc_q_"
GROUP_PREFIX = "tc_g_"
FORM_PREFIX = "tc_form_"

ANSWER_FORMAT_FIELD_TYPES = {
    "textbox": "text",
    "textarea": "textarea",
    "radioboxlist": "radio",
    "dropdown": "dropdown",
    "file": "file",
    "iscompliant": "radio",  # Yes/No options
    "checkbox": "checkbox",
    "number": "number",
    "date": "date",
}

CHOICE_FORMATS = {"radioboxlist", "dropdown", "iscompliant", "checkbox"}


def map_answer_format(answer_format: Optional[str]) -> str:
    """Map a remote answerFormat to a local field type. Unknown formats render as text."""
    return ANSWER_FORMAT_FIELD_TYPES.get((answer_format or "").lower(), "text")


def question_key(question_id: int) -> str:
    return f"{QUESTION_PREFIX}{question_id}"


def _unique_questions(remote_form: RemoteFormDefinition) -> list[TCFormQuestion]:
    seen: set[int] = set()
    unique = []
    for question in remote_form.questions:
        if question.jobTypeFormQuestionId in seen:
            logger.warning(
                f"⚠️ Duplicate TradieConnect question {question.jobTypeFormQuestionId} "
                f"in form {remote_form.jobTypeFormId}, keeping the first"
            )
            continue
        seen.add(question.jobTypeFormQuestionId)
        unique.append(question)
    return unique


# ============================================================================
# REMOTE -> LOCAL
# ============================================================================


def to_local_form(remote_form: RemoteFormDefinition, job_id: int) -> LocalFormDefinition:
    """Convert a remote form definition into groups of local questions for rendering"""
    group_info = {g.jobTypeFormGroupId: g for g in remote_form.groups}

    questions_by_group: dict[int, list[TCFormQuestion]] = {}
    for question in _unique_questions(remote_form):
        questions_by_group.setdefault(question.groupNo, []).append(question)

    def group_sort_key(group_no: int):
        info = group_info.get(group_no)
        if info is not None and info.sortOrder is not None:
            return info.sortOrder
        return group_no

    groups = []
    for group_no in sorted(questions_by_group, key=group_sort_key):
        questions = sorted(questions_by_group[group_no], key=lambda q: q.sortOrder)
        info = group_info.get(group_no)
        group_name = (info.name if info else None) or questions[0].groupName or f"Section {group_no}"

        local_questions = [
            LocalFormQuestion(
                id=question_key(q.jobTypeFormQuestionId),
                question_text=q.description,
                field_type=map_answer_format(q.answerFormat),
                csv_question_id=q.jobTypeFormQuestionId,
                csv_group_id=q.groupNo,
                group_name=group_name,
                sort_order=idx,
                required=q.required,
                answer_options=[
                    LocalAnswerOption(
                        id=str(opt.jobTypeFormAnswerId),
                        text=opt.description,
                        tc_answer_id=opt.jobTypeFormAnswerId,
                    )
                    for opt in q.answers
                ]
                or None,
                hint=q.hint,
            )
            for idx, q in enumerate(questions)
        ]

        groups.append(
            LocalFormGroup(
                id=f"{GROUP_PREFIX}{group_no}",
                name=group_name,
                csv_group_id=group_no,
                sort_order=len(groups),
                questions=local_questions,
            )
        )

    return LocalFormDefinition(
        template_id=f"{FORM_PREFIX}{remote_form.jobTypeFormId}",
        template_name=remote_form.name,
        tc_form_id=remote_form.jobTypeFormId,
        tc_job_id=job_id,
        groups=groups,
    )


# ============================================================================
# LOCAL -> REMOTE
# ============================================================================


def _is_unanswered(value: Any) -> bool:
    return value is None or value == "" or value == []


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _file_name(uri: str) -> str:
    name = uri.split("?", 1)[0].rstrip("/").rsplit("/", 1)[-1]
    return name or "photo.jpg"


def check_answer_keys(remote_form: RemoteFormDefinition, answer_set: LocalAnswerSet) -> None:
    """Every answered key must name a question on the form"""
    known = {question_key(qid) for qid in remote_form.question_ids()}
    unknown = sorted(
        key for key in set(answer_set.answers) | set(answer_set.photo_urls) if key not in known
    )
    if unknown:
        logger.error(
            f"❌ Answers reference questions not on TradieConnect form {remote_form.jobTypeFormId}: {unknown}"
        )
        raise TranslationInvariantViolation(
            f"Answers reference {len(unknown)} question(s) that are not on the form", question_ids=unknown
        )


def _choice_answers(question: TCFormQuestion, job_id: int, values: list[Any]) -> list[TCJobAnswer]:
    entries = []
    for value in values:
        text = _as_text(value)
        entry = TCJobAnswer(
            jobId=job_id,
            jobTypeFormQuestionId=question.jobTypeFormQuestionId,
            answerText=text,
            value=text,
            groupNo=question.groupNo,
        )
        match = next(
            (
                opt
                for opt in question.answers
                if opt.description.lower() == text.lower() or str(opt.jobTypeFormAnswerId) == text
            ),
            None,
        )
        if match is not None:
            entry.jobTypeFormAnswerId = match.jobTypeFormAnswerId
            entry.answerText = match.description
            entry.value = match.description
        entries.append(entry)
    return entries


def build_remote_payload(
    remote_form: RemoteFormDefinition,
    job_id: int,
    answer_set: LocalAnswerSet,
    options: SyncOptions,
) -> RemoteSyncPayload:
    """
    Build the POST /api/v2/JobForm body for the answered questions.

    Raises TranslationInvariantViolation if any answer key is not on the form.
    """
    check_answer_keys(remote_form, answer_set)

    questions = _unique_questions(remote_form)
    if options.scope_to_group is not None:
        questions = [q for q in questions if q.groupNo == options.scope_to_group]

    echoed_questions: list[dict[str, Any]] = []
    job_answers: list[TCJobAnswer] = []

    for question in questions:
        key = question_key(question.jobTypeFormQuestionId)
        value = answer_set.answers.get(key)
        photos = [uri for uri in answer_set.photo_urls.get(key) or [] if uri]
        answer_format = (question.answerFormat or "").lower()

        if answer_format == "file" and not _is_unanswered(value):
            # URIs may also arrive in the answer itself
            uris = value if isinstance(value, list) else [value]
            photos.extend(uri for uri in uris if isinstance(uri, str) and uri and uri not in photos)

        if answer_format == "file" and photos:
            entries = [
                TCJobAnswer(
                    jobId=job_id,
                    jobTypeFormQuestionId=question.jobTypeFormQuestionId,
                    answerText=_file_name(uri),
                    value=uri,
                    groupNo=question.groupNo,
                    file=TCFileReference(link=uri, name=_file_name(uri)),
                )
                for uri in photos
            ]
            field_value = ",".join(photos)
        elif _is_unanswered(value):
            continue
        else:
            values = value if isinstance(value, list) else [value]
            values = [v for v in values if not _is_unanswered(v)]
            if not values:
                continue
            if answer_format in CHOICE_FORMATS and question.answers:
                entries = _choice_answers(question, job_id, values)
            else:
                entries = [
                    TCJobAnswer(
                        jobId=job_id,
                        jobTypeFormQuestionId=question.jobTypeFormQuestionId,
                        answerText=_as_text(v),
                        value=_as_text(v),
                        groupNo=question.groupNo,
                    )
                    for v in values
                ]
            field_value = ",".join(entry.value for entry in entries)

        echoed = question.model_dump(mode="json")
        echoed["value"] = field_value
        echoed["fieldValue"] = field_value
        echoed_questions.append(echoed)
        job_answers.extend(entries)

    return RemoteSyncPayload(
        jobId=job_id,
        userId=options.user_id,
        providerId=options.provider_id,
        shouldCreatePdf=options.complete,
        shouldCompleteJob=options.complete,
        jobTypeForm=TCJobTypeFormPayload(
            id=remote_form.jobTypeFormId,
            jobTypeFormId=remote_form.jobTypeFormId,
            name=remote_form.name,
            questions=echoed_questions,
            jobAnswers=job_answers,
        ),
    )
