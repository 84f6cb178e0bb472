from __future__ import annotations

from datetime import datetime
from typing import Any

from intake_api.core.auth import PUBLIC_PRINCIPAL
from intake_api.schemas.applications import ApplyToPostRequest

APPLICATION_CREATED_EVENT = "application.created"
CANDIDATE_SOURCE = "public-intake"
UNASSIGNED_OWNER = "unassigned"
CANDIDATE_STATUS = "applicant"


def build_search_keywords(draft: ApplyToPostRequest) -> list[str]:
    answers_text = " ".join(answer.lower() for answer in draft.answer_map.values() if answer)
    keywords = [
        draft.applicant.name.lower(),
        draft.normalized_email,
        draft.applicant.phone.lower() if draft.applicant.phone else None,
        answers_text,
        draft.source.lower(),
        draft.work_auth.lower(),
        *(value.lower() for value in draft.utm_map.values()),
        draft.referral_code.lower() if draft.referral_code else None,
        "application",
        "new",
    ]
    return [keyword for keyword in keywords if keyword]


def build_application_record(
    draft: ApplyToPostRequest,
    post: dict[str, Any],
    *,
    accepted_at: datetime,
) -> dict[str, Any]:
    return {
        "tenant_id": draft.tenant_id,
        "post_id": draft.post_id,
        "mode": post.get("mode"),
        "job_order_id": post.get("job_order_id"),
        "external_applicant": {
            "name": draft.applicant.name,
            "email": draft.applicant.email,
            "phone": draft.applicant.phone,
            "resume_url": draft.applicant.resume_url,
        },
        "applicant_email_normalized": draft.normalized_email,
        "work_auth": draft.work_auth,
        "answers": draft.answer_map,
        "source": draft.source,
        "utm": draft.utm_map,
        "referral_code": draft.referral_code,
        "consents": list(draft.consents),
        "status": "new",
        "candidate_id": None,
        "search_keywords": build_search_keywords(draft),
        "created_at": accepted_at,
        "updated_at": accepted_at,
        "created_by": PUBLIC_PRINCIPAL.subject,
        "updated_by": PUBLIC_PRINCIPAL.subject,
    }


def compute_post_metrics(snapshot: dict[str, Any] | None, *, applications: int) -> dict[str, Any]:
    metrics = dict(snapshot or {})
    views = _as_int(metrics.get("views"))
    metrics["applications"] = applications
    metrics["views"] = views
    metrics["conversion_rate"] = applications / max(views or 1, 1)
    return metrics


def event_dedupe_key(application_id: str, accepted_at: datetime) -> str:
    return f"public_application_creation:{application_id}:{epoch_millis(accepted_at)}"


def build_created_event(application: dict[str, Any]) -> dict[str, Any]:
    application_id = str(application["id"])
    accepted_at: datetime = application["created_at"]
    return {
        "tenant_id": application["tenant_id"],
        "type": APPLICATION_CREATED_EVENT,
        "entity_type": "application",
        "entity_id": application_id,
        "source": PUBLIC_PRINCIPAL.subject,
        "dedupe_key": event_dedupe_key(application_id, accepted_at),
        "payload": {
            "application": to_jsonable(application),
            "post_id": application["post_id"],
            "job_order_id": application.get("job_order_id"),
            "source": application.get("source"),
        },
        "search_keywords": ["application", "created", PUBLIC_PRINCIPAL.subject, application_id],
        "processed": False,
        "retry_count": 0,
        "created_by": PUBLIC_PRINCIPAL.subject,
        "created_at": accepted_at,
    }


def split_full_name(full_name: str) -> tuple[str, str]:
    parts = full_name.split()
    if not parts:
        return "", ""
    return parts[0], " ".join(parts[1:])


def build_candidate_profile(application: dict[str, Any], *, now: datetime) -> dict[str, Any]:
    applicant = application.get("external_applicant") or {}
    name = str(applicant.get("name") or "")
    email = str(applicant.get("email") or "")
    first_name, last_name = split_full_name(name)
    return {
        "tenant_id": application["tenant_id"],
        "first_name": first_name,
        "last_name": last_name,
        "email": email,
        "phone": applicant.get("phone"),
        "resume_url": applicant.get("resume_url"),
        "work_auth": application.get("work_auth"),
        "source": CANDIDATE_SOURCE,
        "recruiter_owner_id": UNASSIGNED_OWNER,
        "status": CANDIDATE_STATUS,
        "score": 0,
        "source_application_id": str(application["id"]),
        "search_keywords": [name.lower(), email.lower(), "candidate", "applicant"],
        "created_at": now,
        "updated_at": now,
        "created_by": PUBLIC_PRINCIPAL.subject,
        "updated_by": PUBLIC_PRINCIPAL.subject,
    }


def epoch_millis(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def to_jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(key): to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(item) for item in value]
    return value


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return 0
