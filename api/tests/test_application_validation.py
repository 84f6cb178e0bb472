from __future__ import annotations

from typing import Any

import pytest

from intake_api.services.errors import IntakeValidationError
from intake_api.services.validation import decode_application_body, validate_application


def _payload(**overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "tenantId": "tenant-a",
        "postId": "P1",
        "applicant": {"name": "  Jordan Lee ", "email": "Jordan.Lee@example.com"},
        "workAuth": "work_visa",
        "answers": [{"questionId": "shift", "answer": "nights"}],
        "source": "referral",
        "referralCode": "FRIEND-42",
    }
    payload.update(overrides)
    return payload


def _fields(excinfo: pytest.ExceptionInfo[IntakeValidationError]) -> set[str]:
    return {violation.field for violation in excinfo.value.violations}


def test_valid_payload_becomes_typed_draft() -> None:
    draft = validate_application(_payload(utm={"source": "flyer", "campaign": "spring"}))

    assert draft.tenant_id == "tenant-a"
    assert draft.applicant.name == "Jordan Lee"
    assert draft.normalized_email == "jordan.lee@example.com"
    assert draft.work_auth == "work_visa"
    assert draft.answer_map == {"shift": "nights"}
    assert draft.utm_map == {"source": "flyer", "campaign": "spring"}
    assert draft.referral_code == "FRIEND-42"
    assert draft.consents == []


def test_optional_sections_default_to_empty() -> None:
    payload = _payload()
    payload.pop("answers")
    payload.pop("referralCode")

    draft = validate_application(payload)

    assert draft.answer_map == {}
    assert draft.utm_map == {}
    assert draft.referral_code is None


def test_all_violations_are_reported_together() -> None:
    with pytest.raises(IntakeValidationError) as excinfo:
        validate_application(
            _payload(
                tenantId="",
                applicant={"name": "", "email": "nope"},
                workAuth="tourist",
                source="Craigslist",
            )
        )

    assert _fields(excinfo) == {"tenantId", "applicant.name", "applicant.email", "workAuth", "source"}
    assert str(excinfo.value).startswith("Invalid application: ")


def test_missing_required_fields_are_named() -> None:
    with pytest.raises(IntakeValidationError) as excinfo:
        validate_application({"tenantId": "tenant-a"})

    assert _fields(excinfo) == {"postId", "applicant", "workAuth", "source"}


def test_repeated_question_is_rejected() -> None:
    answers = [
        {"questionId": "shift", "answer": "nights"},
        {"questionId": "shift", "answer": "days"},
    ]

    with pytest.raises(IntakeValidationError) as excinfo:
        validate_application(_payload(answers=answers))

    [violation] = excinfo.value.violations
    assert violation.field == "answers"
    assert violation.message == "questionId answered more than once: shift"


@pytest.mark.parametrize("payload", [None, "text", ["a"], 42])
def test_non_object_payload_is_rejected(payload: Any) -> None:
    with pytest.raises(IntakeValidationError) as excinfo:
        validate_application(payload)

    assert _fields(excinfo) == {"body"}


def test_unknown_fields_are_ignored() -> None:
    draft = validate_application(_payload(honeypot="spam"))

    assert not hasattr(draft, "honeypot")


def test_decode_rejects_malformed_json() -> None:
    with pytest.raises(IntakeValidationError) as excinfo:
        decode_application_body(b'{"tenantId": ')

    [violation] = excinfo.value.violations
    assert (violation.field, violation.message) == ("body", "Invalid JSON")


def test_decode_treats_blank_body_as_missing() -> None:
    assert decode_application_body(b"  ") is None
    assert decode_application_body(b'{"a": 1}') == {"a": 1}
