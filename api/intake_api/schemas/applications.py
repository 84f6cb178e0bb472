from typing import Literal

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel

WorkAuth = Literal["citizen", "permanent_resident", "work_visa", "other"]
ApplicationSource = Literal["QR", "URL", "referral", "Companion", "Indeed", "LinkedIn"]
PostVisibility = Literal["public", "private", "restricted"]
PostStatus = Literal["draft", "posted", "paused", "closed", "expired"]


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
        extra="ignore",
    )


class ApplicantIn(_CamelModel):
    name: str = Field(min_length=1)
    email: EmailStr
    phone: str | None = None
    resume_url: str | None = None


class AnswerIn(_CamelModel):
    question_id: str = Field(min_length=1)
    answer: str


class UtmIn(_CamelModel):
    source: str | None = None
    medium: str | None = None
    campaign: str | None = None
    term: str | None = None
    content: str | None = None


class ApplyToPostRequest(_CamelModel):
    tenant_id: str = Field(min_length=1)
    post_id: str = Field(min_length=1)
    applicant: ApplicantIn
    work_auth: WorkAuth
    answers: list[AnswerIn] = Field(default_factory=list)
    source: ApplicationSource
    utm: UtmIn | None = None
    referral_code: str | None = None
    consents: list[str] = Field(default_factory=list)

    @field_validator("answers")
    @classmethod
    def _reject_repeated_questions(cls, answers: list[AnswerIn]) -> list[AnswerIn]:
        seen: set[str] = set()
        repeated: list[str] = []
        for item in answers:
            if item.question_id in seen and item.question_id not in repeated:
                repeated.append(item.question_id)
            seen.add(item.question_id)
        if repeated:
            raise ValueError(f"questionId answered more than once: {', '.join(repeated)}")
        return answers

    @property
    def normalized_email(self) -> str:
        return self.applicant.email.strip().lower()

    @property
    def answer_map(self) -> dict[str, str]:
        return {item.question_id: item.answer for item in self.answers}

    @property
    def utm_map(self) -> dict[str, str]:
        if self.utm is None:
            return {}
        return self.utm.model_dump(exclude_none=True)


class ApplyResult(_CamelModel):
    success: bool
    action: Literal["applied"] | None = None
    application_id: str | None = None
    tenant_id: str | None = None
    post_id: str | None = None
    message: str | None = None
    error: str | None = None
