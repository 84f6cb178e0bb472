from __future__ import annotations

from dataclasses import dataclass


class IntakeError(Exception):
    """Base class for failures reported back to the applicant."""

    public_message = "We could not process your application right now. Please try again later."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.public_message)

    @property
    def message(self) -> str:
        return str(self)


@dataclass(slots=True, frozen=True)
class FieldViolation:
    field: str
    message: str


class IntakeValidationError(IntakeError):
    """Raised when the inbound payload is malformed. No I/O has happened."""

    def __init__(self, violations: list[FieldViolation]) -> None:
        self.violations = violations
        detail = "; ".join(f"{violation.field}: {violation.message}" for violation in violations)
        super().__init__(f"Invalid application: {detail}")


class PostNotFoundError(IntakeError):
    def __init__(self, post_id: str) -> None:
        self.post_id = post_id
        super().__init__(f"Jobs board post {post_id} not found")


class PostNotPublicError(IntakeError):
    public_message = "This job posting is not publicly accessible"


class PostNotAcceptingError(IntakeError):
    public_message = "This job posting is not currently accepting applications"


class DuplicateApplicationError(IntakeError):
    public_message = "You have already applied to this position"


class CapacityExceededError(IntakeError):
    public_message = "This position has reached its application limit"


class IntakeInternalError(IntakeError):
    """Unexpected store or dispatcher failure before the application was written."""
