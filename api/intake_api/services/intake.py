from __future__ import annotations

import asyncio
import logging
import weakref
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, TypeVar

from opentelemetry import trace

from intake_api.core.auth import PUBLIC_PRINCIPAL
from intake_api.schemas.applications import ApplyToPostRequest
from intake_api.services.errors import (
    CapacityExceededError,
    DuplicateApplicationError,
    IntakeError,
    IntakeInternalError,
    PostNotAcceptingError,
    PostNotFoundError,
    PostNotPublicError,
)
from intake_api.services.records import (
    build_application_record,
    build_candidate_profile,
    build_created_event,
    compute_post_metrics,
)
from intake_api.services.repository import RepositoryNotFoundError
from intake_api.services.validation import validate_application

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

ACCEPTED_MESSAGE = "Your application has been submitted successfully. We will contact you soon."

T = TypeVar("T")


@dataclass(slots=True)
class StageFailure:
    stage: str
    error: str


@dataclass(slots=True)
class IntakeOutcome:
    application_id: str
    tenant_id: str
    post_id: str
    event_id: str | None = None
    candidate_id: str | None = None
    failed_stages: list[StageFailure] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return bool(self.failed_stages)


class AdmissionLocks:
    """Per-(tenant, post) locks held across admission checks and the application write.

    Only serializes requests handled by this process.
    """

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[tuple[str, str], asyncio.Lock] = weakref.WeakValueDictionary()

    def for_post(self, tenant_id: str, post_id: str) -> asyncio.Lock:
        key = (tenant_id, post_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock


@lru_cache
def get_admission_locks() -> AdmissionLocks:
    return AdmissionLocks()


async def emit_created_event(repository: Any, application: dict[str, Any]) -> str:
    event = build_created_event(application)
    event_id = await repository.append_event(event)
    logger.info(
        "event appended type=%s tenant=%s application_id=%s dedupe_key=%s",
        event["type"],
        event["tenant_id"],
        application["id"],
        event["dedupe_key"],
    )
    return event_id


async def materialize_candidate(repository: Any, application: dict[str, Any], *, now: datetime) -> str:
    tenant_id = application["tenant_id"]
    candidate_id = await repository.create_candidate(tenant_id, build_candidate_profile(application, now=now))
    # A crash between these two writes leaves the application unlinked; the repair pass relinks it.
    await link_candidate(repository, application, candidate_id, now=now)
    logger.info(
        "candidate materialized tenant=%s application_id=%s candidate_id=%s",
        tenant_id,
        application["id"],
        candidate_id,
    )
    return candidate_id


async def link_candidate(repository: Any, application: dict[str, Any], candidate_id: str, *, now: datetime) -> None:
    await repository.update_application(
        application["tenant_id"],
        application["id"],
        {"candidate_id": candidate_id, "updated_at": now, "updated_by": PUBLIC_PRINCIPAL.subject},
    )


class IntakePipeline:
    """Public application intake.

    Stages run in order: validate, gate the post, admit, write the application,
    then the post-acceptance saga (post metrics, creation event, candidate
    profile, confirmation). Failures before the write abort with nothing
    persisted. Once the application is written the request is accepted; later
    stage failures are logged and collected on the outcome instead of raised.
    """

    def __init__(
        self,
        repository: Any,
        notifier: Any,
        *,
        admission_locks: AdmissionLocks | None = None,
        notification_template: str = "application-confirmation",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.repository = repository
        self.notifier = notifier
        self.admission_locks = admission_locks
        self.notification_template = notification_template
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def submit_application(self, payload: Any) -> IntakeOutcome:
        with tracer.start_as_current_span("intake.submit_application") as span:
            draft = validate_application(payload)
            span.set_attribute("intake.tenant_id", draft.tenant_id)
            span.set_attribute("intake.post_id", draft.post_id)
            logger.info("processing application tenant=%s post=%s", draft.tenant_id, draft.post_id)

            try:
                post = await self.gate_post(draft)
                application = await self._admit_and_write(draft, post)
            except IntakeError as exc:
                logger.info(
                    "application rejected tenant=%s post=%s reason=%s",
                    draft.tenant_id,
                    draft.post_id,
                    type(exc).__name__,
                )
                raise
            except Exception as exc:
                logger.exception("application intake failed tenant=%s post=%s", draft.tenant_id, draft.post_id)
                raise IntakeInternalError() from exc

            outcome = IntakeOutcome(
                application_id=application["id"],
                tenant_id=draft.tenant_id,
                post_id=draft.post_id,
            )
            span.set_attribute("intake.application_id", outcome.application_id)

            await self._run_stage(outcome, "aggregate", lambda: self.update_post_metrics(post))
            outcome.event_id = await self._run_stage(
                outcome, "event", lambda: emit_created_event(self.repository, application)
            )
            outcome.candidate_id = await self._run_stage(
                outcome,
                "profile",
                lambda: materialize_candidate(self.repository, application, now=self._clock()),
            )
            await self._run_stage(outcome, "notify", lambda: self.send_confirmation(draft, post))

            logger.info(
                "application accepted tenant=%s post=%s application_id=%s failed_stages=%s",
                outcome.tenant_id,
                outcome.post_id,
                outcome.application_id,
                [failure.stage for failure in outcome.failed_stages],
            )
            return outcome

    async def gate_post(self, draft: ApplyToPostRequest) -> dict[str, Any]:
        with tracer.start_as_current_span("intake.gate"):
            try:
                post = await self.repository.get_post(draft.tenant_id, draft.post_id)
            except RepositoryNotFoundError as exc:
                raise PostNotFoundError(draft.post_id) from exc

            if post.get("visibility") != "public":
                raise PostNotPublicError()
            if post.get("status") != "posted":
                raise PostNotAcceptingError()
            return post

    async def admit(self, draft: ApplyToPostRequest, post: dict[str, Any]) -> None:
        with tracer.start_as_current_span("intake.admit"):
            existing = await self.repository.list_applications(
                draft.tenant_id,
                draft.post_id,
                email=draft.normalized_email,
                limit=1,
            )
            if existing:
                raise DuplicateApplicationError()

            apply_limit = post.get("apply_limit")
            # An unset or zero limit means the post is uncapped.
            if not apply_limit:
                return
            # Counted from the application store; post metrics are advisory only.
            total = await self.repository.count_applications(draft.tenant_id, draft.post_id)
            if total >= apply_limit:
                raise CapacityExceededError()

    async def write_application(self, draft: ApplyToPostRequest, post: dict[str, Any]) -> dict[str, Any]:
        with tracer.start_as_current_span("intake.write"):
            record = build_application_record(draft, post, accepted_at=self._clock())
            application_id = await self.repository.create_application(draft.tenant_id, record)
            logger.info(
                "application written tenant=%s post=%s application_id=%s",
                draft.tenant_id,
                draft.post_id,
                application_id,
            )
            return {**record, "id": application_id}

    async def update_post_metrics(self, post: dict[str, Any]) -> dict[str, Any]:
        # Read-modify-write from the gate snapshot; concurrent acceptances can under-count.
        snapshot = post.get("metrics") or {}
        applications = int(snapshot.get("applications") or 0) + 1
        metrics = compute_post_metrics(snapshot, applications=applications)
        await self.repository.update_post(
            post["tenant_id"],
            post["id"],
            {"metrics": metrics, "updated_at": self._clock(), "updated_by": PUBLIC_PRINCIPAL.subject},
        )
        return metrics

    async def send_confirmation(self, draft: ApplyToPostRequest, post: dict[str, Any]) -> None:
        await self.notifier.send(
            draft.applicant.email,
            self.notification_template,
            {"job_title": post.get("title"), "post_id": draft.post_id, "tenant_id": draft.tenant_id},
        )

    async def _admit_and_write(self, draft: ApplyToPostRequest, post: dict[str, Any]) -> dict[str, Any]:
        if self.admission_locks is None:
            await self.admit(draft, post)
            return await self.write_application(draft, post)

        async with self.admission_locks.for_post(draft.tenant_id, draft.post_id):
            await self.admit(draft, post)
            return await self.write_application(draft, post)

    async def _run_stage(
        self,
        outcome: IntakeOutcome,
        stage: str,
        action: Callable[[], Awaitable[T]],
    ) -> T | None:
        with tracer.start_as_current_span(f"intake.{stage}") as span:
            try:
                return await action()
            except Exception as exc:
                span.record_exception(exc)
                outcome.failed_stages.append(StageFailure(stage=stage, error=str(exc)))
                logger.exception(
                    "post-acceptance stage failed stage=%s tenant=%s post=%s application_id=%s",
                    stage,
                    outcome.tenant_id,
                    outcome.post_id,
                    outcome.application_id,
                )
                return None
