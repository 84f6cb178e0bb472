from __future__ import annotations

import asyncio
from typing import Any

import pytest

from intake_api.services.errors import (
    CapacityExceededError,
    DuplicateApplicationError,
    IntakeInternalError,
    IntakeValidationError,
    PostNotAcceptingError,
    PostNotFoundError,
    PostNotPublicError,
)
from intake_api.services.intake import AdmissionLocks, IntakePipeline
from intake_api.services.notifier import NotificationError
from intake_api.services.repair import RepairService
from intake_api.services.repository import RepositoryUnavailableError
from intake_api.services.store import InMemoryRepository

TENANT = "tenant-a"


class RecordingNotifier:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.sent: list[tuple[str, str, dict[str, Any]]] = []

    async def send(self, address: str, template_ref: str, data: dict[str, Any]) -> None:
        if self.fail:
            raise NotificationError("smtp relay down")
        self.sent.append((address, template_ref, data))


def _payload(post_id: str, **overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "tenantId": TENANT,
        "postId": post_id,
        "applicant": {"name": "Ada Lovelace", "email": "ada@example.com", "phone": "555-0100"},
        "workAuth": "citizen",
        "answers": [{"questionId": "forklift", "answer": "Yes, certified"}],
        "source": "QR",
        "utm": {"campaign": "spring-hiring"},
        "consents": ["sms"],
    }
    payload.update(overrides)
    return payload


def _applicant(email: str, name: str = "Ada Lovelace") -> dict[str, Any]:
    return {"name": name, "email": email}


def _total_writes(repo: InMemoryRepository) -> int:
    return len(repo.applications) + len(repo.candidates) + len(repo.events)


def test_accepted_application_writes_every_derived_record() -> None:
    repo = InMemoryRepository()
    post = repo.add_post(TENANT, title="Forklift Operator", metrics={"applications": 0, "views": 4})
    notifier = RecordingNotifier()

    outcome = asyncio.run(IntakePipeline(repo, notifier).submit_application(_payload(post["id"])))

    assert outcome.failed_stages == []
    application = repo.applications[(TENANT, outcome.application_id)]
    assert application["status"] == "new"
    assert application["post_id"] == post["id"]
    assert application["answers"] == {"forklift": "Yes, certified"}
    assert application["utm"] == {"campaign": "spring-hiring"}
    assert application["created_at"] == application["updated_at"]
    assert "ada lovelace" in application["search_keywords"]
    assert "yes, certified" in application["search_keywords"]

    metrics = repo.posts[(TENANT, post["id"])]["metrics"]
    assert metrics["applications"] == 1
    assert metrics["conversion_rate"] == pytest.approx(0.25)

    events = asyncio.run(repo.list_events(TENANT, entity_id=outcome.application_id))
    assert len(events) == 1
    assert events[0]["type"] == "application.created"
    assert events[0]["dedupe_key"].startswith(f"public_application_creation:{outcome.application_id}:")
    assert events[0]["payload"]["application"]["id"] == outcome.application_id

    candidate = repo.candidates[(TENANT, outcome.candidate_id)]
    assert application["candidate_id"] == outcome.candidate_id
    assert candidate["first_name"] == "Ada"
    assert candidate["last_name"] == "Lovelace"
    assert candidate["email"] == application["external_applicant"]["email"]
    assert candidate["source"] == "public-intake"
    assert candidate["status"] == "applicant"
    assert candidate["score"] == 0

    assert notifier.sent == [
        (
            "ada@example.com",
            "application-confirmation",
            {"job_title": "Forklift Operator", "post_id": post["id"], "tenant_id": TENANT},
        )
    ]


def test_second_application_from_same_address_is_rejected_case_insensitively() -> None:
    repo = InMemoryRepository()
    post = repo.add_post(TENANT)
    pipeline = IntakePipeline(repo, RecordingNotifier())

    asyncio.run(pipeline.submit_application(_payload(post["id"], applicant=_applicant("a@x.com"))))
    with pytest.raises(DuplicateApplicationError) as excinfo:
        asyncio.run(pipeline.submit_application(_payload(post["id"], applicant=_applicant("A@X.COM"))))

    assert excinfo.value.message == "You have already applied to this position"
    assert len(repo.applications) == 1


def test_capacity_limit_admits_nth_and_rejects_next() -> None:
    repo = InMemoryRepository()
    post = repo.add_post(TENANT, apply_limit=2)
    pipeline = IntakePipeline(repo, RecordingNotifier())

    asyncio.run(pipeline.submit_application(_payload(post["id"], applicant=_applicant("one@example.com"))))
    asyncio.run(pipeline.submit_application(_payload(post["id"], applicant=_applicant("two@example.com"))))
    with pytest.raises(CapacityExceededError) as excinfo:
        asyncio.run(pipeline.submit_application(_payload(post["id"], applicant=_applicant("three@example.com"))))

    assert excinfo.value.message == "This position has reached its application limit"
    assert len(repo.applications) == 2


def test_capacity_is_counted_from_applications_not_cached_metrics() -> None:
    repo = InMemoryRepository()
    post = repo.add_post(TENANT, apply_limit=1, metrics={"applications": 50, "views": 10})

    outcome = asyncio.run(IntakePipeline(repo, RecordingNotifier()).submit_application(_payload(post["id"])))

    assert (TENANT, outcome.application_id) in repo.applications


def test_zero_apply_limit_leaves_post_uncapped() -> None:
    repo = InMemoryRepository()
    post = repo.add_post(TENANT, apply_limit=0)
    pipeline = IntakePipeline(repo, RecordingNotifier())

    asyncio.run(pipeline.submit_application(_payload(post["id"], applicant=_applicant("one@example.com"))))
    asyncio.run(pipeline.submit_application(_payload(post["id"], applicant=_applicant("two@example.com"))))

    assert len(repo.applications) == 2


@pytest.mark.parametrize(
    ("post_kwargs", "expected_error", "message"),
    [
        ({"status": "draft"}, PostNotAcceptingError, "This job posting is not currently accepting applications"),
        ({"status": "paused"}, PostNotAcceptingError, "This job posting is not currently accepting applications"),
        ({"visibility": "private"}, PostNotPublicError, "This job posting is not publicly accessible"),
        ({"visibility": "restricted"}, PostNotPublicError, "This job posting is not publicly accessible"),
    ],
)
def test_post_lifecycle_gates_reject_without_writes(
    post_kwargs: dict[str, Any],
    expected_error: type[Exception],
    message: str,
) -> None:
    repo = InMemoryRepository()
    post = repo.add_post(TENANT, **post_kwargs)

    with pytest.raises(expected_error) as excinfo:
        asyncio.run(IntakePipeline(repo, RecordingNotifier()).submit_application(_payload(post["id"])))

    assert str(excinfo.value) == message
    assert _total_writes(repo) == 0


def test_unknown_post_is_not_found() -> None:
    repo = InMemoryRepository()

    with pytest.raises(PostNotFoundError) as excinfo:
        asyncio.run(IntakePipeline(repo, RecordingNotifier()).submit_application(_payload("missing-post")))

    assert str(excinfo.value) == "Jobs board post missing-post not found"


def test_posts_are_scoped_to_their_tenant() -> None:
    repo = InMemoryRepository()
    post = repo.add_post("tenant-b")

    with pytest.raises(PostNotFoundError):
        asyncio.run(IntakePipeline(repo, RecordingNotifier()).submit_application(_payload(post["id"])))


def test_invalid_payload_fails_before_any_io(monkeypatch: pytest.MonkeyPatch) -> None:
    repo = InMemoryRepository()
    post = repo.add_post(TENANT)

    async def _unexpected_read(*_: Any, **__: Any) -> dict[str, Any]:
        raise AssertionError("validation must not touch the store")

    monkeypatch.setattr(repo, "get_post", _unexpected_read)

    with pytest.raises(IntakeValidationError) as excinfo:
        asyncio.run(
            IntakePipeline(repo, RecordingNotifier()).submit_application(
                _payload(post["id"], applicant=_applicant("not-an-email"), workAuth="tourist")
            )
        )

    fields = {violation.field for violation in excinfo.value.violations}
    assert fields == {"applicant.email", "workAuth"}
    assert _total_writes(repo) == 0


def test_store_failure_before_write_is_internal_error(monkeypatch: pytest.MonkeyPatch) -> None:
    repo = InMemoryRepository()
    post = repo.add_post(TENANT)

    async def _unavailable(*_: Any, **__: Any) -> list[dict[str, Any]]:
        raise RepositoryUnavailableError("database unavailable")

    monkeypatch.setattr(repo, "list_applications", _unavailable)

    with pytest.raises(IntakeInternalError):
        asyncio.run(IntakePipeline(repo, RecordingNotifier()).submit_application(_payload(post["id"])))

    assert _total_writes(repo) == 0


def test_notifier_failure_does_not_fail_the_request() -> None:
    repo = InMemoryRepository()
    post = repo.add_post(TENANT)

    outcome = asyncio.run(IntakePipeline(repo, RecordingNotifier(fail=True)).submit_application(_payload(post["id"])))

    assert [failure.stage for failure in outcome.failed_stages] == ["notify"]
    assert (TENANT, outcome.application_id) in repo.applications
    assert (TENANT, outcome.candidate_id) in repo.candidates
    assert len(repo.events) == 1


def test_event_failure_is_reported_but_later_stages_still_run(monkeypatch: pytest.MonkeyPatch) -> None:
    repo = InMemoryRepository()
    post = repo.add_post(TENANT)
    notifier = RecordingNotifier()

    async def _sink_down(_: dict[str, Any]) -> str:
        raise RepositoryUnavailableError("event sink unavailable")

    monkeypatch.setattr(repo, "append_event", _sink_down)

    outcome = asyncio.run(IntakePipeline(repo, notifier).submit_application(_payload(post["id"])))

    assert [failure.stage for failure in outcome.failed_stages] == ["event"]
    assert outcome.event_id is None
    assert repo.applications[(TENANT, outcome.application_id)]["candidate_id"] == outcome.candidate_id
    assert len(notifier.sent) == 1


def test_failed_backlink_leaves_application_unlinked_for_repair(monkeypatch: pytest.MonkeyPatch) -> None:
    repo = InMemoryRepository()
    post = repo.add_post(TENANT)

    async def _patch_fails(*_: Any, **__: Any) -> None:
        raise RepositoryUnavailableError("write timeout")

    monkeypatch.setattr(repo, "update_application", _patch_fails)

    outcome = asyncio.run(IntakePipeline(repo, RecordingNotifier()).submit_application(_payload(post["id"])))

    assert [failure.stage for failure in outcome.failed_stages] == ["profile"]
    assert outcome.candidate_id is None
    assert repo.applications[(TENANT, outcome.application_id)]["candidate_id"] is None
    assert len(repo.candidates) == 1


def test_concurrent_duplicates_race_through_without_serialization() -> None:
    repo = InMemoryRepository()
    post = repo.add_post(TENANT)
    pipeline = IntakePipeline(repo, RecordingNotifier())

    async def _submit_twice() -> list[Any]:
        return await asyncio.gather(
            pipeline.submit_application(_payload(post["id"])),
            pipeline.submit_application(_payload(post["id"])),
            return_exceptions=True,
        )

    results = asyncio.run(_submit_twice())

    # Admission is read-then-write; both requests pass the duplicate guard.
    assert len(repo.applications) == 2
    assert all(not isinstance(result, Exception) for result in results)
    # Both increments started from the same snapshot, so the advisory counter lags.
    assert repo.posts[(TENANT, post["id"])]["metrics"]["applications"] == 1

    asyncio.run(RepairService(repo, grace_seconds=0).recount_post_metrics(limit=10))
    assert repo.posts[(TENANT, post["id"])]["metrics"]["applications"] == 2


def test_admission_locks_serialize_concurrent_duplicates() -> None:
    repo = InMemoryRepository()
    post = repo.add_post(TENANT)
    pipeline = IntakePipeline(repo, RecordingNotifier(), admission_locks=AdmissionLocks())

    async def _submit_twice() -> list[Any]:
        return await asyncio.gather(
            pipeline.submit_application(_payload(post["id"])),
            pipeline.submit_application(_payload(post["id"])),
            return_exceptions=True,
        )

    results = asyncio.run(_submit_twice())

    assert len(repo.applications) == 1
    assert sum(isinstance(result, DuplicateApplicationError) for result in results) == 1


def test_admission_locks_hold_capacity_boundary() -> None:
    repo = InMemoryRepository()
    post = repo.add_post(TENANT, apply_limit=1)
    pipeline = IntakePipeline(repo, RecordingNotifier(), admission_locks=AdmissionLocks())

    async def _submit_many() -> list[Any]:
        return await asyncio.gather(
            *(
                pipeline.submit_application(_payload(post["id"], applicant=_applicant(f"user{index}@example.com")))
                for index in range(3)
            ),
            return_exceptions=True,
        )

    results = asyncio.run(_submit_many())

    assert len(repo.applications) == 1
    assert sum(isinstance(result, CapacityExceededError) for result in results) == 2
