from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from intake_api.services.intake import emit_created_event, link_candidate, materialize_candidate
from intake_api.services.records import compute_post_metrics

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RepairResult:
    scanned: int = 0
    repaired: int = 0
    failed: int = 0


class RepairService:
    """Compensating pass for intake sagas that stopped after the application write.

    Only touches records older than the grace window so in-flight requests are
    never raced.
    """

    def __init__(
        self,
        repository: Any,
        *,
        grace_seconds: int = 300,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.repository = repository
        self.grace_seconds = max(0, grace_seconds)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def link_unlinked_applications(self, *, limit: int) -> RepairResult:
        now = self._clock()
        rows = await self.repository.list_unlinked_applications(older_than=self._cutoff(now), limit=limit)
        result = RepairResult(scanned=len(rows))
        for application in rows:
            try:
                existing = await self.repository.find_candidate_for_application(
                    application["tenant_id"], application["id"]
                )
                if existing:
                    await link_candidate(self.repository, application, existing["id"], now=now)
                else:
                    await materialize_candidate(self.repository, application, now=now)
            except Exception:
                result.failed += 1
                logger.exception(
                    "candidate relink failed tenant=%s application_id=%s",
                    application["tenant_id"],
                    application["id"],
                )
                continue
            result.repaired += 1
        _log_pass("candidate relink", result)
        return result

    async def replay_missing_events(self, *, limit: int) -> RepairResult:
        rows = await self.repository.list_applications_missing_events(
            older_than=self._cutoff(self._clock()),
            limit=limit,
        )
        result = RepairResult(scanned=len(rows))
        for application in rows:
            try:
                await emit_created_event(self.repository, application)
            except Exception:
                result.failed += 1
                logger.exception(
                    "event replay failed tenant=%s application_id=%s",
                    application["tenant_id"],
                    application["id"],
                )
                continue
            result.repaired += 1
        _log_pass("event replay", result)
        return result

    async def recount_post_metrics(self, *, limit: int) -> RepairResult:
        rows = await self.repository.list_post_application_counts(limit=limit)
        result = RepairResult(scanned=len(rows))
        for row in rows:
            metrics = compute_post_metrics(row.get("metrics"), applications=int(row["application_count"]))
            try:
                await self.repository.update_post(
                    row["tenant_id"],
                    row["post_id"],
                    {"metrics": metrics, "updated_at": self._clock(), "updated_by": "maintenance"},
                )
            except Exception:
                result.failed += 1
                logger.exception("metrics recount failed tenant=%s post=%s", row["tenant_id"], row["post_id"])
                continue
            result.repaired += 1
        _log_pass("metrics recount", result)
        return result

    def _cutoff(self, now: datetime) -> datetime:
        return now - timedelta(seconds=self.grace_seconds)


def _log_pass(name: str, result: RepairResult) -> None:
    logger.info(
        "%s pass scanned=%s repaired=%s failed=%s",
        name,
        result.scanned,
        result.repaired,
        result.failed,
    )
