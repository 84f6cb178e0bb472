from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from opentelemetry import trace

from intake_worker.core.config import Settings
from intake_worker.core.telemetry import annotate_repair_span
from intake_worker.services.maintenance_client import MaintenanceClient

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(slots=True)
class RepairTask:
    name: str
    interval_seconds: float
    run: Callable[[int], Awaitable[dict[str, Any]]]
    last_run_at: float | None = None

    def is_due(self, now: float) -> bool:
        return self.last_run_at is None or now - self.last_run_at >= self.interval_seconds


def build_repair_tasks(client: MaintenanceClient, settings: Settings) -> list[RepairTask]:
    # Candidates are relinked before events are replayed and metrics recounted.
    return [
        RepairTask("link-candidates", settings.link_candidates_interval_seconds, client.link_candidates),
        RepairTask("replay-events", settings.replay_events_interval_seconds, client.replay_events),
        RepairTask("recount-metrics", settings.recount_metrics_interval_seconds, client.recount_metrics),
    ]


async def run_due_tasks(tasks: list[RepairTask], *, now: float, batch_size: int) -> dict[str, dict[str, Any]]:
    """Run every due task once. A failing task is retried on the next cycle, not skipped."""
    results: dict[str, dict[str, Any]] = {}
    for task in tasks:
        if not task.is_due(now):
            continue
        with tracer.start_as_current_span("worker.repair_task") as span:
            result = await task.run(batch_size)
            annotate_repair_span(span, task.name, result)
        task.last_run_at = now
        results[task.name] = result
        if result.get("repaired") or result.get("failed"):
            logger.info(
                "repair task=%s scanned=%s repaired=%s failed=%s",
                task.name,
                result.get("scanned"),
                result.get("repaired"),
                result.get("failed"),
            )
    return results
