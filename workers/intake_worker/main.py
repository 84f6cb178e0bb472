from __future__ import annotations

import asyncio
import logging
import random
import time

from opentelemetry import trace

from intake_worker.core.config import get_settings
from intake_worker.core.telemetry import (
    configure_worker_logging,
    setup_worker_telemetry,
    shutdown_worker_telemetry,
)
from intake_worker.jobs.repair import build_repair_tasks, run_due_tasks
from intake_worker.services.maintenance_client import MaintenanceClient

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def run_worker(*, max_cycles: int | None = None) -> None:
    settings = get_settings()
    configure_worker_logging(settings.log_level)
    telemetry_runtime = setup_worker_telemetry(settings)
    client = MaintenanceClient(
        base_url=settings.api_base_url,
        module_id=settings.module_id,
        api_key=settings.api_key,
        timeout_seconds=settings.request_timeout_seconds,
    )
    tasks = build_repair_tasks(client, settings)

    backoff = settings.poll_interval_seconds
    cycles = 0

    try:
        while max_cycles is None or cycles < max_cycles:
            cycles += 1
            try:
                with tracer.start_as_current_span("worker.poll_cycle"):
                    await run_due_tasks(tasks, now=time.monotonic(), batch_size=settings.repair_batch_size)
                backoff = settings.poll_interval_seconds
                await asyncio.sleep(settings.poll_interval_seconds)
            except Exception as exc:  # pragma: no cover - network robustness
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
                logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        shutdown_worker_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(run_worker())
