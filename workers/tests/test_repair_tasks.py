from __future__ import annotations

import asyncio
from typing import Any

import pytest

from intake_worker.core.config import Settings
from intake_worker.jobs.repair import RepairTask, build_repair_tasks, run_due_tasks


class FakeClient:
    def __init__(self) -> None:
        self.calls: list[tuple[str, int]] = []

    async def link_candidates(self, limit: int = 100) -> dict[str, Any]:
        self.calls.append(("link-candidates", limit))
        return {"task": "link-candidates", "scanned": 2, "repaired": 2, "failed": 0}

    async def replay_events(self, limit: int = 100) -> dict[str, Any]:
        self.calls.append(("replay-events", limit))
        return {"task": "replay-events", "scanned": 0, "repaired": 0, "failed": 0}

    async def recount_metrics(self, limit: int = 100) -> dict[str, Any]:
        self.calls.append(("recount-metrics", limit))
        return {"task": "recount-metrics", "scanned": 1, "repaired": 0, "failed": 1}


def _settings() -> Settings:
    return Settings(
        link_candidates_interval_seconds=60,
        replay_events_interval_seconds=120,
        recount_metrics_interval_seconds=900,
    )


def test_first_cycle_runs_every_task_in_order() -> None:
    client = FakeClient()
    tasks = build_repair_tasks(client, _settings())

    results = asyncio.run(run_due_tasks(tasks, now=1000.0, batch_size=50))

    assert client.calls == [("link-candidates", 50), ("replay-events", 50), ("recount-metrics", 50)]
    assert list(results) == ["link-candidates", "replay-events", "recount-metrics"]
    assert results["link-candidates"]["repaired"] == 2


def test_tasks_wait_for_their_interval() -> None:
    client = FakeClient()
    tasks = build_repair_tasks(client, _settings())
    asyncio.run(run_due_tasks(tasks, now=1000.0, batch_size=50))
    client.calls.clear()

    asyncio.run(run_due_tasks(tasks, now=1059.0, batch_size=50))
    assert client.calls == []

    asyncio.run(run_due_tasks(tasks, now=1120.0, batch_size=50))
    assert [name for name, _ in client.calls] == ["link-candidates", "replay-events"]


def test_failed_task_stays_due() -> None:
    async def _failing(limit: int) -> dict[str, Any]:
        raise RuntimeError("api unavailable")

    task = RepairTask("replay-events", 120, _failing)

    with pytest.raises(RuntimeError):
        asyncio.run(run_due_tasks([task], now=500.0, batch_size=10))

    assert task.last_run_at is None
    assert task.is_due(501.0)


def test_is_due() -> None:
    async def _noop(limit: int) -> dict[str, Any]:
        return {}

    task = RepairTask("recount-metrics", 900, _noop, last_run_at=100.0)

    assert not task.is_due(999.0)
    assert task.is_due(1000.0)
