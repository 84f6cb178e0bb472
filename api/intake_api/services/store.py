from __future__ import annotations

import asyncio
import copy
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from intake_api.schemas.applications import PostStatus, PostVisibility
from intake_api.services.repository import (
    APPLICATION_UPDATABLE_FIELDS,
    POST_UPDATABLE_FIELDS,
    MachineCredentialRecord,
    RepositoryConflictError,
    RepositoryNotFoundError,
)


class InMemoryRepository:
    """Dict-backed store with the same surface as PostgresRepository.

    Every call yields to the event loop once, so concurrent requests interleave
    between reads and writes the way they do against a real database.
    """

    def __init__(self) -> None:
        self.posts: dict[tuple[str, str], dict[str, Any]] = {}
        self.applications: dict[tuple[str, str], dict[str, Any]] = {}
        self.candidates: dict[tuple[str, str], dict[str, Any]] = {}
        self.events: dict[str, dict[str, Any]] = {}
        self.credentials: dict[str, list[MachineCredentialRecord]] = {}

    def add_post(
        self,
        tenant_id: str,
        *,
        post_id: str | None = None,
        title: str = "Warehouse Associate",
        visibility: PostVisibility = "public",
        status: PostStatus = "posted",
        apply_limit: int | None = None,
        metrics: dict[str, Any] | None = None,
        mode: str = "evergreen",
        job_order_id: str | None = None,
        owner_id: str | None = None,
    ) -> dict[str, Any]:
        now = datetime.now(timezone.utc)
        post = {
            "id": post_id or str(uuid4()),
            "tenant_id": tenant_id,
            "title": title,
            "visibility": visibility,
            "status": status,
            "apply_limit": apply_limit,
            "mode": mode,
            "job_order_id": job_order_id,
            "owner_id": owner_id,
            "metrics": dict(metrics or {"applications": 0, "views": 0, "conversion_rate": 0.0}),
            "created_at": now,
            "updated_at": now,
            "updated_by": owner_id,
        }
        self.posts[(tenant_id, post["id"])] = post
        return post

    def add_machine_credentials(self, module_id: str, *, key_hash: str, scopes: list[str]) -> None:
        self.credentials.setdefault(module_id, []).append(
            MachineCredentialRecord(
                module_db_id=str(uuid4()),
                module_id=module_id,
                scopes=list(scopes),
                key_hash=key_hash,
            )
        )

    async def close(self) -> None:
        return None

    async def ping(self) -> None:
        return None

    async def get_machine_credentials(self, module_id: str) -> list[MachineCredentialRecord]:
        await asyncio.sleep(0)
        return list(self.credentials.get(module_id, []))

    async def get_post(self, tenant_id: str, post_id: str) -> dict[str, Any]:
        await asyncio.sleep(0)
        post = self.posts.get((tenant_id, post_id))
        if post is None:
            raise RepositoryNotFoundError("post not found")
        return copy.deepcopy(post)

    async def update_post(self, tenant_id: str, post_id: str, fields: dict[str, Any]) -> None:
        await asyncio.sleep(0)
        self._apply_update(self.posts, tenant_id, post_id, fields, POST_UPDATABLE_FIELDS, "post not found")

    async def list_applications(
        self,
        tenant_id: str,
        post_id: str,
        *,
        email: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        await asyncio.sleep(0)
        rows = [
            copy.deepcopy(row)
            for (row_tenant, _), row in self.applications.items()
            if row_tenant == tenant_id
            and row["post_id"] == post_id
            and (email is None or row["applicant_email_normalized"] == email.lower())
        ]
        rows.sort(key=lambda row: row["created_at"])
        return rows if limit is None else rows[:limit]

    async def count_applications(self, tenant_id: str, post_id: str) -> int:
        await asyncio.sleep(0)
        return sum(
            1
            for (row_tenant, _), row in self.applications.items()
            if row_tenant == tenant_id and row["post_id"] == post_id
        )

    async def create_application(self, tenant_id: str, application: dict[str, Any]) -> str:
        await asyncio.sleep(0)
        application_id = str(uuid4())
        self.applications[(tenant_id, application_id)] = {**copy.deepcopy(application), "id": application_id}
        return application_id

    async def get_application(self, tenant_id: str, application_id: str) -> dict[str, Any]:
        await asyncio.sleep(0)
        row = self.applications.get((tenant_id, application_id))
        if row is None:
            raise RepositoryNotFoundError("application not found")
        return copy.deepcopy(row)

    async def update_application(self, tenant_id: str, application_id: str, fields: dict[str, Any]) -> None:
        await asyncio.sleep(0)
        self._apply_update(
            self.applications,
            tenant_id,
            application_id,
            fields,
            APPLICATION_UPDATABLE_FIELDS,
            "application not found",
        )

    async def create_candidate(self, tenant_id: str, candidate: dict[str, Any]) -> str:
        await asyncio.sleep(0)
        candidate_id = str(uuid4())
        self.candidates[(tenant_id, candidate_id)] = {**copy.deepcopy(candidate), "id": candidate_id}
        return candidate_id

    async def find_candidate_for_application(self, tenant_id: str, application_id: str) -> dict[str, Any] | None:
        await asyncio.sleep(0)
        for (row_tenant, _), row in self.candidates.items():
            if row_tenant == tenant_id and row.get("source_application_id") == application_id:
                return copy.deepcopy(row)
        return None

    async def append_event(self, event: dict[str, Any]) -> str:
        await asyncio.sleep(0)
        for event_id, existing in self.events.items():
            if existing["tenant_id"] == event["tenant_id"] and existing["dedupe_key"] == event["dedupe_key"]:
                return event_id
        event_id = str(uuid4())
        self.events[event_id] = {**copy.deepcopy(event), "id": event_id}
        return event_id

    async def list_events(self, tenant_id: str, *, entity_id: str | None = None) -> list[dict[str, Any]]:
        await asyncio.sleep(0)
        return [
            copy.deepcopy(event)
            for event in self.events.values()
            if event["tenant_id"] == tenant_id and (entity_id is None or event["entity_id"] == entity_id)
        ]

    async def list_unlinked_applications(self, *, older_than: datetime, limit: int) -> list[dict[str, Any]]:
        await asyncio.sleep(0)
        rows = [
            copy.deepcopy(row)
            for row in self.applications.values()
            if row.get("candidate_id") is None and row["created_at"] < older_than
        ]
        rows.sort(key=lambda row: row["created_at"])
        return rows[:limit]

    async def list_applications_missing_events(self, *, older_than: datetime, limit: int) -> list[dict[str, Any]]:
        await asyncio.sleep(0)
        evented = {
            (event["tenant_id"], event["entity_id"])
            for event in self.events.values()
            if event["entity_type"] == "application" and event["type"] == "application.created"
        }
        rows = [
            copy.deepcopy(row)
            for row in self.applications.values()
            if row["created_at"] < older_than and (row["tenant_id"], row["id"]) not in evented
        ]
        rows.sort(key=lambda row: row["created_at"])
        return rows[:limit]

    async def list_post_application_counts(self, *, limit: int) -> list[dict[str, Any]]:
        await asyncio.sleep(0)
        drifted: list[dict[str, Any]] = []
        for (tenant_id, post_id), post in sorted(self.posts.items()):
            actual = sum(
                1
                for (row_tenant, _), row in self.applications.items()
                if row_tenant == tenant_id and row["post_id"] == post_id
            )
            recorded = (post.get("metrics") or {}).get("applications") or 0
            if recorded != actual:
                drifted.append(
                    {
                        "tenant_id": tenant_id,
                        "post_id": post_id,
                        "metrics": copy.deepcopy(post.get("metrics") or {}),
                        "application_count": actual,
                    }
                )
        return drifted[:limit]

    @staticmethod
    def _apply_update(
        table: dict[tuple[str, str], dict[str, Any]],
        tenant_id: str,
        entity_id: str,
        fields: dict[str, Any],
        allowed: set[str],
        not_found: str,
    ) -> None:
        unknown = set(fields) - allowed
        if unknown:
            raise RepositoryConflictError(f"fields not updatable: {sorted(unknown)}")
        row = table.get((tenant_id, entity_id))
        if row is None:
            raise RepositoryNotFoundError(not_found)
        row.update(copy.deepcopy(fields))
