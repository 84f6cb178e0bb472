from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from intake_api.core.config import get_settings


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when a write violates a constraint."""


@dataclass(slots=True)
class MachineCredentialRecord:
    module_db_id: str
    module_id: str
    scopes: list[str]
    key_hash: str


POST_UPDATABLE_FIELDS = {"title", "visibility", "status", "apply_limit", "metrics", "updated_at", "updated_by"}
APPLICATION_UPDATABLE_FIELDS = {"status", "candidate_id", "updated_at", "updated_by"}
_JSONB_FIELDS = {"metrics"}
_UUID_FIELDS = {"candidate_id"}

_APPLICATION_COLUMNS = """
  id::text as id,
  tenant_id,
  post_id::text as post_id,
  mode,
  job_order_id,
  applicant_name,
  applicant_email,
  applicant_email_normalized,
  applicant_phone,
  resume_url,
  work_auth,
  answers,
  source,
  utm,
  referral_code,
  consents,
  status,
  candidate_id::text as candidate_id,
  search_keywords,
  created_at,
  updated_at,
  created_by,
  updated_by
"""


class PostgresRepository:
    """Tenant-scoped document access for the intake pipeline.

    Every call is a single statement committed on its own. The pipeline treats
    these writes as a saga; nothing here spans documents in one transaction.
    """

    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def ping(self) -> None:
        pool = await self._get_pool()
        try:
            await pool.fetchval("select 1")
        except (OSError, asyncpg.PostgresError) as exc:
            raise RepositoryUnavailableError("database unavailable") from exc

    async def get_machine_credentials(self, module_id: str) -> list[MachineCredentialRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              m.id::text as module_db_id,
              m.module_id,
              m.scopes,
              mc.key_hash
            from modules m
            join module_credentials mc on mc.module_id = m.id
            where m.module_id = $1
              and m.enabled = true
              and mc.is_active = true
              and mc.revoked_at is null
              and (mc.expires_at is null or mc.expires_at > now())
            """,
            module_id,
        )
        return [
            MachineCredentialRecord(
                module_db_id=row["module_db_id"],
                module_id=row["module_id"],
                scopes=list(row["scopes"] or []),
                key_hash=row["key_hash"],
            )
            for row in rows
        ]

    async def get_post(self, tenant_id: str, post_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                """
                select
                  id::text as id,
                  tenant_id,
                  title,
                  visibility,
                  status,
                  apply_limit,
                  mode,
                  job_order_id,
                  owner_id,
                  metrics,
                  created_at,
                  updated_at,
                  updated_by
                from jobs_board_posts
                where tenant_id = $1 and id = $2::uuid
                """,
                tenant_id,
                post_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("post not found") from exc
        if not row:
            raise RepositoryNotFoundError("post not found")
        return {
            "id": row["id"],
            "tenant_id": row["tenant_id"],
            "title": row["title"],
            "visibility": row["visibility"],
            "status": row["status"],
            "apply_limit": row["apply_limit"],
            "mode": row["mode"],
            "job_order_id": row["job_order_id"],
            "owner_id": row["owner_id"],
            "metrics": self._coerce_json_dict(row["metrics"]),
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
            "updated_by": row["updated_by"],
        }

    async def update_post(self, tenant_id: str, post_id: str, fields: dict[str, Any]) -> None:
        await self._update_fields(
            table="jobs_board_posts",
            allowed=POST_UPDATABLE_FIELDS,
            tenant_id=tenant_id,
            entity_id=post_id,
            fields=fields,
            not_found="post not found",
        )

    async def list_applications(
        self,
        tenant_id: str,
        post_id: str,
        *,
        email: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                f"""
                select {_APPLICATION_COLUMNS}
                from applications
                where tenant_id = $1
                  and post_id = $2::uuid
                  and ($3::text is null or applicant_email_normalized = lower($3::text))
                order by created_at asc
                limit $4
                """,
                tenant_id,
                post_id,
                email,
                limit,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return []
        return [self._application_row_to_dict(row) for row in rows]

    async def count_applications(self, tenant_id: str, post_id: str) -> int:
        pool = await self._get_pool()
        try:
            value = await pool.fetchval(
                "select count(*) from applications where tenant_id = $1 and post_id = $2::uuid",
                tenant_id,
                post_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return 0
        return int(value or 0)

    async def create_application(self, tenant_id: str, application: dict[str, Any]) -> str:
        pool = await self._get_pool()
        applicant = application.get("external_applicant") or {}
        try:
            row = await pool.fetchrow(
                """
                insert into applications (
                  tenant_id,
                  post_id,
                  mode,
                  job_order_id,
                  applicant_name,
                  applicant_email,
                  applicant_email_normalized,
                  applicant_phone,
                  resume_url,
                  work_auth,
                  answers,
                  source,
                  utm,
                  referral_code,
                  consents,
                  status,
                  search_keywords,
                  created_at,
                  updated_at,
                  created_by,
                  updated_by
                )
                values (
                  $1, $2::uuid, $3, $4, $5, $6, $7, $8, $9, $10, $11::jsonb,
                  $12, $13::jsonb, $14, $15, $16, $17, $18, $19, $20, $21
                )
                returning id::text as id
                """,
                tenant_id,
                application["post_id"],
                application.get("mode"),
                application.get("job_order_id"),
                applicant.get("name"),
                applicant.get("email"),
                application["applicant_email_normalized"],
                applicant.get("phone"),
                applicant.get("resume_url"),
                application["work_auth"],
                json.dumps(application.get("answers") or {}),
                application["source"],
                json.dumps(application.get("utm") or {}),
                application.get("referral_code"),
                list(application.get("consents") or []),
                application.get("status", "new"),
                list(application.get("search_keywords") or []),
                application["created_at"],
                application["updated_at"],
                application.get("created_by"),
                application.get("updated_by"),
            )
        except (pg_exc.ForeignKeyViolationError, pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryConflictError(str(exc)) from exc
        return row["id"]

    async def get_application(self, tenant_id: str, application_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"select {_APPLICATION_COLUMNS} from applications where tenant_id = $1 and id = $2::uuid",
                tenant_id,
                application_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("application not found") from exc
        if not row:
            raise RepositoryNotFoundError("application not found")
        return self._application_row_to_dict(row)

    async def update_application(self, tenant_id: str, application_id: str, fields: dict[str, Any]) -> None:
        await self._update_fields(
            table="applications",
            allowed=APPLICATION_UPDATABLE_FIELDS,
            tenant_id=tenant_id,
            entity_id=application_id,
            fields=fields,
            not_found="application not found",
        )

    async def create_candidate(self, tenant_id: str, candidate: dict[str, Any]) -> str:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                """
                insert into candidates (
                  tenant_id,
                  first_name,
                  last_name,
                  email,
                  phone,
                  resume_url,
                  work_auth,
                  source,
                  recruiter_owner_id,
                  status,
                  score,
                  source_application_id,
                  search_keywords,
                  created_at,
                  updated_at,
                  created_by,
                  updated_by
                )
                values ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12::uuid, $13, $14, $15, $16, $17)
                returning id::text as id
                """,
                tenant_id,
                candidate.get("first_name"),
                candidate.get("last_name"),
                candidate.get("email"),
                candidate.get("phone"),
                candidate.get("resume_url"),
                candidate.get("work_auth"),
                candidate.get("source"),
                candidate.get("recruiter_owner_id"),
                candidate.get("status"),
                candidate.get("score", 0),
                candidate.get("source_application_id"),
                list(candidate.get("search_keywords") or []),
                candidate["created_at"],
                candidate["updated_at"],
                candidate.get("created_by"),
                candidate.get("updated_by"),
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryConflictError(str(exc)) from exc
        return row["id"]

    async def find_candidate_for_application(self, tenant_id: str, application_id: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select
              id::text as id,
              tenant_id,
              first_name,
              last_name,
              email,
              phone,
              source,
              status,
              source_application_id::text as source_application_id
            from candidates
            where tenant_id = $1 and source_application_id = $2::uuid
            order by created_at asc
            limit 1
            """,
            tenant_id,
            application_id,
        )
        return dict(row) if row else None

    async def append_event(self, event: dict[str, Any]) -> str:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            insert into events (
              tenant_id,
              type,
              entity_type,
              entity_id,
              source,
              dedupe_key,
              payload,
              search_keywords,
              processed,
              retry_count,
              created_by,
              created_at
            )
            values ($1, $2, $3, $4, $5, $6, $7::jsonb, $8, $9, $10, $11, $12)
            on conflict (tenant_id, dedupe_key) do nothing
            returning id::text as id
            """,
            event["tenant_id"],
            event["type"],
            event["entity_type"],
            event["entity_id"],
            event.get("source"),
            event["dedupe_key"],
            json.dumps(event.get("payload") or {}),
            list(event.get("search_keywords") or []),
            bool(event.get("processed", False)),
            int(event.get("retry_count", 0)),
            event.get("created_by"),
            event["created_at"],
        )
        if row:
            return row["id"]

        existing = await pool.fetchval(
            "select id::text from events where tenant_id = $1 and dedupe_key = $2",
            event["tenant_id"],
            event["dedupe_key"],
        )
        if not existing:
            raise RepositoryConflictError("failed to resolve existing event after conflict")
        return existing

    async def list_events(self, tenant_id: str, *, entity_id: str | None = None) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              id::text as id,
              tenant_id,
              type,
              entity_type,
              entity_id,
              source,
              dedupe_key,
              payload,
              processed,
              retry_count,
              created_at
            from events
            where tenant_id = $1
              and ($2::text is null or entity_id = $2::text)
            order by created_at asc
            """,
            tenant_id,
            entity_id,
        )
        return [{**dict(row), "payload": self._coerce_json_dict(row["payload"])} for row in rows]

    async def list_unlinked_applications(self, *, older_than: datetime, limit: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_APPLICATION_COLUMNS}
            from applications
            where candidate_id is null
              and created_at < $1
            order by created_at asc
            limit $2
            """,
            older_than,
            limit,
        )
        return [self._application_row_to_dict(row) for row in rows]

    async def list_applications_missing_events(self, *, older_than: datetime, limit: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_APPLICATION_COLUMNS}
            from applications a
            where a.created_at < $1
              and not exists (
                select 1
                from events e
                where e.tenant_id = a.tenant_id
                  and e.entity_type = 'application'
                  and e.entity_id = a.id::text
                  and e.type = 'application.created'
              )
            order by a.created_at asc
            limit $2
            """,
            older_than,
            limit,
        )
        return [self._application_row_to_dict(row) for row in rows]

    async def list_post_application_counts(self, *, limit: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              p.tenant_id,
              p.id::text as post_id,
              p.metrics,
              count(a.id)::int as application_count
            from jobs_board_posts p
            left join applications a on a.tenant_id = p.tenant_id and a.post_id = p.id
            group by p.tenant_id, p.id, p.metrics
            having coalesce((p.metrics ->> 'applications')::int, 0) <> count(a.id)
            order by p.tenant_id, p.id
            limit $1
            """,
            limit,
        )
        return [
            {
                "tenant_id": row["tenant_id"],
                "post_id": row["post_id"],
                "metrics": self._coerce_json_dict(row["metrics"]),
                "application_count": row["application_count"],
            }
            for row in rows
        ]

    async def _update_fields(
        self,
        *,
        table: str,
        allowed: set[str],
        tenant_id: str,
        entity_id: str,
        fields: dict[str, Any],
        not_found: str,
    ) -> None:
        unknown = set(fields) - allowed
        if unknown:
            raise RepositoryConflictError(f"fields not updatable on {table}: {sorted(unknown)}")
        if not fields:
            return

        assignments: list[str] = []
        values: list[Any] = [tenant_id, entity_id]
        for name, value in fields.items():
            values.append(json.dumps(value) if name in _JSONB_FIELDS else value)
            cast = "::jsonb" if name in _JSONB_FIELDS else "::uuid" if name in _UUID_FIELDS else ""
            assignments.append(f"{name} = ${len(values)}{cast}")

        pool = await self._get_pool()
        try:
            result = await pool.execute(
                f"update {table} set {', '.join(assignments)} where tenant_id = $1 and id = $2::uuid",
                *values,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError(not_found) from exc
        if result.endswith(" 0"):
            raise RepositoryNotFoundError(not_found)

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("JB_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @classmethod
    def _application_row_to_dict(cls, row: asyncpg.Record) -> dict[str, Any]:
        return {
            "id": row["id"],
            "tenant_id": row["tenant_id"],
            "post_id": row["post_id"],
            "mode": row["mode"],
            "job_order_id": row["job_order_id"],
            "external_applicant": {
                "name": row["applicant_name"],
                "email": row["applicant_email"],
                "phone": row["applicant_phone"],
                "resume_url": row["resume_url"],
            },
            "applicant_email_normalized": row["applicant_email_normalized"],
            "work_auth": row["work_auth"],
            "answers": cls._coerce_json_dict(row["answers"]),
            "source": row["source"],
            "utm": cls._coerce_json_dict(row["utm"]),
            "referral_code": row["referral_code"],
            "consents": list(row["consents"] or []),
            "status": row["status"],
            "candidate_id": row["candidate_id"],
            "search_keywords": list(row["search_keywords"] or []),
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
            "created_by": row["created_by"],
            "updated_by": row["updated_by"],
        }

    @staticmethod
    def _coerce_json_dict(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return {}
        if not isinstance(value, dict):
            return {}
        return value


@lru_cache
def get_repository():
    settings = get_settings()
    if settings.repository_backend == "memory":
        from intake_api.services.store import InMemoryRepository

        return InMemoryRepository()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
