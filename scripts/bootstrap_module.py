#!/usr/bin/env python3
"""Emit deterministic SQL registering a machine module and its API key hash."""

from __future__ import annotations

import argparse
import hashlib

DEFAULT_SCOPES = ("maintenance:write",)


def _quote_sql(value: str) -> str:
    escaped = value.replace("'", "''")
    return f"'{escaped}'"


def render_sql(*, module_id: str, api_key: str, scopes: list[str], kind: str) -> str:
    key_hash = hashlib.sha256(api_key.encode("utf-8")).hexdigest()
    module_value = _quote_sql(module_id)
    scopes_value = "array[" + ", ".join(_quote_sql(scope) for scope in scopes) + "]::text[]"

    return f"""-- Machine module bootstrap SQL
-- Run against the intake database after db/migrations have been applied.

insert into modules (module_id, kind, scopes, enabled)
values ({module_value}, {_quote_sql(kind)}, {scopes_value}, true)
on conflict (module_id) do update
set scopes = excluded.scopes, kind = excluded.kind, enabled = true;

update module_credentials
set is_active = false, revoked_at = now()
where module_id = (select id from modules where module_id = {module_value})
  and revoked_at is null;

insert into module_credentials (module_id, key_hash)
select id, {_quote_sql(key_hash)}
from modules
where module_id = {module_value};
"""


def _parse_scopes(raw: str) -> list[str]:
    return [chunk.strip() for chunk in raw.split(",") if chunk.strip()]


def main() -> None:
    parser = argparse.ArgumentParser(description="Emit SQL to register a machine module credential.")
    parser.add_argument("--module-id", required=True, help="Value sent in the X-Module-Id header")
    parser.add_argument("--api-key", required=True, help="Plain API key; only its SHA-256 hash is emitted")
    parser.add_argument(
        "--scopes",
        default=",".join(DEFAULT_SCOPES),
        help="Comma separated scopes granted to the module",
    )
    parser.add_argument("--kind", default="maintenance", help="Module kind label")
    args = parser.parse_args()

    scopes = _parse_scopes(args.scopes)
    if not scopes:
        parser.error("--scopes must list at least one scope")

    print(render_sql(module_id=args.module_id, api_key=args.api_key, scopes=scopes, kind=args.kind))


if __name__ == "__main__":
    main()
