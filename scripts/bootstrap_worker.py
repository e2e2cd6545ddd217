#!/usr/bin/env python3
"""Emit deterministic SQL that registers a machine module and one API key."""

from __future__ import annotations

import argparse
import hashlib
import secrets

DEFAULT_SCOPES = {
    "worker": ["queue:claim", "broker:check", "maintenance:write"],
    "connector": ["queue:write"],
}


def _quote_sql(value: str) -> str:
    escaped = value.replace("'", "''")
    return f"'{escaped}'"


def _text_array(values: list[str]) -> str:
    if not values:
        return "'{}'::text[]"
    return f"array[{', '.join(_quote_sql(value) for value in values)}]::text[]"


def render_sql(*, module_id: str, name: str, kind: str, scopes: list[str], api_key: str, actor: str) -> str:
    module_value = _quote_sql(module_id)
    key_hash = hashlib.sha256(api_key.encode("utf-8")).hexdigest()
    key_hint = _quote_sql(api_key[:6])
    scopes_value = _text_array(scopes)

    return f"""-- Machine module credential bootstrap SQL
-- Run this in a privileged Postgres session. Only the sha256 of the key is stored.

insert into modules (module_id, name, kind, scopes)
values ({module_value}, {_quote_sql(name)}, {_quote_sql(kind)}, {scopes_value})
on conflict (module_id) do update
set name = excluded.name,
    kind = excluded.kind,
    scopes = excluded.scopes,
    enabled = true,
    updated_at = now();

insert into module_credentials (module_id, key_hint, key_hash)
select id, {key_hint}, {_quote_sql(key_hash)}
from modules
where module_id = {module_value}
on conflict (module_id, key_hint) do update
set key_hash = excluded.key_hash,
    is_active = true,
    revoked_at = null;

insert into provenance_events (entity_type, entity_id, event_type, actor_type, actor_id, payload)
values ('module', {module_value}, 'module_credential_bootstrap', 'system', {_quote_sql(actor)}, jsonb_build_object('kind', {_quote_sql(kind)}, 'scopes', to_jsonb({scopes_value})));
"""


def _parse_scopes(raw: str | None, kind: str) -> list[str]:
    if raw is None:
        return list(DEFAULT_SCOPES[kind])
    return sorted({scope.strip() for scope in raw.split(",") if scope.strip()})


def main() -> None:
    parser = argparse.ArgumentParser(description="Emit SQL to register a worker or connector credential.")
    parser.add_argument("--module-id", required=True, help="Value workers send in X-Module-Id")
    parser.add_argument("--name", help="Display name (defaults to the module id)")
    parser.add_argument("--kind", choices=sorted(DEFAULT_SCOPES), default="worker")
    parser.add_argument("--scopes", help="Comma-separated scopes (defaults depend on --kind)")
    parser.add_argument("--api-key", help="API key to register; generated when omitted")
    parser.add_argument("--actor", default="system", help="Actor label for the provenance event")
    args = parser.parse_args()

    api_key = args.api_key or secrets.token_urlsafe(32)
    if not args.api_key:
        print(f"-- generated api key (store it now, it is not recoverable): {api_key}")
    print(
        render_sql(
            module_id=args.module_id,
            name=args.name or args.module_id,
            kind=args.kind,
            scopes=_parse_scopes(args.scopes, args.kind),
            api_key=api_key,
            actor=args.actor,
        )
    )


if __name__ == "__main__":
    main()
