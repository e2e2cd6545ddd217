#!/usr/bin/env python3
"""Emit deterministic SQL that assigns a dispatcher/admin role and tenant to a Supabase user."""

from __future__ import annotations

import argparse


def _quote_sql(value: str) -> str:
    escaped = value.replace("'", "''")
    return f"'{escaped}'"


def render_sql(*, role: str, tenant_id: str | None, user_id: str | None, email: str | None, actor: str) -> str:
    role_value = _quote_sql(role)
    metadata = f"jsonb_build_object('role', {role_value})"
    if tenant_id:
        metadata = f"jsonb_build_object('role', {role_value}, 'tenant_id', {_quote_sql(tenant_id)})"

    if user_id:
        target_where = f"id = {_quote_sql(user_id)}::uuid"
        target_key, target_value = "user_id", _quote_sql(user_id)
    else:
        assert email is not None
        target_where = f"email = {_quote_sql(email)}"
        target_key, target_value = "email", _quote_sql(email)

    return f"""-- Supabase dispatcher/admin bootstrap SQL
-- Run this in the Supabase SQL editor (or equivalent privileged Postgres session).

update auth.users
set raw_app_meta_data = coalesce(raw_app_meta_data, '{{}}'::jsonb) || {metadata}
where {target_where};

insert into provenance_events (entity_type, event_type, actor_type, actor_id, payload)
values ('bootstrap', 'human_role_bootstrap', 'system', {_quote_sql(actor)}, jsonb_build_object('{target_key}', {target_value}) || {metadata});
"""


def main() -> None:
    parser = argparse.ArgumentParser(description="Emit SQL to bootstrap a Supabase dispatcher or admin.")
    parser.add_argument(
        "--role",
        choices=["dispatcher", "admin"],
        default="dispatcher",
        help="Role to assign in auth.users.raw_app_meta_data.role",
    )
    parser.add_argument("--tenant-id", help="Tenant UUID the user dispatches for")
    identity_group = parser.add_mutually_exclusive_group(required=True)
    identity_group.add_argument("--user-id", help="Supabase auth.users id (UUID)")
    identity_group.add_argument("--email", help="Supabase auth.users email")
    parser.add_argument("--actor", default="system", help="Actor label for the provenance event")
    args = parser.parse_args()

    if args.role == "dispatcher" and not args.tenant_id:
        parser.error("--tenant-id is required for dispatchers")

    print(
        render_sql(
            role=args.role,
            tenant_id=args.tenant_id,
            user_id=args.user_id,
            email=args.email,
            actor=args.actor,
        )
    )


if __name__ == "__main__":
    main()
