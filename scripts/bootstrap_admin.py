#!/usr/bin/env python3
"""Emit deterministic SQL for editorial role and worker module bootstrap."""

from __future__ import annotations

import argparse
import hashlib

EDITORIAL_ROLES = ["viewer", "editor", "reviewer", "expert", "admin"]
DEFAULT_MODULE_SCOPES = ["jobs:read", "jobs:write"]


def _quote_sql(value: str) -> str:
    escaped = value.replace("'", "''")
    return f"'{escaped}'"


def render_role_sql(*, role: str, user_id: str | None, email: str | None) -> str:
    role_value = _quote_sql(role)

    if user_id:
        target_where = f"id = {_quote_sql(user_id)}::uuid"
    else:
        if email is None:
            raise ValueError("user_id or email is required")
        target_where = f"email = {_quote_sql(email)}"

    return f"""-- Supabase editorial role bootstrap SQL
-- Run this in the Supabase SQL editor (or equivalent privileged Postgres session).

update auth.users
set raw_app_meta_data = coalesce(raw_app_meta_data, '{{}}'::jsonb) || jsonb_build_object('role', {role_value})
where {target_where};
"""


def render_module_sql(*, module_id: str, name: str, api_key: str, scopes: list[str]) -> str:
    key_hash = hashlib.sha256(api_key.encode("utf-8")).hexdigest()
    scope_list = ", ".join(_quote_sql(scope) for scope in scopes)

    return f"""-- Worker module credential bootstrap SQL

insert into modules (module_id, name, scopes)
values ({_quote_sql(module_id)}, {_quote_sql(name)}, array[{scope_list}]::text[])
on conflict (module_id) do update
set name = excluded.name, scopes = excluded.scopes, enabled = true, updated_at = now();

insert into module_credentials (module_id, key_hash)
select id, {_quote_sql(key_hash)}
from modules
where module_id = {_quote_sql(module_id)};
"""


def main() -> None:
    parser = argparse.ArgumentParser(description="Emit SQL to bootstrap editorial roles or worker modules.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    role_parser = subparsers.add_parser("role", help="Assign an editorial role to a Supabase user")
    role_parser.add_argument(
        "--role",
        choices=EDITORIAL_ROLES,
        default="admin",
        help="Role to assign in auth.users.raw_app_meta_data.role",
    )
    identity_group = role_parser.add_mutually_exclusive_group(required=True)
    identity_group.add_argument("--user-id", help="Supabase auth.users id (UUID)")
    identity_group.add_argument("--email", help="Supabase auth.users email")

    module_parser = subparsers.add_parser("module", help="Register a machine module and its API key")
    module_parser.add_argument("--module-id", required=True, help="Value sent in the X-Module-Id header")
    module_parser.add_argument("--name", help="Display name; defaults to the module id")
    module_parser.add_argument("--api-key", required=True, help="Plain API key; only its sha256 is stored")
    module_parser.add_argument(
        "--scope",
        action="append",
        dest="scopes",
        help="Scope to grant; repeatable (default: jobs:read, jobs:write)",
    )
    args = parser.parse_args()

    if args.command == "role":
        print(render_role_sql(role=args.role, user_id=args.user_id, email=args.email))
    else:
        print(
            render_module_sql(
                module_id=args.module_id,
                name=args.name or args.module_id,
                api_key=args.api_key,
                scopes=args.scopes or DEFAULT_MODULE_SCOPES,
            )
        )


if __name__ == "__main__":
    main()
