#!/usr/bin/env python3
"""Emit SQL that grants a village-links admin role to an existing Supabase user."""

from __future__ import annotations

import argparse

ROLES = ("content_manager", "admin", "super_admin")


def _quote_sql(value: str) -> str:
    escaped = value.replace("'", "''")
    return f"'{escaped}'"


def render_sql(*, role: str, user_id: str | None, email: str | None) -> str:
    role_value = _quote_sql(role)

    if user_id:
        target_where = f"id = {_quote_sql(user_id)}::uuid"
    else:
        assert email is not None
        target_where = f"id = (select id from auth.users where lower(email) = lower({_quote_sql(email)}))"

    return f"""-- Village links role bootstrap SQL
-- Run in the Supabase SQL editor or another privileged Postgres session.
-- The profile row must already exist for the target user.

update profiles
set role = {role_value}
where {target_where};
"""


def main() -> None:
    parser = argparse.ArgumentParser(description="Emit SQL to assign a village-links role in profiles.")
    parser.add_argument(
        "--role",
        choices=ROLES,
        default="admin",
        help="Role stored in profiles.role",
    )
    identity_group = parser.add_mutually_exclusive_group(required=True)
    identity_group.add_argument("--user-id", help="Supabase auth.users id (UUID)")
    identity_group.add_argument("--email", help="Supabase auth.users email")
    args = parser.parse_args()

    print(render_sql(role=args.role, user_id=args.user_id, email=args.email))


if __name__ == "__main__":
    main()
