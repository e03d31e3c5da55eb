#!/usr/bin/env python3
"""Emit deterministic SQL that seeds a catalog policy version."""

from __future__ import annotations

import argparse
import json


def _quote_sql(value: str) -> str:
    escaped = value.replace("'", "''")
    return f"'{escaped}'"


def _country_list(raw: str | None) -> list[str]:
    if not raw:
        return []
    return sorted({code.strip().upper() for code in raw.split(",") if code.strip()})


def render_sql(
    *,
    policy_id: str,
    allowed_countries: list[str],
    blocked_countries: list[str],
    activate: bool,
) -> str:
    config = json.dumps(
        {"allowed_countries": allowed_countries, "blocked_countries": blocked_countries},
        sort_keys=True,
    )
    id_value = f"{_quote_sql(policy_id)}::uuid"

    statements = [
        "-- Catalog policy seed SQL",
        "-- Apply after db/schema.sql in a privileged Postgres session.",
        "",
        "begin;",
        "",
        "select pg_advisory_xact_lock(hashtext('catalog_policies_activation'));",
        "",
        "insert into catalog_policies (id, version, is_active, config)",
        f"select {id_value}, coalesce(max(version), 0) + 1, false, {_quote_sql(config)}::jsonb",
        "from catalog_policies",
        f"where not exists (select 1 from catalog_policies where id = {id_value});",
    ]
    if activate:
        statements += [
            "",
            "update catalog_policies",
            "set is_active = false, activated_at = null",
            f"where is_active = true and id <> {id_value};",
            "",
            "update catalog_policies",
            "set is_active = true, activated_at = now()",
            f"where id = {id_value};",
        ]
    statements += ["", "commit;", ""]
    return "\n".join(statements)


def main() -> None:
    parser = argparse.ArgumentParser(description="Emit SQL to seed a catalog policy version.")
    parser.add_argument("--policy-id", required=True, help="Policy id (UUID) to insert")
    parser.add_argument("--allowed-countries", default="", help="Comma-separated ISO country codes")
    parser.add_argument("--blocked-countries", default="", help="Comma-separated ISO country codes")
    parser.add_argument(
        "--activate",
        action="store_true",
        help="Make the seeded policy the single active policy",
    )
    args = parser.parse_args()

    print(
        render_sql(
            policy_id=args.policy_id,
            allowed_countries=_country_list(args.allowed_countries),
            blocked_countries=_country_list(args.blocked_countries),
            activate=args.activate,
        )
    )


if __name__ == "__main__":
    main()
