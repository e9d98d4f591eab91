#!/usr/bin/env python3
"""
Directory Seed Script

Loads plants (org units) and people (actors) from a JSON file into the
folioflow database. Safe to re-run: plants are upserted and phones that
are already registered are skipped.

Usage:
    python scripts/seed_directory.py directory.json

File format:
    {
      "org_units": [{"code": "PUE", "name": "Puebla"}],
      "actors": [
        {"phone": "+52 222 555 0101", "name": "Ana", "role": "GA", "org_unit": "PUE"},
        {"phone": "5215550000001", "name": "Dir", "role": "ZP"}
      ]
    }

Environment Variables:
    FOLIOFLOW_DB_PATH - SQLite file (default folioflow.db)
    DATABASE_URL - Postgres DSN, used instead of SQLite when set
"""

import argparse
import json
import os
import sys
from typing import Any, Dict

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from folioflow.core.database import get_db  # noqa: E402
from folioflow.core.models import Role  # noqa: E402
from folioflow.services.identity import IdentityResolver, normalize_phone  # noqa: E402


def seed(data: Dict[str, Any], db=None) -> Dict[str, int]:
    db = db or get_db()
    db.initialize()
    resolver = IdentityResolver(db)
    counts = {"org_units": 0, "actors": 0, "skipped": 0}

    for unit in data.get("org_units", []):
        db.upsert_org_unit(unit["code"], unit.get("name"))
        counts["org_units"] += 1

    for person in data.get("actors", []):
        role = Role.parse(person.get("role"))
        if role is None:
            raise ValueError(f"Unknown role {person.get('role')!r} for {person.get('name')!r}")
        if role.is_plant_scoped and not person.get("org_unit"):
            raise ValueError(f"{person.get('name')!r} has role {role.value} but no org_unit")
        if resolver.resolve(person["phone"]) is not None:
            counts["skipped"] += 1
            continue
        db.add_actor(
            phone=person["phone"],
            name=person["name"],
            role=role,
            org_unit_code=person.get("org_unit"),
            email=person.get("email"),
            active=person.get("active", True),
        )
        counts["actors"] += 1
        print(f"  + {person['name']} ({role.value}) {normalize_phone(person['phone'])}")

    return counts


def main():
    parser = argparse.ArgumentParser(description="Load plants and people into folioflow")
    parser.add_argument("path", help="JSON file with org_units and actors")
    args = parser.parse_args()

    with open(args.path, "r", encoding="utf-8") as handle:
        data = json.load(handle)

    try:
        counts = seed(data)
    except (KeyError, ValueError) as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    print(
        f"Done: {counts['org_units']} plants, {counts['actors']} people added, "
        f"{counts['skipped']} already registered"
    )


if __name__ == "__main__":
    main()
