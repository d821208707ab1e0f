#!/usr/bin/env python3
"""Alembic bootstrap for databases created with Base.metadata.create_all().

If the voucher tables already exist but alembic_version is missing, stamp
the initial revision before normal upgrades.
"""

from __future__ import annotations

import os
import subprocess

from sqlalchemy import inspect

from immunopass.database import engine


BASELINE_REVISION = os.getenv("ALEMBIC_BASELINE_REVISION", "001")
SCHEMA_TABLES = ("organizations", "accounts", "otps", "voucher_orders", "vouchers")


def main() -> int:
    inspector = inspect(engine)
    has_alembic_version = inspector.has_table("alembic_version")
    existing = [table for table in SCHEMA_TABLES if inspector.has_table(table)]

    if not has_alembic_version and existing:
        if len(existing) != len(SCHEMA_TABLES):
            missing = sorted(set(SCHEMA_TABLES) - set(existing))
            print(f"Partial schema without alembic_version, missing tables: {', '.join(missing)}")
            return 1
        print(
            "Existing schema detected without alembic_version. "
            f"Stamping baseline: {BASELINE_REVISION}"
        )
        subprocess.run(["alembic", "stamp", BASELINE_REVISION], check=True)
    else:
        print("Alembic bootstrap check: no baseline stamp required")

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
