"""Create (or reset) the key-rotation tables on the configured database.

Intended for local development; deployed databases are managed with Alembic.
"""
from __future__ import annotations

import argparse

from dworld_e2e.db.session import create_tables, drop_tables


def main() -> None:
    parser = argparse.ArgumentParser(description="Create tables on the configured database")
    parser.add_argument(
        "--drop-tables",
        action="store_true",
        help="Drop every table before creating them again.",
    )
    args = parser.parse_args()

    if args.drop_tables:
        drop_tables()
        print("[init_db] dropped all tables")
    create_tables()
    print("[init_db] tables ready")


if __name__ == "__main__":
    main()
