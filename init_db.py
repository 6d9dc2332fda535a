"""Create the HelpChain tables, or wipe and recreate them.

The application factory already creates missing tables on start-up; this
script is for resetting a development database and for checking what a
database holds.

Usage:
  python init_db.py            # create missing tables, print row counts
  python init_db.py --reset    # drop every table first
"""
import argparse
from typing import Dict

from flask import Flask
from sqlalchemy import func, inspect

from extensions import db
from app import create_app


def init_db(app: Flask, reset: bool = False) -> Dict[str, int]:
    """Create the schema and return the row count of each table."""
    with app.app_context():
        import models  # noqa: F401
        if reset:
            db.drop_all()
        db.create_all()
        counts = {}
        for name in sorted(inspect(db.engine).get_table_names()):
            table = db.metadata.tables.get(name)
            if table is None:
                continue
            counts[name] = db.session.execute(db.select(func.count()).select_from(table)).scalar_one()
        return counts


def main() -> None:
    parser = argparse.ArgumentParser(description="Create or reset the HelpChain database")
    parser.add_argument("--reset", action="store_true", help="Drop all tables before creating them")
    args = parser.parse_args()

    app = create_app()
    counts = init_db(app, reset=args.reset)
    print("Database reset." if args.reset else "Database initialized.")
    for name, count in counts.items():
        print(f"  {name}: {count} rows")


if __name__ == "__main__":
    main()
