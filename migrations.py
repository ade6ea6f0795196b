"""
On-demand schema migrations
Patches older databases in place: missing columns are added through a chain
of fallback statements, missing tables are created. Applied migrations are
recorded in schema_migrations so a second run is a no-op.

Usage: python migrations.py <name>
       python migrations.py --all
"""

import sys
from datetime import datetime

from sqlalchemy import inspect, text
from sqlalchemy.exc import SQLAlchemyError

from models import (
    db, SchemaMigration, InjuryReserve, GameAvailability, VerificationToken, VerificationLog,
)


class MigrationError(Exception):
    """Every approach failed. `attempts` holds the error from each one."""

    def __init__(self, message, attempts=None):
        super().__init__(message)
        self.attempts = attempts or []


MIGRATIONS = {
    "featured-columns": {
        "description": "Featured flags on matches and news",
        "columns": [
            ("matches", "featured", "BOOLEAN DEFAULT FALSE"),
            ("news", "featured", "BOOLEAN DEFAULT FALSE"),
        ],
    },
    "period-scores": {
        "description": "Per-period scores and overtime/shootout flags on matches",
        "columns": [
            ("matches", "period_scores", "JSON"),
            ("matches", "has_overtime", "BOOLEAN DEFAULT FALSE"),
            ("matches", "has_shootout", "BOOLEAN DEFAULT FALSE"),
        ],
    },
    "injury-reserve-table": {
        "description": "Injury reserve and game availability tables",
        "tables": [InjuryReserve, GameAvailability],
    },
    "verification-tables": {
        "description": "Email verification tokens and logs",
        "tables": [VerificationToken, VerificationLog],
        "columns": [
            ("users", "email_verified", "BOOLEAN DEFAULT FALSE"),
        ],
    },
    "ea-fields": {
        "description": "EA Sports club and match ids",
        "columns": [
            ("teams", "ea_club_id", "VARCHAR(40)"),
            ("matches", "ea_match_id", "VARCHAR(40)"),
        ],
    },
    "ban-fields": {
        "description": "User ban columns",
        "columns": [
            ("users", "is_banned", "BOOLEAN DEFAULT FALSE"),
            ("users", "ban_reason", "VARCHAR(300)"),
            ("users", "ban_expires_at", "TIMESTAMP"),
        ],
    },
}


def _has_column(engine, table, column):
    inspector = inspect(engine)
    if not inspector.has_table(table):
        return False
    return column in {c["name"] for c in inspector.get_columns(table)}


def add_column_if_missing(engine, table, column, column_type):
    """
    Add one column, trying in turn:
    1. ALTER TABLE ... ADD COLUMN IF NOT EXISTS
    2. inspect the table, then a plain ADD COLUMN
    3. inspect again, in case the column appeared meanwhile
    Returns "added" or "exists". Raises MigrationError when all three fail.
    """
    attempts = []

    try:
        with engine.begin() as conn:
            conn.execute(text(f"ALTER TABLE {table} ADD COLUMN IF NOT EXISTS {column} {column_type}"))
        return "added"
    except SQLAlchemyError as e:
        attempts.append(f"add column if not exists: {e}")

    try:
        if _has_column(engine, table, column):
            return "exists"
        with engine.begin() as conn:
            conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {column_type}"))
        return "added"
    except SQLAlchemyError as e:
        attempts.append(f"inspect and add column: {e}")

    try:
        if _has_column(engine, table, column):
            return "exists"
        attempts.append("re-inspect: column still missing")
    except SQLAlchemyError as e:
        attempts.append(f"re-inspect: {e}")

    raise MigrationError(f"Could not add {table}.{column}", attempts)


def create_table_if_missing(engine, model):
    table = model.__table__
    existed = inspect(engine).has_table(table.name)
    if not existed:
        table.create(bind=engine, checkfirst=True)
    return "exists" if existed else "created"


def _applied(name):
    return SchemaMigration.query.filter_by(name=name).first()


def run_migration(name):
    """Apply one registered migration inside the current app context."""
    if name not in MIGRATIONS:
        raise MigrationError(f"Unknown migration: {name}", [])

    engine = db.engine
    # Open session reads hold table locks that ALTER TABLE waits on (PostgreSQL)
    db.session.commit()
    SchemaMigration.__table__.create(bind=engine, checkfirst=True)

    existing = _applied(name)
    if existing:
        return {
            "name": name,
            "status": "already_applied",
            "applied_at": existing.applied_at.isoformat() if existing.applied_at else None,
            "steps": [],
        }

    db.session.commit()
    migration = MIGRATIONS[name]
    steps = []
    for model in migration.get("tables", []):
        steps.append({"table": model.__tablename__, "result": create_table_if_missing(engine, model)})
    for table, column, column_type in migration.get("columns", []):
        steps.append({"table": table, "column": column,
                      "result": add_column_if_missing(engine, table, column, column_type)})

    db.session.add(SchemaMigration(
        name=name,
        applied_at=datetime.utcnow(),
        details=", ".join(f"{s['table']}.{s.get('column', '*')}={s['result']}" for s in steps),
    ))
    db.session.commit()
    return {"name": name, "status": "applied", "steps": steps}


def list_migrations():
    SchemaMigration.__table__.create(bind=db.engine, checkfirst=True)
    applied = {m.name: m for m in SchemaMigration.query.all()}
    return [
        {
            "name": name,
            "description": migration["description"],
            "applied": name in applied,
            "applied_at": applied[name].applied_at.isoformat() if name in applied else None,
        }
        for name, migration in MIGRATIONS.items()
    ]


def main(argv):
    from app import app

    if len(argv) < 2:
        print(__doc__)
        print("Available migrations:")
        for name, migration in MIGRATIONS.items():
            print(f"   - {name}: {migration['description']}")
        return 1

    names = list(MIGRATIONS) if argv[1] == "--all" else argv[1:]

    with app.app_context():
        print(f"📍 Database URI: {app.config['SQLALCHEMY_DATABASE_URI'][:50]}...")
        for name in names:
            print(f"\n🔧 Running migration {name}...")
            try:
                result = run_migration(name)
            except MigrationError as e:
                db.session.rollback()
                print(f"❌ Error during migration {name}: {e}")
                for attempt in e.attempts:
                    print(f"   - {attempt}")
                return 1
            if result["status"] == "already_applied":
                print(f"   ⏭️  already applied at {result['applied_at']}")
                continue
            for step in result["steps"]:
                target = f"{step['table']}.{step['column']}" if "column" in step else step["table"]
                print(f"   ✅ {target}: {step['result']}")
        print("\n✅ Migrations completed successfully!")
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv))
