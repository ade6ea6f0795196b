from unittest.mock import patch

import pytest
from sqlalchemy import inspect, text

import migrations
from migrations import MigrationError, add_column_if_missing, run_migration, list_migrations
from models import db, SchemaMigration, AuditLog, User


@pytest.fixture
def legacy_table(app):
    db.session.execute(text("CREATE TABLE legacy_matches (id INTEGER PRIMARY KEY)"))
    db.session.commit()
    yield "legacy_matches"
    db.session.rollback()
    db.session.execute(text("DROP TABLE IF EXISTS legacy_matches"))
    db.session.commit()


def _columns(table):
    return {c["name"] for c in inspect(db.engine).get_columns(table)}


def test_add_column_falls_back_and_is_idempotent(legacy_table):
    assert add_column_if_missing(db.engine, legacy_table, "featured", "BOOLEAN DEFAULT FALSE") == "added"
    assert "featured" in _columns(legacy_table)
    assert add_column_if_missing(db.engine, legacy_table, "featured", "BOOLEAN DEFAULT FALSE") == "exists"


def test_all_approaches_failing_raises_with_every_error(app):
    with pytest.raises(MigrationError) as excinfo:
        add_column_if_missing(db.engine, "no_such_table", "featured", "BOOLEAN")
    assert len(excinfo.value.attempts) == 3
    assert excinfo.value.attempts[-1] == "re-inspect: column still missing"


def test_column_appearing_concurrently_counts_as_exists(legacy_table):
    checks = iter([False, True])
    with patch.object(migrations, "_has_column", side_effect=lambda *args: next(checks)):
        # Broken DDL makes both ALTER statements fail
        assert add_column_if_missing(db.engine, legacy_table, "featured", "BOOLEAN DEFAULT (") == "exists"


def test_run_migration_records_and_skips_rerun(app):
    first = run_migration("featured-columns")
    assert first["status"] == "applied"
    assert {s["result"] for s in first["steps"]} == {"exists"}
    assert SchemaMigration.query.filter_by(name="featured-columns").count() == 1

    second = run_migration("featured-columns")
    assert second["status"] == "already_applied"


def test_run_migration_creates_missing_tables(app):
    db.session.execute(text("DROP TABLE game_availability"))
    db.session.commit()
    result = run_migration("injury-reserve-table")
    assert {"table": "game_availability", "result": "created"} in result["steps"]
    assert inspect(db.engine).has_table("game_availability")


def test_unknown_migration(app):
    with pytest.raises(MigrationError):
        run_migration("drop-everything")


def test_list_migrations(app):
    run_migration("ban-fields")
    listed = {m["name"]: m["applied"] for m in list_migrations()}
    assert listed["ban-fields"] is True
    assert listed["ea-fields"] is False
    assert set(listed) == set(migrations.MIGRATIONS)


def test_migration_routes(client, login_admin):
    assert client.post("/api/admin/run-migration/ea-fields").status_code == 401
    login_admin()
    assert client.post("/api/admin/run-migration/nope").status_code == 404

    resp = client.post("/api/admin/run-migration/ea-fields")
    assert resp.status_code == 200
    assert resp.get_json()["status"] == "applied"
    assert client.post("/api/admin/run-migration/ea-fields").get_json()["status"] == "already_applied"
    assert AuditLog.query.filter_by(action="MIGRATION").count() == 1

    names = [m["name"] for m in client.get("/api/admin/migrations").get_json()["migrations"] if m["applied"]]
    assert names == ["ea-fields"]


def test_session_transaction_is_closed_before_ddl(app, make_user):
    make_user()
    User.query.first()
    assert db.session.in_transaction()

    open_during_ddl = []

    def add_column(engine, table, column, column_type):
        open_during_ddl.append(db.session.in_transaction())
        return "exists"

    with patch.object(migrations, "add_column_if_missing", side_effect=add_column):
        assert run_migration("ban-fields")["status"] == "applied"
    assert open_during_ddl == [False, False, False]
