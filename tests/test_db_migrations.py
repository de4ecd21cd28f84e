import json
import sqlite3

import pytest

from coop_portal.db import rewrite_sql
from coop_portal.db_migrations import apply_migrations, get_db_health, main


@pytest.fixture(autouse=True)
def sqlite_only(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)


def test_apply_migrations_on_empty_db(tmp_path):
    db_path = tmp_path / "empty.sqlite"

    apply_migrations(str(db_path))
    health = get_db_health(str(db_path))

    assert health["ok"] is True
    assert health["schema_version"] == 3
    assert health["missing_tables"] == []
    assert health["missing_indexes"] == []


def test_apply_migrations_is_idempotent(tmp_path):
    db_path = tmp_path / "twice.sqlite"

    apply_migrations(str(db_path))
    apply_migrations(str(db_path))

    conn = sqlite3.connect(db_path)
    versions = [row[0] for row in conn.execute("SELECT version FROM schema_version ORDER BY version")]
    conn.close()
    assert versions == [1, 2, 3]


def test_email_uniqueness_is_case_insensitive(tmp_path):
    db_path = tmp_path / "unique.sqlite"
    apply_migrations(str(db_path))

    conn = sqlite3.connect(db_path)
    conn.execute("INSERT INTO users (fullname, email) VALUES ('Ada', 'ada@example.com')")
    with pytest.raises(sqlite3.IntegrityError):
        conn.execute("INSERT INTO users (fullname, email) VALUES ('Ada', 'ADA@example.com')")
    conn.close()


def test_apply_migrations_on_legacy_db(tmp_path):
    db_path = tmp_path / "legacy.sqlite"
    conn = sqlite3.connect(db_path)
    conn.executescript(
        """
        CREATE TABLE users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            fullname TEXT,
            email TEXT UNIQUE,
            password_hash TEXT,
            role TEXT DEFAULT 'user',
            must_change_password INTEGER DEFAULT 0,
            created_at TEXT DEFAULT (datetime('now'))
        );
        CREATE TABLE transactions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            type TEXT NOT NULL,
            amount REAL NOT NULL,
            currency TEXT DEFAULT 'NGN',
            description TEXT,
            occurred_at TEXT NOT NULL,
            created_at TEXT DEFAULT (datetime('now')),
            FOREIGN KEY(user_id) REFERENCES users(id)
        );
        INSERT INTO users (fullname, email, password_hash) VALUES ('Ada Obi', 'ada@example.com', 'legacy-hash');
        INSERT INTO users (fullname, email, password_hash, role) VALUES ('Site Admin', 'admin@smile.local', 'legacy-hash', 'admin');
        INSERT INTO transactions (user_id, type, amount, description, occurred_at)
        VALUES (1, 'savings', 5000, 'September', '2022-09-25T00:00:00.000Z');
        """
    )
    conn.commit()
    conn.close()

    apply_migrations(str(db_path))
    health = get_db_health(str(db_path))
    assert health["ok"] is True

    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    columns = {row[1] for row in conn.execute("PRAGMA table_info(transactions)")}
    tx = conn.execute("SELECT user_id, category, amount, currency FROM transactions").fetchone()
    roles = {row["email"]: row["role"] for row in conn.execute("SELECT email, role FROM users")}
    conn.execute(
        "INSERT INTO transactions (user_id, category, amount, occurred_at) VALUES (1, 'main_loan', 10, '2022-10-01T00:00:00.000Z')"
    )
    conn.close()

    assert "type" not in columns
    assert tuple(tx) == (1, "savings", 5000, "NGN")
    assert roles == {"ada@example.com": "member", "admin@smile.local": "admin"}


def test_rewrite_sql_converts_placeholders_for_postgres():
    sql, params = rewrite_sql("postgres", "SELECT id FROM users WHERE LOWER(email) = LOWER(?)", ("a@b.c",))
    assert sql == "SELECT id FROM users WHERE LOWER(email) = LOWER(%s)"
    assert params == ("a@b.c",)

    sql, params = rewrite_sql("postgres", "PRAGMA table_info(users)", None)
    assert "information_schema.columns" in sql
    assert params == ("users",)

    assert rewrite_sql("sqlite", "SELECT ?", (1,)) == ("SELECT ?", (1,))


def test_health_command_reports_and_migrates(tmp_path, capsys):
    db_path = str(tmp_path / "cli.sqlite")

    assert main([db_path]) == 1
    before = json.loads(capsys.readouterr().out)
    assert before["missing_tables"] == ["users", "transactions"]

    assert main([db_path, "--migrate"]) == 0
    after = json.loads(capsys.readouterr().out)
    assert after["ok"] is True
    assert after["schema_version"] == 3
