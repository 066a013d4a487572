from __future__ import annotations

import hashlib
import json
import sqlite3
from pathlib import Path
from typing import Any

SCHEMA = """
CREATE TABLE IF NOT EXISTS form_schemas (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    payload TEXT NOT NULL,
    fingerprint TEXT NOT NULL,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS submissions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    form_id INTEGER NOT NULL,
    payload TEXT NOT NULL,
    submitted_at TEXT DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (form_id) REFERENCES form_schemas(id)
);
"""


def connect(db_path: str | Path) -> sqlite3.Connection:
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: str | Path) -> None:
    conn = connect(db_path)
    with conn:
        conn.executescript(SCHEMA)
        migrate_submissions_schema(conn)
    conn.close()


def migrate_submissions_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_submissions_form
        ON submissions(form_id, submitted_at)
        """
    )


def json_dumps(payload: Any) -> str:
    return json.dumps(payload, separators=(",", ":"), sort_keys=True)


def fingerprint(payload: Any) -> str:
    return hashlib.sha256(json_dumps(payload).encode("utf-8")).hexdigest()


def insert_form(conn: sqlite3.Connection, name: str, schema: Any) -> int:
    cursor = conn.execute(
        "INSERT INTO form_schemas(name, payload, fingerprint) VALUES (?, ?, ?)",
        (name, json_dumps(schema), fingerprint(schema)),
    )
    return int(cursor.lastrowid)


def fetch_form(conn: sqlite3.Connection, form_id: int) -> dict[str, Any] | None:
    row = conn.execute(
        "SELECT id, name, payload, fingerprint, created_at FROM form_schemas WHERE id = ?",
        (form_id,),
    ).fetchone()
    if row is None:
        return None
    return {
        "id": row["id"],
        "name": row["name"],
        "schema": json.loads(row["payload"]),
        "fingerprint": row["fingerprint"],
        "created_at": row["created_at"],
    }


def insert_submission(conn: sqlite3.Connection, form_id: int, payload: dict[str, Any]) -> int:
    cursor = conn.execute(
        "INSERT INTO submissions(form_id, payload) VALUES (?, ?)",
        (form_id, json_dumps(payload)),
    )
    return int(cursor.lastrowid)


def list_submissions(conn: sqlite3.Connection, form_id: int) -> list[dict[str, Any]]:
    rows = conn.execute(
        "SELECT id, payload, submitted_at FROM submissions WHERE form_id = ? ORDER BY id",
        (form_id,),
    ).fetchall()
    return [
        {"id": row["id"], "payload": json.loads(row["payload"]), "submitted_at": row["submitted_at"]}
        for row in rows
    ]
