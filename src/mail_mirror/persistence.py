# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SQLite-backed local mirror for remote mail server state.

This module provides the Persistence class, the reference implementation of
``MirrorRepository``. It stores:

- servers: registered remote servers and their reachability status
- dns_records, mailboxes, email_aliases, spam_filters, backup_jobs:
  collections reconciled per (server, kind)
- backup_history, server_metrics: append-only logs

The persistence layer uses aiosqlite, supporting both file-based databases
and temporary database files for testing. Each operation opens and closes its own
connection; ``replace_all`` runs inside a single transaction.

Example:
    Basic usage::

        persistence = Persistence("/data/mail_mirror.db")
        await persistence.init_db()

        server = await persistence.add_server(
            {"hostname": "box.example.com", "api_key": "secret"}
        )
        rows = await persistence.replace_all(server["id"], ResourceKind.DNS, records)
"""

from __future__ import annotations

import json
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import aiosqlite

from .models import DEFAULT_API_ENDPOINT, ResourceKind, ServerStatus


@dataclass(frozen=True)
class TableSpec:
    """Column layout of one mirrored collection.

    Attributes:
        table: SQL table name.
        columns: Writable columns (``id`` excluded).
        natural_key: Columns identifying "the same" row across syncs.
        bool_columns: Columns stored as 0/1 and decoded to bool.
        datetime_columns: Columns stored as ISO-8601 text.
        json_columns: Columns stored as JSON text.
    """

    table: str
    columns: tuple[str, ...]
    natural_key: tuple[str, ...] = ()
    bool_columns: frozenset[str] = field(default_factory=frozenset)
    datetime_columns: frozenset[str] = field(default_factory=frozenset)
    json_columns: frozenset[str] = field(default_factory=frozenset)


TABLES: dict[ResourceKind, TableSpec] = {
    ResourceKind.DNS: TableSpec(
        table="dns_records",
        columns=("server_id", "record_type", "name", "value", "priority", "ttl", "is_managed"),
        natural_key=("record_type", "name", "value"),
        bool_columns=frozenset({"is_managed"}),
    ),
    ResourceKind.MAILBOXES: TableSpec(
        table="mailboxes",
        columns=(
            "server_id", "email", "name", "status", "storage_used",
            "storage_limit", "last_login",
        ),
        natural_key=("email",),
        datetime_columns=frozenset({"last_login"}),
    ),
    ResourceKind.ALIASES: TableSpec(
        table="email_aliases",
        columns=(
            "server_id", "mailbox_id", "source_email", "destination_email",
            "is_active", "expires_at",
        ),
        natural_key=("source_email", "destination_email"),
        bool_columns=frozenset({"is_active"}),
        datetime_columns=frozenset({"expires_at"}),
    ),
    ResourceKind.SPAM_FILTERS: TableSpec(
        table="spam_filters",
        columns=(
            "server_id", "name", "rule_type", "pattern", "action",
            "is_active", "description", "score",
        ),
        natural_key=("rule_type", "pattern"),
        bool_columns=frozenset({"is_active"}),
    ),
    ResourceKind.BACKUPS: TableSpec(
        table="backup_jobs",
        columns=(
            "server_id", "name", "backup_type", "destination", "schedule", "status",
            "retention_days", "encryption_key", "last_run_at", "next_run_at",
        ),
        natural_key=("backup_type",),
        datetime_columns=frozenset({"last_run_at", "next_run_at"}),
    ),
    ResourceKind.METRICS: TableSpec(
        table="server_metrics",
        columns=(
            "server_id", "cpu_usage", "memory_usage", "disk_usage", "queue_size",
            "active_connections", "raw_metrics", "captured_at",
        ),
        datetime_columns=frozenset({"captured_at"}),
        json_columns=frozenset({"raw_metrics"}),
    ),
}

HISTORY_TABLE = TableSpec(
    table="backup_history",
    columns=("job_id", "started_at", "completed_at", "status", "size_bytes", "error"),
    datetime_columns=frozenset({"started_at", "completed_at"}),
)

SERVER_TABLE = TableSpec(
    table="servers",
    columns=(
        "name", "hostname", "api_key", "api_endpoint", "status", "version",
        "last_synced_at",
    ),
    datetime_columns=frozenset({"last_synced_at"}),
)

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS servers (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT,
        hostname TEXT NOT NULL,
        api_key TEXT NOT NULL,
        api_endpoint TEXT NOT NULL DEFAULT '/admin',
        status TEXT NOT NULL DEFAULT 'unknown',
        version TEXT,
        last_synced_at TEXT,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS dns_records (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        server_id INTEGER NOT NULL,
        record_type TEXT NOT NULL,
        name TEXT NOT NULL,
        value TEXT NOT NULL,
        priority INTEGER,
        ttl INTEGER NOT NULL DEFAULT 3600,
        is_managed INTEGER NOT NULL DEFAULT 1,
        FOREIGN KEY (server_id) REFERENCES servers(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS mailboxes (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        server_id INTEGER NOT NULL,
        email TEXT NOT NULL,
        name TEXT,
        status TEXT NOT NULL,
        storage_used INTEGER NOT NULL DEFAULT 0,
        storage_limit INTEGER,
        last_login TEXT,
        FOREIGN KEY (server_id) REFERENCES servers(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS email_aliases (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        server_id INTEGER NOT NULL,
        mailbox_id INTEGER,
        source_email TEXT NOT NULL,
        destination_email TEXT NOT NULL,
        is_active INTEGER NOT NULL DEFAULT 1,
        expires_at TEXT,
        FOREIGN KEY (server_id) REFERENCES servers(id) ON DELETE CASCADE,
        FOREIGN KEY (mailbox_id) REFERENCES mailboxes(id) ON DELETE SET NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS spam_filters (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        server_id INTEGER NOT NULL,
        name TEXT NOT NULL,
        rule_type TEXT NOT NULL,
        pattern TEXT NOT NULL,
        action TEXT NOT NULL,
        is_active INTEGER NOT NULL DEFAULT 1,
        description TEXT,
        score REAL,
        FOREIGN KEY (server_id) REFERENCES servers(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS backup_jobs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        server_id INTEGER NOT NULL,
        name TEXT NOT NULL,
        backup_type TEXT NOT NULL,
        destination TEXT NOT NULL,
        schedule TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'idle',
        retention_days INTEGER NOT NULL DEFAULT 30,
        encryption_key TEXT,
        last_run_at TEXT,
        next_run_at TEXT,
        FOREIGN KEY (server_id) REFERENCES servers(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS backup_history (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        job_id INTEGER NOT NULL,
        started_at TEXT NOT NULL,
        completed_at TEXT,
        status TEXT NOT NULL,
        size_bytes INTEGER,
        error TEXT,
        FOREIGN KEY (job_id) REFERENCES backup_jobs(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS server_metrics (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        server_id INTEGER NOT NULL,
        cpu_usage REAL,
        memory_usage REAL,
        disk_usage REAL,
        queue_size INTEGER,
        active_connections INTEGER,
        raw_metrics TEXT,
        captured_at TEXT NOT NULL,
        FOREIGN KEY (server_id) REFERENCES servers(id) ON DELETE CASCADE
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_dns_server ON dns_records(server_id)",
    "CREATE INDEX IF NOT EXISTS idx_mailboxes_server ON mailboxes(server_id)",
    "CREATE INDEX IF NOT EXISTS idx_aliases_server ON email_aliases(server_id)",
    "CREATE INDEX IF NOT EXISTS idx_spam_server ON spam_filters(server_id)",
    "CREATE INDEX IF NOT EXISTS idx_backups_server ON backup_jobs(server_id)",
    "CREATE INDEX IF NOT EXISTS idx_history_job ON backup_history(job_id)",
    "CREATE INDEX IF NOT EXISTS idx_metrics_server ON server_metrics(server_id, captured_at)",
)


def _encode(spec: TableSpec, record: dict[str, Any]) -> tuple[Any, ...]:
    values = []
    for col in spec.columns:
        value = record.get(col)
        if col in spec.bool_columns:
            value = 1 if value is None or value else 0
        elif col in spec.datetime_columns and isinstance(value, datetime):
            value = value.isoformat()
        elif col in spec.json_columns and value is not None:
            value = json.dumps(value)
        values.append(value)
    return tuple(values)


def _decode(spec: TableSpec, row: dict[str, Any]) -> dict[str, Any]:
    for col in spec.bool_columns:
        if col in row:
            row[col] = bool(row[col])
    for col in spec.datetime_columns:
        if row.get(col):
            row[col] = datetime.fromisoformat(row[col])
    for col in spec.json_columns:
        if row.get(col):
            row[col] = json.loads(row[col])
    return row


def _natural_key(spec: TableSpec, record: dict[str, Any]) -> tuple[Any, ...]:
    return tuple(record.get(col) for col in spec.natural_key)


async def _fetch_all(db: aiosqlite.Connection, query: str, params: tuple = ()) -> list[dict[str, Any]]:
    async with db.execute(query, params) as cur:
        rows = await cur.fetchall()
        cols = [c[0] for c in cur.description]
    return [dict(zip(cols, row)) for row in rows]


class Persistence:
    """Async SQLite persistence layer for the local mirror.

    Implements ``MirrorRepository``. Collections are reconciled by natural
    key: rows still reported by the remote side keep their id, rows no
    longer reported are deleted, new rows are inserted. Stable ids keep alias
    mailbox references and backup history attached across syncs.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str = "/data/mail_mirror.db"):
        self.db_path = db_path

    def _connect(self) -> aiosqlite.Connection:
        return aiosqlite.connect(self.db_path)

    async def init_db(self) -> None:
        """Create all tables and indexes. Idempotent."""
        async with self._connect() as db:
            for statement in SCHEMA:
                await db.execute(statement)
            await db.commit()

    # Servers ------------------------------------------------------------------
    async def add_server(self, server: dict[str, Any]) -> dict[str, Any]:
        """Register a remote server; status starts as "unknown"."""
        record = {
            "name": server.get("name"),
            "hostname": server["hostname"],
            "api_key": server["api_key"],
            "api_endpoint": server.get("api_endpoint") or DEFAULT_API_ENDPOINT,
            "status": ServerStatus.UNKNOWN.value,
            "version": None,
            "last_synced_at": None,
        }
        async with self._connect() as db:
            cursor = await db.execute(
                f"INSERT INTO servers ({', '.join(SERVER_TABLE.columns)}) "
                f"VALUES ({', '.join('?' for _ in SERVER_TABLE.columns)})",
                _encode(SERVER_TABLE, record),
            )
            await db.commit()
            server_id = cursor.lastrowid
        return {"id": server_id, **record}

    async def get_server(self, server_id: int) -> dict[str, Any] | None:
        async with self._connect() as db:
            rows = await _fetch_all(db, "SELECT * FROM servers WHERE id = ?", (server_id,))
        return _decode(SERVER_TABLE, rows[0]) if rows else None

    async def list_servers(self) -> list[dict[str, Any]]:
        async with self._connect() as db:
            rows = await _fetch_all(db, "SELECT * FROM servers ORDER BY id")
        return [_decode(SERVER_TABLE, row) for row in rows]

    async def delete_server(self, server_id: int) -> bool:
        """Delete a server and every mirrored row that belongs to it."""
        async with self._connect() as db:
            await db.execute(
                "DELETE FROM backup_history WHERE job_id IN "
                "(SELECT id FROM backup_jobs WHERE server_id = ?)",
                (server_id,),
            )
            for spec in TABLES.values():
                await db.execute(f"DELETE FROM {spec.table} WHERE server_id = ?", (server_id,))
            cursor = await db.execute("DELETE FROM servers WHERE id = ?", (server_id,))
            await db.commit()
            return cursor.rowcount > 0

    async def update_server_status(
        self,
        server_id: int,
        *,
        status: str,
        last_synced_at: datetime,
        version: str | None = None,
    ) -> None:
        """Set status and sync time; version is only written when given."""
        async with self._connect() as db:
            if version is None:
                await db.execute(
                    "UPDATE servers SET status = ?, last_synced_at = ? WHERE id = ?",
                    (status, last_synced_at.isoformat(), server_id),
                )
            else:
                await db.execute(
                    "UPDATE servers SET status = ?, version = ?, last_synced_at = ? WHERE id = ?",
                    (status, version, last_synced_at.isoformat(), server_id),
                )
            await db.commit()

    # Collections --------------------------------------------------------------
    async def list_rows(self, server_id: int, kind: ResourceKind) -> list[dict[str, Any]]:
        spec = TABLES[ResourceKind(kind)]
        async with self._connect() as db:
            rows = await _fetch_all(
                db, f"SELECT * FROM {spec.table} WHERE server_id = ? ORDER BY id", (server_id,)
            )
        return [_decode(spec, row) for row in rows]

    async def get_row(self, kind: ResourceKind, row_id: int) -> dict[str, Any] | None:
        spec = TABLES[ResourceKind(kind)]
        async with self._connect() as db:
            rows = await _fetch_all(db, f"SELECT * FROM {spec.table} WHERE id = ?", (row_id,))
        return _decode(spec, rows[0]) if rows else None

    async def insert_row(self, kind: ResourceKind, record: dict[str, Any]) -> dict[str, Any]:
        spec = TABLES[ResourceKind(kind)]
        async with self._connect() as db:
            row_id = await self._insert(db, spec, record)
            await db.commit()
            rows = await _fetch_all(db, f"SELECT * FROM {spec.table} WHERE id = ?", (row_id,))
        return _decode(spec, rows[0])

    async def delete_row(self, kind: ResourceKind, row_id: int) -> bool:
        kind = ResourceKind(kind)
        spec = TABLES[kind]
        async with self._connect() as db:
            if kind == ResourceKind.MAILBOXES:
                await db.execute(
                    "UPDATE email_aliases SET mailbox_id = NULL WHERE mailbox_id = ?", (row_id,)
                )
            elif kind == ResourceKind.BACKUPS:
                await db.execute("DELETE FROM backup_history WHERE job_id = ?", (row_id,))
            cursor = await db.execute(f"DELETE FROM {spec.table} WHERE id = ?", (row_id,))
            await db.commit()
            return cursor.rowcount > 0

    async def replace_all(
        self, server_id: int, kind: ResourceKind, records: list[dict[str, Any]]
    ) -> list[dict[str, Any]]:
        """Make the (server, kind) collection equal ``records`` atomically.

        Existing rows matching an incoming record by natural key are updated
        in place; unmatched existing rows are deleted; the rest is inserted.
        Everything runs in one transaction.
        """
        kind = ResourceKind(kind)
        spec = TABLES[kind]
        async with self._connect() as db:
            try:
                existing = await _fetch_all(
                    db,
                    f"SELECT id, {', '.join(spec.natural_key)} FROM {spec.table} "
                    "WHERE server_id = ? ORDER BY id",
                    (server_id,),
                )
                available: dict[tuple, list[int]] = defaultdict(list)
                for row in existing:
                    available[_natural_key(spec, row)].append(row["id"])

                assignments = {}
                for record in records:
                    ids = available.get(_natural_key(spec, _encode_key(spec, record)))
                    if ids:
                        assignments[ids.pop(0)] = record
                    else:
                        await self._insert(db, spec, {**record, "server_id": server_id})
                for row_id, record in assignments.items():
                    await self._update(db, spec, row_id, {**record, "server_id": server_id})

                stale = [row_id for ids in available.values() for row_id in ids]
                if stale:
                    marks = ", ".join("?" for _ in stale)
                    if kind == ResourceKind.MAILBOXES:
                        await db.execute(
                            f"UPDATE email_aliases SET mailbox_id = NULL WHERE mailbox_id IN ({marks})",
                            tuple(stale),
                        )
                    elif kind == ResourceKind.BACKUPS:
                        await db.execute(
                            f"DELETE FROM backup_history WHERE job_id IN ({marks})", tuple(stale)
                        )
                    await db.execute(f"DELETE FROM {spec.table} WHERE id IN ({marks})", tuple(stale))
                await db.commit()
            except Exception:
                await db.rollback()
                raise

            rows = await _fetch_all(
                db, f"SELECT * FROM {spec.table} WHERE server_id = ? ORDER BY id", (server_id,)
            )
        return [_decode(spec, row) for row in rows]

    async def _insert(self, db: aiosqlite.Connection, spec: TableSpec, record: dict[str, Any]) -> int:
        cursor = await db.execute(
            f"INSERT INTO {spec.table} ({', '.join(spec.columns)}) "
            f"VALUES ({', '.join('?' for _ in spec.columns)})",
            _encode(spec, record),
        )
        return cursor.lastrowid

    async def _update(
        self, db: aiosqlite.Connection, spec: TableSpec, row_id: int, record: dict[str, Any]
    ) -> None:
        assignments = ", ".join(f"{col} = ?" for col in spec.columns)
        await db.execute(
            f"UPDATE {spec.table} SET {assignments} WHERE id = ?",
            _encode(spec, record) + (row_id,),
        )

    # Backups ------------------------------------------------------------------
    async def update_backup_job_status(self, job_id: int, status: str) -> None:
        async with self._connect() as db:
            await db.execute("UPDATE backup_jobs SET status = ? WHERE id = ?", (status, job_id))
            await db.commit()

    async def insert_backup_history_entry(self, entry: dict[str, Any]) -> dict[str, Any]:
        async with self._connect() as db:
            row_id = await self._insert(db, HISTORY_TABLE, entry)
            await db.commit()
            rows = await _fetch_all(db, "SELECT * FROM backup_history WHERE id = ?", (row_id,))
        return _decode(HISTORY_TABLE, rows[0])

    async def list_backup_history(self, job_id: int) -> list[dict[str, Any]]:
        async with self._connect() as db:
            rows = await _fetch_all(
                db, "SELECT * FROM backup_history WHERE job_id = ? ORDER BY id", (job_id,)
            )
        return [_decode(HISTORY_TABLE, row) for row in rows]

    # Metrics ------------------------------------------------------------------
    async def insert_metrics_entry(self, entry: dict[str, Any]) -> dict[str, Any]:
        spec = TABLES[ResourceKind.METRICS]
        async with self._connect() as db:
            row_id = await self._insert(db, spec, entry)
            await db.commit()
            rows = await _fetch_all(db, "SELECT * FROM server_metrics WHERE id = ?", (row_id,))
        return _decode(spec, rows[0])

    async def list_metrics(self, server_id: int, limit: int = 100) -> list[dict[str, Any]]:
        """Return the most recent metrics entries, newest first."""
        spec = TABLES[ResourceKind.METRICS]
        async with self._connect() as db:
            rows = await _fetch_all(
                db,
                "SELECT * FROM server_metrics WHERE server_id = ? "
                "ORDER BY captured_at DESC, id DESC LIMIT ?",
                (server_id, limit),
            )
        return [_decode(spec, row) for row in rows]


def _encode_key(spec: TableSpec, record: dict[str, Any]) -> dict[str, Any]:
    """Encode the natural key columns of ``record`` the way they are stored."""
    return dict(zip(spec.columns, _encode(spec, record)))
