# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Local mirror interface consumed by the sync engine.

The engine never talks to a database directly: it receives an object
implementing ``MirrorRepository``. ``mail_mirror.persistence.Persistence``
is the SQLite implementation; tests use an in-memory fake.

Rows are plain dicts carrying an ``id`` key. Collection kinds are addressed
with ``ResourceKind`` values; ``replace_all`` must be atomic so no reader
observes a half-replaced collection.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from .models import ResourceKind


@runtime_checkable
class MirrorRepository(Protocol):
    """Storage capability required by the engine."""

    async def get_server(self, server_id: int) -> dict[str, Any] | None: ...

    async def update_server_status(
        self,
        server_id: int,
        *,
        status: str,
        last_synced_at: datetime,
        version: str | None = None,
    ) -> None: ...

    async def list_rows(self, server_id: int, kind: ResourceKind) -> list[dict[str, Any]]: ...

    async def get_row(self, kind: ResourceKind, row_id: int) -> dict[str, Any] | None: ...

    async def insert_row(self, kind: ResourceKind, record: dict[str, Any]) -> dict[str, Any]: ...

    async def delete_row(self, kind: ResourceKind, row_id: int) -> bool: ...

    async def replace_all(
        self, server_id: int, kind: ResourceKind, records: list[dict[str, Any]]
    ) -> list[dict[str, Any]]: ...

    async def update_backup_job_status(self, job_id: int, status: str) -> None: ...

    async def insert_backup_history_entry(self, entry: dict[str, Any]) -> dict[str, Any]: ...

    async def list_backup_history(self, job_id: int) -> list[dict[str, Any]]: ...

    async def insert_metrics_entry(self, entry: dict[str, Any]) -> dict[str, Any]: ...

    async def list_metrics(self, server_id: int, limit: int = 100) -> list[dict[str, Any]]: ...
