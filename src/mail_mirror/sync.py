# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Resource synchronization against remote mail server admin APIs.

This module provides the SyncEngine class. For one server and one resource
kind, a sync resolves the server row, builds its credentials, fetches the
remote payload, decodes it into canonical records and asks the local mirror
to replace the (server, kind) collection with the fresh set.

- ``sync_status``: reachability and version; never raises on remote failure.
- ``sync_dns``, ``sync_mailboxes``, ``sync_aliases``, ``sync_spam_filters``,
  ``sync_backups``: full-replace collection syncs; log and re-raise.
- ``capture_metrics``: appends one metrics entry per call.

Mutating operations (create/delete/run) come from ``OperationsMixin``.

Example:
    Syncing the mailboxes of server 3::

        engine = SyncEngine(Persistence("/data/mail_mirror.db"))
        rows = await engine.sync_mailboxes(3)
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from .client import DEFAULT_PRINCIPAL, PATHS, RemoteApiClient, RemoteCredentials
from .errors import NotFoundError, RemoteApiError
from .logger import get_logger
from .models import DEFAULT_API_ENDPOINT, ResourceKind, ServerStatus
from .normalizers import (
    build_metrics_entry,
    normalize_aliases,
    normalize_backups,
    normalize_dns,
    normalize_mailboxes,
    normalize_spam_filters,
)
from .operations import OperationsMixin
from .prometheus import SyncMetrics
from .repository import MirrorRepository

logger = get_logger("SyncEngine")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class StatusResult:
    """Outcome of a status sync.

    Attributes:
        status: "online" or "offline".
        version: Remote version when online.
        error: Failure description when offline.
    """

    status: str
    version: str | None = None
    error: str | None = None

    @property
    def online(self) -> bool:
        return self.status == ServerStatus.ONLINE.value


class SyncEngine(OperationsMixin):
    """Synchronizes the local mirror with remote mail server admin APIs.

    Syncs and mutating operations of the same (server, kind) are serialized
    by an in-process lock; different kinds and servers run freely.

    Attributes:
        repository: Local mirror implementing ``MirrorRepository``.
        client: Remote API client (anything with a compatible ``request``).
        metrics: Optional Prometheus collector.
        principal: Basic auth user name for remote APIs.
        default_api_endpoint: API prefix for servers without one.
    """

    def __init__(
        self,
        repository: MirrorRepository,
        client: RemoteApiClient | None = None,
        *,
        metrics: SyncMetrics | None = None,
        principal: str = DEFAULT_PRINCIPAL,
        default_api_endpoint: str = DEFAULT_API_ENDPOINT,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.client = client or RemoteApiClient()
        self.metrics = metrics
        self.principal = principal
        self.default_api_endpoint = default_api_endpoint
        self.clock = clock
        self._locks: dict[tuple[int, ResourceKind], asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _lock(self, server_id: int, kind: ResourceKind) -> asyncio.Lock:
        """Return the lock serializing work on one (server, kind) partition."""
        return self._locks.setdefault((server_id, kind), asyncio.Lock())

    async def _get_server(self, server_id: int) -> dict[str, Any]:
        server = await self.repository.get_server(server_id)
        if server is None:
            raise NotFoundError("RemoteServer", server_id)
        return server

    def _credentials(self, server: dict[str, Any]) -> RemoteCredentials:
        return RemoteCredentials.from_server(
            server, principal=self.principal, default_endpoint=self.default_api_endpoint
        )

    async def _get_credentials(self, server_id: int) -> RemoteCredentials:
        return self._credentials(await self._get_server(server_id))

    def _count(self, kind: str, ok: bool) -> None:
        if self.metrics is None:
            return
        if ok:
            self.metrics.inc_sync(kind)
        else:
            self.metrics.inc_sync_error(kind)

    async def _sync_collection(
        self,
        server_id: int,
        kind: ResourceKind,
        path: str,
        decode: Callable[[int, Any], Awaitable[list[Any]]],
    ) -> list[dict[str, Any]]:
        """Fetch, decode and fully replace one (server, kind) collection."""
        logger.debug("Syncing %s for server %s", kind.value, server_id)
        async with self._lock(server_id, kind):
            try:
                credentials = await self._get_credentials(server_id)
                payload = await self.client.request(credentials, path)
                records = await decode(server_id, payload)
                rows = await self.repository.replace_all(
                    server_id, kind, [record.model_dump() for record in records]
                )
            except Exception as exc:
                logger.error("Error syncing %s for server %s: %s", kind.value, server_id, exc)
                self._count(kind.value, ok=False)
                raise
        self._count(kind.value, ok=True)
        logger.info("Synced %d %s rows for server %s", len(rows), kind.value, server_id)
        return rows

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------
    async def sync_status(self, server_id: int) -> StatusResult:
        """Refresh reachability and version of a server.

        Fetches the system status and then the plain text system version.
        A failure of either call marks the server offline; remote failures
        never propagate and are returned in the result instead. A server id
        unknown to the mirror still raises ``NotFoundError``.
        """
        server = await self._get_server(server_id)
        credentials = self._credentials(server)
        try:
            payload = await self.client.request(credentials, PATHS["status"])
            if not isinstance(payload, (dict, list)):
                raise RemoteApiError("Unparsable status response", raw_body=str(payload or ""))
            raw_version = await self.client.request(credentials, PATHS["version"])
        except Exception as exc:
            await self.repository.update_server_status(
                server_id, status=ServerStatus.OFFLINE.value, last_synced_at=self.clock()
            )
            if self.metrics is not None:
                self.metrics.set_online(server_id, False)
            logger.warning("Server %s is offline: %s", server_id, exc)
            return StatusResult(status=ServerStatus.OFFLINE.value, error=str(exc))

        version = str(raw_version).strip() if raw_version is not None else ""
        version = version or "unknown"
        await self.repository.update_server_status(
            server_id,
            status=ServerStatus.ONLINE.value,
            version=version,
            last_synced_at=self.clock(),
        )
        if self.metrics is not None:
            self.metrics.set_online(server_id, True)
        logger.info("Server %s is online (version %s)", server_id, version)
        return StatusResult(status=ServerStatus.ONLINE.value, version=version)

    async def test_connection(self, server_id: int) -> bool:
        """Return True when the admin API accepts the server credentials."""
        try:
            await self.client.request(await self._get_credentials(server_id), PATHS["me"])
        except RemoteApiError as exc:
            logger.warning("Connection test for server %s failed: %s", server_id, exc)
            return False
        return True

    # ------------------------------------------------------------------
    # Collections
    # ------------------------------------------------------------------
    async def sync_dns(self, server_id: int) -> list[dict[str, Any]]:
        async def decode(sid: int, payload: Any) -> list[Any]:
            return normalize_dns(sid, payload)

        return await self._sync_collection(server_id, ResourceKind.DNS, PATHS["dns"], decode)

    async def sync_mailboxes(self, server_id: int) -> list[dict[str, Any]]:
        async def decode(sid: int, payload: Any) -> list[Any]:
            return normalize_mailboxes(sid, payload)

        return await self._sync_collection(
            server_id, ResourceKind.MAILBOXES, PATHS["users"], decode
        )

    async def sync_aliases(self, server_id: int) -> list[dict[str, Any]]:
        """Sync aliases, linking destinations to mailboxes already mirrored.

        The mailbox partition stays locked until the aliases are stored, so
        no mailbox disappears between the lookup and the replace.
        """

        async def decode(sid: int, payload: Any) -> list[Any]:
            mailboxes = await self.repository.list_rows(sid, ResourceKind.MAILBOXES)
            return normalize_aliases(sid, payload, mailboxes)

        async with self._lock(server_id, ResourceKind.MAILBOXES):
            return await self._sync_collection(
                server_id, ResourceKind.ALIASES, PATHS["aliases"], decode
            )

    async def sync_spam_filters(self, server_id: int) -> list[dict[str, Any]]:
        async def decode(sid: int, payload: Any) -> list[Any]:
            return normalize_spam_filters(sid, payload)

        return await self._sync_collection(
            server_id, ResourceKind.SPAM_FILTERS, PATHS["spam"], decode
        )

    async def sync_backups(self, server_id: int) -> list[dict[str, Any]]:
        async def decode(sid: int, payload: Any) -> list[Any]:
            return normalize_backups(sid, payload)

        return await self._sync_collection(
            server_id, ResourceKind.BACKUPS, PATHS["backup_config"], decode
        )

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------
    async def capture_metrics(self, server_id: int) -> dict[str, Any]:
        """Fetch status, memory, disk and queue and append one metrics entry."""
        kind = ResourceKind.METRICS
        logger.debug("Capturing metrics for server %s", server_id)
        try:
            credentials = await self._get_credentials(server_id)
            payloads = {}
            for name in ("status", "memory", "disk", "queue"):
                payloads[name] = await self.client.request(credentials, PATHS[name])
            entry = build_metrics_entry(server_id, captured_at=self.clock(), **payloads)
            row = await self.repository.insert_metrics_entry(entry.model_dump())
        except Exception as exc:
            logger.error("Error capturing metrics for server %s: %s", server_id, exc)
            self._count(kind.value, ok=False)
            raise
        self._count(kind.value, ok=True)
        return row

    async def sync_kind(self, server_id: int, kind: ResourceKind) -> Any:
        """Run the sync of one resource kind."""
        handlers = {
            ResourceKind.DNS: self.sync_dns,
            ResourceKind.MAILBOXES: self.sync_mailboxes,
            ResourceKind.ALIASES: self.sync_aliases,
            ResourceKind.SPAM_FILTERS: self.sync_spam_filters,
            ResourceKind.BACKUPS: self.sync_backups,
            ResourceKind.METRICS: self.capture_metrics,
        }
        return await handlers[ResourceKind(kind)](server_id)
