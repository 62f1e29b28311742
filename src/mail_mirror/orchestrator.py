# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Full-server sync orchestration.

A full sync always starts with the status sync. When the server turns out to
be offline nothing else runs. Otherwise every requested resource kind is
synced, sequentially or concurrently, and each kind's failure is recorded
without affecting the others.

Aliases resolve their destinations against the mirrored mailboxes, so when
both kinds are requested the alias sync always runs after the mailbox sync
(also in concurrent mode, where the pair forms one chain).
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from .logger import get_logger
from .models import ALL_KINDS, ResourceKind
from .sync import StatusResult, SyncEngine

logger = get_logger("SyncOrchestrator")


@dataclass
class FullSyncResult:
    """Outcome of a full-server sync.

    Attributes:
        server_id: Synced server.
        status: Result of the status sync.
        outcomes: Sync result per kind that succeeded.
        errors: Error message per kind that failed.
    """

    server_id: int
    status: StatusResult
    outcomes: dict[str, Any] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status.online and not self.errors

    @property
    def skipped(self) -> bool:
        """True when the server was offline and no resource sync ran."""
        return not self.status.online


class SyncOrchestrator:
    """Runs status plus resource syncs for one server."""

    def __init__(self, engine: SyncEngine):
        self.engine = engine

    async def _run_kind(self, result: FullSyncResult, kind: ResourceKind) -> None:
        try:
            result.outcomes[kind.value] = await self.engine.sync_kind(result.server_id, kind)
        except Exception as exc:
            result.errors[kind.value] = str(exc) or type(exc).__name__

    async def _run_chain(self, result: FullSyncResult, kinds: list[ResourceKind]) -> None:
        for kind in kinds:
            await self._run_kind(result, kind)

    async def sync_server(
        self,
        server_id: int,
        kinds: Iterable[ResourceKind | str] = ALL_KINDS,
        concurrent: bool = True,
    ) -> FullSyncResult:
        """Sync status and then the requested kinds of one server.

        Args:
            server_id: Server to sync.
            kinds: Resource kinds to sync after the status. Defaults to all.
            concurrent: Run independent kinds concurrently.

        Returns:
            FullSyncResult with per-kind outcomes and errors.

        Raises:
            NotFoundError: If the server is not in the mirror.
            ValueError: If a kind is unknown. Nothing is fetched or written.
        """
        # Deduplicate, keep order.
        requested = list(dict.fromkeys(ResourceKind(kind) for kind in kinds))

        status = await self.engine.sync_status(server_id)
        result = FullSyncResult(server_id=server_id, status=status)
        if not status.online:
            logger.warning("Server %s offline, skipping resource syncs", server_id)
            return result

        chains: list[list[ResourceKind]] = []
        for kind in requested:
            if kind == ResourceKind.ALIASES and ResourceKind.MAILBOXES in requested:
                continue
            chain = [kind]
            if kind == ResourceKind.MAILBOXES and ResourceKind.ALIASES in requested:
                chain.append(ResourceKind.ALIASES)
            chains.append(chain)

        if concurrent:
            await asyncio.gather(*(self._run_chain(result, chain) for chain in chains))
        else:
            for chain in chains:
                await self._run_chain(result, chain)

        if result.errors:
            logger.warning(
                "Sync of server %s finished with errors in: %s",
                server_id,
                ", ".join(sorted(result.errors)),
            )
        else:
            logger.info("Sync of server %s completed", server_id)
        return result
