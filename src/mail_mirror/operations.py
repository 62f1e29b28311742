# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Mutating operations mixin for SyncEngine.

This module provides the OperationsMixin class with the create, delete and
run operations on remote resources. Every operation performs the remote call
first and touches the local mirror only after it succeeded, so a remote
failure leaves the mirror exactly as it was.

The one deliberate local write on failure is ``run_backup_now``, which
records a failed backup history entry before re-raising.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from .client import PATHS
from .errors import NotFoundError, RemoteApiError
from .logger import get_logger
from .models import (
    DEFAULT_BACKUP_SCHEDULE,
    DEFAULT_DNS_TTL,
    DEFAULT_RETENTION_DAYS,
    PRIORITY_RECORD_TYPES,
    BackupHistoryEntryCreate,
    BackupJobCreate,
    BackupRunStatus,
    BackupType,
    DnsRecordCreate,
    EmailAliasCreate,
    MailboxCreate,
    ResourceKind,
    SpamRuleType,
)
from .normalizers import (
    BACKUP_JOB_NAMES,
    address_filter,
    backup_config_keys,
    mailbox_index,
    threshold_filter,
)

if TYPE_CHECKING:
    from .sync import SyncEngine

logger = get_logger("MirrorOperations")

# Spam rule types the remote admin API can manage.
REMOTE_SPAM_RULES = {
    SpamRuleType.THRESHOLD,
    SpamRuleType.WHITELIST,
    SpamRuleType.BLACKLIST,
}

_ROW_LABELS = {
    ResourceKind.DNS: "DnsRecord",
    ResourceKind.MAILBOXES: "Mailbox",
    ResourceKind.ALIASES: "EmailAlias",
    ResourceKind.SPAM_FILTERS: "SpamFilter",
    ResourceKind.BACKUPS: "BackupJob",
}


class OperationsMixin:
    """Mixin providing remote-first mutating operations.

    Designed to be used with SyncEngine and assumes access to:
    - self.repository: Local mirror
    - self.client: Remote API client
    - self.metrics: Optional Prometheus metrics
    - self.clock: Callable returning the current datetime
    """

    async def _get_row(self: SyncEngine, kind: ResourceKind, row_id: int) -> dict[str, Any]:
        row = await self.repository.get_row(kind, row_id)
        if row is None:
            raise NotFoundError(_ROW_LABELS[kind], row_id)
        return row

    async def _remote_call(
        self: SyncEngine,
        operation: str,
        server_id: int,
        path: str,
        body: dict[str, Any],
    ) -> Any:
        """POST to the remote API, logging and counting the outcome."""
        logger.debug("Remote %s on server %s", operation, server_id)
        try:
            result = await self.client.request(
                await self._get_credentials(server_id), path, "POST", body
            )
        except Exception as exc:
            logger.error("Remote %s failed for server %s: %s", operation, server_id, exc)
            if self.metrics is not None:
                self.metrics.inc_operation_error(operation)
            raise
        if self.metrics is not None:
            self.metrics.inc_operation(operation)
        logger.info("Remote %s succeeded on server %s", operation, server_id)
        return result

    # ------------------------------------------------------------------
    # DNS records
    # ------------------------------------------------------------------
    async def create_dns_record(
        self: SyncEngine,
        server_id: int,
        record_type: str,
        name: str,
        value: str,
        *,
        priority: int | None = None,
        ttl: int = DEFAULT_DNS_TTL,
    ) -> dict[str, Any]:
        """Add a DNS record remotely, then mirror it."""
        record = DnsRecordCreate(
            server_id=server_id,
            record_type=record_type,
            name=name,
            value=value,
            priority=priority if record_type.upper() in PRIORITY_RECORD_TYPES else None,
            ttl=ttl,
        )
        body: dict[str, Any] = {
            "domain": record.name,
            "type": record.record_type,
            "value": record.value,
        }
        if record.priority is not None:
            body["priority"] = record.priority
        async with self._lock(server_id, ResourceKind.DNS):
            await self._remote_call("create_dns_record", server_id, PATHS["dns_add"], body)
            return await self.repository.insert_row(ResourceKind.DNS, record.model_dump())

    async def delete_dns_record(self: SyncEngine, record_id: int) -> None:
        record = await self._get_row(ResourceKind.DNS, record_id)
        server_id = record["server_id"]
        async with self._lock(server_id, ResourceKind.DNS):
            await self._remote_call(
                "delete_dns_record",
                server_id,
                PATHS["dns_remove"],
                {"domain": record["name"], "type": record["record_type"], "value": record["value"]},
            )
            await self.repository.delete_row(ResourceKind.DNS, record_id)

    # ------------------------------------------------------------------
    # Mailboxes
    # ------------------------------------------------------------------
    async def create_mailbox(
        self: SyncEngine,
        server_id: int,
        email: str,
        password: str,
        *,
        name: str | None = None,
        storage_limit: int | None = None,
    ) -> dict[str, Any]:
        """Create a mail user remotely, then mirror the new mailbox."""
        record = MailboxCreate(
            server_id=server_id,
            email=email,
            name=name or email.split("@", 1)[0],
            status="active",
            storage_used=0,
            storage_limit=storage_limit,
        )
        async with self._lock(server_id, ResourceKind.MAILBOXES):
            await self._remote_call(
                "create_mailbox",
                server_id,
                PATHS["users_add"],
                {"email": record.email, "password": password},
            )
            return await self.repository.insert_row(ResourceKind.MAILBOXES, record.model_dump())

    async def delete_mailbox(self: SyncEngine, mailbox_id: int) -> None:
        mailbox = await self._get_row(ResourceKind.MAILBOXES, mailbox_id)
        server_id = mailbox["server_id"]
        async with self._lock(server_id, ResourceKind.MAILBOXES):
            await self._remote_call(
                "delete_mailbox", server_id, PATHS["users_remove"], {"email": mailbox["email"]}
            )
            await self.repository.delete_row(ResourceKind.MAILBOXES, mailbox_id)

    async def change_mailbox_password(self: SyncEngine, mailbox_id: int, password: str) -> None:
        """Set a new password for a mailbox. Nothing is mirrored locally."""
        mailbox = await self._get_row(ResourceKind.MAILBOXES, mailbox_id)
        await self._remote_call(
            "change_mailbox_password",
            mailbox["server_id"],
            PATHS["users_password"],
            {"email": mailbox["email"], "password": password},
        )

    # ------------------------------------------------------------------
    # Aliases
    # ------------------------------------------------------------------
    async def create_alias(
        self: SyncEngine, server_id: int, source_email: str, destination_email: str
    ) -> dict[str, Any]:
        """Create an alias remotely, then mirror it linked to its mailbox."""
        # Mailbox lock first, as in sync_aliases.
        async with self._lock(server_id, ResourceKind.MAILBOXES), self._lock(
            server_id, ResourceKind.ALIASES
        ):
            await self._remote_call(
                "create_alias",
                server_id,
                PATHS["aliases_add"],
                {"source": source_email, "destination": destination_email},
            )
            mailboxes = await self.repository.list_rows(server_id, ResourceKind.MAILBOXES)
            record = EmailAliasCreate(
                server_id=server_id,
                mailbox_id=mailbox_index(mailboxes).get(destination_email.lower()),
                source_email=source_email,
                destination_email=destination_email,
            )
            return await self.repository.insert_row(ResourceKind.ALIASES, record.model_dump())

    async def delete_alias(self: SyncEngine, alias_id: int) -> None:
        alias = await self._get_row(ResourceKind.ALIASES, alias_id)
        server_id = alias["server_id"]
        async with self._lock(server_id, ResourceKind.ALIASES):
            await self._remote_call(
                "delete_alias",
                server_id,
                PATHS["aliases_remove"],
                {"source": alias["source_email"], "destination": alias["destination_email"]},
            )
            await self.repository.delete_row(ResourceKind.ALIASES, alias_id)

    # ------------------------------------------------------------------
    # Spam filters
    # ------------------------------------------------------------------
    async def create_spam_filter(
        self: SyncEngine,
        server_id: int,
        rule_type: SpamRuleType | str,
        *,
        pattern: str | None = None,
        score: float | None = None,
    ) -> dict[str, Any]:
        """Add a whitelist/blacklist address or set the spam threshold.

        Setting the threshold replaces the mirrored threshold row, keeping a
        single threshold per server.

        Raises:
            ValueError: For rule types the remote API cannot manage, or when
                the pattern (address rules) or score (threshold) is missing.
        """
        rule_type = SpamRuleType(rule_type)
        if rule_type not in REMOTE_SPAM_RULES:
            raise ValueError(f"Spam rule type '{rule_type.value}' is not supported remotely")

        if rule_type == SpamRuleType.THRESHOLD:
            if score is None:
                raise ValueError("score is required for threshold filters")
            record = threshold_filter(server_id, float(score))
            path, body = PATHS["spam_threshold"], {"threshold": record.score}
        else:
            if not pattern:
                raise ValueError(f"pattern is required for {rule_type.value} filters")
            record = address_filter(server_id, rule_type, pattern)
            path, body = PATHS[f"{rule_type.value}_add"], {"address": pattern}

        kind = ResourceKind.SPAM_FILTERS
        async with self._lock(server_id, kind):
            await self._remote_call("create_spam_filter", server_id, path, body)
            if rule_type == SpamRuleType.THRESHOLD:
                for row in await self.repository.list_rows(server_id, kind):
                    if row["rule_type"] == SpamRuleType.THRESHOLD.value:
                        await self.repository.delete_row(kind, row["id"])
            return await self.repository.insert_row(kind, record.model_dump())

    async def delete_spam_filter(self: SyncEngine, filter_id: int) -> None:
        """Remove a whitelist/blacklist address remotely, then locally.

        Raises:
            ValueError: For threshold filters (set a new threshold instead)
                and rule types the remote API cannot manage.
        """
        spam_filter = await self._get_row(ResourceKind.SPAM_FILTERS, filter_id)
        rule_type = SpamRuleType(spam_filter["rule_type"])
        if rule_type not in (SpamRuleType.WHITELIST, SpamRuleType.BLACKLIST):
            raise ValueError(f"Spam filters of type '{rule_type.value}' cannot be deleted")

        server_id = spam_filter["server_id"]
        async with self._lock(server_id, ResourceKind.SPAM_FILTERS):
            await self._remote_call(
                "delete_spam_filter",
                server_id,
                PATHS[f"{rule_type.value}_remove"],
                {"address": spam_filter["pattern"]},
            )
            await self.repository.delete_row(ResourceKind.SPAM_FILTERS, filter_id)

    # ------------------------------------------------------------------
    # Backups
    # ------------------------------------------------------------------
    async def create_backup_job(
        self: SyncEngine,
        server_id: int,
        backup_type: BackupType | str,
        destination: str,
        *,
        schedule: str = DEFAULT_BACKUP_SCHEDULE,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        encryption_key: str | None = None,
    ) -> dict[str, Any]:
        """Configure the system or mail backup remotely, then mirror the job.

        Raises:
            ValueError: If a job of the same type is already mirrored.
        """
        backup_type = BackupType(backup_type)
        record = BackupJobCreate(
            server_id=server_id,
            name=BACKUP_JOB_NAMES[backup_type],
            backup_type=backup_type,
            destination=destination,
            schedule=schedule,
            retention_days=retention_days,
            encryption_key=encryption_key,
        )
        values: dict[str, Any] = {
            "target": destination,
            "schedule": schedule,
            "retention_days": retention_days,
        }
        if encryption_key:
            values["encryption_key"] = encryption_key

        kind = ResourceKind.BACKUPS
        async with self._lock(server_id, kind):
            for row in await self.repository.list_rows(server_id, kind):
                if row["backup_type"] == backup_type.value:
                    raise ValueError(
                        f"A {backup_type.value} backup job already exists on server {server_id}"
                    )
            await self._remote_call(
                "create_backup_job",
                server_id,
                PATHS["backup_config"],
                backup_config_keys(backup_type, values),
            )
            return await self.repository.insert_row(kind, record.model_dump())

    async def delete_backup_job(self: SyncEngine, job_id: int) -> None:
        job = await self._get_row(ResourceKind.BACKUPS, job_id)
        server_id = job["server_id"]
        async with self._lock(server_id, ResourceKind.BACKUPS):
            await self._remote_call(
                "delete_backup_job", server_id, PATHS["backup_remove"], {"type": job["backup_type"]}
            )
            await self.repository.delete_row(ResourceKind.BACKUPS, job_id)

    async def toggle_backup_job(self: SyncEngine, job_id: int, enabled: bool) -> str:
        """Enable or disable a backup job; returns the new mirrored status."""
        job = await self._get_row(ResourceKind.BACKUPS, job_id)
        server_id = job["server_id"]
        status = "idle" if enabled else "disabled"
        async with self._lock(server_id, ResourceKind.BACKUPS):
            await self._remote_call(
                "toggle_backup_job",
                server_id,
                PATHS["backup_toggle"],
                {"type": job["backup_type"], "enabled": enabled},
            )
            await self.repository.update_backup_job_status(job_id, status)
        return status

    async def run_backup_now(self: SyncEngine, job_id: int) -> dict[str, Any]:
        """Trigger a backup run.

        On success a "running" history entry is appended and the job status
        becomes "running". On remote failure a "failed" entry with the error
        is appended, the job status is left unchanged and the error is
        re-raised. Completion of a running entry is not tracked here.
        """
        job = await self._get_row(ResourceKind.BACKUPS, job_id)
        server_id = job["server_id"]
        async with self._lock(server_id, ResourceKind.BACKUPS):
            started_at = self.clock()
            try:
                await self._remote_call(
                    "run_backup", server_id, PATHS["backup_run"], {"type": job["backup_type"]}
                )
            except RemoteApiError as exc:
                entry = BackupHistoryEntryCreate(
                    job_id=job_id,
                    started_at=started_at,
                    completed_at=started_at,
                    status=BackupRunStatus.FAILED,
                    error=str(exc) or type(exc).__name__,
                )
                await self.repository.insert_backup_history_entry(entry.model_dump())
                raise

            entry = BackupHistoryEntryCreate(
                job_id=job_id, started_at=started_at, status=BackupRunStatus.RUNNING
            )
            row = await self.repository.insert_backup_history_entry(entry.model_dump())
            await self.repository.update_backup_job_status(job_id, BackupRunStatus.RUNNING.value)
        logger.info("Backup job %s started on server %s", job_id, server_id)
        return row
