# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pydantic models for the mail mirror engine.

This module defines two families of models:

Canonical records (what the local mirror stores):
    - DnsRecordCreate, MailboxCreate, EmailAliasCreate, SpamFilterCreate,
      BackupJobCreate, BackupHistoryEntryCreate, ServerMetricsEntryCreate
    - RemoteServerCreate: registration payload for a remote server

Remote shapes (what each admin API endpoint returns):
    - RemoteDnsZone / RemoteDnsRecord
    - RemoteMailUser
    - RemoteAlias
    - RemoteSpamSettings
    - RemoteBackupConfig

Remote shapes are lenient (unknown keys are ignored) because every endpoint
has its own ad hoc grammar. Canonical records forbid unknown keys.
"""

from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from typing import Annotated, Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

DEFAULT_API_ENDPOINT = "/admin"
DEFAULT_DNS_TTL = 3600
DEFAULT_BACKUP_SCHEDULE = "daily"
DEFAULT_RETENTION_DAYS = 30
PRIORITY_RECORD_TYPES = frozenset({"MX", "SRV"})


class ResourceKind(str, Enum):
    """Resource kinds mirrored from a remote server."""

    DNS = "dns"
    MAILBOXES = "mailboxes"
    ALIASES = "aliases"
    SPAM_FILTERS = "spam_filters"
    BACKUPS = "backups"
    METRICS = "metrics"


# Kinds stored as fully-replaced collections (metrics are append-only).
COLLECTION_KINDS: tuple[ResourceKind, ...] = (
    ResourceKind.DNS,
    ResourceKind.MAILBOXES,
    ResourceKind.ALIASES,
    ResourceKind.SPAM_FILTERS,
    ResourceKind.BACKUPS,
)
ALL_KINDS: tuple[ResourceKind, ...] = COLLECTION_KINDS + (ResourceKind.METRICS,)


class ServerStatus(str, Enum):
    """Reachability state of a remote server."""

    UNKNOWN = "unknown"
    ONLINE = "online"
    OFFLINE = "offline"


class SpamRuleType(str, Enum):
    THRESHOLD = "threshold"
    WHITELIST = "whitelist"
    BLACKLIST = "blacklist"
    HEADER = "header"
    BODY = "body"
    ATTACHMENT = "attachment"
    SENDER = "sender"
    RECIPIENT = "recipient"


class BackupType(str, Enum):
    """Logical backup jobs a remote server can describe."""

    SYSTEM = "system"
    MAIL = "mail"


class BackupRunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Canonical records
# ---------------------------------------------------------------------------


class RemoteServerCreate(BaseModel):
    """Payload for registering a remote mail server in the mirror."""

    model_config = ConfigDict(extra="forbid")

    hostname: Annotated[str, Field(min_length=1, max_length=255)]
    api_key: Annotated[str, Field(min_length=1)]
    api_endpoint: Annotated[str, Field(default=DEFAULT_API_ENDPOINT)]
    name: Annotated[str | None, Field(default=None, max_length=255)]

    @field_validator("api_endpoint")
    @classmethod
    def endpoint_starts_with_slash(cls, v: str) -> str:
        """Normalize the endpoint to a single leading slash, no trailing one."""
        v = (v or DEFAULT_API_ENDPOINT).strip()
        return "/" + v.strip("/") if v.strip("/") else ""


class DnsRecordCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    server_id: int
    record_type: Annotated[str, Field(min_length=1)]
    name: Annotated[str, Field(min_length=1)]
    value: str
    priority: int | None = None
    ttl: Annotated[int, Field(default=DEFAULT_DNS_TTL, ge=0)]
    is_managed: bool = True

    @field_validator("record_type")
    @classmethod
    def upper_record_type(cls, v: str) -> str:
        return v.upper()


class MailboxCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    server_id: int
    email: Annotated[str, Field(min_length=3, pattern=r"^[^@\s]+@[^@\s]+$")]
    name: str
    status: str = "active"
    storage_used: Annotated[int, Field(default=0, ge=0)]
    storage_limit: Annotated[int | None, Field(default=None, ge=0)]
    last_login: datetime | None = None


class EmailAliasCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    server_id: int
    mailbox_id: int | None = None
    source_email: Annotated[str, Field(min_length=1)]
    destination_email: Annotated[str, Field(min_length=1)]
    is_active: bool = True
    expires_at: datetime | None = None


class SpamFilterCreate(BaseModel):
    model_config = ConfigDict(extra="forbid", use_enum_values=True)

    server_id: int
    name: str
    rule_type: SpamRuleType
    pattern: str
    action: str
    is_active: bool = True
    description: str | None = None
    score: float | None = None


class BackupJobCreate(BaseModel):
    model_config = ConfigDict(extra="forbid", use_enum_values=True)

    server_id: int
    name: str
    backup_type: BackupType
    destination: Annotated[str, Field(min_length=1)]
    schedule: str = DEFAULT_BACKUP_SCHEDULE
    status: str = "idle"
    retention_days: Annotated[int, Field(default=DEFAULT_RETENTION_DAYS, ge=1)]
    encryption_key: str | None = None
    last_run_at: datetime | None = None
    next_run_at: datetime | None = None


class BackupHistoryEntryCreate(BaseModel):
    model_config = ConfigDict(extra="forbid", use_enum_values=True)

    job_id: int
    started_at: datetime
    completed_at: datetime | None = None
    status: BackupRunStatus
    size_bytes: int | None = None
    error: str | None = None


class ServerMetricsEntryCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    server_id: int
    cpu_usage: float | None = None
    memory_usage: float | None = None
    disk_usage: float | None = None
    queue_size: int | None = None
    active_connections: int | None = None
    raw_metrics: dict[str, Any] = Field(default_factory=dict)
    captured_at: datetime


# ---------------------------------------------------------------------------
# Remote shapes
# ---------------------------------------------------------------------------


class _RemoteShape(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class RemoteDnsRecord(_RemoteShape):
    name: Annotated[
        str | None,
        Field(default=None, validation_alias=AliasChoices("qname", "name")),
    ]
    record_type: Annotated[
        str, Field(validation_alias=AliasChoices("rtype", "type", "record_type"))
    ]
    value: str
    ttl: int | None = None
    priority: int | None = None

    @field_validator("value", mode="before")
    @classmethod
    def stringify_value(cls, v: Any) -> Any:
        return v if isinstance(v, str) else json.dumps(v)


class RemoteDnsZone(_RemoteShape):
    zone: str
    records: list[RemoteDnsRecord] = Field(default_factory=list)


class RemoteMailUser(_RemoteShape):
    name: str | None = None
    status: str | None = None
    usage: float | None = None
    quota: float | None = None
    last_login: datetime | None = None


class RemoteAlias(_RemoteShape):
    forward_to: list[str] = Field(default_factory=list)
    active: bool = True
    expires_at: datetime | None = None

    @field_validator("forward_to", mode="before")
    @classmethod
    def split_destinations(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, str):
            return [part.strip() for part in v.split(",") if part.strip()]
        return v


class RemoteSpamSettings(_RemoteShape):
    spam_threshold: Any = None
    whitelist_addresses: list[str] = Field(default_factory=list)
    blacklist_addresses: list[str] = Field(default_factory=list)


class RemoteBackupConfig(_RemoteShape):
    """Backup configuration with two parallel key families.

    Unprefixed keys describe the system backup; ``email_``-prefixed keys
    describe the separate mail backup.
    """

    target: str | None = None
    schedule: str | None = None
    retention_days: int | None = None
    encryption_key: str | None = None
    status: str | None = None
    last_run: datetime | None = None
    next_run: datetime | None = None

    email_target: str | None = None
    email_schedule: str | None = None
    email_retention_days: int | None = None
    email_encryption_key: str | None = None
    email_status: str | None = None
    email_last_run: datetime | None = None
    email_next_run: datetime | None = None
