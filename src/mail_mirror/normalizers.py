# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pure decoders from remote admin API payloads to canonical records.

Each remote endpoint speaks its own grammar. This module holds one decoder
per remote shape, with no I/O, so every decoder can be tested against literal
sample payloads:

- ``normalize_dns``: list of zones, each with a list of records.
- ``normalize_mailboxes``: object keyed by email address.
- ``normalize_aliases``: object keyed by source address, resolved against the
  mailboxes already mirrored for the server.
- ``normalize_spam_filters``: threshold plus whitelist/blacklist arrays.
- ``normalize_backups``: one config object with two parallel key families.
- ``build_metrics_entry``: status, memory, disk and queue payloads.

Decoders raise ``ValueError`` (pydantic's ``ValidationError`` included) when a
payload does not match its shape.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from .models import (
    DEFAULT_BACKUP_SCHEDULE,
    DEFAULT_DNS_TTL,
    DEFAULT_RETENTION_DAYS,
    PRIORITY_RECORD_TYPES,
    BackupJobCreate,
    BackupType,
    DnsRecordCreate,
    EmailAliasCreate,
    MailboxCreate,
    RemoteAlias,
    RemoteBackupConfig,
    RemoteDnsZone,
    RemoteMailUser,
    RemoteSpamSettings,
    ServerMetricsEntryCreate,
    SpamFilterCreate,
    SpamRuleType,
)

BYTES_PER_MB = 1024 * 1024
BACKUP_TARGET_OFF = "off"

_LEADING_PRIORITY = re.compile(r"^\s*(\d+)\s+")


def _expect(payload: Any, expected: type, what: str) -> Any:
    if not isinstance(payload, expected):
        raise ValueError(
            f"Unexpected {what} payload: expected {expected.__name__}, "
            f"got {type(payload).__name__}"
        )
    return payload


# ---------------------------------------------------------------------------
# DNS
# ---------------------------------------------------------------------------


def _dns_priority(record_type: str, priority: int | None, value: str) -> int | None:
    if record_type not in PRIORITY_RECORD_TYPES:
        return None
    if priority is not None:
        return priority
    match = _LEADING_PRIORITY.match(value)
    return int(match.group(1)) if match else None


def normalize_dns(server_id: int, payload: Any) -> list[DnsRecordCreate]:
    """Flatten a list of zones into one DnsRecord per zone record.

    ``priority`` is kept only for MX and SRV records, either from the record
    itself or from a leading integer in the value ("10 mail.example.com").
    """
    zones = _expect(payload, list, "DNS zone list")
    records: list[DnsRecordCreate] = []
    for raw_zone in zones:
        zone = RemoteDnsZone.model_validate(raw_zone)
        for record in zone.records:
            record_type = record.record_type.upper()
            records.append(
                DnsRecordCreate(
                    server_id=server_id,
                    record_type=record_type,
                    name=record.name or zone.zone,
                    value=record.value,
                    priority=_dns_priority(record_type, record.priority, record.value),
                    ttl=record.ttl if record.ttl is not None else DEFAULT_DNS_TTL,
                    is_managed=True,
                )
            )
    return records


# ---------------------------------------------------------------------------
# Mailboxes
# ---------------------------------------------------------------------------


def _mb_to_bytes(value: float | None) -> int | None:
    if value is None:
        return None
    return int(round(value * BYTES_PER_MB))


def normalize_mailboxes(server_id: int, payload: Any) -> list[MailboxCreate]:
    """Decode the mail user map keyed by email address.

    Missing name defaults to the local part of the address, missing status to
    "active", missing usage to 0. Usage and quota are reported in megabytes.
    """
    users = _expect(payload, dict, "mail user map")
    mailboxes: list[MailboxCreate] = []
    for email, raw_info in users.items():
        info = RemoteMailUser.model_validate(raw_info or {})
        mailboxes.append(
            MailboxCreate(
                server_id=server_id,
                email=email,
                name=info.name or email.split("@", 1)[0],
                status=info.status or "active",
                storage_used=_mb_to_bytes(info.usage) or 0,
                storage_limit=_mb_to_bytes(info.quota),
                last_login=info.last_login,
            )
        )
    return mailboxes


# ---------------------------------------------------------------------------
# Aliases
# ---------------------------------------------------------------------------


def mailbox_index(mailboxes: Iterable[dict[str, Any]]) -> dict[str, int]:
    """Map lower-cased email address to mailbox id."""
    return {m["email"].lower(): m["id"] for m in mailboxes}


def normalize_aliases(
    server_id: int, payload: Any, mailboxes: Iterable[dict[str, Any]]
) -> list[EmailAliasCreate]:
    """Decode the alias map keyed by source address.

    Each destination becomes its own row. ``mailbox_id`` is resolved against
    ``mailboxes`` (rows already mirrored for this server) and left None when
    the destination is not a local mailbox.
    """
    aliases = _expect(payload, dict, "alias map")
    by_email = mailbox_index(mailboxes)
    rows: list[EmailAliasCreate] = []
    for source, raw_alias in aliases.items():
        if isinstance(raw_alias, (list, str)):
            raw_alias = {"forward_to": raw_alias}
        alias = RemoteAlias.model_validate(raw_alias or {})
        for destination in alias.forward_to:
            rows.append(
                EmailAliasCreate(
                    server_id=server_id,
                    mailbox_id=by_email.get(destination.lower()),
                    source_email=source,
                    destination_email=destination,
                    is_active=alias.active,
                    expires_at=alias.expires_at,
                )
            )
    return rows


# ---------------------------------------------------------------------------
# Spam filters
# ---------------------------------------------------------------------------


def parse_threshold(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid spam threshold: {value!r}") from exc


def threshold_filter(server_id: int, score: float) -> SpamFilterCreate:
    return SpamFilterCreate(
        server_id=server_id,
        name="Spam score threshold",
        rule_type=SpamRuleType.THRESHOLD,
        pattern=f"{score:g}",
        action="mark",
        score=score,
    )


def address_filter(
    server_id: int, rule_type: SpamRuleType, address: str
) -> SpamFilterCreate:
    """Build a whitelist or blacklist row for one address."""
    action = "allow" if rule_type == SpamRuleType.WHITELIST else "reject"
    return SpamFilterCreate(
        server_id=server_id,
        name=f"{rule_type.value.capitalize()} {address}",
        rule_type=rule_type,
        pattern=address,
        action=action,
        score=None,
    )


def normalize_spam_filters(server_id: int, payload: Any) -> list[SpamFilterCreate]:
    """Decode spam settings into one threshold row plus one row per address."""
    settings = RemoteSpamSettings.model_validate(_expect(payload, dict, "spam settings"))
    rows: list[SpamFilterCreate] = []
    if settings.spam_threshold not in (None, ""):
        rows.append(threshold_filter(server_id, parse_threshold(settings.spam_threshold)))
    for address in settings.whitelist_addresses:
        rows.append(address_filter(server_id, SpamRuleType.WHITELIST, address))
    for address in settings.blacklist_addresses:
        rows.append(address_filter(server_id, SpamRuleType.BLACKLIST, address))
    return rows


# ---------------------------------------------------------------------------
# Backups
# ---------------------------------------------------------------------------

BACKUP_JOB_NAMES = {
    BackupType.SYSTEM: "System backup",
    BackupType.MAIL: "Mail backup",
}

# Config key prefix of each backup family.
BACKUP_KEY_PREFIX = {
    BackupType.SYSTEM: "",
    BackupType.MAIL: "email_",
}


def backup_config_keys(backup_type: BackupType, values: dict[str, Any]) -> dict[str, Any]:
    """Prefix config keys with the family prefix of ``backup_type``."""
    prefix = BACKUP_KEY_PREFIX[backup_type]
    return {f"{prefix}{key}": value for key, value in values.items()}


def normalize_backups(server_id: int, payload: Any) -> list[BackupJobCreate]:
    """Decode the backup config into up to two jobs (system and mail)."""
    config = RemoteBackupConfig.model_validate(_expect(payload, dict, "backup config"))
    jobs: list[BackupJobCreate] = []
    for backup_type, prefix in BACKUP_KEY_PREFIX.items():
        target = getattr(config, f"{prefix}target")
        if not target or target == BACKUP_TARGET_OFF:
            continue
        retention = getattr(config, f"{prefix}retention_days")
        jobs.append(
            BackupJobCreate(
                server_id=server_id,
                name=BACKUP_JOB_NAMES[backup_type],
                backup_type=backup_type,
                destination=target,
                schedule=getattr(config, f"{prefix}schedule") or DEFAULT_BACKUP_SCHEDULE,
                status=getattr(config, f"{prefix}status") or "idle",
                retention_days=retention or DEFAULT_RETENTION_DAYS,
                encryption_key=getattr(config, f"{prefix}encryption_key"),
                last_run_at=getattr(config, f"{prefix}last_run"),
                next_run_at=getattr(config, f"{prefix}next_run"),
            )
        )
    return jobs


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


def _number(value: Any) -> float | None:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def percentage(used: Any, total: Any) -> float:
    """Return used/total*100, or 0 when the total is missing or zero."""
    used_value = _number(used) or 0.0
    total_value = _number(total)
    if not total_value:
        return 0.0
    return round(used_value / total_value * 100, 2)


def _pick(payload: Any, *keys: str) -> Any:
    if not isinstance(payload, dict):
        return None
    for key in keys:
        if payload.get(key) is not None:
            return payload[key]
    return None


def queue_size(payload: Any) -> int | None:
    """Count queued messages from a list or a ``{size}``/``{queue}`` object."""
    if isinstance(payload, list):
        return len(payload)
    if isinstance(payload, dict):
        if payload.get("size") is not None:
            size = _number(payload["size"])
            return int(size) if size is not None else None
        if isinstance(payload.get("queue"), list):
            return len(payload["queue"])
    return None


def build_metrics_entry(
    server_id: int,
    *,
    status: Any,
    memory: Any,
    disk: Any,
    queue: Any,
    captured_at: datetime,
) -> ServerMetricsEntryCreate:
    """Combine the four system payloads into one metrics entry."""
    connections = _number(_pick(status, "active_connections", "connections"))
    return ServerMetricsEntryCreate(
        server_id=server_id,
        cpu_usage=_number(_pick(status, "cpu_usage", "cpu")),
        memory_usage=percentage(
            _pick(memory, "memory_used", "used"), _pick(memory, "memory_total", "total")
        ),
        disk_usage=percentage(
            _pick(disk, "disk_used", "used"), _pick(disk, "disk_total", "total")
        ),
        queue_size=queue_size(queue),
        active_connections=int(connections) if connections is not None else None,
        raw_metrics={"status": status, "memory": memory, "disk": disk, "queue": queue},
        captured_at=captured_at,
    )

