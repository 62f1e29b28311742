"""Tests for remote-first mutating operations."""

import pytest

from mail_mirror.client import PATHS, RemoteApiClient
from mail_mirror.errors import NotFoundError, RemoteApiError
from mail_mirror.models import ResourceKind
from mail_mirror.prometheus import SyncMetrics
from mail_mirror.sync import SyncEngine

from conftest import FIXED_NOW, DummyClient, DummyResponse, DummySession, install_session

OK = {"status": "ok"}


async def _snapshot(persistence, server_id):
    return {kind: await persistence.list_rows(server_id, kind) for kind in ResourceKind
            if kind != ResourceKind.METRICS}


class TestMailboxOperations:
    """Mailbox create/delete/password."""

    @pytest.mark.asyncio
    async def test_create_mailbox(self, engine, client, server, persistence):
        client.routes[PATHS["users_add"]] = "mail user added"

        row = await engine.create_mailbox(server["id"], "new@x.com", "pw", storage_limit=1024)

        assert client.posted(PATHS["users_add"]) == [{"email": "new@x.com", "password": "pw"}]
        assert row["email"] == "new@x.com"
        assert row["name"] == "new"
        assert row["status"] == "active"
        assert row["storage_limit"] == 1024
        assert await persistence.list_rows(server["id"], ResourceKind.MAILBOXES) == [row]

    @pytest.mark.asyncio
    async def test_create_mailbox_remote_failure_leaves_mirror_untouched(
        self, engine, client, server, persistence
    ):
        client.routes[PATHS["users_add"]] = RemoteApiError("User exists", http_status=400)
        before = await _snapshot(persistence, server["id"])

        with pytest.raises(RemoteApiError):
            await engine.create_mailbox(server["id"], "new@x.com", "pw")

        assert await _snapshot(persistence, server["id"]) == before

    @pytest.mark.asyncio
    async def test_delete_mailbox(self, engine, client, server, persistence):
        client.routes[PATHS["users_add"]] = OK
        client.routes[PATHS["users_remove"]] = OK
        row = await engine.create_mailbox(server["id"], "gone@x.com", "pw")

        await engine.delete_mailbox(row["id"])

        assert client.posted(PATHS["users_remove"]) == [{"email": "gone@x.com"}]
        assert await persistence.get_row(ResourceKind.MAILBOXES, row["id"]) is None

    @pytest.mark.asyncio
    async def test_delete_missing_mailbox_raises_before_remote_call(self, engine, client):
        with pytest.raises(NotFoundError):
            await engine.delete_mailbox(12345)

        assert client.calls == []

    @pytest.mark.asyncio
    async def test_delete_mailbox_remote_failure_keeps_row(self, engine, client, server, persistence):
        client.routes[PATHS["users_add"]] = OK
        client.routes[PATHS["users_remove"]] = RemoteApiError("nope", http_status=500)
        row = await engine.create_mailbox(server["id"], "keep@x.com", "pw")

        with pytest.raises(RemoteApiError):
            await engine.delete_mailbox(row["id"])

        assert await persistence.get_row(ResourceKind.MAILBOXES, row["id"]) == row

    @pytest.mark.asyncio
    async def test_change_password(self, engine, client, server):
        client.routes[PATHS["users_add"]] = OK
        client.routes[PATHS["users_password"]] = OK
        row = await engine.create_mailbox(server["id"], "a@x.com", "old")

        await engine.change_mailbox_password(row["id"], "new")

        assert client.posted(PATHS["users_password"]) == [{"email": "a@x.com", "password": "new"}]


class TestAliasOperations:
    """Alias create/delete."""

    @pytest.mark.asyncio
    async def test_create_alias_links_mailbox(self, engine, client, server):
        client.routes[PATHS["users_add"]] = OK
        client.routes[PATHS["aliases_add"]] = OK
        mailbox = await engine.create_mailbox(server["id"], "b@x.com", "pw")

        alias = await engine.create_alias(server["id"], "a@x.com", "B@x.com")

        assert client.posted(PATHS["aliases_add"]) == [{"source": "a@x.com", "destination": "B@x.com"}]
        assert alias["mailbox_id"] == mailbox["id"]
        assert alias["is_active"] is True

    @pytest.mark.asyncio
    async def test_create_alias_to_external_address(self, engine, client, server):
        client.routes[PATHS["aliases_add"]] = OK

        alias = await engine.create_alias(server["id"], "a@x.com", "someone@elsewhere.org")

        assert alias["mailbox_id"] is None

    @pytest.mark.asyncio
    async def test_delete_alias(self, engine, client, server, persistence):
        client.routes[PATHS["aliases_add"]] = OK
        client.routes[PATHS["aliases_remove"]] = OK
        alias = await engine.create_alias(server["id"], "a@x.com", "b@x.com")

        await engine.delete_alias(alias["id"])

        assert client.posted(PATHS["aliases_remove"]) == [{"source": "a@x.com", "destination": "b@x.com"}]
        assert await persistence.list_rows(server["id"], ResourceKind.ALIASES) == []


class TestSpamFilterOperations:
    """Spam filter create/delete."""

    @pytest.mark.asyncio
    async def test_whitelist_add_and_remove(self, engine, client, server, persistence):
        client.routes[PATHS["whitelist_add"]] = OK
        client.routes[PATHS["whitelist_remove"]] = OK

        row = await engine.create_spam_filter(server["id"], "whitelist", pattern="ok@x.com")
        assert (row["rule_type"], row["pattern"], row["action"]) == ("whitelist", "ok@x.com", "allow")
        assert client.posted(PATHS["whitelist_add"]) == [{"address": "ok@x.com"}]

        await engine.delete_spam_filter(row["id"])
        assert client.posted(PATHS["whitelist_remove"]) == [{"address": "ok@x.com"}]
        assert await persistence.list_rows(server["id"], ResourceKind.SPAM_FILTERS) == []

    @pytest.mark.asyncio
    async def test_blacklist_add(self, engine, client, server):
        client.routes[PATHS["blacklist_add"]] = OK

        row = await engine.create_spam_filter(server["id"], "blacklist", pattern="bad@x.com")

        assert row["action"] == "reject"

    @pytest.mark.asyncio
    async def test_threshold_replaces_previous(self, engine, client, server, persistence):
        client.routes[PATHS["spam_threshold"]] = OK

        await engine.create_spam_filter(server["id"], "threshold", score=5)
        row = await engine.create_spam_filter(server["id"], "threshold", score=6.5)

        assert client.posted(PATHS["spam_threshold"]) == [{"threshold": 5.0}, {"threshold": 6.5}]
        rows = await persistence.list_rows(server["id"], ResourceKind.SPAM_FILTERS)
        assert rows == [row]
        assert row["score"] == 6.5

    @pytest.mark.asyncio
    async def test_threshold_cannot_be_deleted(self, engine, client, server):
        client.routes[PATHS["spam_threshold"]] = OK
        row = await engine.create_spam_filter(server["id"], "threshold", score=5)

        with pytest.raises(ValueError):
            await engine.delete_spam_filter(row["id"])

    @pytest.mark.asyncio
    @pytest.mark.parametrize("rule_type", ["header", "body", "attachment", "sender", "recipient"])
    async def test_unsupported_rule_types_raise_before_remote_call(self, engine, client, server, rule_type):
        with pytest.raises(ValueError):
            await engine.create_spam_filter(server["id"], rule_type, pattern="x")

        assert client.calls == []

    @pytest.mark.asyncio
    async def test_unknown_rule_type_raises(self, engine, server):
        with pytest.raises(ValueError):
            await engine.create_spam_filter(server["id"], "magic", pattern="x")

    @pytest.mark.asyncio
    async def test_missing_pattern_or_score(self, engine, server):
        with pytest.raises(ValueError):
            await engine.create_spam_filter(server["id"], "whitelist")
        with pytest.raises(ValueError):
            await engine.create_spam_filter(server["id"], "threshold")


class TestDnsOperations:
    """DNS record create/delete."""

    @pytest.mark.asyncio
    async def test_create_and_delete_mx(self, engine, client, server, persistence):
        client.routes[PATHS["dns_add"]] = OK
        client.routes[PATHS["dns_remove"]] = OK

        row = await engine.create_dns_record(server["id"], "mx", "x.com", "mail.x.com", priority=10)

        assert client.posted(PATHS["dns_add"]) == [
            {"domain": "x.com", "type": "MX", "value": "mail.x.com", "priority": 10}
        ]
        assert (row["record_type"], row["priority"], row["ttl"]) == ("MX", 10, 3600)

        await engine.delete_dns_record(row["id"])
        assert client.posted(PATHS["dns_remove"]) == [{"domain": "x.com", "type": "MX", "value": "mail.x.com"}]
        assert await persistence.list_rows(server["id"], ResourceKind.DNS) == []

    @pytest.mark.asyncio
    async def test_priority_dropped_for_a_record(self, engine, client, server):
        client.routes[PATHS["dns_add"]] = OK

        row = await engine.create_dns_record(server["id"], "A", "x.com", "1.2.3.4", priority=10)

        assert row["priority"] is None
        assert "priority" not in client.posted(PATHS["dns_add"])[0]


class TestBackupOperations:
    """Backup job create/delete/toggle/run."""

    async def _job(self, engine, client, server_id, backup_type="system"):
        client.routes[PATHS["backup_config"]] = OK
        return await engine.create_backup_job(server_id, backup_type, "s3://bucket/backups")

    @pytest.mark.asyncio
    async def test_create_mail_backup_uses_prefixed_keys(self, engine, client, server):
        client.routes[PATHS["backup_config"]] = OK

        job = await engine.create_backup_job(
            server["id"], "mail", "s3://bucket/mail", schedule="weekly", encryption_key="k"
        )

        assert client.posted(PATHS["backup_config"]) == [{
            "email_target": "s3://bucket/mail",
            "email_schedule": "weekly",
            "email_retention_days": 30,
            "email_encryption_key": "k",
        }]
        assert job["name"] == "Mail backup"
        assert job["status"] == "idle"

    @pytest.mark.asyncio
    async def test_duplicate_backup_type_rejected(self, engine, client, server):
        await self._job(engine, client, server["id"])

        with pytest.raises(ValueError):
            await self._job(engine, client, server["id"])

        assert len(client.posted(PATHS["backup_config"])) == 1

    @pytest.mark.asyncio
    async def test_invalid_backup_type(self, engine, server):
        with pytest.raises(ValueError):
            await engine.create_backup_job(server["id"], "database", "local")

    @pytest.mark.asyncio
    async def test_delete_backup_job(self, engine, client, server, persistence):
        job = await self._job(engine, client, server["id"])
        client.routes[PATHS["backup_remove"]] = OK

        await engine.delete_backup_job(job["id"])

        assert client.posted(PATHS["backup_remove"]) == [{"type": "system"}]
        assert await persistence.get_row(ResourceKind.BACKUPS, job["id"]) is None

    @pytest.mark.asyncio
    async def test_toggle_backup_job(self, engine, client, server, persistence):
        job = await self._job(engine, client, server["id"])
        client.routes[PATHS["backup_toggle"]] = OK

        assert await engine.toggle_backup_job(job["id"], False) == "disabled"
        assert (await persistence.get_row(ResourceKind.BACKUPS, job["id"]))["status"] == "disabled"
        assert await engine.toggle_backup_job(job["id"], True) == "idle"
        assert client.posted(PATHS["backup_toggle"]) == [
            {"type": "system", "enabled": False},
            {"type": "system", "enabled": True},
        ]

    @pytest.mark.asyncio
    async def test_run_backup_now_success(self, engine, client, server, persistence):
        job = await self._job(engine, client, server["id"])
        client.routes[PATHS["backup_run"]] = OK

        entry = await engine.run_backup_now(job["id"])

        assert entry["status"] == "running"
        assert entry["started_at"] == FIXED_NOW
        assert entry["completed_at"] is None
        assert (await persistence.get_row(ResourceKind.BACKUPS, job["id"]))["status"] == "running"

    @pytest.mark.asyncio
    async def test_run_backup_now_failure_records_history(self, engine, client, server, persistence):
        job = await self._job(engine, client, server["id"])
        client.routes[PATHS["backup_run"]] = RemoteApiError("disk full", http_status=500)

        with pytest.raises(RemoteApiError):
            await engine.run_backup_now(job["id"])

        history = await persistence.list_backup_history(job["id"])
        assert len(history) == 1
        assert history[0]["status"] == "failed"
        assert history[0]["error"] == "disk full"
        assert history[0]["completed_at"] == FIXED_NOW
        assert (await persistence.get_row(ResourceKind.BACKUPS, job["id"]))["status"] == "idle"

    @pytest.mark.asyncio
    async def test_run_backup_now_undecodable_error_page_records_history(
        self, engine, client, server, persistence, monkeypatch
    ):
        job = await self._job(engine, client, server["id"])
        install_session(
            monkeypatch,
            DummySession(DummyResponse(status=500, text=b"\xff\xfe failed", content_type="text/html")),
        )
        engine.client = RemoteApiClient()

        with pytest.raises(RemoteApiError):
            await engine.run_backup_now(job["id"])

        history = await persistence.list_backup_history(job["id"])
        assert [h["status"] for h in history] == ["failed"]
        assert history[0]["error"].endswith("failed")

    @pytest.mark.asyncio
    async def test_run_missing_job(self, engine):
        with pytest.raises(NotFoundError):
            await engine.run_backup_now(404)


@pytest.mark.asyncio
async def test_operation_metrics(fake_repo):
    metrics = SyncMetrics()
    client = DummyClient({PATHS["aliases_add"]: OK, PATHS["users_add"]: RemoteApiError("x")})
    engine = SyncEngine(fake_repo, client, metrics=metrics)

    await engine.create_alias(1, "a@x.com", "b@x.com")
    with pytest.raises(RemoteApiError):
        await engine.create_mailbox(1, "b@x.com", "pw")

    output = metrics.generate_latest()
    assert b'mm_remote_operations_total{operation="create_alias"} 1.0' in output
    assert b'mm_remote_operation_errors_total{operation="create_mailbox"} 1.0' in output
