"""Tests for pydantic models and error types."""

import pytest
from pydantic import ValidationError

from mail_mirror.errors import MailMirrorError, NotFoundError, RemoteApiError
from mail_mirror.models import (
    BackupHistoryEntryCreate,
    DnsRecordCreate,
    MailboxCreate,
    RemoteAlias,
    RemoteDnsRecord,
    RemoteServerCreate,
    SpamFilterCreate,
)


class TestRemoteServerCreate:
    def test_endpoint_is_normalized(self):
        assert RemoteServerCreate(hostname="h", api_key="k").api_endpoint == "/admin"
        assert RemoteServerCreate(hostname="h", api_key="k", api_endpoint="api/").api_endpoint == "/api"

    def test_required_fields(self):
        with pytest.raises(ValidationError):
            RemoteServerCreate(hostname="", api_key="k")
        with pytest.raises(ValidationError):
            RemoteServerCreate(hostname="h", api_key="k", port=443)


class TestCanonicalRecords:
    def test_record_type_is_uppercased(self):
        record = DnsRecordCreate(server_id=1, record_type="cname", name="www.x.com", value="x.com")
        assert record.record_type == "CNAME"
        assert record.ttl == 3600

    def test_mailbox_email_must_have_domain(self):
        with pytest.raises(ValidationError):
            MailboxCreate(server_id=1, email="nobody", name="n")

    def test_enum_fields_dump_as_values(self):
        spam = SpamFilterCreate(server_id=1, name="n", rule_type="whitelist", pattern="p", action="allow")
        history = BackupHistoryEntryCreate(job_id=1, started_at="2025-01-01T00:00:00Z", status="failed")

        assert spam.model_dump()["rule_type"] == "whitelist"
        assert history.model_dump()["status"] == "failed"


class TestRemoteShapes:
    def test_dns_record_aliases(self):
        short = RemoteDnsRecord.model_validate({"qname": "x.com", "rtype": "A", "value": "1.2.3.4"})
        long = RemoteDnsRecord.model_validate({"name": "x.com", "type": "A", "value": "1.2.3.4"})
        assert short == long

    def test_alias_ignores_unknown_keys(self):
        alias = RemoteAlias.model_validate({"forward_to": None, "permitted_senders": ["x"]})
        assert alias.forward_to == []
        assert alias.active is True


class TestErrors:
    def test_remote_api_error(self):
        err = RemoteApiError("bad", http_status=401, status_text="Unauthorized", raw_body="{}")
        assert isinstance(err, MailMirrorError)
        assert err.code == "remote_api_error"
        assert not err.is_transport_error

    def test_not_found_error(self):
        err = NotFoundError("Mailbox", 5)
        assert str(err) == "Mailbox 5 not found"
        assert isinstance(err, LookupError)
        assert (err.kind, err.identifier) == ("Mailbox", 5)
