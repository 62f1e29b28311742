"""Shared fixtures: a temporary mirror database and a scripted remote API."""

from datetime import datetime, timezone

import pytest
import pytest_asyncio

from mail_mirror.errors import RemoteApiError
from mail_mirror.models import ResourceKind
from mail_mirror.persistence import Persistence
from mail_mirror.sync import SyncEngine

FIXED_NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


class DummyClient:
    """Remote API stand-in answering by path.

    ``routes`` maps a path to a payload, or to an exception instance which is
    raised instead. Unknown paths answer with a 404 ``RemoteApiError``.
    """

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.calls = []

    async def request(self, credentials, path, method="GET", body=None):
        self.calls.append({"credentials": credentials, "path": path, "method": method, "body": body})
        if path not in self.routes:
            raise RemoteApiError(f"No route for {path}", http_status=404, status_text="Not Found")
        answer = self.routes[path]
        if isinstance(answer, Exception):
            raise answer
        return answer

    def posted(self, path):
        return [c["body"] for c in self.calls if c["path"] == path and c["method"] == "POST"]


class DummyResponse:
    """aiohttp response stand-in; ``text`` may be a str or raw bytes."""

    def __init__(self, status=200, text="", content_type="application/json", reason="OK"):
        self.status = status
        self._body = text
        self.headers = {"Content-Type": content_type}
        self.reason = reason

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def text(self, errors="strict"):
        if isinstance(self._body, bytes):
            return self._body.decode("utf-8", errors)
        return self._body


class DummySession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.requests = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    def request(self, method, url, **kwargs):
        self.requests.append({"method": method, "url": url, **kwargs})
        if self.error is not None:
            raise self.error
        return self.response


def install_session(monkeypatch, session):
    monkeypatch.setattr("mail_mirror.client.aiohttp.ClientSession", lambda **kwargs: session)
    return session


class FakeRepository:
    """In-memory MirrorRepository with plain full-replace semantics."""

    def __init__(self):
        self.servers = {}
        self.rows = {}
        self.history = []
        self.metrics = []
        self._next_id = 1

    def _new_id(self):
        row_id = self._next_id
        self._next_id += 1
        return row_id

    def add_server(self, server_id, **fields):
        self.servers[server_id] = {
            "id": server_id,
            "hostname": "box.example.com",
            "api_key": "s3cret",
            "api_endpoint": "/admin",
            "status": "unknown",
            "version": None,
            "last_synced_at": None,
            **fields,
        }
        return self.servers[server_id]

    def seed(self, kind, record, row_id=None):
        kind = ResourceKind(kind)
        if row_id is not None:
            self._next_id = max(self._next_id, row_id + 1)
        row = {"id": row_id or self._new_id(), **record}
        self.rows[(kind, row["id"])] = row
        return row

    async def get_server(self, server_id):
        return self.servers.get(server_id)

    async def update_server_status(self, server_id, *, status, last_synced_at, version=None):
        server = self.servers[server_id]
        server["status"] = status
        server["last_synced_at"] = last_synced_at
        if version is not None:
            server["version"] = version

    async def list_rows(self, server_id, kind):
        kind = ResourceKind(kind)
        return [dict(r) for (k, _), r in sorted(self.rows.items(), key=lambda i: i[0][1])
                if k == kind and r["server_id"] == server_id]

    async def get_row(self, kind, row_id):
        kind = ResourceKind(kind)
        row = self.rows.get((kind, row_id))
        return dict(row) if row else None

    async def insert_row(self, kind, record):
        return dict(self.seed(kind, record))

    async def delete_row(self, kind, row_id):
        kind = ResourceKind(kind)
        return self.rows.pop((kind, row_id), None) is not None

    async def replace_all(self, server_id, kind, records):
        kind = ResourceKind(kind)
        for key in [k for k, r in self.rows.items() if k[0] == kind and r["server_id"] == server_id]:
            del self.rows[key]
        return [dict(self.seed(kind, record)) for record in records]

    async def update_backup_job_status(self, job_id, status):
        for (kind, row_id), row in self.rows.items():
            if row_id == job_id and kind == ResourceKind.BACKUPS:
                row["status"] = status

    async def insert_backup_history_entry(self, entry):
        row = {"id": self._new_id(), **entry}
        self.history.append(row)
        return row

    async def list_backup_history(self, job_id):
        return [h for h in self.history if h["job_id"] == job_id]

    async def insert_metrics_entry(self, entry):
        row = {"id": self._new_id(), **entry}
        self.metrics.append(row)
        return row

    async def list_metrics(self, server_id, limit=100):
        return [m for m in reversed(self.metrics) if m["server_id"] == server_id][:limit]


@pytest.fixture
def fake_repo():
    repo = FakeRepository()
    repo.add_server(1)
    return repo


@pytest_asyncio.fixture
async def persistence(tmp_path):
    p = Persistence(str(tmp_path / "mirror.db"))
    await p.init_db()
    return p


@pytest_asyncio.fixture
async def server(persistence):
    return await persistence.add_server(
        {"hostname": "box.example.com", "api_key": "s3cret", "name": "Box"}
    )


@pytest.fixture
def client():
    return DummyClient()


@pytest.fixture
def engine(persistence, client):
    return SyncEngine(persistence, client, clock=lambda: FIXED_NOW)
