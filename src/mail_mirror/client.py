# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Credential-scoped HTTP client for remote mail server admin APIs.

Every call is a single request/response cycle against
``https://{hostname}{api_endpoint}{path}`` authenticated with HTTP Basic
credentials built from a fixed principal and the per-server API key.

Response parsing branches on the declared content type: JSON bodies are
decoded, everything else is returned as text. Callers know which shape each
endpoint returns.

Example:
    Fetching the DNS zones of a server::

        client = RemoteApiClient(timeout=30)
        credentials = RemoteCredentials.from_server(server_row)
        zones = await client.request(credentials, "/dns/zones")
"""

from __future__ import annotations

import asyncio
import base64
import json
from dataclasses import dataclass
from typing import Any

import aiohttp

from .errors import RemoteApiError
from .logger import get_logger
from .models import DEFAULT_API_ENDPOINT

DEFAULT_PRINCIPAL = "admin"
DEFAULT_TIMEOUT = 30.0

# Remote admin API paths, relative to https://{hostname}{api_endpoint}.
PATHS = {
    "me": "/me",
    "status": "/system/status",
    "version": "/system/version",
    "memory": "/system/memory",
    "disk": "/system/disk",
    "queue": "/mail/queue",
    "dns": "/dns/zones",
    "dns_add": "/dns/records/add",
    "dns_remove": "/dns/records/remove",
    "users": "/mail/users?format=json",
    "users_add": "/mail/users/add",
    "users_remove": "/mail/users/remove",
    "users_password": "/mail/users/password",
    "aliases": "/mail/aliases?format=json",
    "aliases_add": "/mail/aliases/add",
    "aliases_remove": "/mail/aliases/remove",
    "spam": "/mail/spam",
    "spam_threshold": "/mail/spam/threshold",
    "whitelist_add": "/mail/spam/whitelist/add",
    "whitelist_remove": "/mail/spam/whitelist/remove",
    "blacklist_add": "/mail/spam/blacklist/add",
    "blacklist_remove": "/mail/spam/blacklist/remove",
    "backup_status": "/system/backup/status",
    "backup_config": "/system/backup/config",
    "backup_remove": "/system/backup/remove",
    "backup_toggle": "/system/backup/toggle",
    "backup_run": "/system/backup/run",
}

logger = get_logger("RemoteApiClient")


@dataclass(frozen=True)
class RemoteCredentials:
    """Connection details for one remote admin API.

    Attributes:
        hostname: Remote server hostname (no scheme).
        api_key: Per-server API key used as the Basic auth password.
        api_endpoint: Path prefix of the admin API. Defaults to "/admin".
        principal: Basic auth user name.
    """

    hostname: str
    api_key: str
    api_endpoint: str = DEFAULT_API_ENDPOINT
    principal: str = DEFAULT_PRINCIPAL

    @classmethod
    def from_server(
        cls,
        server: dict[str, Any],
        principal: str = DEFAULT_PRINCIPAL,
        default_endpoint: str = DEFAULT_API_ENDPOINT,
    ) -> RemoteCredentials:
        """Build credentials from a mirror server row."""
        return cls(
            hostname=server["hostname"],
            api_key=server["api_key"],
            api_endpoint=server.get("api_endpoint") or default_endpoint,
            principal=principal,
        )

    @property
    def base_url(self) -> str:
        return f"https://{self.hostname}{self.api_endpoint}"

    def url_for(self, path: str) -> str:
        if not path.startswith("/"):
            path = "/" + path
        return f"{self.base_url}{path}"


class RemoteApiClient:
    """HTTP client for remote admin APIs.

    Holds no per-server state: credentials travel with every call, so one
    client instance serves all servers.

    Attributes:
        timeout: Total timeout in seconds for one request/response cycle.
        verify_ssl: Whether TLS certificates are verified.
    """

    def __init__(self, timeout: float = DEFAULT_TIMEOUT, verify_ssl: bool = True):
        self.timeout = timeout
        self.verify_ssl = verify_ssl

    def _get_auth_headers(self, credentials: RemoteCredentials) -> dict[str, str]:
        """Build the Basic authorization and content negotiation headers."""
        token = base64.b64encode(
            f"{credentials.principal}:{credentials.api_key}".encode()
        ).decode()
        return {
            "Authorization": f"Basic {token}",
            "Accept": "application/json",
        }

    async def request(
        self,
        credentials: RemoteCredentials,
        path: str,
        method: str = "GET",
        body: dict[str, Any] | None = None,
    ) -> Any:
        """Perform one authenticated request and return the parsed body.

        Args:
            credentials: Target server credentials.
            path: Path relative to the admin API base URL.
            method: HTTP method.
            body: Optional JSON request body.

        Returns:
            Decoded JSON for ``application/json`` responses, text otherwise.

        Raises:
            RemoteApiError: On non-2xx responses, unparsable JSON bodies,
                connection failures and timeouts.
        """
        url = credentials.url_for(path)
        method = method.upper()
        headers = self._get_auth_headers(credentials)
        kwargs: dict[str, Any] = {"headers": headers}
        if body is not None:
            kwargs["json"] = body
        if not self.verify_ssl:
            kwargs["ssl"] = False

        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.request(method, url, **kwargs) as response:
                    raw = await response.text(errors="replace")
                    content_type = response.headers.get("Content-Type", "")
                    status = response.status
                    reason = response.reason or ""
        except asyncio.TimeoutError as exc:
            logger.error("Remote API %s %s timed out after %ss", method, url, self.timeout)
            raise RemoteApiError(
                f"Request to {url} timed out after {self.timeout}s",
                status_text="timeout",
            ) from exc
        except (aiohttp.ClientError, OSError) as exc:
            logger.error("Remote API %s %s failed: %s", method, url, exc)
            raise RemoteApiError(
                f"Request to {url} failed: {exc}",
                status_text=type(exc).__name__,
            ) from exc
        except UnicodeDecodeError as exc:
            logger.error("Remote API %s %s returned an undecodable body", method, url)
            raise RemoteApiError(
                f"Undecodable response from {url}: {exc}",
                status_text=type(exc).__name__,
            ) from exc

        if not 200 <= status < 300:
            logger.error("Remote API %s %s returned %s %s", method, url, status, reason)
            raise RemoteApiError(
                _error_message(raw, content_type, status),
                http_status=status,
                status_text=reason,
                raw_body=raw,
            )

        if "application/json" in content_type:
            try:
                return json.loads(raw) if raw else None
            except json.JSONDecodeError as exc:
                logger.error("Remote API %s %s returned invalid JSON", method, url)
                raise RemoteApiError(
                    f"Invalid JSON in response from {url}: {exc}",
                    http_status=status,
                    status_text=reason,
                    raw_body=raw,
                ) from exc
        return raw


def _error_message(raw: str, content_type: str, status: int) -> str:
    """Extract a readable message from an error response body."""
    if "application/json" in content_type:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            data = None
        if isinstance(data, dict) and data.get("error"):
            return str(data["error"])
    if raw.strip():
        return raw.strip()
    return f"API request failed with status {status}"
