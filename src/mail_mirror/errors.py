# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Exception taxonomy for the mail mirror engine.

Two failure families reach callers:

- ``RemoteApiError``: the remote admin API answered with a non-2xx status,
  returned a body that could not be parsed, or could not be reached at all
  (connection failures and timeouts are wrapped with ``http_status=None``).
- ``NotFoundError``: a referenced row (server, mailbox, alias, spam filter,
  backup job, DNS record) is absent from the local mirror.

Formatting these errors for end users belongs to the request-handling layer.
"""

from __future__ import annotations


class MailMirrorError(Exception):
    """Base class for all errors raised by the engine."""

    code = "mail_mirror_error"


class RemoteApiError(MailMirrorError):
    """Raised when a remote admin API call does not succeed.

    Attributes:
        http_status: HTTP status code, or None for transport failures.
        status_text: HTTP reason phrase or a short transport error description.
        raw_body: Raw response body as text (empty for transport failures).
    """

    code = "remote_api_error"

    def __init__(
        self,
        message: str,
        *,
        http_status: int | None = None,
        status_text: str = "",
        raw_body: str = "",
    ):
        super().__init__(message)
        self.http_status = http_status
        self.status_text = status_text
        self.raw_body = raw_body

    @property
    def is_transport_error(self) -> bool:
        """True when the server was never reached or never answered."""
        return self.http_status is None


class NotFoundError(MailMirrorError, LookupError):
    """Raised when a referenced local mirror row does not exist."""

    code = "not_found"

    def __init__(self, kind: str, identifier: object):
        super().__init__(f"{kind} {identifier} not found")
        self.kind = kind
        self.identifier = identifier
