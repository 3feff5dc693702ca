"""Token check for the WebSocket upgrade.

Authentication is optional and controlled by configuration:

- ``token`` empty: every connection is accepted (trusted network deployments).
- ``token`` set: the client must present it either as the ``Authorization``
  header (raw or ``Bearer <token>``) or as a ``?token=`` query parameter.
  Browsers cannot set headers on a WebSocket, hence the query fallback.

Comparisons are constant-time.
"""

from __future__ import annotations

import logging
import secrets

logger = logging.getLogger(__name__)


def _matches(candidate: str | None, expected: str) -> bool:
    if not candidate:
        return False
    return secrets.compare_digest(candidate.encode(), expected.encode())


def is_authorized(expected_token: str, authorization: str | None, query_token: str | None) -> bool:
    if not expected_token:
        return True
    header = (authorization or "").strip()
    if header.lower().startswith("bearer "):
        header = header[7:].strip()
    return _matches(header, expected_token) or _matches(query_token, expected_token)
