"""Minimal Graphiti HTTP client for message ingestion (stdlib only).

The ingestion side only needs two endpoints of the Graphiti service:

- ``POST /messages``    ``{group_id, messages: [{role_type, role, content, timestamp, ...}]}``
- ``GET  /healthcheck`` preflight

Every failed call is mapped onto the sink error taxonomy in
:mod:`ingest.errors` so the batch submitter can decide between retry and give-up
without looking at HTTP details.
"""

from __future__ import annotations

import http.client
import json
import logging
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any, Sequence

from ingest.config import validate_sink_url
from ingest.errors import (
    ClientError,
    RateLimitError,
    RequestTimeoutError,
    ServerError,
    TransientNetworkError,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 30.0
RATE_LIMIT_PHRASES = ('rate limit', 'rate_limit', 'too many requests')
_ERROR_BODY_PREVIEW = 200


@dataclass(frozen=True)
class SinkResponse:
    status: int
    body: str


def is_rate_limited(status: int | None, body: str | None) -> bool:
    if status == 429:
        return True
    text = (body or '').lower()
    return any(phrase in text for phrase in RATE_LIMIT_PHRASES)


def classify_response(response: SinkResponse) -> None:
    """Raise the matching sink error for a non-success response.

    2xx is success (Graphiti answers 202 Accepted for queued ingestion).
    """
    status, body = response.status, response.body
    if 200 <= status < 300:
        return
    preview = (body or '').strip()[:_ERROR_BODY_PREVIEW]
    if is_rate_limited(status, body):
        raise RateLimitError(f'rate limited ({status}): {preview}', status=status, body=body)
    if status >= 500:
        raise ServerError(f'server error ({status}): {preview}', status=status, body=body)
    raise ClientError(f'request rejected ({status}): {preview}', status=status, body=body)


def _is_timeout(exc: BaseException) -> bool:
    if isinstance(exc, (socket.timeout, TimeoutError)):
        return True
    reason = getattr(exc, 'reason', None)
    return isinstance(reason, (socket.timeout, TimeoutError))


class GraphitiClient:
    """Graphiti REST client.

    Args:
        base_url: service root, e.g. ``http://localhost:18000``.
        timeout: default per-request timeout in seconds.

    Raises:
        ValueError: *base_url* is not an acceptable sink URL.
    """

    def __init__(self, base_url: str, *, timeout: float = DEFAULT_TIMEOUT_S) -> None:
        self.base_url = validate_sink_url(base_url)
        self.timeout = timeout

    def _request(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> SinkResponse:
        data = json.dumps(payload).encode('utf-8') if payload is not None else None
        headers = {'Accept': 'application/json'}
        if data is not None:
            headers['Content-Type'] = 'application/json'
        req = urllib.request.Request(
            self.base_url + path, data=data, headers=headers, method=method
        )

        try:
            with urllib.request.urlopen(req, timeout=timeout or self.timeout) as resp:
                status = getattr(resp, 'status', 200)
                body = resp.read().decode('utf-8', errors='replace')
                return SinkResponse(status=status, body=body)
        except urllib.error.HTTPError as e:
            try:
                body = e.read().decode('utf-8', errors='replace')
            except (OSError, http.client.HTTPException):
                body = ''
            return SinkResponse(status=e.code, body=body)
        except (urllib.error.URLError, OSError) as exc:
            msg = str(getattr(exc, 'reason', exc))
            if _is_timeout(exc):
                raise RequestTimeoutError(f'request timed out after {timeout or self.timeout}s') from exc
            if is_rate_limited(None, msg):
                raise RateLimitError(f'rate limited: {msg}') from exc
            raise TransientNetworkError(f'network error: {msg}') from exc
        except http.client.HTTPException as exc:
            raise TransientNetworkError(f'connection dropped: {exc!r}') from exc

    def add_messages(
        self,
        group_id: str,
        messages: Sequence[dict[str, Any]],
        *,
        timeout: float | None = None,
    ) -> SinkResponse:
        """Submit one batch of messages under *group_id*.

        Raises:
            SinkError: any non-2xx response or transport failure.
        """
        response = self._request(
            'POST',
            '/messages',
            {'group_id': group_id, 'messages': list(messages)},
            timeout=timeout,
        )
        classify_response(response)
        return response

    def healthcheck(self, *, timeout: float = 5.0) -> dict[str, Any]:
        """Return ``{"status": "healthy"|"unhealthy", ...}``; never raises."""
        try:
            response = self._request('GET', '/healthcheck', timeout=timeout)
        except TransientNetworkError as exc:
            return {'status': 'unhealthy', 'error': str(exc)}
        except RateLimitError as exc:
            return {'status': 'unhealthy', 'error': str(exc)}
        if not 200 <= response.status < 300:
            return {'status': 'unhealthy', 'error': f'HTTP {response.status}'}
        try:
            data = json.loads(response.body) if response.body.strip() else {}
        except json.JSONDecodeError:
            data = {}
        status = data.get('status') if isinstance(data, dict) else None
        return {'status': status or 'healthy'}
