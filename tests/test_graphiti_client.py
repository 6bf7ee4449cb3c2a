from __future__ import annotations

import http.client
import io
import json
import socket
import urllib.error
from unittest.mock import MagicMock, patch

import pytest

from ingest.errors import (
    ClientError,
    RateLimitError,
    RequestTimeoutError,
    ServerError,
    TransientNetworkError,
)
from ingest.graphiti_client import GraphitiClient, SinkResponse, classify_response, is_rate_limited


def _response(status: int, body: str = '{}') -> MagicMock:
    resp = MagicMock()
    resp.status = status
    resp.read.return_value = body.encode('utf-8')
    resp.__enter__.return_value = resp
    resp.__exit__.return_value = False
    return resp


def _http_error(status: int, body: str) -> urllib.error.HTTPError:
    return urllib.error.HTTPError(
        'http://localhost:18000/messages', status, 'error', {}, io.BytesIO(body.encode('utf-8'))
    )


def test_classify_response() -> None:
    classify_response(SinkResponse(200, '{}'))
    classify_response(SinkResponse(202, '{"message": "accepted"}'))
    with pytest.raises(RateLimitError):
        classify_response(SinkResponse(429, ''))
    with pytest.raises(RateLimitError):
        classify_response(SinkResponse(500, 'upstream said: Too Many Requests'))
    with pytest.raises(ServerError):
        classify_response(SinkResponse(503, 'unavailable'))
    with pytest.raises(ClientError):
        classify_response(SinkResponse(400, 'bad payload'))


def test_is_rate_limited_phrasing() -> None:
    assert is_rate_limited(429, '')
    assert is_rate_limited(400, 'Rate limit exceeded for embeddings')
    assert not is_rate_limited(400, 'missing group_id')


def test_add_messages_posts_json_payload() -> None:
    client = GraphitiClient('http://localhost:18000/')
    with patch('ingest.graphiti_client.urllib.request.urlopen', return_value=_response(202)) as urlopen:
        response = client.add_messages('sessions-dm-2026-01-15', [{'content': 'x'}], timeout=12)

    assert response.status == 202
    req = urlopen.call_args.args[0]
    assert req.full_url == 'http://localhost:18000/messages'
    assert req.get_method() == 'POST'
    assert json.loads(req.data) == {'group_id': 'sessions-dm-2026-01-15', 'messages': [{'content': 'x'}]}
    assert urlopen.call_args.kwargs['timeout'] == 12


@pytest.mark.parametrize(
    'status, body, expected',
    [
        (429, 'slow down', RateLimitError),
        (502, 'bad gateway', ServerError),
        (422, 'validation error', ClientError),
    ],
)
def test_http_errors_map_to_sink_errors(status, body, expected) -> None:
    client = GraphitiClient('http://localhost:18000')
    with patch('ingest.graphiti_client.urllib.request.urlopen', side_effect=_http_error(status, body)):
        with pytest.raises(expected) as excinfo:
            client.add_messages('g', [])
    assert excinfo.value.status == status


def test_timeout_maps_to_request_timeout() -> None:
    client = GraphitiClient('http://localhost:18000', timeout=3)
    err = urllib.error.URLError(socket.timeout('timed out'))
    with patch('ingest.graphiti_client.urllib.request.urlopen', side_effect=err):
        with pytest.raises(RequestTimeoutError):
            client.add_messages('g', [])


def test_connection_refused_maps_to_network_error() -> None:
    client = GraphitiClient('http://localhost:18000')
    err = urllib.error.URLError(ConnectionRefusedError(111, 'Connection refused'))
    with patch('ingest.graphiti_client.urllib.request.urlopen', side_effect=err):
        with pytest.raises(TransientNetworkError) as excinfo:
            client.add_messages('g', [])
    assert excinfo.value.retryable


def test_healthcheck_never_raises() -> None:
    client = GraphitiClient('http://localhost:18000')
    with patch(
        'ingest.graphiti_client.urllib.request.urlopen',
        return_value=_response(200, '{"status": "healthy"}'),
    ):
        assert client.healthcheck() == {'status': 'healthy'}
    with patch(
        'ingest.graphiti_client.urllib.request.urlopen',
        side_effect=urllib.error.URLError(ConnectionRefusedError(111, 'Connection refused')),
    ):
        assert client.healthcheck()['status'] == 'unhealthy'
    with patch('ingest.graphiti_client.urllib.request.urlopen', side_effect=_http_error(500, 'boom')):
        assert client.healthcheck() == {'status': 'unhealthy', 'error': 'HTTP 500'}


@pytest.mark.parametrize(
    'url',
    ['ftp://localhost:18000', 'http://user:pw@localhost:18000', 'http://localhost:18000/?x=1', 'localhost'],
)
def test_rejects_unsafe_base_urls(url: str) -> None:
    with pytest.raises(ValueError):
        GraphitiClient(url)


def test_dropped_body_maps_to_network_error() -> None:
    client = GraphitiClient('http://localhost:18000')
    resp = _response(200)
    resp.read.side_effect = http.client.IncompleteRead(b'partial', 10)
    with patch('ingest.graphiti_client.urllib.request.urlopen', return_value=resp):
        with pytest.raises(TransientNetworkError) as excinfo:
            client.add_messages('g', [{'content': 'x'}])
    assert excinfo.value.retryable
    assert excinfo.value.state == 'NETWORK_ERROR'
