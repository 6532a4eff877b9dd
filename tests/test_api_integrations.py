from unittest.mock import patch

import pytest
import requests

from kilimo.api_integrations import FetchError, _http_get, fetch_file


class FakeResponse:
    """Streamed response stand-in that records whether it was closed"""

    def __init__(self, status, content=b'', headers=None):
        self.status_code = status
        self.content = content
        self.headers = headers or {}
        self.closed = False

    def iter_content(self, chunk_size=1):
        for start in range(0, len(self.content), chunk_size):
            yield self.content[start:start + chunk_size]

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


@patch('kilimo.api_integrations.time.sleep')
@patch('kilimo.api_integrations.SESSION.get')
def test_http_get_retries_transient_statuses(get, sleep):
    busy = FakeResponse(503)
    get.side_effect = [busy, FakeResponse(200, b'ok')]
    assert _http_get('https://cdn.test/file').status_code == 200
    assert get.call_count == 2
    assert busy.closed
    sleep.assert_called_once_with(0.5)


@patch('kilimo.api_integrations.time.sleep')
@patch('kilimo.api_integrations.SESSION.get')
def test_http_get_raises_after_connection_errors(get, sleep):
    get.side_effect = requests.ConnectionError('down')
    with pytest.raises(requests.ConnectionError):
        _http_get('https://cdn.test/file', retries=2)
    assert get.call_count == 2


@patch('kilimo.api_integrations._http_get')
def test_fetch_file(http_get):
    http_get.return_value = FakeResponse(200, b'a,b\n1,2\n')
    assert fetch_file('https://cdn.test/file', chunk_size=3) == b'a,b\n1,2\n'
    assert http_get.call_args.kwargs['stream'] is True
    assert http_get.return_value.closed


@patch('kilimo.api_integrations._http_get')
def test_fetch_file_errors(http_get):
    http_get.return_value = FakeResponse(404)
    with pytest.raises(FetchError, match='HTTP 404'):
        fetch_file('https://cdn.test/file')

    http_get.return_value = FakeResponse(200, b'x' * 11)
    with pytest.raises(FetchError, match='too large'):
        fetch_file('https://cdn.test/file', max_bytes=10)

    http_get.side_effect = requests.Timeout('slow')
    with pytest.raises(FetchError):
        fetch_file('https://cdn.test/file')


@patch('kilimo.api_integrations._http_get')
def test_fetch_file_rejects_large_declared_length_before_reading(http_get):
    body = FakeResponse(200, b'x' * 5, headers={'Content-Length': '2048'})
    body.iter_content = lambda chunk_size=1: pytest.fail('body should not be read')
    http_get.return_value = body

    with pytest.raises(FetchError, match='too large'):
        fetch_file('https://cdn.test/file', max_bytes=1024)
    assert body.closed


@patch('kilimo.api_integrations._http_get')
def test_fetch_file_stops_reading_once_over_limit(http_get):
    read = []

    def chunks(chunk_size=1):
        for piece in (b'x' * 8, b'x' * 8, b'x' * 8):
            read.append(piece)
            yield piece

    body = FakeResponse(200)
    body.iter_content = chunks
    http_get.return_value = body

    with pytest.raises(FetchError, match='too large'):
        fetch_file('https://cdn.test/file', max_bytes=10)
    assert len(read) == 2
