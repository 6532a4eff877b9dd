"""
Kilimo AI - Outbound HTTP helpers
Robust GET with retries and backoff, used to pull uploaded files back
out of storage for processing.
"""

import logging
import time

import requests

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {'User-Agent': 'KilimoAI/1.0 (Land Restoration Platform)'}
SESSION = requests.Session()

RETRY_STATUSES = (429, 500, 502, 503, 504)


class FetchError(Exception):
    """Raised when a remote file cannot be retrieved"""


def _http_get(url, params=None, headers=None, timeout=15, retries=3, backoff_factor=0.5, stream=False):
    headers = {**DEFAULT_HEADERS, **(headers or {})}
    resp = None
    last_exc = None
    for attempt in range(1, retries + 1):
        try:
            resp = SESSION.get(url, params=params, headers=headers, timeout=timeout, stream=stream)
        except requests.RequestException as e:
            last_exc = e
            time.sleep(backoff_factor * (2 ** (attempt - 1)))
            continue
        if resp.status_code in RETRY_STATUSES and attempt < retries:
            resp.close()
            time.sleep(backoff_factor * (2 ** (attempt - 1)))
            continue
        return resp

    if resp is not None:
        return resp
    raise last_exc


def fetch_file(url, max_bytes=25 * 1024 * 1024, chunk_size=64 * 1024):
    """Download a file and return its bytes, refusing anything over max_bytes"""
    try:
        resp = _http_get(url, timeout=30, stream=True)
    except requests.RequestException as e:
        raise FetchError(f"Could not download {url}: {e}") from e

    with resp:
        if resp.status_code != 200:
            raise FetchError(f"Download failed with HTTP {resp.status_code}")

        declared = resp.headers.get('Content-Length', '')
        if declared.isdigit() and int(declared) > max_bytes:
            raise FetchError("Downloaded file is too large to process")

        body = bytearray()
        try:
            for chunk in resp.iter_content(chunk_size=chunk_size):
                body.extend(chunk)
                if len(body) > max_bytes:
                    raise FetchError("Downloaded file is too large to process")
        except requests.RequestException as e:
            raise FetchError(f"Could not download {url}: {e}") from e

    logger.debug(f"📥 Downloaded {len(body)} bytes from storage")
    return bytes(body)
