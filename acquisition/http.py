import json
import logging
import os
from dataclasses import dataclass
from urllib.parse import urlsplit

import requests

from acquisition.errors import ExternalServiceError, ResponseTooLarge

_CHUNK_SIZE = 65536
_USER_AGENT = "audiobook-acquisition/0.1"


@dataclass(frozen=True)
class CappedResponse:
    status_code: int
    headers: dict
    content: bytes

    @property
    def text(self):
        return self.content.decode("utf-8", errors="replace")

    def json(self):
        return json.loads(self.content)


def _host(url):
    return urlsplit(url).netloc or url


def _declared_length(response):
    raw = response.headers.get("Content-Length")
    if raw and raw.isdigit():
        return int(raw)
    return None


def send(session, method, url, *, timeout, max_bytes, **kwargs):
    """Issue one request and read at most ``max_bytes`` of body.

    Transport failures become ExternalServiceError; HTTP status codes are
    returned to the caller untouched.
    """
    session = session or requests
    headers = {"User-Agent": _USER_AGENT, **(kwargs.pop("headers", None) or {})}
    try:
        with session.request(method, url, headers=headers, timeout=timeout, stream=True, **kwargs) as resp:
            declared = _declared_length(resp)
            if declared is not None and declared > max_bytes:
                raise ResponseTooLarge(f"{_host(url)} declared {declared} bytes, cap is {max_bytes}")
            body = bytearray()
            for chunk in resp.iter_content(chunk_size=_CHUNK_SIZE):
                body.extend(chunk)
                if len(body) > max_bytes:
                    raise ResponseTooLarge(f"{_host(url)} response exceeded {max_bytes} bytes")
            return CappedResponse(resp.status_code, dict(resp.headers), bytes(body))
    except requests.RequestException as exc:
        raise ExternalServiceError(f"{method} {_host(url)} failed: {exc}") from exc


def fetch_json(url, *, timeout, max_bytes, session=None, method="GET", **kwargs):
    resp = send(session, method, url, timeout=timeout, max_bytes=max_bytes, **kwargs)
    if resp.status_code >= 400:
        raise ExternalServiceError(f"HTTP Error {resp.status_code} from {_host(url)}")
    try:
        return resp.json()
    except ValueError as exc:
        raise ExternalServiceError(f"invalid JSON from {_host(url)}") from exc


def stream_to_file(url, destination, *, timeout, max_bytes, session=None, on_progress=None):
    """Download ``url`` into ``destination`` and return the byte count.

    ``on_progress(written, total)`` is called after every chunk; ``total`` is
    the declared Content-Length or None.

    The body lands in a ``.part`` file first and is renamed on success, so a
    failed transfer never leaves a truncated file under the final name.
    """
    session = session or requests
    partial = f"{destination}.part"
    written = 0
    try:
        with session.get(
            url,
            headers={"User-Agent": _USER_AGENT},
            timeout=timeout,
            stream=True,
            allow_redirects=True,
        ) as resp:
            if resp.status_code >= 400:
                raise ExternalServiceError(f"HTTP Error {resp.status_code} from {_host(url)}")
            declared = _declared_length(resp)
            if declared is not None and declared > max_bytes:
                raise ResponseTooLarge(f"{_host(url)} declared {declared} bytes, cap is {max_bytes}")
            with open(partial, "wb") as handle:
                for chunk in resp.iter_content(chunk_size=_CHUNK_SIZE):
                    if not chunk:
                        continue
                    written += len(chunk)
                    if written > max_bytes:
                        raise ResponseTooLarge(f"{_host(url)} download exceeded {max_bytes} bytes")
                    handle.write(chunk)
                    if on_progress is not None:
                        on_progress(written, declared)
    except requests.RequestException as exc:
        _discard(partial)
        raise ExternalServiceError(f"GET {_host(url)} failed: {exc}") from exc
    except ExternalServiceError:
        _discard(partial)
        raise
    os.replace(partial, destination)
    logging.info("Downloaded %s bytes from %s to %s", written, _host(url), destination)
    return written


def _discard(path):
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
