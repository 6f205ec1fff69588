import logging
import os
import re
from dataclasses import dataclass
from urllib.parse import urlsplit
from uuid import uuid4

import requests

from acquisition.errors import ConfigurationError, ExternalServiceError
from acquisition.http import fetch_json, send, stream_to_file
from acquisition.ranking import Candidate

STATE_QUEUED = "queued"
STATE_DOWNLOADING = "downloading"
STATE_COMPLETED = "completed"
STATE_FAILED = "failed"

_QB_COMPLETE_STATES = {
    "uploading",
    "stalledUP",
    "pausedUP",
    "stoppedUP",
    "queuedUP",
    "checkingUP",
    "forcedUP",
}
_QB_ERROR_STATES = {"error", "missingFiles"}
_FILENAME_UNSAFE_RE = re.compile(r"[^\w\s.-]")


@dataclass(frozen=True)
class DownloadProgress:
    percent: int
    state: str
    content_path: str | None = None
    error: str | None = None

    @property
    def is_complete(self):
        return self.state == STATE_COMPLETED

    @property
    def is_failed(self):
        return self.state == STATE_FAILED


@dataclass(frozen=True)
class FetchResult:
    path: str
    bytes_transferred: int


class SearchService:
    service_name = ""

    def search(self, query, *, category, min_availability, max_results, source_ids=None):
        return []


class DirectSource:
    source_name = ""

    def search_by_external_id(self, external_id, fmt):
        return []

    def search_by_title_author(self, title, author, fmt):
        return []

    def get_download_locations(self, handle):
        return []


class DownloadClient:
    client_name = ""

    def add_download(self, url, name):
        raise NotImplementedError

    def get_progress(self, handle):
        raise NotImplementedError


class Fetcher:
    def fetch(self, url, destination_dir, display_name, on_progress=None):
        raise NotImplementedError


def _int_or_none(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class ProwlarrSearchService(SearchService):
    service_name = "prowlarr"

    def __init__(self, prowlarr_config, http_config, *, session=None):
        if not prowlarr_config.url or not prowlarr_config.api_key:
            raise ConfigurationError("Prowlarr URL and API key must be configured")
        self.base_url = prowlarr_config.url.rstrip("/")
        self.api_key = prowlarr_config.api_key
        self.http = http_config
        self.session = session or requests.Session()

    def search(self, query, *, category, min_availability, max_results, source_ids=None):
        params = {"query": query, "categories": [category], "type": "search", "limit": max_results}
        if source_ids:
            params["indexerIds"] = list(source_ids)
        items = fetch_json(
            f"{self.base_url}/api/v1/search",
            session=self.session,
            params=params,
            headers={"X-Api-Key": self.api_key},
            timeout=self.http.timeout,
            max_bytes=self.http.max_response_bytes,
        )
        if not isinstance(items, list):
            raise ExternalServiceError("Prowlarr search returned an unexpected payload")
        allowed = set(source_ids or ())
        results = []
        for item in items:
            if not isinstance(item, dict):
                continue
            indexer_id = _int_or_none(item.get("indexerId"))
            if allowed and indexer_id not in allowed:
                continue
            seeders = _int_or_none(item.get("seeders"))
            if seeders is not None and seeders < min_availability:
                continue
            url = item.get("downloadUrl") or item.get("magnetUrl")
            if not url:
                continue
            results.append(
                Candidate(
                    title=item.get("title") or "",
                    source_name=item.get("indexer") or "",
                    source_id=indexer_id,
                    size_bytes=_int_or_none(item.get("size")),
                    seeders=seeders,
                    download_url=url,
                    guid=item.get("guid"),
                    flags=tuple(str(flag) for flag in item.get("indexerFlags") or ()),
                )
            )
            if len(results) >= max_results:
                break
        logging.info("Prowlarr search %r returned %s usable results", query, len(results))
        return results


class QBittorrentClient(DownloadClient):
    """qBittorrent Web API client.

    Each added torrent is tagged with a generated handle; progress lookups
    filter on that tag, so the handle is known before the torrent hash is.
    """

    client_name = "qbittorrent"

    def __init__(self, client_config, http_config, *, session=None):
        if not client_config.url:
            raise ConfigurationError("Download client URL must be configured")
        self.base_url = client_config.url.rstrip("/")
        self.config = client_config
        self.http = http_config
        self.session = session or requests.Session()
        self.authenticated = False

    def login(self):
        resp = self._send(
            "POST",
            "/api/v2/auth/login",
            data={"username": self.config.username, "password": self.config.password},
        )
        if "banned" in resp.text.lower():
            self.authenticated = False
            raise ExternalServiceError("qBittorrent banned this client IP")
        self.authenticated = resp.text.strip() == "Ok."
        if not self.authenticated:
            raise ConfigurationError("qBittorrent login failed, check username and password")
        return True

    def add_download(self, url, name):
        handle = f"acq-{uuid4().hex[:12]}"
        data = {
            "urls": url,
            "category": self.config.category,
            "tags": handle,
            "rename": name,
        }
        if self.config.save_path:
            data["savepath"] = self.config.save_path
        resp = self._authed("POST", "/api/v2/torrents/add", data=data)
        if resp.status_code != 200 or resp.text.strip() != "Ok.":
            raise ExternalServiceError(f"qBittorrent add returned HTTP {resp.status_code}")
        logging.info("qBittorrent accepted %r as %s", name, handle)
        return handle

    def get_progress(self, handle):
        resp = self._authed("GET", "/api/v2/torrents/info", params={"tag": handle})
        if resp.status_code != 200:
            raise ExternalServiceError(f"qBittorrent torrents/info returned HTTP {resp.status_code}")
        try:
            torrents = resp.json()
        except ValueError as exc:
            raise ExternalServiceError("qBittorrent torrents/info returned invalid JSON") from exc
        if not torrents:
            # Magnet links may not be listed until metadata resolves.
            return DownloadProgress(0, STATE_QUEUED)
        torrent = torrents[0]
        state = torrent.get("state") or ""
        percent = int(round(float(torrent.get("progress") or 0) * 100))
        content_path = torrent.get("content_path") or os.path.join(
            torrent.get("save_path") or "", torrent.get("name") or ""
        )
        if state in _QB_ERROR_STATES:
            return DownloadProgress(percent, STATE_FAILED, content_path, error=f"qBittorrent state {state}")
        if state in _QB_COMPLETE_STATES or percent >= 100:
            return DownloadProgress(100, STATE_COMPLETED, content_path)
        return DownloadProgress(min(percent, 99), STATE_DOWNLOADING, content_path)

    def _authed(self, method, path, **kwargs):
        if not self.authenticated:
            self.login()
        resp = self._send(method, path, **kwargs)
        if resp.status_code == 403:
            self.login()
            resp = self._send(method, path, **kwargs)
        return resp

    def _send(self, method, path, **kwargs):
        return send(
            self.session,
            method,
            f"{self.base_url}{path}",
            timeout=self.http.timeout,
            max_bytes=self.http.max_response_bytes,
            **kwargs,
        )


def safe_filename(display_name, url=None):
    stem = _FILENAME_UNSAFE_RE.sub("", display_name or "").strip()[:120] or "download"
    ext = ""
    if url:
        ext = os.path.splitext(urlsplit(url).path)[1].lower()
        if not re.fullmatch(r"\.[a-z0-9]{1,5}", ext):
            ext = ""
    if ext and not stem.lower().endswith(ext):
        stem = f"{stem}{ext}"
    return stem


class HttpFetcher(Fetcher):
    def __init__(self, http_config, *, session=None):
        self.http = http_config
        self.session = session

    def fetch(self, url, destination_dir, display_name, on_progress=None):
        os.makedirs(destination_dir, exist_ok=True)
        destination = os.path.join(destination_dir, safe_filename(display_name, url))
        written = stream_to_file(
            url,
            destination,
            session=self.session,
            timeout=self.http.timeout,
            max_bytes=self.http.max_download_bytes,
            on_progress=on_progress,
        )
        return FetchResult(destination, written)
