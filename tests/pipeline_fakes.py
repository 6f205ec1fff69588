import os

from acquisition.config import parse_config
from acquisition.errors import ExternalServiceError
from acquisition.events import JobEventLog
from acquisition.orchestrator import Orchestrator, build_context
from acquisition.paths import PipelinePaths
from acquisition.request_state import DOWNLOADED, DOWNLOADING, PROCESSING, SEARCHING
from acquisition.services import (
    STATE_DOWNLOADING,
    DirectSource,
    DownloadClient,
    DownloadProgress,
    FetchResult,
    Fetcher,
    SearchService,
)


def base_config(**overrides):
    raw = {
        "indexers": [
            {"id": 1, "name": "alpha", "priority": 10},
            {"id": 2, "name": "beta", "priority": 20},
        ],
        "download_client": {"name": "qbittorrent"},
        "jobs": {
            "max_attempts": 2,
            "retry_delay_seconds": 0,
            "workers": 1,
            "poll_interval_seconds": 0.05,
            "monitor_interval_seconds": 0,
        },
        "sidecar": {
            "enabled": True,
            "auto_fetch": False,
            "preferred_format": "epub",
            "sources": [{"name": "shelf", "trust": 20}],
        },
    }
    raw.update(overrides)
    return parse_config(raw)


def build_orchestrator(tmpdir, config=None, **services):
    paths = PipelinePaths(
        log_dir=os.path.join(tmpdir, "logs"),
        db_path=os.path.join(tmpdir, "database", "acquisition.sqlite"),
        staging_dir=os.path.join(tmpdir, "staging"),
        library_dir=os.path.join(tmpdir, "library"),
    )
    os.makedirs(os.path.dirname(paths.db_path), exist_ok=True)
    ctx = build_context(
        config or base_config(),
        paths,
        events=JobEventLog(paths.db_path),
        fetcher=services.pop("fetcher", None) or FakeFetcher(),
        **services,
    )
    return Orchestrator(ctx)


def completed_primary(ctx, target=None):
    request_id = ctx.requests.create_request(target or {"title": "Project Hail Mary", "author": "Andy Weir"})
    for status in (SEARCHING, DOWNLOADING, PROCESSING, DOWNLOADED):
        ctx.requests.transition(request_id, status)
    return request_id


class FakeSearchService(SearchService):
    service_name = "fake"

    def __init__(self, results=None, error=None):
        self.results = list(results or [])
        self.error = error
        self.calls = []

    def search(self, query, *, category, min_availability, max_results, source_ids=None):
        self.calls.append(
            {
                "query": query,
                "category": category,
                "min_availability": min_availability,
                "max_results": max_results,
                "source_ids": list(source_ids or []),
            }
        )
        if self.error is not None:
            raise self.error
        return list(self.results)


class FakeDirectSource(DirectSource):
    def __init__(self, name, *, by_id=None, by_title=None, locations=None, error=None):
        self.source_name = name
        self.by_id = list(by_id or [])
        self.by_title = list(by_title or [])
        self.locations = dict(locations or {})
        self.error = error
        self.calls = []

    def search_by_external_id(self, external_id, fmt):
        self.calls.append(("external_id", external_id, fmt))
        if self.error is not None:
            raise self.error
        return list(self.by_id)

    def search_by_title_author(self, title, author, fmt):
        self.calls.append(("title", title, author, fmt))
        if self.error is not None:
            raise self.error
        return list(self.by_title)

    def get_download_locations(self, handle):
        return list(self.locations.get(handle, []))


class FakeDownloadClient(DownloadClient):
    client_name = "qbittorrent"

    def __init__(self, progress=None, handle="acq-handle"):
        self.progress = list(progress or [DownloadProgress(10, STATE_DOWNLOADING)])
        self.handle = handle
        self.added = []

    def add_download(self, url, name):
        self.added.append((url, name))
        return self.handle

    def get_progress(self, handle):
        if len(self.progress) > 1:
            return self.progress.pop(0)
        return self.progress[0]


class FakeFetcher(Fetcher):
    def __init__(self, failing=None, content=b"x" * 2048, after_chunk=None):
        self.failing = set(failing or ())
        self.content = content
        self.after_chunk = after_chunk
        self.calls = []

    def fetch(self, url, destination_dir, display_name, on_progress=None):
        self.calls.append(url)
        if url in self.failing:
            raise ExternalServiceError(f"HTTP Error 503 from {url}")
        os.makedirs(destination_dir, exist_ok=True)
        path = os.path.join(destination_dir, display_name)
        half = len(self.content) // 2
        with open(path, "wb") as handle:
            for chunk in (self.content[:half], self.content[half:]):
                handle.write(chunk)
                if on_progress is not None:
                    on_progress(handle.tell(), len(self.content))
                if self.after_chunk is not None:
                    self.after_chunk(handle.tell())
        return FetchResult(path, len(self.content))
