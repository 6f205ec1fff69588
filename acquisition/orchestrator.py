import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from acquisition.download_history import DownloadHistoryStore
from acquisition.download_processors import process_monitor_download, process_start_download
from acquisition.errors import (
    AcquisitionError,
    ConfigurationError,
    InvalidTransition,
    StaleRequestState,
)
from acquisition.events import JobEventLog, log_event
from acquisition.job_queue import (
    JOB_MONITOR_DOWNLOAD,
    JOB_ORGANIZE_FILES,
    JOB_SEARCH_MEDIA,
    JOB_SEARCH_SIDECAR,
    JOB_START_DOWNLOAD,
    JobStore,
    WorkerPool,
)
from acquisition.organize import process_organize_files
from acquisition.paths import PipelinePaths, ensure_dir
from acquisition.request_state import FAILED, TERMINAL_STATUSES, RequestStore
from acquisition.search_processors import (
    enqueue_search,
    process_search_media,
    process_search_sidecar,
    request_sidecar,
)
from acquisition.services import HttpFetcher, ProwlarrSearchService, QBittorrentClient

_STAGE_MESSAGES = {
    JOB_SEARCH_MEDIA: "Search failed after repeated errors",
    JOB_SEARCH_SIDECAR: "E-book search failed after repeated errors",
    JOB_START_DOWNLOAD: "Download could not be started",
    JOB_MONITOR_DOWNLOAD: "Download monitoring failed",
    JOB_ORGANIZE_FILES: "Organizing files failed",
}


@dataclass
class PipelineContext:
    config: object
    paths: PipelinePaths
    jobs: JobStore
    requests: RequestStore
    history: DownloadHistoryStore
    events: JobEventLog | None = None
    search_service: object = None
    download_client: object = None
    direct_sources: dict = field(default_factory=dict)
    fetcher: object = None


def build_direct_sources(sidecar_config, http_config, factories, injected=None):
    """Instantiate e-book sources for the enabled config entries.

    ``factories`` maps a source kind (``kind``, or the name when unset) to a
    callable taking ``(source_config, http_config)``. Injected sources win.
    """
    sources = dict(injected or {})
    for source_config in sidecar_config.enabled_sources():
        if source_config.name in sources:
            continue
        kind = source_config.kind or source_config.name
        factory = (factories or {}).get(kind)
        if factory is None:
            logging.warning(
                "E-book source %s has no registered implementation for kind %r", source_config.name, kind
            )
            continue
        sources[source_config.name] = factory(source_config, http_config)
    return sources


def build_context(
    config,
    paths,
    *,
    search_service=None,
    download_client=None,
    direct_sources=None,
    source_factories=None,
    fetcher=None,
    events=None,
):
    ensure_dir(os.path.dirname(paths.db_path))
    ensure_dir(paths.staging_dir)
    ensure_dir(paths.library_dir)
    if search_service is None and config.prowlarr.url and config.prowlarr.api_key:
        search_service = ProwlarrSearchService(config.prowlarr, config.http)
    if download_client is None and config.download_client.url:
        if config.download_client.name != QBittorrentClient.client_name:
            raise ConfigurationError(f"Unsupported download client: {config.download_client.name}")
        download_client = QBittorrentClient(config.download_client, config.http)
    return PipelineContext(
        config=config,
        paths=paths,
        jobs=JobStore(paths.db_path, default_max_attempts=config.jobs.max_attempts),
        requests=RequestStore(paths.db_path),
        history=DownloadHistoryStore(paths.db_path),
        events=events if events is not None else JobEventLog(paths.db_path),
        search_service=search_service,
        download_client=download_client,
        direct_sources=build_direct_sources(config.sidecar, config.http, source_factories, direct_sources),
        fetcher=fetcher or HttpFetcher(config.http),
    )


def public_message(job_type, exc):
    """Request-facing text for a job that ran out of attempts."""
    if isinstance(exc, AcquisitionError) and exc.public_message != AcquisitionError.public_message:
        return exc.public_message
    return _STAGE_MESSAGES.get(job_type, AcquisitionError.public_message)


class Orchestrator:
    def __init__(self, ctx):
        self.ctx = ctx

    def handlers(self):
        return {
            JOB_SEARCH_MEDIA: self._guard(process_search_media),
            JOB_SEARCH_SIDECAR: self._guard(process_search_sidecar),
            JOB_START_DOWNLOAD: self._guard(process_start_download),
            JOB_MONITOR_DOWNLOAD: self._guard(process_monitor_download),
            JOB_ORGANIZE_FILES: self._guard(self._organize),
        }

    def _organize(self, ctx, job):
        return process_organize_files(ctx, job, on_primary_complete=self.fetch_sidecar)

    def _guard(self, processor):
        def handler(job):
            try:
                return processor(self.ctx, job)
            except ConfigurationError as exc:
                # Retrying cannot fix configuration; fail the request, finish the job.
                request_id = job.payload.get("request_id")
                log_event(
                    "error",
                    "configuration_error",
                    job_id=job.id,
                    job_type=job.type,
                    request_id=request_id,
                    error=str(exc),
                )
                self._mark_failed(request_id, exc.public_message)
                return {"failed": True, "error": exc.public_message}

        handler.__name__ = getattr(processor, "__name__", "handler")
        return handler

    def _mark_failed(self, request_id, message):
        if not request_id:
            return False
        request = self.ctx.requests.get_request(request_id)
        if request is None or request.is_deleted or request.status in TERMINAL_STATUSES:
            return False
        try:
            self.ctx.requests.transition(request_id, FAILED, error_message=message)
        except (InvalidTransition, StaleRequestState) as exc:
            log_event("warning", "request_fail_skipped", request_id=request_id, error=str(exc))
            return False
        return True

    def on_job_exhausted(self, job, error_message, exc=None):
        message = public_message(job.type, exc)
        marked = self._mark_failed(job.payload.get("request_id"), message)
        log_event(
            "error",
            "job_exhausted",
            job_id=job.id,
            job_type=job.type,
            request_id=job.payload.get("request_id"),
            request_failed=marked,
            error=error_message,
        )

    def request_acquisition(self, target):
        request_id = self.ctx.requests.create_request(target)
        request = self.ctx.requests.get_request(request_id)
        job_id = enqueue_search(self.ctx, request)
        return {"request_id": request_id, "job_id": job_id}

    def fetch_sidecar(self, parent_request_id):
        return request_sidecar(self.ctx, parent_request_id)

    def requeue_awaiting_search(self, *, now=None, limit=100):
        """Enqueue a fresh search for every request that has waited long enough."""
        now = now or datetime.utcnow()
        cutoff = now - timedelta(minutes=self.ctx.config.research.interval_minutes)
        job_ids = []
        for request in self.ctx.requests.list_awaiting_search(older_than=cutoff.isoformat(), limit=limit):
            job_id = enqueue_search(self.ctx, request, unless_active=True)
            if job_id:
                job_ids.append(job_id)
        log_event("info", "research_sweep", enqueued=len(job_ids), cutoff=cutoff.isoformat())
        return job_ids

    def build_worker_pool(self, *, stop_event=None, workers=None):
        jobs_config = self.ctx.config.jobs
        return WorkerPool(
            self.ctx.jobs,
            self.handlers(),
            workers=workers or jobs_config.workers,
            retry_delay_seconds=jobs_config.retry_delay_seconds,
            poll_interval_seconds=jobs_config.poll_interval_seconds,
            stop_event=stop_event,
            on_exhausted=self.on_job_exhausted,
        )

    def close(self):
        if self.ctx.events is not None:
            self.ctx.events.close()
