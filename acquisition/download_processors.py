import os

from acquisition.errors import (
    ConfigurationError,
    DownloadLocationsExhausted,
    ExternalServiceError,
    PermanentJobError,
)
from acquisition.job_queue import JOB_MONITOR_DOWNLOAD, JOB_ORGANIZE_FILES
from acquisition.path_mapper import map_path
from acquisition.processing import follow_up_payload, job_logger, load_request
from acquisition.request_state import DOWNLOADING, FAILED, PROCESSING
from acquisition.services import STATE_QUEUED

STALLED_MESSAGE = "Download stalled or removed from client"


def _ordered_locations(first, known):
    locations = []
    for url in [first, *known]:
        if url and url not in locations:
            locations.append(url)
    return locations


def _enqueue_organize(ctx, request_id, source_paths):
    return ctx.jobs.enqueue(
        JOB_ORGANIZE_FILES,
        {
            "request_id": request_id,
            "source_paths": list(source_paths),
            "destination_template": ctx.config.organize.destination_template,
        },
    )


def _progress_reporter(ctx, request_id, expected_bytes):
    reported = [0]

    def report(written, total):
        total = total or expected_bytes
        if not total:
            return
        percent = min(99, int(written * 100 / total))
        if percent > reported[0]:
            reported[0] = percent
            ctx.requests.update_progress(request_id, percent)

    return report


def _start_direct(ctx, job, request, history, log):
    locations = _ordered_locations(job.payload.get("download_url"), history.download_urls)
    if not locations:
        raise PermanentJobError(f"download {history.id} has no known locations")
    staging = os.path.join(ctx.paths.staging_dir, request.id)
    display_name = job.payload.get("display_name") or history.candidate_name
    expected_bytes = job.payload.get("size_bytes") or history.size_bytes
    last_error = None
    for index, url in enumerate(locations, start=1):
        log.info(f"Trying location {index}/{len(locations)}")
        try:
            fetched = ctx.fetcher.fetch(
                url, staging, display_name, on_progress=_progress_reporter(ctx, request.id, expected_bytes)
            )
        except (ExternalServiceError, OSError) as exc:
            last_error = str(exc) or exc.__class__.__name__
            log.warning(f"Location {index}/{len(locations)} failed: {last_error}")
            continue
        ctx.history.mark_status(history.id, "completed", size_bytes=fetched.bytes_transferred)
        ctx.requests.transition(request.id, PROCESSING, progress=100)
        _enqueue_organize(ctx, request.id, [fetched.path])
        log.info(f"Downloaded {fetched.bytes_transferred} bytes from location {index}")
        return {
            "bytes_transferred": fetched.bytes_transferred,
            "path": fetched.path,
            "location_index": index,
        }

    ctx.history.mark_status(history.id, "failed", error_message=last_error)
    log.error(f"All {len(locations)} download locations failed")
    raise DownloadLocationsExhausted(
        f"all {len(locations)} locations failed for download {history.id}: {last_error}",
        public_message=f"All download locations failed. Last error: {last_error}",
    )


def _start_client(ctx, job, request, history, log):
    client = ctx.download_client
    if client is None:
        raise ConfigurationError("No download client configured")
    handle = history.download_client_id
    if handle:
        # A previous attempt already handed this download to the client.
        log.info(f"Download already submitted as {handle}")
    else:
        url = job.payload.get("download_url") or (history.download_urls[0] if history.download_urls else None)
        if not url:
            raise PermanentJobError(f"download {history.id} has no URL")
        handle = client.add_download(url, job.payload.get("display_name") or history.candidate_name)
        ctx.history.set_client_handle(history.id, handle)
        log.info(f"Submitted to {history.download_client} as {handle}")
    ctx.jobs.enqueue(
        JOB_MONITOR_DOWNLOAD,
        {"request_id": request.id, "history_id": history.id, "download_client_id": handle},
        delay_seconds=ctx.config.jobs.monitor_interval_seconds,
    )
    return {"download_client_id": handle}


def process_start_download(ctx, job):
    log = job_logger(ctx, job, "StartDownload")
    request, skipped = load_request(ctx, job, log, {DOWNLOADING})
    if skipped:
        return skipped
    history = ctx.history.get(job.payload.get("history_id"))
    if history is None:
        raise PermanentJobError(f"download history {job.payload.get('history_id')} not found")
    if history.is_direct:
        return _start_direct(ctx, job, request, history, log.child("Direct"))
    return _start_client(ctx, job, request, history, log.child("Client"))


def process_monitor_download(ctx, job):
    log = job_logger(ctx, job, "MonitorDownload")
    request, skipped = load_request(ctx, job, log, {DOWNLOADING})
    if skipped:
        return skipped
    client = ctx.download_client
    if client is None:
        raise ConfigurationError("No download client configured")
    history_id = job.payload.get("history_id")
    handle = job.payload.get("download_client_id")
    if not handle:
        raise PermanentJobError(f"monitor job {job.id} has no download_client_id")

    progress = client.get_progress(handle)
    if progress.is_failed:
        error = progress.error or "download client reported an error"
        ctx.history.mark_status(history_id, "failed", error_message=error)
        ctx.requests.transition(request.id, FAILED, error_message=f"Download failed: {error}")
        log.error(f"Download {handle} failed: {error}")
        return {"progress": progress.percent, "state": progress.state, "failed": True}

    if progress.is_complete:
        if not progress.content_path:
            raise ExternalServiceError(f"download {handle} finished without a content path")
        local_path, note = map_path(progress.content_path, ctx.config.path_mapping)
        if note and ctx.config.path_mapping.enabled:
            log.warning(f"Path mapping not applied: {note}")
        ctx.history.mark_status(history_id, "completed")
        ctx.requests.transition(request.id, PROCESSING, progress=100)
        _enqueue_organize(ctx, request.id, [local_path])
        log.info(f"Download {handle} complete at {local_path}")
        return {"progress": 100, "state": progress.state, "content_path": local_path}

    idle_polls = int(job.payload.get("idle_polls") or 0) + 1 if progress.state == STATE_QUEUED else 0
    if idle_polls >= ctx.config.jobs.monitor_max_idle_polls:
        ctx.history.mark_status(history_id, "failed", error_message=STALLED_MESSAGE)
        ctx.requests.transition(request.id, FAILED, error_message=STALLED_MESSAGE)
        log.error(f"Download {handle} made no progress after {idle_polls} checks")
        return {"progress": progress.percent, "state": progress.state, "failed": True, "idle_polls": idle_polls}

    ctx.requests.update_progress(request.id, progress.percent)
    ctx.jobs.enqueue(
        JOB_MONITOR_DOWNLOAD,
        follow_up_payload(job, idle_polls=idle_polls),
        delay_seconds=ctx.config.jobs.monitor_interval_seconds,
    )
    log.debug(f"Download {handle} at {progress.percent}% ({progress.state})")
    return {"progress": progress.percent, "state": progress.state}
