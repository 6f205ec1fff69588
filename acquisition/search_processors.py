import sqlite3
from dataclasses import replace

from acquisition.download_history import CLIENT_DIRECT
from acquisition.errors import ConfigurationError, ExternalServiceError
from acquisition.job_queue import JOB_SEARCH_MEDIA, JOB_SEARCH_SIDECAR, JOB_START_DOWNLOAD
from acquisition.outcomes import (
    FatalError,
    NoQualifyingCandidate,
    Selected,
    TransientError,
    classify_exception,
)
from acquisition.processing import job_logger, load_request
from acquisition.ranking import qualifying, rank, rank_sidecar, select_best
from acquisition.request_state import (
    AWAITING_SEARCH,
    COMPLETED_STATUSES,
    DOWNLOADING,
    FAILED,
    REQUEST_SIDECAR,
    RETRYABLE_STATUSES,
    SEARCHING,
    allowed_sources,
)

AUDIOBOOK_CATEGORY = 3030
MIN_AVAILABILITY = 1
MAX_RESULTS = 100
_LOGGED_TOP = 3

NO_RESULTS_MESSAGE = "No torrents found. Will retry automatically."
NO_QUALIFYING_MESSAGE = "No quality matches found. Will retry automatically."
NO_SIDECAR_MESSAGE = "No e-book found. Will retry automatically."


def _begin_search(ctx, job, context):
    log = job_logger(ctx, job, context)
    request, skipped = load_request(ctx, job, log, allowed_sources(SEARCHING))
    if skipped:
        return request, None, log, skipped
    ctx.requests.transition(request.id, SEARCHING)
    target = {**request.target, **(job.payload.get("target") or {})}
    return request, target, log, None


def _describe(result):
    parts = [
        f"title={result.breakdown.title_score:.1f}",
        f"author={result.breakdown.author_score:.1f}",
        f"format={result.breakdown.format_score:.1f}",
        f"seeds={result.breakdown.seed_score:.1f}",
        f"size={result.breakdown.size_score:.1f}",
    ]
    for modifier in result.breakdown.bonus_modifiers:
        parts.append(f"{modifier.reason}={modifier.points:+g}")
    return ", ".join(parts)


def find_media(ctx, target, log):
    indexers = ctx.config.indexers
    try:
        if not indexers:
            raise ConfigurationError("No indexers configured. Add at least one indexer before searching.")
        if ctx.search_service is None:
            raise ConfigurationError("No search service configured")
        log.info(f"Searching {len(indexers)} indexers for \"{target['title']}\"")
        candidates = ctx.search_service.search(
            target["title"],
            category=AUDIOBOOK_CATEGORY,
            min_availability=MIN_AVAILABILITY,
            max_results=MAX_RESULTS,
            source_ids=[indexer.id for indexer in indexers],
        )
    except Exception as exc:
        return classify_exception(exc)

    if not candidates:
        return NoQualifyingCandidate(NO_RESULTS_MESSAGE)

    ranked = rank(candidates, target, ctx.config.indexer_priorities(), ctx.config.flag_rules)
    for result in ranked[:_LOGGED_TOP]:
        log.info(
            f"#{result.position} {result.candidate.title} "
            f"base={result.base_score:.1f} bonus={result.bonus_points:+.1f} final={result.final_score:.1f}",
            {"breakdown": _describe(result), "notes": list(result.breakdown.notes)},
        )
    best = select_best(ranked)
    if best is None:
        bonus_rejected = sum(1 for result in ranked if result.disqualified_by_bonus)
        if bonus_rejected:
            log.debug(f"{bonus_rejected} candidates passed the base bar but were pulled under by bonus rules")
        return NoQualifyingCandidate(NO_QUALIFYING_MESSAGE, candidate_count=len(candidates))
    return Selected(best, len(candidates), len(qualifying(ranked)))


def process_search_media(ctx, job):
    request, target, log, skipped = _begin_search(ctx, job, "SearchMedia")
    if skipped:
        return skipped
    outcome = find_media(ctx, target, log)

    if isinstance(outcome, Selected):
        winner = outcome.winner
        candidate = winner.candidate
        history_id = ctx.history.create(
            request_id=request.id,
            source_name=candidate.source_name,
            candidate_name=candidate.title,
            download_client=ctx.config.download_client.name,
            size_bytes=candidate.size_bytes,
            quality_score=round(winner.final_score, 2),
            download_urls=[candidate.download_url],
        )
        ctx.requests.transition(request.id, DOWNLOADING, progress=0)
        ctx.jobs.enqueue(
            JOB_START_DOWNLOAD,
            {
                "request_id": request.id,
                "history_id": history_id,
                "download_url": candidate.download_url,
                "display_name": candidate.title,
                "size_bytes": candidate.size_bytes,
            },
        )
        log.info(f"Selected \"{candidate.title}\" from {candidate.source_name or 'unknown source'}")
        return {
            "candidate_count": outcome.candidate_count,
            "qualified_count": outcome.qualified_count,
            "selected": {
                "title": candidate.title,
                "base_score": round(winner.base_score, 2),
                "final_score": round(winner.final_score, 2),
                "seeders": candidate.seeders,
                "format": winner.breakdown.detected_format,
            },
        }
    if isinstance(outcome, NoQualifyingCandidate):
        ctx.requests.transition(request.id, AWAITING_SEARCH, error_message=outcome.reason)
        log.warning(outcome.reason)
        return {
            "candidate_count": outcome.candidate_count,
            "qualified_count": 0,
            "awaiting_search": True,
            "reason": outcome.reason,
        }
    if isinstance(outcome, TransientError):
        log.warning(f"Search failed, job will retry: {outcome.message}")
        raise outcome.error
    if isinstance(outcome, FatalError):
        ctx.requests.transition(request.id, FAILED, error_message=outcome.public_message)
        log.error(outcome.message)
        return {"failed": True, "error": outcome.public_message}
    raise TypeError(f"unhandled search outcome {outcome!r}")


def _enabled_sources(ctx, log):
    if not ctx.config.sidecar.enabled:
        raise ConfigurationError("E-book sidecar fetching is disabled")
    sources = []
    for source_config in ctx.config.sidecar.enabled_sources():
        source = ctx.direct_sources.get(source_config.name)
        if source is None:
            log.warning(f"E-book source {source_config.name} is enabled but not available")
            continue
        sources.append((source_config, source))
    if not sources:
        raise ConfigurationError("No e-book sources configured")
    return sources


def _source_candidates(source, target, fmt, log):
    external_id = target.get("external_id")
    found = []
    method = "title"
    if external_id:
        found = source.search_by_external_id(external_id, fmt)
        method = "external_id"
    if not found:
        found = source.search_by_title_author(target["title"], target.get("author") or "", fmt)
        method = "title"
    candidates = []
    for candidate in found:
        urls = list(candidate.download_urls)
        if not urls and candidate.handle:
            urls = list(source.get_download_locations(candidate.handle))
        if not urls:
            log.debug(f"{source.source_name}: \"{candidate.title}\" has no download locations")
            continue
        candidates.append(
            replace(
                candidate,
                download_urls=tuple(urls),
                match_method=method,
                source_name=candidate.source_name or source.source_name,
            )
        )
    return candidates


def find_sidecar(ctx, target, log):
    try:
        sources = _enabled_sources(ctx, log)
    except ConfigurationError as exc:
        return classify_exception(exc)

    fmt = (target.get("preferred_format") or ctx.config.sidecar.preferred_format).lower()
    candidates = []
    last_error = None
    for source_config, source in sources:
        try:
            found = _source_candidates(source, target, fmt, log)
        except ExternalServiceError as exc:
            # Keep searching the remaining sources.
            log.warning(f"{source_config.name} lookup failed: {exc}")
            last_error = exc
            continue
        log.info(f"{source_config.name}: {len(found)} e-book candidates")
        candidates.extend(found)

    if not candidates:
        if last_error is not None:
            return TransientError(last_error)
        return NoQualifyingCandidate(NO_SIDECAR_MESSAGE)
    trust = {source_config.name: source_config.trust for source_config, _source in sources}
    ranked = rank_sidecar(candidates, fmt, trust)
    best = ranked[0]
    return Selected(best, len(candidates), len(ranked), match_method=best.candidate.match_method)


def process_search_sidecar(ctx, job):
    request, target, log, skipped = _begin_search(ctx, job, "SearchSidecar")
    if skipped:
        return skipped
    outcome = find_sidecar(ctx, target, log)

    if isinstance(outcome, Selected):
        winner = outcome.winner
        candidate = winner.candidate
        display_name = candidate.title
        if candidate.format and not display_name.lower().endswith(f".{candidate.format}"):
            display_name = f"{display_name}.{candidate.format}"
        history_id = ctx.history.create(
            request_id=request.id,
            source_name=candidate.source_name,
            candidate_name=candidate.title,
            download_client=CLIENT_DIRECT,
            size_bytes=candidate.size_bytes,
            quality_score=round(winner.score, 2),
            download_urls=list(candidate.download_urls),
        )
        ctx.requests.transition(request.id, DOWNLOADING, progress=0)
        ctx.jobs.enqueue(
            JOB_START_DOWNLOAD,
            {
                "request_id": request.id,
                "history_id": history_id,
                "download_url": candidate.download_urls[0],
                "display_name": display_name,
                "size_bytes": candidate.size_bytes,
            },
        )
        log.info(
            f"Selected e-book \"{candidate.title}\" from {candidate.source_name} "
            f"({len(candidate.download_urls)} locations, matched by {outcome.match_method})"
        )
        return {
            "match_method": outcome.match_method,
            "score": round(winner.score, 2),
            "link_count": len(candidate.download_urls),
            "source": candidate.source_name,
        }
    if isinstance(outcome, NoQualifyingCandidate):
        ctx.requests.transition(request.id, AWAITING_SEARCH, error_message=outcome.reason)
        log.warning(outcome.reason)
        return {"awaiting_search": True, "reason": outcome.reason}
    if isinstance(outcome, TransientError):
        log.warning(f"E-book search failed, job will retry: {outcome.message}")
        raise outcome.error
    if isinstance(outcome, FatalError):
        ctx.requests.transition(request.id, FAILED, error_message=outcome.public_message)
        log.error(outcome.message)
        return {"failed": True, "error": outcome.public_message}
    raise TypeError(f"unhandled search outcome {outcome!r}")


def sidecar_target(parent, preferred_format):
    target = {
        "title": parent.target.get("title"),
        "author": parent.target.get("author") or "",
        "preferred_format": preferred_format,
    }
    if parent.target.get("external_id"):
        target["external_id"] = parent.target["external_id"]
    return target


def enqueue_search(ctx, request, *, unless_active=False):
    job_type = JOB_SEARCH_SIDECAR if request.is_sidecar else JOB_SEARCH_MEDIA
    return ctx.jobs.enqueue(
        job_type,
        {"request_id": request.id, "target": request.target},
        unless_active=unless_active,
    )


def request_sidecar(ctx, parent_request_id):
    """Create, reset or return the sidecar for a completed request.

    At most one live sidecar exists per parent. A failed or waiting one is
    reset to pending and searched again; any other one is returned as is.
    """
    sidecar_config = ctx.config.sidecar
    if not sidecar_config.enabled:
        raise ConfigurationError("E-book sidecar fetching is disabled")
    parent = ctx.requests.get_request(parent_request_id)
    if parent is None or parent.is_deleted:
        raise ValueError(f"request {parent_request_id} not found")
    if parent.is_sidecar:
        raise ValueError("sidecars cannot have their own sidecar")
    if parent.status not in COMPLETED_STATUSES:
        raise ValueError(f"request {parent_request_id} is {parent.status}, not completed")

    existing = ctx.requests.find_sidecar(parent_request_id)
    if existing is None:
        try:
            sidecar_id = ctx.requests.create_request(
                sidecar_target(parent, sidecar_config.preferred_format),
                request_type=REQUEST_SIDECAR,
                parent_request_id=parent_request_id,
            )
        except sqlite3.IntegrityError:
            # Another caller created it first.
            existing = ctx.requests.find_sidecar(parent_request_id)
        else:
            sidecar = ctx.requests.get_request(sidecar_id)
            job_id = enqueue_search(ctx, sidecar)
            return {"request_id": sidecar_id, "status": sidecar.status, "action": "created", "job_id": job_id}

    if existing.status in RETRYABLE_STATUSES and ctx.requests.reset_for_retry(existing.id):
        sidecar = ctx.requests.get_request(existing.id)
        job_id = enqueue_search(ctx, sidecar)
        return {"request_id": existing.id, "status": sidecar.status, "action": "reset", "job_id": job_id}
    return {"request_id": existing.id, "status": existing.status, "action": "existing", "job_id": None}
