from acquisition.errors import PermanentJobError
from acquisition.events import JobLogger

SKIPPED_DELETED = {"skipped": True, "reason": "request_deleted"}


def job_logger(ctx, job, context):
    return JobLogger(ctx.events, job.payload.get("job_id") or job.id, context)


def load_request(ctx, job, log, expected_statuses):
    """Return ``(request, skip_result)`` for the job's request.

    ``skip_result`` is set when the processor should finish without doing
    anything: the request was soft-deleted or has moved past this step.
    """
    request_id = job.payload.get("request_id")
    if not request_id:
        raise PermanentJobError(f"{job.type} job {job.id} has no request_id")
    request = ctx.requests.get_request(request_id)
    if request is None:
        raise PermanentJobError(f"request {request_id} not found")
    if request.is_deleted:
        log.info(f"Request {request_id} was deleted, skipping")
        return request, dict(SKIPPED_DELETED)
    if request.status not in expected_statuses:
        log.warning(f"Request {request_id} is {request.status}, skipping {job.type}")
        return request, {"skipped": True, "reason": f"request_{request.status}"}
    return request, None


def follow_up_payload(job, **updates):
    payload = {key: value for key, value in job.payload.items() if key != "job_id"}
    payload.update(updates)
    return payload
