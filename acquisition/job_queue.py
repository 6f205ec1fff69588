import json
import logging
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import uuid4

import requests

from acquisition.errors import ExternalServiceError, PermanentJobError

JOB_SEARCH_MEDIA = "search-media"
JOB_SEARCH_SIDECAR = "search-sidecar"
JOB_START_DOWNLOAD = "start-download"
JOB_MONITOR_DOWNLOAD = "monitor-download"
JOB_ORGANIZE_FILES = "organize-files"
JOB_TYPES = {
    JOB_SEARCH_MEDIA,
    JOB_SEARCH_SIDECAR,
    JOB_START_DOWNLOAD,
    JOB_MONITOR_DOWNLOAD,
    JOB_ORGANIZE_FILES,
}
_ACTIVE_STATUSES = ("queued", "running")
_DEFAULT_MAX_ATTEMPTS = 3
_DEFAULT_RETRY_DELAY_SECONDS = 30
_DEFAULT_POLL_INTERVAL_SECONDS = 1.0
_MAX_RETRY_DELAY_SECONDS = 3600


def _utc_now():
    return datetime.utcnow().isoformat()


def _parse_json(raw):
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return {}


def _serialize_json(value):
    if value is None:
        return None
    return json.dumps(value, sort_keys=True, default=str)


def _job_log(level, *, job_id, job_type, event, **fields):
    payload = {
        "event": event,
        "job_id": job_id,
        "job_type": job_type,
        **fields,
    }
    message = json.dumps(payload, sort_keys=True, default=str)
    getattr(logging, level)(message)


def ensure_jobs_table(conn):
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS jobs (
            id TEXT PRIMARY KEY,
            type TEXT NOT NULL,
            request_id TEXT,
            payload_json TEXT NOT NULL,
            status TEXT NOT NULL,
            attempts INTEGER NOT NULL DEFAULT 0,
            max_attempts INTEGER NOT NULL DEFAULT 3,
            created_at TIMESTAMP NOT NULL,
            updated_at TIMESTAMP NOT NULL,
            run_after TIMESTAMP,
            started_at TIMESTAMP,
            completed_at TIMESTAMP,
            result_json TEXT,
            error_message TEXT
        )
        """
    )
    existing = {row[1] for row in cur.execute("PRAGMA table_info(jobs)").fetchall()}
    columns = {
        "request_id": "request_id TEXT",
        "run_after": "run_after TIMESTAMP",
        "started_at": "started_at TIMESTAMP",
        "completed_at": "completed_at TIMESTAMP",
        "result_json": "result_json TEXT",
        "error_message": "error_message TEXT",
    }
    for name, ddl in columns.items():
        if name not in existing:
            cur.execute(f"ALTER TABLE jobs ADD COLUMN {ddl}")
            logging.warning("Migrated jobs: added column %s", name)

    cur.execute("CREATE INDEX IF NOT EXISTS idx_jobs_status_run_after ON jobs (status, run_after)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_jobs_type_status ON jobs (type, status)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_jobs_request_id ON jobs (request_id)")

    cur.execute(
        """
        CREATE TRIGGER IF NOT EXISTS jobs_immutable_fields
        BEFORE UPDATE ON jobs
        FOR EACH ROW
        WHEN OLD.type != NEW.type OR OLD.payload_json != NEW.payload_json
        BEGIN
            SELECT RAISE(ABORT, 'jobs immutable field update blocked');
        END
        """
    )
    conn.commit()


@dataclass(frozen=True)
class Job:
    id: str
    type: str
    request_id: str | None
    payload: dict
    status: str
    attempts: int
    max_attempts: int
    created_at: str
    updated_at: str
    run_after: str | None
    started_at: str | None
    completed_at: str | None
    result: dict | None
    error_message: str | None

    @property
    def is_terminal(self):
        return self.status == "completed" or (
            self.status == "failed" and self.attempts >= self.max_attempts
        )

    @classmethod
    def from_row(cls, row):
        return cls(
            id=row["id"],
            type=row["type"],
            request_id=row["request_id"],
            payload=_parse_json(row["payload_json"]),
            status=row["status"],
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            run_after=row["run_after"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            result=_parse_json(row["result_json"]) if row["result_json"] else None,
            error_message=row["error_message"],
        )


class JobStore:
    def __init__(self, db_path, *, default_max_attempts=None):
        self.db_path = db_path
        self.default_max_attempts = default_max_attempts or _DEFAULT_MAX_ATTEMPTS

    def _connect(self):
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def enqueue(self, job_type, payload, *, max_attempts=None, delay_seconds=0, job_id=None, unless_active=False):
        """Insert a queued job and return its id.

        With ``unless_active`` the insert only happens when the payload's
        request has no queued or running job; the check and the insert are one
        statement, and None is returned when another job is already active.
        """
        if job_type not in JOB_TYPES:
            raise ValueError(f"Invalid job type: {job_type}")
        if not isinstance(payload, dict):
            raise ValueError("payload must be a dict")
        if unless_active and not payload.get("request_id"):
            raise ValueError("unless_active needs a request_id in the payload")
        now_dt = datetime.utcnow()
        now = now_dt.isoformat()
        run_after = (now_dt + timedelta(seconds=delay_seconds)).isoformat() if delay_seconds else now
        job_id = job_id or uuid4().hex
        max_attempts = int(self.default_max_attempts if max_attempts is None else max_attempts)
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        # Processors log against their own job id, so it travels in the payload.
        payload = {**payload, "job_id": job_id}
        values = (
            job_id,
            job_type,
            payload.get("request_id"),
            _serialize_json(payload),
            max_attempts,
            now,
            now,
            run_after,
        )
        with self._connect() as conn:
            ensure_jobs_table(conn)
            if unless_active:
                cur = conn.execute(
                    """
                    INSERT INTO jobs (
                        id, type, request_id, payload_json, status, attempts, max_attempts,
                        created_at, updated_at, run_after
                    )
                    SELECT ?, ?, ?, ?, 'queued', 0, ?, ?, ?, ?
                    WHERE NOT EXISTS (
                        SELECT 1 FROM jobs WHERE request_id=? AND status IN (?, ?)
                    )
                    """,
                    (*values, payload["request_id"], *_ACTIVE_STATUSES),
                )
                if cur.rowcount != 1:
                    _job_log(
                        "info",
                        job_id=None,
                        job_type=job_type,
                        event="job_enqueue_skipped",
                        reason="active_job_exists",
                        request_id=payload["request_id"],
                    )
                    return None
            else:
                conn.execute(
                    """
                    INSERT INTO jobs (
                        id, type, request_id, payload_json, status, attempts, max_attempts,
                        created_at, updated_at, run_after
                    ) VALUES (?, ?, ?, ?, 'queued', 0, ?, ?, ?, ?)
                    """,
                    values,
                )
        _job_log(
            "info",
            job_id=job_id,
            job_type=job_type,
            event="job_enqueued",
            status="queued",
            request_id=payload.get("request_id"),
            run_after=run_after,
        )
        return job_id

    def claim_next(self, job_type=None, *, now=None):
        now = now or _utc_now()
        with self._connect() as conn:
            ensure_jobs_table(conn)
            cur = conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            query = "SELECT * FROM jobs WHERE status='queued' AND (run_after IS NULL OR run_after <= ?)"
            params = [now]
            if job_type:
                query += " AND type=?"
                params.append(job_type)
            query += " ORDER BY run_after ASC, created_at ASC LIMIT 1"
            row = cur.execute(query, params).fetchone()
            if not row:
                conn.commit()
                return None
            job_id = row["id"]
            cur.execute(
                """
                UPDATE jobs
                SET status='running', started_at=?, updated_at=?
                WHERE id=? AND status='queued'
                """,
                (now, now, job_id),
            )
            if cur.rowcount != 1:
                conn.commit()
                return None
            conn.commit()
            data = dict(row)
            data["status"] = "running"
            data["started_at"] = now
            data["updated_at"] = now
            return Job.from_row(data)

    def get_job(self, job_id):
        with self._connect() as conn:
            ensure_jobs_table(conn)
            row = conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone()
            if not row:
                return None
            return Job.from_row(row)

    def list_jobs(self, request_id):
        with self._connect() as conn:
            ensure_jobs_table(conn)
            rows = conn.execute(
                "SELECT * FROM jobs WHERE request_id=? ORDER BY created_at ASC",
                (request_id,),
            ).fetchall()
            return [Job.from_row(row) for row in rows]

    def has_active_job(self, request_id, job_type=None):
        query = "SELECT 1 FROM jobs WHERE request_id=? AND status IN (?, ?)"
        params = [request_id, *_ACTIVE_STATUSES]
        if job_type:
            query += " AND type=?"
            params.append(job_type)
        with self._connect() as conn:
            ensure_jobs_table(conn)
            row = conn.execute(query + " LIMIT 1", params).fetchone()
            return row is not None

    def complete(self, job_id, result=None):
        now = _utc_now()
        with self._connect() as conn:
            ensure_jobs_table(conn)
            cur = conn.execute(
                """
                UPDATE jobs
                SET status='completed', completed_at=?, updated_at=?, result_json=?
                WHERE id=? AND status='running'
                """,
                (now, now, _serialize_json(result), job_id),
            )
            if cur.rowcount != 1:
                return False
        _job_log("info", job_id=job_id, job_type=None, event="job_completed", status="completed")
        return True

    def fail(self, job_id, error_message, *, retry_delay_seconds=None, retryable=True):
        """Record one failed attempt and return the job's resulting status.

        The attempt counter and the queued/failed decision move together in a
        single conditional UPDATE, so concurrent writers cannot interleave.
        Returns None when the job was not running.
        """
        now_dt = datetime.utcnow()
        now = now_dt.isoformat()
        delay = retry_delay_seconds if retry_delay_seconds is not None else _DEFAULT_RETRY_DELAY_SECONDS
        retry_at = (now_dt + timedelta(seconds=delay)).isoformat()
        with self._connect() as conn:
            ensure_jobs_table(conn)
            cur = conn.execute(
                """
                UPDATE jobs
                SET
                    attempts = CASE WHEN ? THEN attempts + 1 ELSE max_attempts END,
                    status = CASE WHEN ? AND attempts + 1 < max_attempts THEN 'queued' ELSE 'failed' END,
                    run_after = CASE WHEN ? AND attempts + 1 < max_attempts THEN ? ELSE run_after END,
                    completed_at = CASE WHEN ? AND attempts + 1 < max_attempts THEN NULL ELSE ? END,
                    error_message = ?,
                    updated_at = ?
                WHERE id=? AND status='running'
                """,
                (
                    1 if retryable else 0,
                    1 if retryable else 0,
                    1 if retryable else 0,
                    retry_at,
                    1 if retryable else 0,
                    now,
                    error_message,
                    now,
                    job_id,
                ),
            )
            if cur.rowcount != 1:
                return None
            row = conn.execute("SELECT status, attempts, type FROM jobs WHERE id=?", (job_id,)).fetchone()
        status = row["status"]
        _job_log(
            "warning" if status == "queued" else "error",
            job_id=job_id,
            job_type=row["type"],
            event="job_requeued" if status == "queued" else "job_failed",
            status=status,
            attempts=row["attempts"],
            error=error_message,
            retry_at=retry_at if status == "queued" else None,
        )
        return status


def _is_retryable_error(exc):
    if isinstance(exc, PermanentJobError):
        return False
    lowered = (str(exc) or "").lower()
    non_retryable = (
        "http error 401",
        "http error 403",
        "http error 404",
        "403 forbidden",
        "404 not found",
    )
    if any(token in lowered for token in non_retryable):
        return False
    # Anything else is treated as transient until max_attempts says otherwise.
    return True


def _retry_delay(base_delay, attempts):
    delay = base_delay * (2 ** max(0, attempts - 1))
    return min(delay, _MAX_RETRY_DELAY_SECONDS)


class WorkerPool:
    def __init__(
        self,
        store,
        handlers,
        *,
        workers=1,
        retry_delay_seconds=None,
        poll_interval_seconds=None,
        stop_event=None,
        on_exhausted=None,
    ):
        self.store = store
        self.handlers = dict(handlers)
        self.workers = max(1, int(workers))
        if retry_delay_seconds is None:
            retry_delay_seconds = _DEFAULT_RETRY_DELAY_SECONDS
        self.retry_delay_seconds = retry_delay_seconds
        self.poll_interval_seconds = poll_interval_seconds or _DEFAULT_POLL_INTERVAL_SECONDS
        self.stop_event = stop_event or threading.Event()
        self.on_exhausted = on_exhausted

    def run_until_idle(self):
        """Run workers until no job is ready, then join them."""
        threads = [
            threading.Thread(target=self._drain_loop, name=f"acquisition-worker-{idx}")
            for idx in range(self.workers)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

    def run_forever(self):
        threads = [
            threading.Thread(target=self._poll_loop, name=f"acquisition-worker-{idx}")
            for idx in range(self.workers)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

    def run_one(self):
        job = self.store.claim_next()
        if not job:
            return None
        self.execute(job)
        return job.id

    def _drain_loop(self):
        while not self.stop_event.is_set():
            if self.run_one() is None:
                break

    def _poll_loop(self):
        while not self.stop_event.is_set():
            if self.run_one() is None:
                self.stop_event.wait(self.poll_interval_seconds)

    def execute(self, job):
        if job.status != "running":
            _job_log(
                "warning",
                job_id=job.id,
                job_type=job.type,
                event="job_skipped",
                status=job.status,
                reason="status_not_running",
            )
            return
        _job_log("info", job_id=job.id, job_type=job.type, event="job_running", status="running")

        handler = self.handlers.get(job.type)
        if handler is None:
            error = f"no handler registered for job type={job.type}"
            status = self.store.fail(job.id, error, retryable=False)
            if status == "failed":
                self._notify_exhausted(job, error, None)
            return

        try:
            result = handler(job)
        except Exception as exc:
            self._handle_job_error(job, exc)
            return
        self.store.complete(job.id, result)

    def _handle_job_error(self, job, exc):
        error_message = str(exc) or exc.__class__.__name__
        if isinstance(exc, (ExternalServiceError, requests.RequestException)):
            logging.warning("Job %s (%s) hit external error: %s", job.id, job.type, error_message)
        elif not isinstance(exc, PermanentJobError):
            logging.exception("Job %s (%s) raised unexpectedly", job.id, job.type)
        retryable = _is_retryable_error(exc)
        delay = _retry_delay(self.retry_delay_seconds, job.attempts + 1)
        status = self.store.fail(
            job.id,
            error_message,
            retry_delay_seconds=delay,
            retryable=retryable,
        )
        if status == "failed":
            self._notify_exhausted(job, error_message, exc)

    def _notify_exhausted(self, job, error_message, exc):
        if not self.on_exhausted:
            return
        try:
            self.on_exhausted(job, error_message, exc)
        except Exception:
            logging.exception("on_exhausted hook failed for job %s", job.id)

