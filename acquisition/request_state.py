import json
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from uuid import uuid4

from acquisition.errors import InvalidTransition, StaleRequestState
from acquisition.events import log_event

REQUEST_PRIMARY = "primary"
REQUEST_SIDECAR = "sidecar"
_REQUEST_TYPES = {REQUEST_PRIMARY, REQUEST_SIDECAR}

PENDING = "pending"
SEARCHING = "searching"
AWAITING_SEARCH = "awaiting_search"
DOWNLOADING = "downloading"
PROCESSING = "processing"
DOWNLOADED = "downloaded"
AVAILABLE = "available"
FAILED = "failed"

COMPLETED_STATUSES = frozenset({DOWNLOADED, AVAILABLE})
TERMINAL_STATUSES = frozenset({DOWNLOADED, AVAILABLE, FAILED})
RETRYABLE_STATUSES = frozenset({FAILED, AWAITING_SEARCH})

# Job-driven edges. Resetting to pending is a separate operation (reset_for_retry).
TRANSITIONS = {
    PENDING: frozenset({SEARCHING, FAILED}),
    SEARCHING: frozenset({SEARCHING, AWAITING_SEARCH, DOWNLOADING, FAILED}),
    AWAITING_SEARCH: frozenset({SEARCHING, FAILED}),
    DOWNLOADING: frozenset({PROCESSING, FAILED}),
    PROCESSING: frozenset({DOWNLOADED, AVAILABLE, FAILED}),
    DOWNLOADED: frozenset(),
    AVAILABLE: frozenset(),
    FAILED: frozenset(),
}
STATUSES = frozenset(TRANSITIONS)


def _utc_now():
    return datetime.utcnow().isoformat()


def allowed_sources(to_status):
    return sorted(status for status, targets in TRANSITIONS.items() if to_status in targets)


def can_transition(from_status, to_status):
    return to_status in TRANSITIONS.get(from_status, ())


def ensure_requests_table(conn):
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS requests (
            id TEXT PRIMARY KEY,
            type TEXT NOT NULL,
            parent_request_id TEXT,
            target_json TEXT NOT NULL,
            status TEXT NOT NULL,
            progress INTEGER NOT NULL DEFAULT 0,
            search_attempts INTEGER NOT NULL DEFAULT 0,
            last_search_at TIMESTAMP,
            error_message TEXT,
            final_path TEXT,
            created_at TIMESTAMP NOT NULL,
            updated_at TIMESTAMP NOT NULL,
            deleted_at TIMESTAMP
        )
        """
    )
    existing = {row[1] for row in cur.execute("PRAGMA table_info(requests)").fetchall()}
    for name, ddl in {"final_path": "final_path TEXT", "deleted_at": "deleted_at TIMESTAMP"}.items():
        if name not in existing:
            cur.execute(f"ALTER TABLE requests ADD COLUMN {ddl}")
            log_event("warning", "requests_db_migration", column=name)
    cur.execute("CREATE INDEX IF NOT EXISTS idx_requests_status ON requests (status)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_requests_parent ON requests (parent_request_id)")
    cur.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_requests_one_sidecar
        ON requests (parent_request_id)
        WHERE type='sidecar' AND deleted_at IS NULL
        """
    )
    conn.commit()


@dataclass(frozen=True)
class Request:
    id: str
    type: str
    parent_request_id: str | None
    target: dict
    status: str
    progress: int
    search_attempts: int
    last_search_at: str | None
    error_message: str | None
    final_path: str | None
    created_at: str
    updated_at: str
    deleted_at: str | None

    @property
    def is_deleted(self):
        return self.deleted_at is not None

    @property
    def is_sidecar(self):
        return self.type == REQUEST_SIDECAR

    @classmethod
    def from_row(cls, row):
        return cls(
            id=row["id"],
            type=row["type"],
            parent_request_id=row["parent_request_id"],
            target=json.loads(row["target_json"]) if row["target_json"] else {},
            status=row["status"],
            progress=row["progress"],
            search_attempts=row["search_attempts"],
            last_search_at=row["last_search_at"],
            error_message=row["error_message"],
            final_path=row["final_path"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            deleted_at=row["deleted_at"],
        )


class RequestStore:
    """Persistence and transition guard for acquisition requests.

    Every status change is one conditional UPDATE scoped to a single row, so
    two workers racing on the same request cannot both win.
    """

    def __init__(self, db_path):
        self.db_path = db_path

    def _connect(self):
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        ensure_requests_table(conn)
        return conn

    def create_request(self, target, *, request_type=REQUEST_PRIMARY, parent_request_id=None):
        if request_type not in _REQUEST_TYPES:
            raise ValueError(f"Invalid request type: {request_type}")
        title = (target.get("title") or "").strip()
        if not title:
            raise ValueError("target title is required")
        if request_type == REQUEST_SIDECAR and not parent_request_id:
            raise ValueError("sidecar requests need a parent_request_id")
        if request_type == REQUEST_PRIMARY and parent_request_id:
            raise ValueError("primary requests cannot have a parent")

        target = {**target, "title": title, "author": (target.get("author") or "").strip()}
        now = _utc_now()
        request_id = uuid4().hex
        values = (
            request_id,
            request_type,
            parent_request_id,
            json.dumps(target, sort_keys=True),
            PENDING,
            now,
            now,
        )
        with self._connect() as conn:
            if request_type == REQUEST_PRIMARY:
                conn.execute(
                    """
                    INSERT INTO requests (
                        id, type, parent_request_id, target_json, status, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    values,
                )
            else:
                # Parent check and insert happen in one statement.
                cur = conn.execute(
                    """
                    INSERT INTO requests (
                        id, type, parent_request_id, target_json, status, created_at, updated_at
                    )
                    SELECT ?, ?, ?, ?, ?, ?, ?
                    WHERE EXISTS (
                        SELECT 1 FROM requests
                        WHERE id=? AND type=? AND deleted_at IS NULL AND status IN (?, ?)
                    )
                    """,
                    values + (parent_request_id, REQUEST_PRIMARY, *sorted(COMPLETED_STATUSES)),
                )
                if cur.rowcount != 1:
                    raise ValueError(f"parent request {parent_request_id} is missing or not completed")
        log_event(
            "info",
            "request_created",
            request_id=request_id,
            request_type=request_type,
            parent_request_id=parent_request_id,
            status=PENDING,
        )
        return request_id

    def get_request(self, request_id):
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM requests WHERE id=?", (request_id,)).fetchone()
            if not row:
                return None
            return Request.from_row(row)

    def find_sidecar(self, parent_request_id):
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM requests
                WHERE parent_request_id=? AND type=? AND deleted_at IS NULL
                ORDER BY created_at ASC
                LIMIT 1
                """,
                (parent_request_id, REQUEST_SIDECAR),
            ).fetchone()
            if not row:
                return None
            return Request.from_row(row)

    def list_awaiting_search(self, *, older_than=None, limit=100):
        query = "SELECT * FROM requests WHERE status=? AND deleted_at IS NULL"
        params = [AWAITING_SEARCH]
        if older_than:
            query += " AND (last_search_at IS NULL OR last_search_at <= ?)"
            params.append(older_than)
        query += " ORDER BY last_search_at ASC LIMIT ?"
        params.append(int(limit))
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
            return [Request.from_row(row) for row in rows]

    def transition(self, request_id, to_status, *, error_message=None, progress=None, final_path=None):
        if to_status not in STATUSES:
            raise ValueError(f"Invalid request status: {to_status}")
        sources = allowed_sources(to_status)
        if not sources:
            raise InvalidTransition(request_id, None, to_status)
        now = _utc_now()
        entering_search = to_status == SEARCHING
        stamps_search = to_status in {SEARCHING, AWAITING_SEARCH}
        placeholders = ", ".join("?" for _ in sources)
        with self._connect() as conn:
            cur = conn.execute(
                f"""
                UPDATE requests
                SET
                    status=?,
                    updated_at=?,
                    error_message=?,
                    progress=COALESCE(?, progress),
                    final_path=COALESCE(?, final_path),
                    search_attempts=search_attempts + ?,
                    last_search_at=CASE WHEN ? THEN ? ELSE last_search_at END
                WHERE id=? AND status IN ({placeholders})
                """,
                (
                    to_status,
                    now,
                    error_message,
                    progress,
                    final_path,
                    1 if entering_search else 0,
                    1 if stamps_search else 0,
                    now,
                    request_id,
                    *sources,
                ),
            )
            if cur.rowcount != 1:
                row = conn.execute("SELECT status FROM requests WHERE id=?", (request_id,)).fetchone()
                if not row:
                    raise KeyError(request_id)
                if not can_transition(row["status"], to_status):
                    raise InvalidTransition(request_id, row["status"], to_status)
                raise StaleRequestState(request_id, to_status)
        log_event(
            "warning" if to_status in {FAILED, AWAITING_SEARCH} else "info",
            "request_status",
            request_id=request_id,
            status=to_status,
            error=error_message,
        )
        return to_status

    def reset_for_retry(self, request_id):
        """Send a failed or awaiting sidecar back to pending with cleared progress."""
        now = _utc_now()
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE requests
                SET status=?, progress=0, error_message=NULL, updated_at=?
                WHERE id=? AND type=? AND deleted_at IS NULL AND status IN (?, ?)
                """,
                (PENDING, now, request_id, REQUEST_SIDECAR, *sorted(RETRYABLE_STATUSES)),
            )
            if cur.rowcount != 1:
                return False
        log_event("info", "request_status", request_id=request_id, status=PENDING, reason="retry")
        return True

    def update_progress(self, request_id, progress):
        progress = max(0, min(100, int(progress)))
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE requests SET progress=?, updated_at=? WHERE id=? AND status=?",
                (progress, _utc_now(), request_id, DOWNLOADING),
            )
            return cur.rowcount == 1

    def soft_delete(self, request_id):
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE requests SET deleted_at=?, updated_at=? WHERE id=? AND deleted_at IS NULL",
                (_utc_now(), _utc_now(), request_id),
            )
            deleted = cur.rowcount == 1
        if deleted:
            log_event("info", "request_deleted", request_id=request_id)
        return deleted
