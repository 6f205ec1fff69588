import json
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from uuid import uuid4

from acquisition.events import log_event

CLIENT_DIRECT = "direct"
_DOWNLOAD_STATUSES = {"queued", "downloading", "completed", "failed"}


def _utc_now():
    return datetime.utcnow().isoformat()


def ensure_download_history_table(conn):
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS download_history (
            id TEXT PRIMARY KEY,
            request_id TEXT NOT NULL,
            source_name TEXT NOT NULL,
            candidate_name TEXT NOT NULL,
            size_bytes INTEGER,
            quality_score REAL,
            selected INTEGER NOT NULL DEFAULT 0,
            download_client TEXT NOT NULL,
            download_client_id TEXT,
            download_status TEXT NOT NULL,
            download_urls_json TEXT,
            error_message TEXT,
            created_at TIMESTAMP NOT NULL,
            updated_at TIMESTAMP NOT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_download_history_request ON download_history (request_id)")
    conn.commit()


@dataclass(frozen=True)
class DownloadHistory:
    id: str
    request_id: str
    source_name: str
    candidate_name: str
    size_bytes: int | None
    quality_score: float | None
    selected: bool
    download_client: str
    download_client_id: str | None
    download_status: str
    download_urls: list
    error_message: str | None
    created_at: str
    updated_at: str

    @property
    def is_direct(self):
        return self.download_client == CLIENT_DIRECT

    @classmethod
    def from_row(cls, row):
        raw_urls = row["download_urls_json"]
        return cls(
            id=row["id"],
            request_id=row["request_id"],
            source_name=row["source_name"],
            candidate_name=row["candidate_name"],
            size_bytes=row["size_bytes"],
            quality_score=row["quality_score"],
            selected=bool(row["selected"]),
            download_client=row["download_client"],
            download_client_id=row["download_client_id"],
            download_status=row["download_status"],
            download_urls=json.loads(raw_urls) if raw_urls else [],
            error_message=row["error_message"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


class DownloadHistoryStore:
    def __init__(self, db_path):
        self.db_path = db_path

    def _connect(self):
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        ensure_download_history_table(conn)
        return conn

    def create(
        self,
        *,
        request_id,
        source_name,
        candidate_name,
        download_client,
        size_bytes=None,
        quality_score=None,
        download_urls=None,
        selected=True,
    ):
        history_id = uuid4().hex
        now = _utc_now()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO download_history (
                    id, request_id, source_name, candidate_name, size_bytes, quality_score,
                    selected, download_client, download_status, download_urls_json,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'queued', ?, ?, ?)
                """,
                (
                    history_id,
                    request_id,
                    source_name,
                    candidate_name,
                    size_bytes,
                    quality_score,
                    1 if selected else 0,
                    download_client,
                    json.dumps(list(download_urls)) if download_urls else None,
                    now,
                    now,
                ),
            )
        log_event(
            "info",
            "download_history_created",
            history_id=history_id,
            request_id=request_id,
            source=source_name,
            client=download_client,
        )
        return history_id

    def get(self, history_id):
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM download_history WHERE id=?", (history_id,)).fetchone()
            if not row:
                return None
            return DownloadHistory.from_row(row)

    def list_for_request(self, request_id):
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM download_history WHERE request_id=? ORDER BY created_at ASC",
                (request_id,),
            ).fetchall()
            return [DownloadHistory.from_row(row) for row in rows]

    def mark_status(self, history_id, status, *, error_message=None, size_bytes=None):
        if status not in _DOWNLOAD_STATUSES:
            raise ValueError(f"Invalid download status: {status}")
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE download_history
                SET download_status=?, error_message=?, size_bytes=COALESCE(?, size_bytes), updated_at=?
                WHERE id=?
                """,
                (status, error_message, size_bytes, _utc_now(), history_id),
            )

    def set_client_handle(self, history_id, handle):
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE download_history
                SET download_client_id=?, download_status='downloading', updated_at=?
                WHERE id=?
                """,
                (handle, _utc_now(), history_id),
            )
