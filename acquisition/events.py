import json
import logging
import queue as queue_lib
import sqlite3
import threading
from datetime import datetime

_DEFAULT_MAX_PENDING = 1000
_STOP = object()


def _utc_now():
    return datetime.utcnow().isoformat()


def log_event(level, event, **fields):
    payload = {"event": event, **fields}
    message = json.dumps(payload, sort_keys=True, default=str)
    getattr(logging, level)(message)


def ensure_job_events_table(conn):
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS job_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            job_id TEXT NOT NULL,
            level TEXT NOT NULL,
            context TEXT NOT NULL,
            message TEXT NOT NULL,
            metadata_json TEXT,
            created_at TIMESTAMP NOT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_job_events_job_id ON job_events (job_id)")
    conn.commit()


class JobEventLog:
    """Append-only job event sink.

    ``emit`` never blocks and never raises: events go onto a bounded queue and
    a writer thread persists them on its own connection. When the queue is
    full, or the write fails, the event is dropped.
    """

    def __init__(self, db_path, *, max_pending=_DEFAULT_MAX_PENDING):
        self.db_path = db_path
        self._queue = queue_lib.Queue(maxsize=max_pending)
        self._writer = None
        self._lock = threading.Lock()
        self.dropped = 0

    def emit(self, job_id, level, context, message, metadata=None):
        if not job_id:
            return False
        item = {
            "job_id": job_id,
            "level": level,
            "context": context,
            "message": message,
            "metadata": metadata,
            "created_at": _utc_now(),
        }
        try:
            self._ensure_writer()
            self._queue.put_nowait(item)
        except queue_lib.Full:
            self.dropped += 1
            return False
        except Exception:
            self.dropped += 1
            logging.debug("job event emission failed", exc_info=True)
            return False
        return True

    def flush(self):
        self._queue.join()

    def close(self):
        with self._lock:
            writer = self._writer
            self._writer = None
        if writer is not None and writer.is_alive():
            self._queue.put(_STOP)
            writer.join(timeout=5)

    def list_events(self, job_id):
        with sqlite3.connect(self.db_path, timeout=30) as conn:
            conn.row_factory = sqlite3.Row
            ensure_job_events_table(conn)
            rows = conn.execute(
                "SELECT * FROM job_events WHERE job_id=? ORDER BY id ASC",
                (job_id,),
            ).fetchall()
        events = []
        for row in rows:
            data = dict(row)
            raw = data.pop("metadata_json")
            data["metadata"] = json.loads(raw) if raw else None
            events.append(data)
        return events

    def _ensure_writer(self):
        with self._lock:
            if self._writer is None or not self._writer.is_alive():
                self._writer = threading.Thread(target=self._run, daemon=True)
                self._writer.start()

    def _run(self):
        conn = None
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    break
                if conn is None:
                    conn = sqlite3.connect(self.db_path, timeout=30)
                    ensure_job_events_table(conn)
                self._write(conn, item)
            except Exception:
                self.dropped += 1
                logging.debug("job event write failed", exc_info=True)
            finally:
                self._queue.task_done()
        if conn is not None:
            conn.close()

    def _write(self, conn, item):
        metadata = item["metadata"]
        conn.execute(
            """
            INSERT INTO job_events (job_id, level, context, message, metadata_json, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                item["job_id"],
                item["level"],
                item["context"],
                item["message"],
                json.dumps(metadata, sort_keys=True, default=str) if metadata else None,
                item["created_at"],
            ),
        )
        conn.commit()


class JobLogger:
    """Logs ``[Context] message`` and mirrors non-debug lines to the event log."""

    def __init__(self, events, job_id, context):
        self.events = events
        self.job_id = job_id
        self.context = context

    def child(self, sub_context):
        return JobLogger(self.events, self.job_id, f"{self.context}.{sub_context}")

    def debug(self, message, metadata=None):
        logging.debug("[%s] %s", self.context, message)

    def info(self, message, metadata=None):
        self._log("info", message, metadata)

    def warning(self, message, metadata=None):
        self._log("warning", message, metadata)

    def error(self, message, metadata=None):
        self._log("error", message, metadata)

    def _log(self, level, message, metadata):
        getattr(logging, level)("[%s] %s", self.context, message)
        if metadata:
            logging.debug("[%s] %s", self.context, json.dumps(metadata, sort_keys=True, default=str))
        if self.events is not None:
            self.events.emit(self.job_id, level, self.context, message, metadata)
