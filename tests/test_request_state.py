import os
import sqlite3
import tempfile
import unittest

from acquisition.download_history import CLIENT_DIRECT, DownloadHistoryStore
from acquisition.errors import InvalidTransition
from acquisition.request_state import (
    AWAITING_SEARCH,
    AVAILABLE,
    DOWNLOADED,
    DOWNLOADING,
    FAILED,
    PENDING,
    PROCESSING,
    REQUEST_SIDECAR,
    SEARCHING,
    RequestStore,
    allowed_sources,
    can_transition,
)


class TransitionTableTests(unittest.TestCase):
    def test_allowed_edges(self):
        self.assertTrue(can_transition(PENDING, SEARCHING))
        self.assertTrue(can_transition(SEARCHING, SEARCHING))
        self.assertTrue(can_transition(AWAITING_SEARCH, SEARCHING))
        self.assertTrue(can_transition(PROCESSING, AVAILABLE))
        self.assertFalse(can_transition(PENDING, DOWNLOADING))
        self.assertFalse(can_transition(DOWNLOADED, FAILED))
        self.assertFalse(can_transition(FAILED, PENDING))
        self.assertEqual(allowed_sources(PROCESSING), [DOWNLOADING])


class RequestStoreTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.tmpdir.name, "db.sqlite")
        self.store = RequestStore(self.db_path)

    def tearDown(self):
        self.tmpdir.cleanup()

    def _completed_parent(self):
        parent_id = self.store.create_request({"title": "Dune", "author": "Frank Herbert"})
        for status in (SEARCHING, DOWNLOADING, PROCESSING, DOWNLOADED):
            self.store.transition(parent_id, status)
        return parent_id

    def test_create_request_defaults(self):
        request_id = self.store.create_request({"title": "  Dune ", "author": "Frank Herbert", "external_id": "B00"})
        request = self.store.get_request(request_id)
        self.assertEqual(request.status, PENDING)
        self.assertEqual(request.progress, 0)
        self.assertEqual(request.search_attempts, 0)
        self.assertEqual(request.target["title"], "Dune")
        self.assertEqual(request.target["external_id"], "B00")
        self.assertFalse(request.is_sidecar)
        self.assertIsNone(self.store.get_request("missing"))

    def test_create_request_validation(self):
        with self.assertRaises(ValueError):
            self.store.create_request({"title": " "})
        with self.assertRaises(ValueError):
            self.store.create_request({"title": "Dune"}, request_type="bundle")
        with self.assertRaises(ValueError):
            self.store.create_request({"title": "Dune"}, request_type=REQUEST_SIDECAR)

    def test_full_lifecycle_with_research(self):
        request_id = self.store.create_request({"title": "Dune"})
        self.store.transition(request_id, SEARCHING)
        self.store.transition(request_id, AWAITING_SEARCH, error_message="No torrents found.")
        waiting = self.store.get_request(request_id)
        self.assertEqual(waiting.error_message, "No torrents found.")
        self.assertIsNotNone(waiting.last_search_at)

        self.store.transition(request_id, SEARCHING)
        self.store.transition(request_id, SEARCHING)
        self.store.transition(request_id, DOWNLOADING, progress=0)
        self.assertTrue(self.store.update_progress(request_id, 140))
        self.assertEqual(self.store.get_request(request_id).progress, 100)
        self.store.transition(request_id, PROCESSING)
        self.store.transition(request_id, DOWNLOADED, final_path="/library/Dune")

        request = self.store.get_request(request_id)
        self.assertEqual(request.status, DOWNLOADED)
        self.assertEqual(request.search_attempts, 3)
        self.assertEqual(request.final_path, "/library/Dune")
        self.assertIsNone(request.error_message)

    def test_illegal_transitions_raise(self):
        request_id = self.store.create_request({"title": "Dune"})
        with self.assertRaises(InvalidTransition) as ctx:
            self.store.transition(request_id, DOWNLOADING)
        self.assertEqual(ctx.exception.from_status, PENDING)

        self.store.transition(request_id, FAILED, error_message="boom")
        with self.assertRaises(InvalidTransition):
            self.store.transition(request_id, SEARCHING)
        with self.assertRaises(InvalidTransition):
            self.store.transition(request_id, PENDING)
        with self.assertRaises(KeyError):
            self.store.transition("missing", SEARCHING)
        with self.assertRaises(ValueError):
            self.store.transition(request_id, "lost")

    def test_update_progress_only_while_downloading(self):
        request_id = self.store.create_request({"title": "Dune"})
        self.assertFalse(self.store.update_progress(request_id, 50))
        self.assertEqual(self.store.get_request(request_id).progress, 0)

    def test_sidecar_needs_completed_parent(self):
        pending_parent = self.store.create_request({"title": "Dune"})
        with self.assertRaises(ValueError):
            self.store.create_request(
                {"title": "Dune"},
                request_type=REQUEST_SIDECAR,
                parent_request_id=pending_parent,
            )

        parent_id = self._completed_parent()
        sidecar_id = self.store.create_request(
            {"title": "Dune"},
            request_type=REQUEST_SIDECAR,
            parent_request_id=parent_id,
        )
        sidecar = self.store.find_sidecar(parent_id)
        self.assertEqual(sidecar.id, sidecar_id)
        self.assertTrue(sidecar.is_sidecar)

        with self.assertRaises(sqlite3.IntegrityError):
            self.store.create_request(
                {"title": "Dune"},
                request_type=REQUEST_SIDECAR,
                parent_request_id=parent_id,
            )

    def test_sidecar_rejected_for_deleted_parent(self):
        parent_id = self._completed_parent()
        self.assertTrue(self.store.soft_delete(parent_id))
        with self.assertRaises(ValueError):
            self.store.create_request(
                {"title": "Dune"},
                request_type=REQUEST_SIDECAR,
                parent_request_id=parent_id,
            )

    def test_reset_for_retry_only_for_sidecars(self):
        parent_id = self._completed_parent()
        sidecar_id = self.store.create_request(
            {"title": "Dune"},
            request_type=REQUEST_SIDECAR,
            parent_request_id=parent_id,
        )
        self.assertFalse(self.store.reset_for_retry(sidecar_id))

        self.store.transition(sidecar_id, SEARCHING)
        self.store.transition(sidecar_id, DOWNLOADING, progress=0)
        self.store.update_progress(sidecar_id, 60)
        self.store.transition(sidecar_id, FAILED, error_message="All download locations failed")
        self.assertTrue(self.store.reset_for_retry(sidecar_id))

        sidecar = self.store.get_request(sidecar_id)
        self.assertEqual(sidecar.status, PENDING)
        self.assertEqual(sidecar.progress, 0)
        self.assertIsNone(sidecar.error_message)

        primary_id = self.store.create_request({"title": "Other"})
        self.store.transition(primary_id, FAILED, error_message="boom")
        self.assertFalse(self.store.reset_for_retry(primary_id))

    def test_soft_delete_and_awaiting_listing(self):
        waiting = self.store.create_request({"title": "Dune"})
        deleted = self.store.create_request({"title": "Emma"})
        for request_id in (waiting, deleted):
            self.store.transition(request_id, SEARCHING)
            self.store.transition(request_id, AWAITING_SEARCH, error_message="No quality matches found.")

        self.assertTrue(self.store.soft_delete(deleted))
        self.assertFalse(self.store.soft_delete(deleted))
        self.assertTrue(self.store.get_request(deleted).is_deleted)
        self.assertEqual([request.id for request in self.store.list_awaiting_search()], [waiting])
        self.assertEqual(self.store.list_awaiting_search(older_than="2000-01-01T00:00:00"), [])


class DownloadHistoryStoreTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.store = DownloadHistoryStore(os.path.join(self.tmpdir.name, "db.sqlite"))

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_direct_history_keeps_all_locations(self):
        history_id = self.store.create(
            request_id="r1",
            source_name="shelf",
            candidate_name="Dune",
            download_client=CLIENT_DIRECT,
            quality_score=70.0,
            download_urls=["https://a/dune.epub", "https://b/dune.epub"],
        )
        history = self.store.get(history_id)
        self.assertTrue(history.is_direct)
        self.assertTrue(history.selected)
        self.assertEqual(history.download_status, "queued")
        self.assertEqual(history.download_urls, ["https://a/dune.epub", "https://b/dune.epub"])

        self.store.mark_status(history_id, "completed", size_bytes=2048)
        history = self.store.get(history_id)
        self.assertEqual(history.download_status, "completed")
        self.assertEqual(history.size_bytes, 2048)

    def test_client_handle_and_status_validation(self):
        history_id = self.store.create(
            request_id="r1",
            source_name="alpha",
            candidate_name="Dune",
            download_client="qbittorrent",
            size_bytes=500,
        )
        self.store.set_client_handle(history_id, "acq-123")
        history = self.store.get(history_id)
        self.assertEqual(history.download_client_id, "acq-123")
        self.assertEqual(history.download_status, "downloading")
        self.assertEqual(history.download_urls, [])
        self.assertEqual([item.id for item in self.store.list_for_request("r1")], [history_id])
        with self.assertRaises(ValueError):
            self.store.mark_status(history_id, "paused")


if __name__ == "__main__":
    unittest.main()
