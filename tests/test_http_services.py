import json
import os
import tempfile
import unittest

import requests

from acquisition.config import DownloadClientConfig, HttpConfig, ProwlarrConfig
from acquisition.errors import ConfigurationError, ExternalServiceError, ResponseTooLarge
from acquisition.http import fetch_json, stream_to_file
from acquisition.job_queue import _is_retryable_error
from acquisition.services import (
    STATE_COMPLETED,
    STATE_DOWNLOADING,
    STATE_FAILED,
    STATE_QUEUED,
    HttpFetcher,
    ProwlarrSearchService,
    QBittorrentClient,
    safe_filename,
)


class FakeResponse:
    def __init__(self, status_code=200, body=b"", headers=None, chunks=None):
        self.status_code = status_code
        self.headers = headers or {}
        self.chunks = chunks if chunks is not None else [body]

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def iter_content(self, chunk_size=1):
        for chunk in self.chunks:
            yield chunk


def json_response(data, status_code=200):
    return FakeResponse(status_code, json.dumps(data).encode("utf-8"))


def text_response(text, status_code=200):
    return FakeResponse(status_code, text.encode("utf-8"))


class FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def get(self, url, **kwargs):
        return self.request("GET", url, **kwargs)


class FetchJsonTests(unittest.TestCase):
    def test_returns_parsed_body(self):
        session = FakeSession([json_response([1, 2])])
        self.assertEqual(fetch_json("https://idx.example/api", session=session, timeout=5, max_bytes=100), [1, 2])
        _method, _url, kwargs = session.calls[0]
        self.assertTrue(kwargs["stream"])
        self.assertEqual(kwargs["timeout"], 5)
        self.assertIn("User-Agent", kwargs["headers"])

    def test_http_errors_raise(self):
        session = FakeSession([FakeResponse(404, b"missing")])
        with self.assertRaises(ExternalServiceError) as ctx:
            fetch_json("https://idx.example/api", session=session, timeout=5, max_bytes=100)
        self.assertEqual(str(ctx.exception), "HTTP Error 404 from idx.example")
        self.assertFalse(_is_retryable_error(ctx.exception))

    def test_response_size_is_capped(self):
        declared = FakeSession([FakeResponse(200, b"[]", headers={"Content-Length": "5000"})])
        with self.assertRaises(ResponseTooLarge):
            fetch_json("https://idx.example/api", session=declared, timeout=5, max_bytes=100)

        streamed = FakeSession([FakeResponse(200, chunks=[b"[" + b"1," * 40, b"1," * 40 + b"1]"])])
        with self.assertRaises(ResponseTooLarge):
            fetch_json("https://idx.example/api", session=streamed, timeout=5, max_bytes=100)

    def test_transport_errors_are_wrapped(self):
        session = FakeSession([requests.ConnectionError("connection refused")])
        with self.assertRaises(ExternalServiceError) as ctx:
            fetch_json("https://idx.example/api", session=session, timeout=5, max_bytes=100)
        self.assertTrue(_is_retryable_error(ctx.exception))

    def test_invalid_json_raises(self):
        session = FakeSession([text_response("<html>")])
        with self.assertRaises(ExternalServiceError):
            fetch_json("https://idx.example/api", session=session, timeout=5, max_bytes=100)


class StreamToFileTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.destination = os.path.join(self.tmpdir.name, "dune.epub")

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_writes_file(self):
        session = FakeSession([FakeResponse(200, chunks=[b"abc", b"", b"def"])])
        written = stream_to_file("https://a.example/dune.epub", self.destination, session=session, timeout=5, max_bytes=100)
        self.assertEqual(written, 6)
        with open(self.destination, "rb") as handle:
            self.assertEqual(handle.read(), b"abcdef")
        self.assertFalse(os.path.exists(self.destination + ".part"))
        self.assertTrue(session.calls[0][2]["allow_redirects"])

    def test_reports_progress_per_chunk(self):
        session = FakeSession([FakeResponse(200, headers={"Content-Length": "6"}, chunks=[b"abc", b"", b"def"])])
        seen = []
        stream_to_file(
            "https://a.example/dune.epub",
            self.destination,
            session=session,
            timeout=5,
            max_bytes=100,
            on_progress=lambda written, total: seen.append((written, total)),
        )
        self.assertEqual(seen, [(3, 6), (6, 6)])

        undeclared = FakeSession([FakeResponse(200, chunks=[b"abc"])])
        seen.clear()
        fetcher = HttpFetcher(HttpConfig(), session=undeclared)
        fetcher.fetch("https://a.example/dune.epub", self.tmpdir.name, "Dune", on_progress=lambda *args: seen.append(args))
        self.assertEqual(seen, [(3, None)])

    def test_oversized_download_leaves_nothing_behind(self):
        session = FakeSession([FakeResponse(200, chunks=[b"x" * 60, b"x" * 60])])
        with self.assertRaises(ResponseTooLarge):
            stream_to_file("https://a.example/dune.epub", self.destination, session=session, timeout=5, max_bytes=100)
        self.assertEqual(os.listdir(self.tmpdir.name), [])

    def test_http_error_raises(self):
        session = FakeSession([FakeResponse(503)])
        with self.assertRaises(ExternalServiceError) as ctx:
            stream_to_file("https://a.example/dune.epub", self.destination, session=session, timeout=5, max_bytes=100)
        self.assertIn("503", str(ctx.exception))
        self.assertEqual(os.listdir(self.tmpdir.name), [])

    def test_http_fetcher_names_file_after_display_name(self):
        session = FakeSession([FakeResponse(200, b"epub-bytes")])
        fetcher = HttpFetcher(HttpConfig(), session=session)
        result = fetcher.fetch("https://a.example/files/123.epub", os.path.join(self.tmpdir.name, "r1"), "Dune: Messiah")
        self.assertEqual(result.path, os.path.join(self.tmpdir.name, "r1", "Dune Messiah.epub"))
        self.assertEqual(result.bytes_transferred, 10)


class SafeFilenameTests(unittest.TestCase):
    def test_safe_filename(self):
        self.assertEqual(safe_filename("Dune: Part One", "https://x.example/y/book.EPUB?x=1"), "Dune Part One.epub")
        self.assertEqual(safe_filename("Dune.epub", "https://x.example/dune.epub"), "Dune.epub")
        self.assertEqual(safe_filename("", None), "download")
        self.assertEqual(safe_filename("Dune", "https://x.example/download"), "Dune")


class ProwlarrSearchServiceTests(unittest.TestCase):
    def test_requires_url_and_key(self):
        with self.assertRaises(ConfigurationError):
            ProwlarrSearchService(ProwlarrConfig(url="http://prowlarr:9696"), HttpConfig())

    def test_search_parses_and_filters_results(self):
        items = [
            {
                "title": "Dune - Frank Herbert [M4B]",
                "indexer": "alpha",
                "indexerId": 1,
                "seeders": 12,
                "size": 500000000,
                "downloadUrl": "http://prowlarr:9696/download/1",
                "guid": "g1",
                "indexerFlags": ["freeleech"],
            },
            {"title": "Dune [MP3]", "indexerId": 3, "seeders": 50, "downloadUrl": "http://x/3"},
            {"title": "Dune dead", "indexerId": 1, "seeders": 0, "downloadUrl": "http://x/4"},
            {"title": "Dune no link", "indexerId": 1, "seeders": 9},
            {"title": "Dune magnet", "indexer": "beta", "indexerId": 2, "magnetUrl": "magnet:?xt=urn:btih:2"},
            "garbage",
        ]
        session = FakeSession([json_response(items)])
        service = ProwlarrSearchService(
            ProwlarrConfig(url="http://prowlarr:9696/", api_key="secret"),
            HttpConfig(),
            session=session,
        )
        results = service.search("Dune", category=3030, min_availability=1, max_results=100, source_ids=[1, 2])

        self.assertEqual([result.title for result in results], ["Dune - Frank Herbert [M4B]", "Dune magnet"])
        first = results[0]
        self.assertEqual(first.source_name, "alpha")
        self.assertEqual(first.source_id, 1)
        self.assertEqual(first.size_bytes, 500000000)
        self.assertEqual(first.flags, ("freeleech",))
        self.assertIsNone(results[1].seeders)
        self.assertEqual(results[1].download_url, "magnet:?xt=urn:btih:2")

        method, url, kwargs = session.calls[0]
        self.assertEqual((method, url), ("GET", "http://prowlarr:9696/api/v1/search"))
        self.assertEqual(kwargs["headers"]["X-Api-Key"], "secret")
        self.assertEqual(kwargs["params"]["categories"], [3030])
        self.assertEqual(kwargs["params"]["indexerIds"], [1, 2])

    def test_unexpected_payload_raises(self):
        session = FakeSession([json_response({"error": "nope"})])
        service = ProwlarrSearchService(
            ProwlarrConfig(url="http://prowlarr:9696", api_key="secret"), HttpConfig(), session=session
        )
        with self.assertRaises(ExternalServiceError):
            service.search("Dune", category=3030, min_availability=1, max_results=10)


class QBittorrentClientTests(unittest.TestCase):
    def _client(self, responses, **config):
        self.session = FakeSession(responses)
        client_config = DownloadClientConfig(url="http://qbit:8080/", username="admin", password="pw", **config)
        return QBittorrentClient(client_config, HttpConfig(), session=self.session)

    def test_login_and_add(self):
        client = self._client([text_response("Ok."), text_response("Ok.")], save_path="/downloads/audiobooks")
        handle = client.add_download("magnet:?xt=urn:btih:1", "Dune [M4B]")

        self.assertTrue(handle.startswith("acq-"))
        login, add = self.session.calls
        self.assertEqual(login[1], "http://qbit:8080/api/v2/auth/login")
        self.assertEqual(login[2]["data"], {"username": "admin", "password": "pw"})
        self.assertEqual(add[1], "http://qbit:8080/api/v2/torrents/add")
        self.assertEqual(
            add[2]["data"],
            {
                "urls": "magnet:?xt=urn:btih:1",
                "category": "audiobooks",
                "tags": handle,
                "rename": "Dune [M4B]",
                "savepath": "/downloads/audiobooks",
            },
        )

    def test_bad_credentials_are_a_configuration_error(self):
        client = self._client([text_response("Fails.")])
        with self.assertRaises(ConfigurationError):
            client.login()

    def test_banned_ip(self):
        client = self._client([text_response("Your IP address has been banned after too many failed attempts.", 403)])
        with self.assertRaises(ExternalServiceError):
            client.login()

    def test_rejected_add_raises(self):
        client = self._client([text_response("Ok."), text_response("Fails.")])
        with self.assertRaises(ExternalServiceError):
            client.add_download("magnet:?xt=urn:btih:1", "Dune")

    def test_expired_session_logs_in_again(self):
        client = self._client(
            [
                text_response("Ok."),
                FakeResponse(403, b"Forbidden"),
                text_response("Ok."),
                json_response([{"state": "downloading", "progress": 0.5, "content_path": "/downloads/Dune"}]),
            ]
        )
        progress = client.get_progress("acq-1")
        self.assertEqual(progress.state, STATE_DOWNLOADING)
        self.assertEqual(progress.percent, 50)
        self.assertEqual(progress.content_path, "/downloads/Dune")
        paths = [call[1].replace("http://qbit:8080", "") for call in self.session.calls]
        self.assertEqual(
            paths,
            ["/api/v2/auth/login", "/api/v2/torrents/info", "/api/v2/auth/login", "/api/v2/torrents/info"],
        )
        self.assertEqual(self.session.calls[-1][2]["params"], {"tag": "acq-1"})

    def test_progress_states(self):
        client = self._client(
            [
                text_response("Ok."),
                json_response([]),
                json_response([{"state": "stalledUP", "progress": 1.0, "save_path": "/downloads", "name": "Dune"}]),
                json_response([{"state": "missingFiles", "progress": 0.3, "content_path": "/downloads/Dune"}]),
                json_response([{"state": "metaDL", "progress": 0.994}]),
            ]
        )
        queued = client.get_progress("acq-1")
        self.assertEqual((queued.percent, queued.state), (0, STATE_QUEUED))

        done = client.get_progress("acq-1")
        self.assertTrue(done.is_complete)
        self.assertEqual(done.state, STATE_COMPLETED)
        self.assertEqual(done.content_path, os.path.join("/downloads", "Dune"))

        broken = client.get_progress("acq-1")
        self.assertTrue(broken.is_failed)
        self.assertEqual(broken.state, STATE_FAILED)
        self.assertEqual(broken.error, "qBittorrent state missingFiles")

        self.assertEqual(client.get_progress("acq-1").percent, 99)

    def test_missing_url(self):
        with self.assertRaises(ConfigurationError):
            QBittorrentClient(DownloadClientConfig(), HttpConfig())


if __name__ == "__main__":
    unittest.main()
