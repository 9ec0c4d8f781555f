import re
import threading
import time
import unittest
from unittest import mock

import requests

import storage
from errors import BucketNotFound, UploadRejected, UpstreamAuthError, UpstreamError


class _FakeResponse:
    def __init__(self, payload=None, status=200, text=""):
        self._payload = payload or {}
        self.status_code = status
        self.text = text or "{}"

    @property
    def ok(self):
        return 200 <= self.status_code < 300

    def json(self):
        return self._payload


AUTH = {"authorizationToken": "tok", "apiUrl": "https://api.example", "accountId": "acc"}
BUCKETS = {"buckets": [{"bucketId": "b-1"}]}
UPLOAD_URL = {"uploadUrl": "https://up.example/upload", "authorizationToken": "utok"}


class _Clock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def _storage(clock=None):
    return storage.B2Storage(
        key_id="kid",
        app_key="secret",
        bucket_name="code63-media",
        download_host="f005.backblazeb2.com",
        auth_url="https://auth.example",
        auth_ttl=3600,
        clock=clock or _Clock(),
    )


class KeyHelperTests(unittest.TestCase):
    def test_sanitize_keeps_only_safe_characters_in_order(self):
        for name in ["my song (final).mp3", "héllo wörld.png", "a/b\\c.wav", "plain-name.ogg"]:
            got = storage.sanitize_filename(name)
            self.assertRegex(got, r"^[A-Za-z0-9._-]*$")
            self.assertEqual(len(name), len(got))
            kept = re.sub(r"[^A-Za-z0-9.-]", "", name)
            self.assertEqual(kept, got.replace("_", ""))

    def test_sanitize_example(self):
        self.assertEqual("my_song__final_.mp3", storage.sanitize_filename("my song (final).mp3"))

    def test_folder_classification(self):
        self.assertEqual("images", storage.folder_for("cover.PNG"))
        self.assertEqual("images", storage.folder_for("blob", "image/webp"))
        self.assertEqual("images", storage.folder_for("x.jpeg", "application/octet-stream"))
        self.assertEqual("audio", storage.folder_for("track.mp3", "audio/mpeg"))
        self.assertEqual("audio", storage.folder_for("notes.txt", "text/plain"))
        self.assertEqual("audio", storage.folder_for("noext"))

    def test_make_key(self):
        key = storage.make_key("My Song.mp3", "audio/mpeg", now_ms=1712345678901)
        self.assertEqual("audio/1712345678901-My_Song.mp3", key)

    def test_public_url_quotes_key(self):
        url = storage.public_url("f005.backblazeb2.com", "bucket", "audio/a b.mp3")
        self.assertEqual("https://f005.backblazeb2.com/file/bucket/audio/a%20b.mp3", url)

    def test_display_name(self):
        self.assertEqual("My_Song", storage.display_name("audio/1712345-My_Song.mp3"))
        self.assertEqual("Intro", storage.display_name("Album/01-Intro.flac"))
        self.assertEqual("track", storage.display_name("track.wav"))

    def test_format_size(self):
        self.assertEqual("512 B", storage.format_size(512))
        self.assertEqual("1.5 KB", storage.format_size(1536))
        self.assertEqual("2.0 MB", storage.format_size(2 * 1024 * 1024))


class AuthTests(unittest.TestCase):
    @mock.patch("storage.requests.get")
    def test_token_is_cached_until_expiry(self, mock_get):
        mock_get.return_value = _FakeResponse(AUTH)
        clock = _Clock()
        s = _storage(clock)

        first = s.authenticate()
        second = s.authenticate()
        self.assertIs(first, second)
        self.assertEqual(1, mock_get.call_count)
        self.assertTrue(mock_get.call_args.kwargs["headers"]["Authorization"].startswith("Basic "))

        clock.now += 3601
        s.authenticate()
        self.assertEqual(2, mock_get.call_count)

    def _authenticate_concurrently(self, s, threads=8):
        barrier = threading.Barrier(threads)
        results = []

        def worker():
            barrier.wait()
            results.append(s.authenticate())

        workers = [threading.Thread(target=worker) for _ in range(threads)]
        for t in workers:
            t.start()
        for t in workers:
            t.join(5)
        return results

    @mock.patch("storage.requests.get")
    def test_concurrent_cold_start_authorizes_once(self, mock_get):
        def slow_auth(*args, **kwargs):
            time.sleep(0.05)
            return _FakeResponse(AUTH)

        mock_get.side_effect = slow_auth
        results = self._authenticate_concurrently(_storage())

        self.assertEqual(8, len(results))
        self.assertEqual(1, mock_get.call_count)
        self.assertTrue(all(r is results[0] for r in results))

    @mock.patch("storage.requests.get")
    def test_concurrent_expiry_refreshes_once(self, mock_get):
        mock_get.return_value = _FakeResponse(AUTH)
        clock = _Clock()
        s = _storage(clock)
        stale = s.authenticate()
        clock.now += 3601

        def slow_auth(*args, **kwargs):
            time.sleep(0.05)
            return _FakeResponse(AUTH)

        mock_get.side_effect = slow_auth
        results = self._authenticate_concurrently(s)

        self.assertEqual(2, mock_get.call_count)
        self.assertTrue(all(r is results[0] for r in results))
        self.assertIsNot(stale, results[0])

    @mock.patch("storage.requests.get")
    def test_rejected_credentials(self, mock_get):
        mock_get.return_value = _FakeResponse(status=401, text="bad key")
        with self.assertRaises(UpstreamAuthError):
            _storage().authenticate()

    @mock.patch("storage.requests.get")
    def test_network_failure_is_upstream_error(self, mock_get):
        mock_get.side_effect = requests.ConnectionError("down")
        with self.assertRaises(UpstreamError):
            _storage().authenticate()

    @mock.patch("storage.requests.post")
    @mock.patch("storage.requests.get")
    def test_401_from_api_drops_cached_token(self, mock_get, mock_post):
        mock_get.return_value = _FakeResponse(AUTH)
        mock_post.return_value = _FakeResponse(status=401, text="expired")
        s = _storage()
        with self.assertRaises(UpstreamError):
            s.resolve_bucket()
        s.authenticate()
        self.assertEqual(2, mock_get.call_count)


class ListingTests(unittest.TestCase):
    @mock.patch("storage.requests.post")
    @mock.patch("storage.requests.get")
    def test_prefix_listing_splits_files_and_folders(self, mock_get, mock_post):
        mock_get.return_value = _FakeResponse(AUTH)
        mock_post.side_effect = [
            _FakeResponse(BUCKETS),
            _FakeResponse({"files": [
                {"fileName": "audio/1-a.mp3", "contentType": "audio/mpeg",
                 "contentLength": 10, "uploadTimestamp": 5},
                {"fileName": "audio/live/", "contentType": "", "contentLength": 0},
                {"fileName": "images/stray.png", "contentType": "image/png"},
            ]}),
        ]

        files, folders = _storage().list_objects("audio/")

        self.assertEqual(["audio/1-a.mp3"], [f.key for f in files])
        self.assertEqual(["audio/live/"], folders)
        self.assertTrue(all(f.endswith("/") for f in folders))
        self.assertEqual(
            {"name": "audio/1-a.mp3", "size": 10, "uploaded": 5, "type": "audio/mpeg",
             "url": "https://f005.backblazeb2.com/file/code63-media/audio/1-a.mp3"},
            files[0].to_dict(),
        )
        body = mock_post.call_args.kwargs["json"]
        self.assertEqual("/", body["delimiter"])
        self.assertEqual("audio/", body["prefix"])
        self.assertEqual("b-1", body["bucketId"])

    @mock.patch("storage.requests.post")
    @mock.patch("storage.requests.get")
    def test_recursive_listing_follows_pages(self, mock_get, mock_post):
        mock_get.return_value = _FakeResponse(AUTH)
        mock_post.side_effect = [
            _FakeResponse(BUCKETS),
            _FakeResponse({"files": [{"fileName": "Album/a/1.mp3"}], "nextFileName": "Album/b/2.mp3"}),
            _FakeResponse({"files": [{"fileName": "Album/b/2.mp3"}], "nextFileName": None}),
        ]

        files, folders = _storage().list_objects("Album/", recursive=True)

        self.assertEqual(["Album/a/1.mp3", "Album/b/2.mp3"], [f.key for f in files])
        self.assertEqual([], folders)
        last = mock_post.call_args.kwargs["json"]
        self.assertNotIn("delimiter", last)
        self.assertEqual("Album/b/2.mp3", last["startFileName"])

    @mock.patch("storage.requests.post")
    @mock.patch("storage.requests.get")
    def test_bucket_id_is_cached(self, mock_get, mock_post):
        mock_get.return_value = _FakeResponse(AUTH)
        mock_post.return_value = _FakeResponse(BUCKETS)
        s = _storage()
        self.assertEqual("b-1", s.resolve_bucket())
        self.assertEqual("b-1", s.resolve_bucket())
        self.assertEqual(1, mock_post.call_count)

    @mock.patch("storage.requests.post")
    @mock.patch("storage.requests.get")
    def test_missing_bucket(self, mock_get, mock_post):
        mock_get.return_value = _FakeResponse(AUTH)
        mock_post.return_value = _FakeResponse({"buckets": []})
        with self.assertRaises(BucketNotFound):
            _storage().list_objects()


class UploadTests(unittest.TestCase):
    @mock.patch("storage.time.time", return_value=1700000000.0)
    @mock.patch("storage.requests.post")
    @mock.patch("storage.requests.get")
    def test_upload_sends_b2_headers(self, mock_get, mock_post, _time):
        mock_get.return_value = _FakeResponse(AUTH)
        mock_post.side_effect = [
            _FakeResponse(BUCKETS),
            _FakeResponse(UPLOAD_URL),
            _FakeResponse({"fileName": "audio/1700000000000-my_song.mp3", "contentLength": 3}),
        ]

        got = _storage().upload("my song.mp3", b"abc", "audio/mpeg")

        self.assertEqual({
            "success": True,
            "url": "https://f005.backblazeb2.com/file/code63-media/audio/1700000000000-my_song.mp3",
            "fileName": "audio/1700000000000-my_song.mp3",
            "size": 3,
        }, got)
        args, kwargs = mock_post.call_args
        self.assertEqual("https://up.example/upload", args[0])
        headers = kwargs["headers"]
        self.assertEqual("utok", headers["Authorization"])
        self.assertEqual("audio/1700000000000-my_song.mp3", headers["X-Bz-File-Name"])
        self.assertEqual("do_not_verify", headers["X-Bz-Content-Sha1"])
        self.assertEqual("3", headers["Content-Length"])

    @mock.patch("storage.requests.post")
    @mock.patch("storage.requests.get")
    def test_progress_callback_sees_every_byte(self, mock_get, mock_post):
        mock_get.return_value = _FakeResponse(AUTH)
        seen = []

        def fake_post(url, headers=None, json=None, data=None, timeout=None):
            if url.endswith("b2_list_buckets"):
                return _FakeResponse(BUCKETS)
            if url.endswith("b2_get_upload_url"):
                return _FakeResponse(UPLOAD_URL)
            while data.read(2):
                pass
            return _FakeResponse({"fileName": "images/x.png", "contentLength": 5})

        mock_post.side_effect = fake_post
        s = _storage()

        s.put_object("images/x.png", b"12345", "image/png", progress=lambda sent, total: seen.append((sent, total)))

        self.assertEqual((5, 5), seen[-1])

    @mock.patch("storage.requests.post")
    @mock.patch("storage.requests.get")
    def test_rejected_upload(self, mock_get, mock_post):
        mock_get.return_value = _FakeResponse(AUTH)
        mock_post.side_effect = [
            _FakeResponse(BUCKETS),
            _FakeResponse(UPLOAD_URL),
            _FakeResponse(status=400, text="bad sha"),
        ]
        with self.assertRaises(UploadRejected):
            _storage().upload("a.mp3", b"x", "audio/mpeg")

    @mock.patch("storage.requests.post")
    @mock.patch("storage.requests.get")
    def test_upload_target(self, mock_get, mock_post):
        mock_get.return_value = _FakeResponse(AUTH)
        mock_post.side_effect = [_FakeResponse(BUCKETS), _FakeResponse(UPLOAD_URL)]

        got = _storage().get_upload_target("cover.png", "image/png")

        self.assertEqual("https://up.example/upload", got["uploadUrl"])
        self.assertEqual("utok", got["authToken"])
        self.assertTrue(got["fileName"].startswith("images/"))
        self.assertTrue(got["publicUrl"].endswith(got["fileName"]))


class ShortRefTests(unittest.TestCase):
    def test_short_ref_strips_storage_base(self):
        s = _storage()
        self.assertEqual("audio/1-a.mp3", s.short_ref(s.base_url + "audio/1-a.mp3"))
        self.assertEqual("https://elsewhere/a.mp3", s.short_ref("https://elsewhere/a.mp3"))


if __name__ == "__main__":
    unittest.main()
