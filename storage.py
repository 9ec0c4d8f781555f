# storage.py
import base64
import logging
import re
import threading
import time
from dataclasses import dataclass
from io import BytesIO
from typing import Callable, Optional
from urllib.parse import quote

import requests

from errors import BucketNotFound, UploadRejected, UpstreamAuthError, UpstreamError
from logs import log_event

LOGGER = logging.getLogger(__name__)

IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".gif", ".webp"}
AUDIO_EXTENSIONS = {".mp3", ".wav", ".ogg", ".m4a", ".flac"}
SHA1_SKIP = "do_not_verify"

_UNSAFE_RE = re.compile(r"[^A-Za-z0-9.-]")

# -----------------------------
# Keys + classification
# -----------------------------


def sanitize_filename(name: str) -> str:
    return _UNSAFE_RE.sub("_", name)


def _extension(name: str) -> str:
    base = name.rsplit("/", 1)[-1]
    if "." not in base:
        return ""
    return "." + base.rsplit(".", 1)[-1].lower()


def is_image(filename: str, content_type: str = "") -> bool:
    if (content_type or "").startswith("image/"):
        return True
    return _extension(filename) in IMAGE_EXTENSIONS


def is_audio(filename: str, content_type: str = "") -> bool:
    if (content_type or "").startswith("audio/"):
        return True
    return _extension(filename) in AUDIO_EXTENSIONS


def folder_for(filename: str, content_type: str = "") -> str:
    return "images" if is_image(filename, content_type) else "audio"


def make_key(filename: str, content_type: str = "", now_ms: Optional[int] = None) -> str:
    """`{folder}/{unixMillis}-{sanitizedFilename}`."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"{folder_for(filename, content_type)}/{now_ms}-{sanitize_filename(filename)}"


def public_url(host: str, bucket: str, key: str) -> str:
    return f"https://{host}/file/{bucket}/{quote(key, safe='/')}"


def display_name(key: str) -> str:
    """Track label for a storage key: no folder, no extension, no leading number."""
    name = key.rstrip("/").rsplit("/", 1)[-1]
    stem = re.sub(r"\.[^.]+$", "", name)
    stem = re.sub(r"^\d+-?", "", stem)
    return stem or key


def format_size(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / (1024 * 1024):.1f} MB"


# -----------------------------
# Value objects
# -----------------------------


@dataclass(frozen=True)
class StorageAuth:
    token: str
    api_url: str
    account_id: str
    expires_at: float

    def expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class MediaObject:
    key: str
    content_type: str
    size: int
    uploaded: int
    url: str

    def to_dict(self) -> dict:
        return {
            "name": self.key,
            "size": self.size,
            "uploaded": self.uploaded,
            "type": self.content_type,
            "url": self.url,
        }


class _ProgressReader:
    # sized file-like body so requests still sends Content-Length
    def __init__(self, data: bytes, callback: Callable[[int, int], None]):
        self._buf = BytesIO(data)
        self._total = len(data)
        self._sent = 0
        self._callback = callback

    def __len__(self):
        return self._total

    def read(self, size: int = -1) -> bytes:
        chunk = self._buf.read(size)
        if chunk:
            self._sent += len(chunk)
            self._callback(self._sent, self._total)
        return chunk


# -----------------------------
# Gateway
# -----------------------------


class B2Storage:
    def __init__(
        self,
        key_id: str,
        app_key: str,
        bucket_name: str,
        download_host: str,
        auth_url: str,
        auth_ttl: float,
        timeout: float = 15.0,
        list_max: int = 1000,
        clock: Callable[[], float] = time.time,
    ):
        self.key_id = key_id
        self.app_key = app_key
        self.bucket_name = bucket_name
        self.download_host = download_host
        self.auth_url = auth_url
        self.auth_ttl = auth_ttl
        self.timeout = timeout
        self.list_max = list_max
        self._clock = clock
        self._auth: Optional[StorageAuth] = None
        self._auth_lock = threading.Lock()
        self._bucket_ids: dict[str, str] = {}

    @property
    def base_url(self) -> str:
        return f"https://{self.download_host}/file/{self.bucket_name}/"

    def url_for(self, key: str) -> str:
        return public_url(self.download_host, self.bucket_name, key)

    # -- auth --------------------------------------------------------------

    def authenticate(self) -> StorageAuth:
        auth = self._auth
        if auth is not None and not auth.expired(self._clock()):
            return auth
        with self._auth_lock:
            # another request may have refreshed while we waited
            auth = self._auth
            if auth is not None and not auth.expired(self._clock()):
                return auth
            self._auth = self._authorize()
            return self._auth

    def invalidate(self) -> None:
        with self._auth_lock:
            self._auth = None

    def _authorize(self) -> StorageAuth:
        basic = base64.b64encode(f"{self.key_id}:{self.app_key}".encode("utf-8")).decode("ascii")
        try:
            resp = requests.get(
                self.auth_url,
                headers={"Authorization": f"Basic {basic}"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise UpstreamError(f"Storage authorization request failed: {e}")
        if not resp.ok:
            log_event(LOGGER, logging.ERROR, "storage.auth_failed",
                      status=resp.status_code, body=resp.text[:300])
            raise UpstreamAuthError("Storage authorization failed")
        data = resp.json()
        log_event(LOGGER, logging.INFO, "storage.authorized", api_url=data.get("apiUrl"))
        return StorageAuth(
            token=data["authorizationToken"],
            api_url=data["apiUrl"],
            account_id=data["accountId"],
            expires_at=self._clock() + self.auth_ttl,
        )

    def _api(self, auth: StorageAuth, op: str, body: dict, error: str) -> dict:
        try:
            resp = requests.post(
                f"{auth.api_url}/b2api/v2/{op}",
                headers={"Authorization": auth.token, "Content-Type": "application/json"},
                json=body,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise UpstreamError(f"{error}: {e}")
        if resp.status_code == 401:
            self.invalidate()
        if not resp.ok:
            log_event(LOGGER, logging.ERROR, "storage.api_failed",
                      op=op, status=resp.status_code, body=resp.text[:300])
            raise UpstreamError(error)
        return resp.json()

    # -- buckets + listing -------------------------------------------------

    def resolve_bucket(self, name: Optional[str] = None) -> str:
        name = name or self.bucket_name
        if name in self._bucket_ids:
            return self._bucket_ids[name]
        auth = self.authenticate()
        data = self._api(
            auth, "b2_list_buckets",
            {"accountId": auth.account_id, "bucketName": name},
            "Failed to get bucket info",
        )
        buckets = data.get("buckets") or []
        if not buckets:
            raise BucketNotFound(f"Bucket not found: {name}")
        bucket_id = buckets[0]["bucketId"]
        self._bucket_ids[name] = bucket_id
        return bucket_id

    def list_objects(self, prefix: str = "", recursive: bool = False) -> tuple[list[MediaObject], list[str]]:
        """Objects directly under `prefix` plus the sub-folders B2 reports for it.

        With `recursive` the delimiter is dropped and every page is followed,
        so nested keys come back as plain files and `folders` stays empty.
        """
        bucket_id = self.resolve_bucket()
        auth = self.authenticate()
        files: list[MediaObject] = []
        folders: list[str] = []
        start = None
        while True:
            body = {"bucketId": bucket_id, "prefix": prefix, "maxFileCount": self.list_max}
            if not recursive:
                body["delimiter"] = "/"
            if start:
                body["startFileName"] = start
            data = self._api(auth, "b2_list_file_names", body, "Failed to list files")
            for f in data.get("files") or []:
                name = f.get("fileName", "")
                if not name.startswith(prefix):
                    continue
                if name.endswith("/"):
                    folders.append(name)
                    continue
                files.append(MediaObject(
                    key=name,
                    content_type=f.get("contentType") or "",
                    size=int(f.get("contentLength") or 0),
                    uploaded=int(f.get("uploadTimestamp") or 0),
                    url=self.url_for(name),
                ))
            start = data.get("nextFileName")
            if not recursive or not start:
                break
        return files, folders

    # -- uploads -----------------------------------------------------------

    def _upload_url(self) -> dict:
        bucket_id = self.resolve_bucket()
        auth = self.authenticate()
        return self._api(auth, "b2_get_upload_url", {"bucketId": bucket_id}, "Failed to get upload URL")

    def get_upload_target(self, filename: str, content_type: str = "") -> dict:
        """Pre-authorized target for a direct client upload."""
        data = self._upload_url()
        key = make_key(filename, content_type)
        return {
            "uploadUrl": data["uploadUrl"],
            "authToken": data["authorizationToken"],
            "fileName": key,
            "publicUrl": self.url_for(key),
        }

    def put_object(
        self,
        key: str,
        data: bytes,
        content_type: str,
        progress: Optional[Callable[[int, int], None]] = None,
    ) -> dict:
        target = self._upload_url()
        headers = {
            "Authorization": target["authorizationToken"],
            "X-Bz-File-Name": quote(key, safe="/"),
            "Content-Type": content_type,
            "Content-Length": str(len(data)),
            "X-Bz-Content-Sha1": SHA1_SKIP,
        }
        body = _ProgressReader(data, progress) if progress else data
        try:
            resp = requests.post(target["uploadUrl"], headers=headers, data=body, timeout=self.timeout)
        except requests.RequestException as e:
            raise UpstreamError(f"Upload failed: {e}")
        if not resp.ok:
            log_event(LOGGER, logging.ERROR, "storage.upload_rejected",
                      key=key, status=resp.status_code, body=resp.text[:300])
            raise UploadRejected(f"Upload failed: {resp.text[:200]}")
        result = resp.json()
        log_event(LOGGER, logging.INFO, "storage.uploaded", key=key, size=len(data))
        return {
            "success": True,
            "url": self.url_for(key),
            "fileName": result.get("fileName", key),
            "size": result.get("contentLength", len(data)),
        }

    def upload(self, filename: str, data: bytes, content_type: str, progress=None) -> dict:
        return self.put_object(make_key(filename, content_type), data, content_type, progress)

    # -- refs --------------------------------------------------------------

    def short_ref(self, url: str) -> str:
        base = self.base_url
        return url[len(base):] if url.startswith(base) else url
