# shortlinks.py
import json
import logging
import secrets
import string
import threading
from datetime import datetime, timezone
from typing import Optional

from redis import Redis
from redis.exceptions import RedisError

from errors import BadRequest, NotFound, UpstreamError
from logs import log_event

LOGGER = logging.getLogger(__name__)

ID_ALPHABET = string.ascii_letters + string.digits
ID_LENGTH = 6
MAX_ID_ATTEMPTS = 5


def generate_short_id(length: int = ID_LENGTH) -> str:
    return "".join(secrets.choice(ID_ALPHABET) for _ in range(length))


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# -----------------------------
# Stores
# -----------------------------


class MemoryStore:
    """In-process store for local runs and tests."""

    def __init__(self):
        self._data: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def put(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def put_if_absent(self, key: str, value: str) -> bool:
        with self._lock:
            if key in self._data:
                return False
            self._data[key] = value
            return True


class RedisStore:
    def __init__(self, client: Redis):
        self._redis = client

    @classmethod
    def from_url(cls, url: str) -> "RedisStore":
        return cls(Redis.from_url(url, decode_responses=True, socket_connect_timeout=2, socket_timeout=2))

    def get(self, key: str) -> Optional[str]:
        try:
            return self._redis.get(key)
        except RedisError as e:
            raise UpstreamError(f"Short link store unavailable: {e}")

    def put(self, key: str, value: str) -> None:
        try:
            self._redis.set(key, value)
        except RedisError as e:
            raise UpstreamError(f"Short link store unavailable: {e}")

    def put_if_absent(self, key: str, value: str) -> bool:
        try:
            return bool(self._redis.set(key, value, nx=True))
        except RedisError as e:
            raise UpstreamError(f"Short link store unavailable: {e}")


def build_store(redis_url: str):
    if redis_url:
        return RedisStore.from_url(redis_url)
    log_event(LOGGER, logging.WARNING, "shortlinks.memory_store", reason="SHORTLINK_REDIS_URL not set")
    return MemoryStore()


# -----------------------------
# Service
# -----------------------------


def _clean_text(value) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise BadRequest("Text fields must be strings")
    value = value.strip()
    return value or None


def player_document(payload: dict) -> dict:
    if not isinstance(payload, dict):
        raise BadRequest("Invalid JSON")
    audio = _clean_text(payload.get("audio"))
    if not audio:
        raise BadRequest("Audio URL required")
    return {
        "audio": audio,
        "image": _clean_text(payload.get("image")),
        "title": _clean_text(payload.get("title")),
        "created": _now_iso(),
    }


def playlist_document(payload: dict) -> dict:
    if not isinstance(payload, dict):
        raise BadRequest("Invalid JSON")
    name = _clean_text(payload.get("name"))
    tracks = payload.get("tracks")
    if not name or not isinstance(tracks, list) or not tracks:
        raise BadRequest("Playlist name and tracks required")
    clean = []
    for t in tracks:
        if not isinstance(t, dict):
            raise BadRequest("Each track must be an object")
        ref = _clean_text(t.get("url"))
        if not ref:
            raise BadRequest("Each track needs a url")
        clean.append({"url": ref, "title": _clean_text(t.get("title")) or ref})
    return {"name": name, "tracks": clean, "created": _now_iso()}


class ShortLinkService:
    def __init__(self, store, prefix: str = "code63"):
        self.store = store
        self.prefix = prefix

    def _key(self, kind: str, short_id: str) -> str:
        return f"{self.prefix}:{kind}:{short_id}"

    def _create(self, kind: str, document: dict) -> str:
        raw = json.dumps(document, ensure_ascii=False)
        short_id = ""
        for _ in range(MAX_ID_ATTEMPTS):
            short_id = generate_short_id()
            if self.store.put_if_absent(self._key(kind, short_id), raw):
                return short_id
        log_event(LOGGER, logging.WARNING, "shortlinks.collisions_exhausted",
                  kind=kind, attempts=MAX_ID_ATTEMPTS, id=short_id)
        self.store.put(self._key(kind, short_id), raw)
        return short_id

    def _get(self, kind: str, short_id: str, missing: str) -> dict:
        if not short_id or len(short_id) > 64:
            raise NotFound(missing)
        raw = self.store.get(self._key(kind, short_id))
        if raw is None:
            raise NotFound(missing)
        return json.loads(raw)

    def create_player(self, payload: dict) -> str:
        short_id = self._create("p", player_document(payload))
        log_event(LOGGER, logging.INFO, "shortlinks.player_created", id=short_id)
        return short_id

    def get_player(self, short_id: str) -> dict:
        return self._get("p", short_id, "Player not found")

    def create_playlist(self, payload: dict) -> str:
        short_id = self._create("pl", playlist_document(payload))
        log_event(LOGGER, logging.INFO, "shortlinks.playlist_created", id=short_id)
        return short_id

    def get_playlist(self, short_id: str) -> dict:
        return self._get("pl", short_id, "Playlist not found")
