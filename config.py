# config.py
import os

from dotenv import load_dotenv

from errors import BadRequest

load_dotenv()


def clamp(v, lo, hi, default):
    try:
        x = float(v)
        return max(lo, min(hi, x))
    except Exception:
        return default


def text_param(params, name: str, default: str = "") -> str:
    value = params.get(name)
    if value is None or value == "":
        return default
    if not isinstance(value, str):
        raise BadRequest(f"{name} must be a string")
    return value


def _int_env(name: str, lo: int, hi: int, default: int) -> int:
    return int(clamp(os.getenv(name), lo, hi, default))


# -----------------------------
# Object storage (Backblaze B2)
# -----------------------------

B2_KEY_ID = os.getenv("B2_KEY_ID", "")
B2_APP_KEY = os.getenv("B2_APP_KEY", "")
B2_BUCKET_NAME = os.getenv("B2_BUCKET_NAME", "code63-media")
B2_DOWNLOAD_HOST = os.getenv("B2_DOWNLOAD_HOST", "f005.backblazeb2.com")
B2_AUTH_URL = os.getenv(
    "B2_AUTH_URL", "https://api.backblazeb2.com/b2api/v2/b2_authorize_account"
)
# tokens live 24h upstream
B2_AUTH_TTL_SECONDS = _int_env("B2_AUTH_TTL_SECONDS", 60, 23 * 60 * 60, 23 * 60 * 60)
B2_LIST_MAX = _int_env("B2_LIST_MAX", 1, 10000, 1000)

# -----------------------------
# Image generation (Replicate)
# -----------------------------

REPLICATE_API_TOKEN = os.getenv("REPLICATE_API_TOKEN", "")

# -----------------------------
# Short links
# -----------------------------

SHORTLINK_REDIS_URL = (os.getenv("SHORTLINK_REDIS_URL") or "").strip()
SHORTLINK_PREFIX = os.getenv("SHORTLINK_PREFIX", "code63")

# -----------------------------
# Web
# -----------------------------

PUBLIC_BASE_URL = (os.getenv("PUBLIC_BASE_URL") or "").rstrip("/")
HTTP_TIMEOUT = clamp(os.getenv("HTTP_TIMEOUT"), 1.0, 120.0, 15.0)
PORT = _int_env("PORT", 1, 65535, 8080)
LOG_LEVEL = (os.getenv("LOG_LEVEL") or "INFO").upper()
MAX_UPLOAD_BYTES = _int_env("MAX_UPLOAD_BYTES", 1024, 500 * 1024 * 1024, 200 * 1024 * 1024)
