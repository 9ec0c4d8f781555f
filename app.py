# app.py
import base64
import binascii
import logging
import re
from dataclasses import asdict
from io import BytesIO

import requests
from flask import Flask, jsonify, render_template_string, request, send_file
from flask_cors import CORS
from PIL import Image, UnidentifiedImageError
from werkzeug.exceptions import HTTPException

import config
from compositor import (
    LAYOUTS,
    QR_ANCHORS,
    QR_THEMES,
    RenderSequencer,
    StyleConfig,
    compose,
    get_layout,
    overlay_qr,
    parse_bool,
    to_png,
)
from config import clamp, text_param
from errors import AppError, BadRequest, NotFound, UpstreamError
from generation import ReplicateGenerator
from logs import log_event, log_exception, setup_logging
from pages import ERROR, FILES, HOME, PLAYER
from playback import Track, resolve_ref
from shortlinks import ShortLinkService, build_store
from storage import B2Storage, display_name, format_size, is_audio, sanitize_filename

setup_logging(config.LOG_LEVEL)
LOGGER = logging.getLogger("app")

app = Flask(__name__)
app.config["MAX_CONTENT_LENGTH"] = config.MAX_UPLOAD_BYTES
CORS(
    app,
    origins="*",
    methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "X-Filename"],
    max_age=86400,
)

STORAGE = B2Storage(
    key_id=config.B2_KEY_ID,
    app_key=config.B2_APP_KEY,
    bucket_name=config.B2_BUCKET_NAME,
    download_host=config.B2_DOWNLOAD_HOST,
    auth_url=config.B2_AUTH_URL,
    auth_ttl=config.B2_AUTH_TTL_SECONDS,
    timeout=config.HTTP_TIMEOUT,
    list_max=config.B2_LIST_MAX,
)
GENERATOR = ReplicateGenerator(config.REPLICATE_API_TOKEN)
LINKS = ShortLinkService(build_store(config.SHORTLINK_REDIS_URL), config.SHORTLINK_PREFIX)
RENDERS = RenderSequencer()

HTML_ENDPOINTS = {"files_page", "play", "player_page", "playlist_page", "folder_playlist"}

_DATA_URL_RE = re.compile(r"^data:image/[\w.+-]+;base64,(.*)$", re.S)

# -----------------------------
# Helpers
# -----------------------------


def fetch_image(ref: str) -> Image.Image:
    m = _DATA_URL_RE.match(ref)
    try:
        if m:
            raw = base64.b64decode(m.group(1))
        else:
            resp = requests.get(resolve_ref(ref, STORAGE.base_url), timeout=config.HTTP_TIMEOUT)
            resp.raise_for_status()
            raw = resp.content
        return Image.open(BytesIO(raw)).convert("RGBA")
    except requests.RequestException as e:
        raise UpstreamError(f"Could not fetch image: {e}")
    except (UnidentifiedImageError, binascii.Error):
        raise BadRequest("Image could not be decoded")


def _json_body() -> dict:
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise BadRequest("Invalid JSON")
    return body


def _params():
    if request.is_json:
        return _json_body()
    return request.values


def _background(params) -> Image.Image:
    upload = request.files.get("image")
    if upload is not None:
        try:
            return Image.open(upload.stream).convert("RGBA")
        except UnidentifiedImageError:
            raise BadRequest("Image could not be decoded")
    ref = text_param(params, "image").strip()
    if not ref:
        raise BadRequest("Background image required")
    return fetch_image(ref)


def _render_composite(params) -> Image.Image:
    image = _background(params)
    return compose(
        image,
        get_layout(text_param(params, "layout")),
        url=text_param(params, "url").strip(),
        title=text_param(params, "title"),
        lyrics=text_param(params, "lyrics"),
        style=StyleConfig.from_params(params),
    )


def _public_base() -> str:
    return config.PUBLIC_BASE_URL or request.host_url.rstrip("/")


def _generation(value):
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise BadRequest("generation must be an integer")


def _stale(session: str, generation: int):
    log_event(LOGGER, logging.INFO, "compose.stale", session=session, generation=generation)
    return jsonify({"stale": True, "generation": generation}), 409


# -----------------------------
# Errors
# -----------------------------


@app.errorhandler(AppError)
def handle_app_error(e: AppError):
    level = logging.WARNING if e.status < 500 else logging.ERROR
    log_event(LOGGER, level, "request.failed", status=e.status, error=e.message)
    if request.endpoint in HTML_ENDPOINTS:
        return render_template_string(ERROR, message=e.message), e.status
    return jsonify({"error": e.message}), e.status


@app.errorhandler(Exception)
def handle_unexpected(e: Exception):
    if isinstance(e, HTTPException):
        return e
    log_exception(LOGGER, "request.unhandled", error=str(e))
    return jsonify({"error": "Internal error"}), 500


# -----------------------------
# Routes: pages
# -----------------------------


@app.route("/")
def home():
    return render_template_string(HOME, layouts=LAYOUTS, themes=list(QR_THEMES))


@app.route("/health")
def health():
    return {"ok": True}


@app.get("/files")
def files_page():
    prefix = request.args.get("prefix", "")
    files, folders = STORAGE.list_objects(prefix)
    parent = None
    if prefix:
        trimmed = prefix.rstrip("/")
        parent = trimmed.rsplit("/", 1)[0] + "/" if "/" in trimmed else ""
    return render_template_string(
        FILES,
        prefix=prefix,
        parent=parent,
        folders=[{"path": f, "name": f[len(prefix):].rstrip("/")} for f in folders],
        files=[
            {"name": f.key[len(prefix):], "url": f.url, "size": format_size(f.size), "type": f.content_type}
            for f in files
        ],
    )


def _player_page(audio, image, title):
    base = STORAGE.base_url
    audio_url = resolve_ref(audio, base)
    if not audio_url:
        raise BadRequest("No audio specified")
    tracks = [asdict(Track(audio_url, title or display_name(audio)))]
    return render_template_string(PLAYER, tracks=tracks, image=resolve_ref(image, base), title=title, name=None)


@app.get("/play")
def play():
    return _player_page(request.args.get("a"), request.args.get("i"), request.args.get("t"))


@app.get("/player/<short_id>")
def player_page(short_id):
    doc = LINKS.get_player(short_id)
    return _player_page(doc["audio"], doc.get("image"), doc.get("title"))


@app.get("/playlist/<short_id>")
def playlist_page(short_id):
    doc = LINKS.get_playlist(short_id)
    base = STORAGE.base_url
    tracks = [
        asdict(Track(resolve_ref(t["url"], base), t.get("title") or display_name(t["url"])))
        for t in doc["tracks"]
    ]
    return render_template_string(PLAYER, tracks=tracks, image=None, title=None, name=doc["name"])


@app.get("/playlist")
def folder_playlist():
    folder = (request.args.get("folder") or "").strip()
    if not folder:
        raise BadRequest("No folder specified. Use ?folder=FolderName")
    prefix = folder if folder.endswith("/") else f"{folder}/"
    files, _ = STORAGE.list_objects(prefix, recursive=True)
    audio = sorted((f for f in files if is_audio(f.key, f.content_type)), key=lambda f: f.key)
    if not audio:
        raise NotFound("No audio files found in this folder")
    tracks = [asdict(Track(f.url, display_name(f.key))) for f in audio]
    return render_template_string(PLAYER, tracks=tracks, image=None, title=None, name=folder.rstrip("/"))


# -----------------------------
# Routes: storage
# -----------------------------


@app.get("/api/files")
def list_files():
    prefix = request.args.get("prefix", "")
    recursive = parse_bool(request.args.get("recursive"), False)
    files, folders = STORAGE.list_objects(prefix, recursive=recursive)
    return jsonify({"files": [f.to_dict() for f in files], "folders": folders})


@app.get("/api/upload")
def upload_target():
    filename = request.args.get("filename")
    if not filename:
        raise BadRequest("Filename required")
    return jsonify(STORAGE.get_upload_target(filename, request.args.get("contentType", "")))


@app.post("/upload")
def upload():
    filename = request.headers.get("X-Filename") or "upload.mp3"
    content_type = request.mimetype or "audio/mpeg"
    data = request.get_data()
    if not data:
        raise BadRequest("Empty upload")
    return jsonify(STORAGE.upload(filename, data, content_type))


# -----------------------------
# Routes: generation + compositing
# -----------------------------


@app.post("/api/generate-art")
def generate_art():
    body = _json_body()
    return jsonify(GENERATOR.generate_art(
        text_param(body, "prompt"), text_param(body, "model"),
        text_param(body, "aspectRatio", "1:1"), body.get("seed"),
    ))


@app.post("/api/generate")
def generate_qr_art():
    body = _json_body()
    return jsonify(GENERATOR.generate_qr_art(
        text_param(body, "url"), text_param(body, "prompt"), text_param(body, "negativePrompt"),
        body.get("qrStrength"), body.get("seed"),
    ))


@app.route("/compose", methods=["GET", "POST"])
def compose_route():
    params = _params()
    session = (text_param(params, "session") or request.headers.get("X-Render-Session") or "").strip()
    generation = None
    if session:
        generation = RENDERS.issue(session, _generation(params.get("generation")))
        if not RENDERS.is_current(session, generation):
            return _stale(session, generation)

    result = _render_composite(params)

    if session and not RENDERS.is_current(session, generation):
        return _stale(session, generation)
    title = text_param(params, "title").strip()
    resp = send_file(to_png(result), mimetype="image/png",
                     download_name=f"{sanitize_filename(title or 'scrapbook')}.png")
    if generation is not None:
        resp.headers["X-Render-Generation"] = str(generation)
    return resp


@app.route("/art-qr", methods=["GET", "POST"])
def art_qr():
    params = _params()
    url = text_param(params, "url").strip()
    if not url:
        raise BadRequest("URL is required")
    anchor = text_param(params, "position", "br")
    if anchor not in QR_ANCHORS:
        raise BadRequest(f"Unknown QR position: {anchor}")
    result = overlay_qr(
        _background(params),
        url,
        anchor,
        int(clamp(params.get("qrSize"), 50, 400, 120)),
        int(clamp(params.get("qrPadding"), 0, 200, 20)),
    )
    return send_file(to_png(result), mimetype="image/png", download_name="art-qr.png")


@app.post("/api/publish")
def publish():
    params = _json_body()
    audio = text_param(params, "url").strip()
    if not audio:
        raise BadRequest("Need both artwork and audio URL to create player")
    result = _render_composite(params)
    title = text_param(params, "title").strip()

    # no rollback: the artwork stays uploaded if registration fails
    uploaded = STORAGE.upload(f"{title or 'artwork'}.png", to_png(result).getvalue(), "image/png")
    short_id = LINKS.create_player({
        "audio": STORAGE.short_ref(audio),
        "image": STORAGE.short_ref(uploaded["url"]),
        "title": title or None,
    })
    log_event(LOGGER, logging.INFO, "publish.done", id=short_id, image=uploaded["fileName"])
    return jsonify({"id": short_id, "playerUrl": f"{_public_base()}/player/{short_id}", "image": uploaded["url"]})


# -----------------------------
# Routes: short links
# -----------------------------


@app.post("/p")
def create_player():
    return jsonify({"id": LINKS.create_player(_json_body())})


@app.get("/p/<short_id>")
def get_player(short_id):
    return jsonify(LINKS.get_player(short_id))


@app.post("/pl")
def create_playlist():
    return jsonify({"id": LINKS.create_playlist(_json_body())})


@app.get("/pl/<short_id>")
def get_playlist(short_id):
    return jsonify(LINKS.get_playlist(short_id))


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=config.PORT)
