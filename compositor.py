# compositor.py
import math
import os
import threading
from collections import OrderedDict
from dataclasses import dataclass
from functools import lru_cache
from io import BytesIO
from typing import Callable, Optional

import segno
from PIL import Image, ImageColor, ImageDraw, ImageFont, ImageStat

from config import clamp, text_param
from errors import BadRequest

# -----------------------------
# Layouts + themes
# -----------------------------


@dataclass(frozen=True)
class LayoutSpec:
    name: str
    value: str
    width: int
    height: int
    strategy: str


LAYOUTS = (
    LayoutSpec("Lyrics Page", "lyrics-page", 800, 1400, "strip-top"),
    LayoutSpec("Lyrics Poster", "lyrics-poster", 700, 1000, "split"),
    LayoutSpec("Bookmark", "bookmark", 300, 1000, "full-bleed"),
    LayoutSpec("Square Card", "square", 800, 800, "full-bleed"),
)
LAYOUTS_BY_VALUE = {l.value: l for l in LAYOUTS}

TRANSPARENT = "transparent"


@dataclass(frozen=True)
class QrTheme:
    name: str
    dark: str
    light: str
    bg: str


QR_THEMES = {
    t.name: t
    for t in (
        QrTheme("Classic", "#000000", "#ffffff", "#ffffff"),
        QrTheme("Subtle", "#333333", "#f5f5f5", "#f5f5f5"),
        QrTheme("Warm", "#4a3728", "#f5e6d3", "#f5e6d3"),
        QrTheme("Cool", "#1a365d", "#e6f0ff", "#e6f0ff"),
        QrTheme("Neon Pink", "#ff00ff", "#1a1a2e", "#1a1a2e"),
        QrTheme("Neon Green", "#00ff88", "#0d1117", "#0d1117"),
        QrTheme("Transparent", "#000000", TRANSPARENT, TRANSPARENT),
    )
}
CLASSIC = QR_THEMES["Classic"]

QR_ANCHORS = ("br", "bl", "tr", "tl", "center")

TITLE_COLOR = (255, 255, 255)
LYRICS_COLOR = (224, 224, 224)

# (more than N non-blank lines OR more than N chars) -> size; last entry is the default
AUTO_FONT_TIERS = {
    "lyrics-page": ((40, 1500, 12), (30, 1000, 14), (20, 600, 16), (None, None, 18)),
    "lyrics-poster": ((35, 1200, 10), (25, 800, 12), (15, 500, 14), (None, None, 16)),
    "bookmark": ((30, 800, 9), (20, 500, 10), (12, 300, 11), (None, None, 12)),
    "square": ((20, 600, 12), (12, 400, 14), (None, None, 16)),
}

FONT_CANDIDATES = {
    False: (
        "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",
        "/usr/share/fonts/truetype/liberation/LiberationSans-Regular.ttf",
        "/Library/Fonts/Arial.ttf",
        "C:/Windows/Fonts/arial.ttf",
    ),
    True: (
        "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf",
        "/usr/share/fonts/truetype/liberation/LiberationSans-Bold.ttf",
        "/Library/Fonts/Arial Bold.ttf",
        "C:/Windows/Fonts/arialbd.ttf",
    ),
}


def get_layout(value: str) -> LayoutSpec:
    if value is not None and not isinstance(value, str):
        raise BadRequest("layout must be a string")
    try:
        return LAYOUTS_BY_VALUE[value or "lyrics-page"]
    except KeyError:
        raise BadRequest(f"Unknown layout: {value}")


def parse_bool(value, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if value is None or value == "":
        return default
    return str(value).strip().lower() in {"true", "1", "yes", "on"}


def parse_color(value: str) -> tuple:
    try:
        return ImageColor.getrgb(value)[:3]
    except (ValueError, AttributeError):
        raise BadRequest(f"Invalid color: {value}")


@dataclass(frozen=True)
class StyleConfig:
    qr_theme: QrTheme = CLASSIC
    qr_size: int = 80
    qr_opacity: float = 1.0
    font_size: int = 16
    auto_fit_font: bool = True
    panel_ratio: int = 65
    bg_color: str = "auto"
    column_count: int = 1

    @classmethod
    def from_params(cls, params) -> "StyleConfig":
        theme_name = text_param(params, "qrTheme", CLASSIC.name)
        if theme_name not in QR_THEMES:
            raise BadRequest(f"Unknown QR theme: {theme_name}")
        bg = text_param(params, "bgColor", "auto").strip() or "auto"
        if bg != "auto":
            parse_color(bg)
        return cls(
            qr_theme=QR_THEMES[theme_name],
            qr_size=int(clamp(params.get("qrSize"), 50, 150, 80)),
            qr_opacity=clamp(params.get("qrOpacity"), 0.3, 1.0, 1.0),
            font_size=int(clamp(params.get("fontSize"), 10, 24, 16)),
            auto_fit_font=parse_bool(params.get("autoFitFont"), True),
            panel_ratio=int(clamp(params.get("panelRatio"), 40, 80, 65)),
            bg_color=bg,
            column_count=2 if str(params.get("columnCount") or "1").strip() == "2" else 1,
        )


# -----------------------------
# Text
# -----------------------------


@lru_cache(maxsize=64)
def load_font(size: int, bold: bool = False) -> ImageFont.FreeTypeFont:
    for path in FONT_CANDIDATES[bold]:
        if os.path.exists(path):
            return ImageFont.truetype(path, size)
    return ImageFont.load_default(size=size)


def auto_font_size(lyrics: str, layout_value: str) -> int:
    lyrics = lyrics or ""
    line_count = len([l for l in lyrics.split("\n") if l.strip()])
    char_count = len(lyrics)
    tiers = AUTO_FONT_TIERS.get(layout_value, AUTO_FONT_TIERS["square"])
    for max_lines, max_chars, size in tiers:
        if max_lines is None or line_count > max_lines or char_count > max_chars:
            return size


def wrap_text(text: str, max_width: float, measure: Callable[[str], float]) -> list[str]:
    """Greedy word wrap; a single word wider than `max_width` gets a line to itself."""
    lines = []
    current = ""
    for word in text.split():
        test = f"{current} {word}" if current else word
        if measure(test) > max_width and current:
            lines.append(current)
            current = word
        else:
            current = test
    if current:
        lines.append(current)
    return lines


# -----------------------------
# Image helpers
# -----------------------------


def cover_crop(img: Image.Image, width: int, height: int) -> Image.Image:
    src_w, src_h = img.size
    scale = max(width / src_w, height / src_h)
    sw = width / scale
    sh = height / scale
    sx = (src_w - sw) / 2
    sy = (src_h - sh) / 2
    return img.resize((width, height), Image.LANCZOS, box=(sx, sy, sx + sw, sy + sh))


def dominant_color(img: Image.Image) -> tuple:
    """Average colour of a 50x50 thumbnail, darkened for light text on top."""
    small = img.convert("RGB").resize((50, 50), Image.BILINEAR)
    return tuple(int(m * 0.3) for m in ImageStat.Stat(small).mean[:3])


def _interpolate(stops, t: float) -> tuple:
    if t <= stops[0][0]:
        return stops[0][1]
    for (t0, c0), (t1, c1) in zip(stops, stops[1:]):
        if t <= t1:
            f = 0.0 if t1 == t0 else (t - t0) / (t1 - t0)
            return tuple(int(round(a + (b - a) * f)) for a, b in zip(c0, c1))
    return stops[-1][1]


def linear_gradient(size: tuple, stops, vertical: bool = True) -> Image.Image:
    """RGBA gradient; `stops` are (offset 0..1, (r, g, b, a)) pairs."""
    w, h = size
    n = h if vertical else w
    pixels = [_interpolate(stops, i / (n - 1) if n > 1 else 0.0) for i in range(n)]
    strip = Image.new("RGBA", (1, n) if vertical else (n, 1))
    strip.putdata(pixels)
    return strip.resize((w, h), Image.NEAREST)


def render_qr(data: str, size: int, theme: QrTheme = CLASSIC) -> Image.Image:
    qr = segno.make(data, error="m")
    modules = qr.symbol_size(border=1)[0]
    out = BytesIO()
    qr.save(
        out,
        kind="png",
        scale=max(1, math.ceil(size / modules)),
        border=1,
        dark=theme.dark,
        light=None if theme.light == TRANSPARENT else theme.light,
    )
    out.seek(0)
    return Image.open(out).convert("RGBA").resize((size, size), Image.NEAREST)


def anchor_position(anchor: str, canvas_size: tuple, qr_size: int, margin: int) -> tuple:
    w, h = canvas_size
    positions = {
        "br": (w - qr_size - margin, h - qr_size - margin),
        "bl": (margin, h - qr_size - margin),
        "tr": (w - qr_size - margin, margin),
        "tl": (margin, margin),
        "center": ((w - qr_size) // 2, (h - qr_size) // 2),
        "bc": ((w - qr_size) // 2, h - qr_size - margin),
    }
    try:
        return positions[anchor]
    except KeyError:
        raise BadRequest(f"Unknown QR position: {anchor}")


def paste_qr(canvas: Image.Image, qr_img: Image.Image, x: int, y: int,
             theme: QrTheme, opacity: float = 1.0, pad: int = 6) -> None:
    size = qr_img.size[0]
    alpha = int(round(255 * opacity))
    if theme.bg != TRANSPARENT:
        swatch = Image.new("RGBA", canvas.size, (0, 0, 0, 0))
        ImageDraw.Draw(swatch).rectangle(
            [x - pad, y - pad, x + size + pad - 1, y + size + pad - 1],
            fill=parse_color(theme.bg) + (alpha,),
        )
        canvas.alpha_composite(swatch)
    if opacity < 1.0:
        r, g, b, a = qr_img.split()
        a = a.point(lambda p: p * alpha // 255)
        qr_img = Image.merge("RGBA", (r, g, b, a))
    layer = Image.new("RGBA", canvas.size, (0, 0, 0, 0))
    layer.paste(qr_img, (x, y))
    canvas.alpha_composite(layer)


# -----------------------------
# Composition
# -----------------------------


@dataclass
class _Job:
    canvas: Image.Image
    art: Image.Image
    bg: tuple
    url: str
    title: str
    lyrics: str
    style: StyleConfig
    font_size: int

    @property
    def width(self) -> int:
        return self.canvas.size[0]

    @property
    def height(self) -> int:
        return self.canvas.size[1]

    @property
    def lines(self) -> list[str]:
        return self.lyrics.split("\n") if self.lyrics else []

    def wrap(self, text: str, width: float, size: int, bold: bool = False) -> list[str]:
        return wrap_text(text, width, load_font(size, bold).getlength)

    def text(self, xy, text: str, size: int, fill, bold: bool = False, anchor: str = "ms") -> None:
        ImageDraw.Draw(self.canvas).text(xy, text, font=load_font(size, bold), fill=fill, anchor=anchor)

    def fade(self, box: tuple, vertical: bool) -> None:
        x0, y0, x1, y1 = box
        stops = ((0.0, self.bg + (0,)), (1.0, self.bg + (255,)))
        self.canvas.alpha_composite(linear_gradient((x1 - x0, y1 - y0), stops, vertical), dest=(x0, y0))

    def darken(self, alphas) -> None:
        stops = tuple((t, (0, 0, 0, int(round(a * 255)))) for t, a in alphas)
        self.canvas.alpha_composite(linear_gradient(self.canvas.size, stops))

    def qr(self, anchor: str, margin: int, pad: int) -> None:
        if not self.url:
            return
        size = self.style.qr_size
        x, y = anchor_position(anchor, self.canvas.size, size, margin)
        paste_qr(self.canvas, render_qr(self.url, size, self.style.qr_theme), x, y,
                 self.style.qr_theme, self.style.qr_opacity, pad)


def _draw_column(job: _Job, lines, x: float, y: float, wrap_width: float, line_height: int,
                 max_y: float, blank_ratio: float, anchor: str) -> float:
    size = job.font_size
    for line in lines:
        if y > max_y:
            break
        if line.strip() == "":
            y += line_height * blank_ratio
            continue
        for wrapped in job.wrap(line.strip(), wrap_width, size):
            if y > max_y:
                break
            job.text((x, y), wrapped, size, LYRICS_COLOR, anchor=anchor)
            y += line_height
    return y


def _draw_two_columns(job: _Job, lines, top: float, line_height: int, max_y: float,
                      blank_ratio: float) -> None:
    gap = 40
    col_width = (job.width - 100) / 2
    start_x = (job.width - (col_width * 2 + gap)) / 2
    col_x = (start_x, start_x + col_width + gap)
    midpoint = math.ceil(len([l for l in lines if l.strip()]) / 2)

    line_index = 0
    col = 0
    y = top
    for line in lines:
        if line.strip() == "":
            y += line_height * blank_ratio
            continue
        line_index += 1
        if line_index > midpoint and col == 0:
            col = 1
            y = top
        if y > max_y:
            continue
        for wrapped in job.wrap(line.strip(), col_width, job.font_size):
            if y > max_y:
                break
            job.text((col_x[col], y), wrapped, job.font_size, LYRICS_COLOR, anchor="ls")
            y += line_height


def _render_lyrics_page(job: _Job) -> None:
    # art strip on top, lyrics below
    art_h = int(job.height * 0.22)
    job.canvas.paste(cover_crop(job.art, job.width, art_h), (0, 0))
    job.fade((0, art_h - 40, job.width, art_h), vertical=True)

    y = art_h + 40
    title_size = max(job.font_size + 10, 24)
    if job.title:
        job.text((job.width / 2, y), job.title, title_size, TITLE_COLOR, bold=True)
        y += title_size + 20

    if job.lyrics:
        line_height = int(job.font_size * 1.4)
        max_y = job.height - job.style.qr_size - 60
        if job.style.column_count == 2:
            _draw_two_columns(job, job.lines, y, line_height, max_y, 0.5)
        else:
            _draw_column(job, job.lines, job.width / 2, y, job.width - 80, line_height, max_y, 0.5, "ms")

    job.qr("bc", margin=20, pad=6)


def _render_lyrics_poster(job: _Job) -> None:
    # art on the left, lyrics panel on the right
    margin = 20
    art_w = int(job.width * job.style.panel_ratio / 100)
    text_w = job.width - art_w - margin * 2
    job.canvas.paste(cover_crop(job.art, art_w, job.height), (0, 0))
    job.fade((art_w - 80, 0, art_w, job.height), vertical=False)

    title_size = max(job.font_size + 6, 18)
    line_height = int(job.font_size * 1.3)
    title_lines = job.wrap(job.title, text_w, title_size, bold=True) if job.title else []

    content_h = 0.0
    if title_lines:
        content_h += len(title_lines) * (title_size + 6) + 20
    for line in job.lines:
        if line.strip() == "":
            content_h += line_height * 0.5
        else:
            content_h += len(job.wrap(line.strip(), text_w, job.font_size)) * line_height

    y = max(margin, (job.height - margin * 2 - content_h) / 2 + margin)
    x = art_w + margin
    for i, line in enumerate(title_lines):
        job.text((x, y + i * (title_size + 6)), line, title_size, TITLE_COLOR, bold=True, anchor="ls")
    if title_lines:
        y += len(title_lines) * (title_size + 6) + 20

    if job.lyrics:
        _draw_column(job, job.lines, x, y, text_w, line_height, job.height - margin, 0.5, "ls")

    job.qr("bl", margin=margin, pad=6)


def _render_bookmark(job: _Job) -> None:
    job.canvas.paste(cover_crop(job.art, job.width, job.height), (0, 0))
    job.darken(((0.0, 0.3), (0.15, 0.5), (0.5, 0.7), (1.0, 0.85)))

    title_size = job.font_size + 2
    line_height = int(job.font_size * 1.25)
    wrap_w = job.width - 24
    qr_area = job.style.qr_size + 20 if job.url else 0
    available = job.height - qr_area - 20

    content_h = 0.0
    if job.title:
        content_h += title_size + 15
    for line in job.lines:
        if line.strip() == "":
            content_h += line_height * 0.4
        else:
            content_h += len(job.wrap(line.strip(), wrap_w, job.font_size)) * line_height

    y = max(20, (available - content_h) / 2 + 20)
    if job.title:
        job.text((job.width / 2, y), job.title, title_size, TITLE_COLOR, bold=True)
        y += title_size + 15

    if job.lyrics:
        _draw_column(job, job.lines, job.width / 2, y, wrap_w, line_height,
                     job.height - qr_area - 10, 0.4, "ms")

    job.qr("bc", margin=10, pad=4)


def _render_square(job: _Job) -> None:
    job.canvas.paste(cover_crop(job.art, job.width, job.height), (0, 0))
    job.darken(((0.0, 0.4), (0.2, 0.55), (0.6, 0.7), (1.0, 0.85)))

    y = 50
    title_size = max(job.font_size + 6, 22)
    if job.title:
        job.text((job.width / 2, y), job.title, title_size, TITLE_COLOR, bold=True)
        y += title_size + 25

    if job.lyrics:
        line_height = int(job.font_size * 1.35)
        max_y = job.height - job.style.qr_size - 40
        if job.style.column_count == 2:
            _draw_two_columns(job, job.lines, y, line_height, max_y, 0.4)
        else:
            _draw_column(job, job.lines, job.width / 2, y, job.width - 60, line_height, max_y, 0.4, "ms")

    job.qr("br", margin=20, pad=6)


RENDERERS = {
    "lyrics-page": _render_lyrics_page,
    "lyrics-poster": _render_lyrics_poster,
    "bookmark": _render_bookmark,
    "square": _render_square,
}


def compose(background: Optional[Image.Image], layout, url: str = "", title: str = "",
            lyrics: str = "", style: Optional[StyleConfig] = None) -> Optional[Image.Image]:
    """Flatten background, overlays, text and QR into one RGB image.

    Returns None when there is no background to work from.
    """
    if background is None:
        return None
    if not isinstance(layout, LayoutSpec):
        layout = get_layout(layout)
    style = style or StyleConfig()
    # textarea posts arrive with CRLF
    lyrics = (lyrics or "").replace("\r\n", "\n")

    art = background.convert("RGB")
    bg = dominant_color(art) if style.bg_color == "auto" else parse_color(style.bg_color)
    font_size = auto_font_size(lyrics, layout.value) if style.auto_fit_font else style.font_size

    canvas = Image.new("RGBA", (layout.width, layout.height), bg + (255,))
    job = _Job(canvas, art, bg, url or "", (title or "").strip(), lyrics, style, font_size)
    RENDERERS[layout.value](job)
    return job.canvas.convert("RGB")


def overlay_qr(background: Image.Image, url: str, anchor: str = "br", qr_size: int = 120,
               padding: int = 20, theme: QrTheme = CLASSIC) -> Image.Image:
    """Plain QR on top of an image kept at its natural size."""
    canvas = background.convert("RGBA")
    x, y = anchor_position(anchor, canvas.size, qr_size, padding)
    paste_qr(canvas, render_qr(url, qr_size, theme), x, y, theme, 1.0, pad=4)
    return canvas.convert("RGB")


def to_png(img: Image.Image) -> BytesIO:
    out = BytesIO()
    img.save(out, format="PNG", optimize=True)
    out.seek(0)
    return out


# -----------------------------
# Render ordering
# -----------------------------


class RenderSequencer:
    """Latest-issued render wins, per client session."""

    def __init__(self, max_sessions: int = 1024):
        self._latest: "OrderedDict[str, int]" = OrderedDict()
        self._lock = threading.Lock()
        self._max = max_sessions

    def issue(self, session: str, generation: Optional[int] = None) -> int:
        with self._lock:
            current = self._latest.get(session, 0)
            if generation is None:
                generation = current + 1
            if generation > current:
                self._latest[session] = generation
                self._latest.move_to_end(session)
                while len(self._latest) > self._max:
                    self._latest.popitem(last=False)
            return generation

    def is_current(self, session: str, generation: int) -> bool:
        with self._lock:
            return self._latest.get(session, 0) == generation
