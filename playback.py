# playback.py
"""Playback model for the player pages.

The server only needs `Track` and `resolve_ref` to build a page. `Player` and
`PlaylistPlayer` are the reference state machine; the script in `pages.py`
(`_PLAYER_SCRIPT`) drives the same transitions on the `<audio>` element and
must be kept in step with them.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from errors import BadRequest


class PlaybackState(str, Enum):
    IDLE = "idle"
    METADATA_LOADED = "metadataLoaded"
    PLAYING = "playing"
    PAUSED = "paused"
    ENDED = "ended"


def resolve_ref(ref: Optional[str], base_url: str) -> Optional[str]:
    """Absolute URLs pass through; bare storage keys hang off the storage base."""
    if not ref:
        return None
    return ref if ref.startswith("http") else base_url + ref


def format_time(seconds) -> str:
    try:
        seconds = float(seconds)
    except (TypeError, ValueError):
        return "0:00"
    if not seconds or seconds != seconds or seconds < 0:
        return "0:00"
    mins = int(seconds // 60)
    secs = int(seconds % 60)
    return f"{mins}:{secs:02d}"


@dataclass
class Track:
    url: str
    title: str


class Player:
    """Single-track player: idle -> metadataLoaded -> playing <-> paused -> ended."""

    def __init__(self):
        self.state = PlaybackState.IDLE
        self.duration = 0.0
        self.position = 0.0

    @property
    def progress(self) -> float:
        if not self.duration:
            return 0.0
        return self.position / self.duration * 100

    def load_metadata(self, duration: float) -> None:
        self.duration = float(duration)
        self.position = 0.0
        self.state = PlaybackState.METADATA_LOADED

    def toggle(self) -> PlaybackState:
        if self.state == PlaybackState.PLAYING:
            self.state = PlaybackState.PAUSED
        elif self.state in (PlaybackState.METADATA_LOADED, PlaybackState.PAUSED, PlaybackState.ENDED):
            if self.state == PlaybackState.ENDED:
                self.position = 0.0
            self.state = PlaybackState.PLAYING
        return self.state

    def time_update(self, position: float) -> None:
        self.position = max(0.0, min(float(position), self.duration or float(position)))

    def seek(self, offset: float, width: float) -> float:
        """Jump to the fraction of the track under a click at `offset` px of `width` px."""
        if not self.duration:
            raise BadRequest("Cannot seek before duration is known")
        if width <= 0:
            raise BadRequest("Progress bar width must be positive")
        fraction = max(0.0, min(1.0, offset / width))
        self.position = fraction * self.duration
        return self.position

    def media_ended(self) -> PlaybackState:
        self.state = PlaybackState.ENDED
        self.position = 0.0
        return self.state


class PlaylistPlayer(Player):
    """Multi-track player that advances on natural end and stops after the last track."""

    def __init__(self, tracks: list[Track]):
        super().__init__()
        if not tracks:
            raise BadRequest("Playlist has no tracks")
        self.tracks = list(tracks)
        self.index = 0

    @property
    def current(self) -> Track:
        return self.tracks[self.index]

    def play_track(self, index: int) -> Track:
        if not 0 <= index < len(self.tracks):
            raise BadRequest(f"No track at index {index}")
        self.index = index
        self.duration = 0.0
        self.position = 0.0
        self.state = PlaybackState.PLAYING
        return self.current

    def next_track(self) -> Optional[Track]:
        if self.index < len(self.tracks) - 1:
            return self.play_track(self.index + 1)
        return None

    def prev_track(self) -> Optional[Track]:
        if self.index > 0:
            return self.play_track(self.index - 1)
        return None

    def load_metadata(self, duration: float) -> None:
        was_playing = self.state == PlaybackState.PLAYING
        super().load_metadata(duration)
        if was_playing:
            # auto-advance keeps playing through the new track
            self.state = PlaybackState.PLAYING

    def media_ended(self) -> PlaybackState:
        if self.next_track() is None:
            return super().media_ended()
        return self.state
