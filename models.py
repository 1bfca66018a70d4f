"""
models.py
Canonical records shared by the StreamScope pipeline.

PlayEvents are produced by the format adapters and never mutated.
Aggregates are built once per analysis run and rebuilt from scratch whenever
the event set changes.
"""

import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class PlayEvent:
    """One listen, normalized from any vendor export."""
    timestamp: datetime
    track_name: Optional[str]
    artist_name: str
    album_name: Optional[str]
    ms_played: int
    source: str
    platform: str = ""
    episode_name: Optional[str] = None
    episode_show: Optional[str] = None
    isrc: Optional[str] = None
    track_uri: Optional[str] = None
    shuffle: Optional[bool] = None
    reason_start: Optional[str] = None
    reason_end: Optional[str] = None
    timestamp_clamped: bool = False

    def __post_init__(self):
        if self.ms_played < 0:
            raise ValueError(f"ms_played must be >= 0 (got {self.ms_played})")

    def sort_key(self) -> tuple:
        """Canonical ordering so results never depend on file concatenation order."""
        return (
            self.timestamp,
            self.source,
            self.artist_name or "",
            self.track_name or "",
            self.album_name or "",
            self.ms_played,
            self.platform or "",
            self.isrc or "",
            self.track_uri or "",
            self.episode_name or "",
            self.timestamp_clamped,
        )


@dataclass
class SourceFile:
    """A raw input file: name hint plus undecoded content."""
    name: str
    content: bytes = field(repr=False)

    @classmethod
    def from_path(cls, path: str) -> "SourceFile":
        with open(path, "rb") as f:
            return cls(name=os.path.basename(path), content=f.read())

    @property
    def extension(self) -> str:
        _, dot, ext = self.name.rpartition(".")
        return ext.lower() if dot else ""

    @property
    def text(self) -> str:
        return self.content.decode("utf-8-sig", errors="replace")


@dataclass(frozen=True)
class TrackVariant:
    track_name: str
    artist_name: str
    album_name: str
    source: str
    isrc: Optional[str] = None


@dataclass
class NormalizedPlay:
    """A valid PlayEvent paired with its identity and resolved album."""
    event: PlayEvent
    match_key: str
    track_name: str
    artist_name: str
    primary_artist: str
    feature_artists: List[str]
    album_name: str


@dataclass
class TrackAggregate:
    match_key: str
    track_name: str
    artist: str
    full_artist: str
    album_name: str
    total_played_ms: int = 0
    play_count: int = 0
    variants: List[TrackVariant] = field(default_factory=list)
    feature_artists: List[str] = field(default_factory=list)
    isrc: Optional[str] = None
    display_name: str = ""
    display_artist: str = ""
    timestamps: List[datetime] = field(default_factory=list, repr=False)


@dataclass
class ArtistAggregate:
    name: str
    total_played_ms: int = 0
    play_count: int = 0
    first_listen: Optional[datetime] = None
    first_track: Optional[str] = None
    most_played_track: Optional[str] = None
    most_played_count: int = 0
    longest_streak: int = 0
    current_streak: int = 0
    streak_start: Optional[str] = None
    streak_end: Optional[str] = None
    timestamps: List[datetime] = field(default_factory=list, repr=False)


@dataclass
class AlbumAggregate:
    name: str
    artist: str
    total_played_ms: int = 0
    play_count: int = 0
    track_count: int = 0
    first_listen: Optional[datetime] = None
    years: List[int] = field(default_factory=list)


@dataclass
class StreakInfo:
    longest_streak: int = 0
    current_streak: int = 0
    streak_start: Optional[str] = None
    streak_end: Optional[str] = None


@dataclass
class ObsessionRecord:
    track: TrackAggregate
    window_start: datetime
    plays_in_week: int


@dataclass
class YearlyTrackEntry:
    track: TrackAggregate
    year: int
    play_count: int
    total_played_ms: float
    score: float


@dataclass
class YearlyArtistEntry:
    name: str
    year: int
    play_count: int
    total_played_ms: int
    track_count: int
    score: float


@dataclass
class SummaryStats:
    total_files: int = 0
    total_entries: int = 0
    processed_plays: int = 0
    short_plays: int = 0
    null_track_plays: int = 0
    unique_tracks: int = 0
    total_listening_ms: int = 0
    per_service_ms: Dict[str, int] = field(default_factory=dict)
    clamped_timestamps: int = 0
    yearly_fallback_count: int = 0


@dataclass
class ResourceHints:
    """Caller-supplied resource constraint; tunes export volume only."""
    low_memory: bool = False


@dataclass
class ExportSnapshot:
    """Everything the export task needs, copied into the worker by message."""
    stats: SummaryStats
    artists: List[ArtistAggregate] = field(default_factory=list)
    albums: List[AlbumAggregate] = field(default_factory=list)
    tracks: List[TrackAggregate] = field(default_factory=list)
    yearly: Dict[int, List[YearlyTrackEntry]] = field(default_factory=dict)
    yearly_artists: Dict[int, List[YearlyArtistEntry]] = field(default_factory=dict)
    obsessions: List[ObsessionRecord] = field(default_factory=list)
    events: List[PlayEvent] = field(default_factory=list, repr=False)


@dataclass
class AnalysisResult:
    stats: SummaryStats
    tracks: List[TrackAggregate]
    artists: List[ArtistAggregate]
    albums: List[AlbumAggregate]
    yearly_tracks: Dict[int, List[YearlyTrackEntry]]
    yearly_artists: Dict[int, List[YearlyArtistEntry]]
    obsessions: List[ObsessionRecord]
    events: List[PlayEvent] = field(repr=False)
    meta: Dict[str, Any] = field(default_factory=dict)
