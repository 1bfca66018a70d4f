"""
export_formats.py
Row/record builders and the two output encodings used by the export engine.

Tabular output is an xlsx workbook (one sheet per section: title row,
blank row, header row, data rows). Structured output is a JSON document
with a metadata block followed by one key per section.
"""

import io
import json
import logging
import math
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from openpyxl import Workbook
from openpyxl.cell import WriteOnlyCell
from openpyxl.styles import Font

from models import (
    AlbumAggregate,
    ArtistAggregate,
    ObsessionRecord,
    PlayEvent,
    SummaryStats,
    TrackAggregate,
    YearlyArtistEntry,
    YearlyTrackEntry,
)

SECTIONS = ["summary", "artists", "albums", "tracks", "yearly", "obsessions", "history"]

TABULAR_PLACEHOLDER = "Error processing row"

ARTIST_HEADER = ["Rank", "Artist", "Total Time", "Play Count", "Average Time per Play"]
ALBUM_HEADER = ["Rank", "Album", "Artist", "Total Time", "Play Count", "Track Count", "Average Time per Play"]
TRACK_HEADER = ["Rank", "Track", "Artist", "Album", "Total Time", "Play Count", "Average Time per Play"]
YEARLY_ARTIST_HEADER = ["Rank", "Artist", "Total Time", "Play Count", "Track Count", "Average Time per Play"]
OBSESSION_HEADER = [
    "Rank", "Track", "Artist", "Peak Week Start", "Plays in Peak Week",
    "Total Plays", "Average Plays per Day in Peak Week",
]
HISTORY_HEADER = [
    "Date & Time", "Track", "Artist", "Album", "Duration (ms)", "Duration", "Service",
    "Platform", "Reason End", "Reason Start", "Shuffle", "ISRC", "Track ID",
    "Episode Name", "Episode Show",
]


def format_duration(ms) -> str:
    """Compact duration: "2d 3h", "4h 5m" or "7m"."""
    minutes = int(ms // 60000)
    hours = minutes // 60
    days = hours // 24
    if days > 0:
        return f"{days}d {hours % 24}h"
    if hours > 0:
        return f"{hours}h {minutes % 60}m"
    return f"{minutes % 60}m"


def _iso(ts: Optional[datetime]) -> str:
    if ts is None:
        return ""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _average(total_ms, count) -> float:
    return total_ms / (count or 1)


# ------------------------------------------------------------
# Tabular Rows
# ------------------------------------------------------------

def artist_row(artist: ArtistAggregate, rank: int, fmt: Callable = format_duration) -> list:
    return [
        rank,
        artist.name or "",
        fmt(artist.total_played_ms or 0),
        artist.play_count or 0,
        fmt(_average(artist.total_played_ms or 0, artist.play_count)),
    ]


def album_row(album: AlbumAggregate, rank: int, fmt: Callable = format_duration) -> list:
    return [
        rank,
        album.name or "",
        album.artist or "",
        fmt(album.total_played_ms or 0),
        album.play_count or 0,
        album.track_count or 0,
        fmt(_average(album.total_played_ms or 0, album.play_count)),
    ]


def track_row(track: TrackAggregate, rank: int, fmt: Callable = format_duration) -> list:
    return [
        rank,
        track.display_name or track.track_name or "",
        track.display_artist or track.artist or "",
        track.album_name or "N/A",
        fmt(track.total_played_ms or 0),
        track.play_count or 0,
        fmt(_average(track.total_played_ms or 0, track.play_count)),
    ]


def yearly_row(entry: YearlyTrackEntry, rank: int, fmt: Callable = format_duration) -> list:
    track = entry.track
    return [
        rank,
        track.display_name or track.track_name or "",
        track.display_artist or track.artist or "",
        track.album_name or "N/A",
        fmt(entry.total_played_ms),
        entry.play_count,
        fmt(_average(entry.total_played_ms, entry.play_count)),
    ]


def yearly_artist_row(entry: YearlyArtistEntry, rank: int, fmt: Callable = format_duration) -> list:
    return [
        rank,
        entry.name or "",
        fmt(entry.total_played_ms),
        entry.play_count,
        entry.track_count,
        fmt(_average(entry.total_played_ms, entry.play_count)),
    ]


def obsession_row(record: ObsessionRecord, rank: int, fmt: Callable = format_duration) -> list:
    track = record.track
    return [
        rank,
        track.display_name or track.track_name or "",
        track.display_artist or track.artist or "",
        record.window_start.date().isoformat() if record.window_start else "Unknown",
        record.plays_in_week,
        track.play_count,
        f"{record.plays_in_week / 7:.1f}",
    ]


def history_row(event: PlayEvent, index: int, fmt: Callable = format_duration) -> list:
    return [
        _iso(event.timestamp),
        event.track_name or "",
        event.artist_name or "",
        event.album_name or "",
        event.ms_played,
        fmt(event.ms_played),
        event.source or "",
        event.platform or "",
        event.reason_end or "",
        event.reason_start or "",
        "" if event.shuffle is None else ("Yes" if event.shuffle else "No"),
        event.isrc or "",
        event.track_uri or "",
        event.episode_name or "",
        event.episode_show or "",
    ]


def summary_rows(stats: SummaryStats, fmt: Callable, selection: List[str], history_entries: int) -> List[list]:
    rows = [
        ["Metric", "Value"],
        ["Total Files Processed", stats.total_files],
        ["Total Entries", stats.total_entries],
        ["Total Songs", stats.processed_plays],
        ["Unique Tracks", stats.unique_tracks],
        ["Total Listening Time", fmt(stats.total_listening_ms)],
        ["Very Short Plays (<30s)", stats.short_plays],
        ["Entries with No Track Name", stats.null_track_plays],
    ]
    if stats.per_service_ms:
        rows += [[], ["Listening Time by Service"]]
        rows += [[service, fmt(ms)] for service, ms in sorted(stats.per_service_ms.items())]
    rows += [
        [],
        ["Export Details"],
        ["Export Date", date.today().isoformat()],
        ["Data Size", f"{history_entries} entries"],
        ["Sections Included", ", ".join(s.capitalize() for s in selection)],
    ]
    return rows


# ------------------------------------------------------------
# Structured Records
# ------------------------------------------------------------

def artist_record(artist: ArtistAggregate, rank: int) -> dict:
    return {
        "rank": rank,
        "name": artist.name,
        "totalPlayed": artist.total_played_ms,
        "playCount": artist.play_count,
        "firstListen": _iso(artist.first_listen),
        "firstTrack": artist.first_track,
        "mostPlayedTrack": artist.most_played_track,
        "mostPlayedCount": artist.most_played_count,
        "longestStreak": artist.longest_streak,
        "currentStreak": artist.current_streak,
        "streakStart": artist.streak_start,
        "streakEnd": artist.streak_end,
    }


def album_record(album: AlbumAggregate, rank: int) -> dict:
    return {
        "rank": rank,
        "name": album.name,
        "artist": album.artist,
        "totalPlayed": album.total_played_ms,
        "playCount": album.play_count,
        "trackCount": album.track_count,
        "firstListen": _iso(album.first_listen),
        "years": list(album.years),
    }


def track_record(track: TrackAggregate, rank: int) -> dict:
    return {
        "rank": rank,
        "trackName": track.display_name or track.track_name,
        "artist": track.display_artist or track.artist,
        "primaryArtist": track.artist,
        "albumName": track.album_name,
        "totalPlayed": track.total_played_ms,
        "playCount": track.play_count,
        "featureArtists": list(track.feature_artists),
        "isrc": track.isrc,
        "variations": len(track.variants),
    }


def yearly_record(entry: YearlyTrackEntry, rank: int) -> dict:
    record = track_record(entry.track, rank)
    record.update({
        "year": entry.year,
        "totalPlayed": entry.total_played_ms,
        "playCount": entry.play_count,
        "score": entry.score,
    })
    return record


def yearly_artist_record(entry: YearlyArtistEntry, rank: int) -> dict:
    return {
        "rank": rank,
        "name": entry.name,
        "year": entry.year,
        "totalPlayed": entry.total_played_ms,
        "playCount": entry.play_count,
        "trackCount": entry.track_count,
        "score": entry.score,
    }


def obsession_record(record: ObsessionRecord, rank: int) -> dict:
    data = track_record(record.track, rank)
    data["intensePeriod"] = {
        "weekStart": _iso(record.window_start),
        "playsInWeek": record.plays_in_week,
    }
    return data


def history_record(event: PlayEvent, index: int) -> dict:
    return {
        "ts": _iso(event.timestamp),
        "track": event.track_name,
        "artist": event.artist_name,
        "album": event.album_name,
        "msPlayed": event.ms_played,
        "source": event.source,
    }


def summary_record(stats: SummaryStats, fmt: Callable) -> dict:
    return {
        "totalFiles": stats.total_files,
        "totalEntries": stats.total_entries,
        "processedSongs": stats.processed_plays,
        "uniqueTracks": stats.unique_tracks,
        "shortPlays": stats.short_plays,
        "nullTrackNames": stats.null_track_plays,
        "totalListeningTime": stats.total_listening_ms,
        "totalListeningTimeFormatted": fmt(stats.total_listening_ms),
        "serviceListeningTime": dict(sorted(stats.per_service_ms.items())),
        "yearlyFallbackCount": stats.yearly_fallback_count,
        "clampedTimestamps": stats.clamped_timestamps,
    }


def error_record(index: int, error: Exception) -> dict:
    return {"index": index, "error": f"Error processing entry: {error}"}


# ------------------------------------------------------------
# Sampling & Naming
# ------------------------------------------------------------

def sample_history(events: list, threshold: int) -> Tuple[list, int]:
    """
    Deterministic fixed-stride subsample: events[::ceil(n / threshold)].
    Returns (sampled events, stride).
    """
    if not threshold or len(events) <= threshold:
        return list(events), 1
    stride = math.ceil(len(events) / threshold)
    return events[::stride], stride


def export_filename(fmt: str, include_history: bool, today: Optional[date] = None) -> str:
    today = today or date.today()
    scope = "with-history" if include_history else "summary-only"
    ext = "xlsx" if fmt == "xlsx" else "json"
    return f"streamscope-{today.isoformat()}-{scope}.{ext}"


# ------------------------------------------------------------
# Writers
# ------------------------------------------------------------

class TabularWriter:
    """Streams rows into a write-only openpyxl workbook."""

    def __init__(self):
        self.workbook = Workbook(write_only=True)
        self.sheet = None
        self.rows_written = 0
        self.placeholders = 0

    def _styled(self, values: list, font: Font) -> list:
        cells = []
        for value in values:
            cell = WriteOnlyCell(self.sheet, value=value)
            cell.font = font
            cells.append(cell)
        return cells

    def add_sheet(self, name: str, title: str, header: Optional[list]):
        # Sheet names are limited to 31 characters
        self.sheet = self.workbook.create_sheet(title=name[:31])
        self.sheet.append(self._styled([title], Font(bold=True, size=14)))
        self.sheet.append([])
        if header:
            self.sheet.append(self._styled(header, Font(bold=True)))

    def append(self, values: list):
        """Append one row; a value openpyxl rejects turns the row into a placeholder."""
        try:
            cells = [WriteOnlyCell(self.sheet, value=v) for v in values]
        except Exception as e:
            logging.warning(f"Row rejected by workbook writer: {e}")
            self.placeholder()
            return
        self.sheet.append(cells)
        self.rows_written += 1

    def placeholder(self):
        self.sheet.append([TABULAR_PLACEHOLDER])
        self.placeholders += 1

    def to_bytes(self) -> bytes:
        if not self.workbook.worksheets:
            self.add_sheet("Summary", "Streaming History Analysis Summary", None)
        buffer = io.BytesIO()
        self.workbook.save(buffer)
        return buffer.getvalue()


class StructuredWriter:
    """Accumulates a JSON document: metadata first, then one key per section."""

    def __init__(self, metadata: Dict[str, Any]):
        self.document: Dict[str, Any] = {"metadata": metadata}
        self.placeholders = 0

    def set_section(self, name: str, data: Any):
        self.document[name] = data

    def section(self, name: str) -> Any:
        return self.document.get(name)

    def to_bytes(self) -> bytes:
        return json.dumps(self.document, indent=2, ensure_ascii=False).encode("utf-8")


def section_bytes(document: dict, section: str) -> bytes:
    """Canonical bytes of one section of a decoded structured export."""
    return json.dumps(document.get(section), indent=2, ensure_ascii=False, sort_keys=True).encode("utf-8")
