"""
reporting.py
Derived analytics and tabular reports for StreamScope.

This module is responsible for:
- Listening streaks per artist.
- Brief obsessions (short, intense bursts on rarely played tracks).
- Yearly top-track and top-artist rankings.
- Converting aggregates into Top-N DataFrames and saving them as CSV.
"""

import logging
import os
import time
from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from config import config
from models import (
    AlbumAggregate,
    ArtistAggregate,
    NormalizedPlay,
    ObsessionRecord,
    StreakInfo,
    TrackAggregate,
    YearlyArtistEntry,
    YearlyTrackEntry,
)

# ------------------------------------------------------------
# Constants
# ------------------------------------------------------------

PREFERRED_COLUMN_ORDER = [
    "Year",
    "Rank",
    "artist",
    "album",
    "track_name",
    "total_listens",
    "total_hours_listened",
    "score",
    "plays_in_week",
    "window_start",
    "first_listened",
    "longest_streak",
    "current_streak",
]


def _as_utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


# ------------------------------------------------------------
# Streaks
# ------------------------------------------------------------

def calculate_streaks(timestamps: List[datetime], now: Optional[datetime] = None) -> StreakInfo:
    """
    Longest run of consecutive UTC calendar days with at least one play.
    The current streak is the run ending on the most recent day, reported
    only when that day is today or yesterday.
    """
    days: List[date] = sorted({_as_utc(ts).date() for ts in timestamps})
    if not days:
        return StreakInfo()

    longest = run = 1
    run_start = best_start = best_end = days[0]
    for prev, day in zip(days, days[1:]):
        if day - prev == timedelta(days=1):
            run += 1
        else:
            run = 1
            run_start = day
        if run > longest:
            longest = run
            best_start, best_end = run_start, day

    today = _as_utc(now or datetime.now(timezone.utc)).date()
    current = run if (today - days[-1]).days in (0, 1) else 0

    return StreakInfo(
        longest_streak=longest,
        current_streak=current,
        streak_start=best_start.isoformat(),
        streak_end=best_end.isoformat(),
    )


def apply_streaks(artists: List[ArtistAggregate], now: Optional[datetime] = None):
    """Fill the streak fields of each artist from its play timestamps."""
    now = now or datetime.now(timezone.utc)
    for artist in artists:
        info = calculate_streaks(artist.timestamps, now=now)
        artist.longest_streak = info.longest_streak
        artist.current_streak = info.current_streak
        artist.streak_start = info.streak_start
        artist.streak_end = info.streak_end


# ------------------------------------------------------------
# Brief Obsessions
# ------------------------------------------------------------

def find_obsessions(
    tracks: List[TrackAggregate],
    max_lifetime_plays: Optional[int] = None,
    min_plays: Optional[int] = None,
    window_days: Optional[int] = None,
    limit: Optional[int] = None,
) -> List[ObsessionRecord]:
    """
    Tracks with few lifetime plays but a dense burst inside one window.
    For every play, counts plays inside [play - window, play]; the first
    maximum wins. Sorted by burst size desc, then window start asc.
    """
    if max_lifetime_plays is None:
        max_lifetime_plays = config.obsession_max_lifetime_plays
    if min_plays is None:
        min_plays = config.obsession_min_plays_in_window
    if window_days is None:
        window_days = config.obsession_window_days
    if limit is None:
        limit = config.obsession_limit
    window = timedelta(days=window_days)

    records = []
    for track in tracks:
        if track.play_count > max_lifetime_plays or len(track.timestamps) < min_plays:
            continue

        stamps = sorted(_as_utc(ts) for ts in track.timestamps)
        best, best_start = 0, None
        for end in stamps:
            start = end - window
            count = sum(1 for ts in stamps if start <= ts <= end)
            if count > best:
                best, best_start = count, start

        if best >= min_plays:
            records.append(ObsessionRecord(track=track, window_start=best_start, plays_in_week=best))

    records.sort(key=lambda r: (-r.plays_in_week, r.window_start))
    return records[:limit]


# ------------------------------------------------------------
# Yearly Rankings
# ------------------------------------------------------------

def _year_of(ts, now: datetime) -> Optional[int]:
    """Calendar year of a valid timestamp; None for future or non-datetime values."""
    if not isinstance(ts, datetime):
        return None
    ts = _as_utc(ts)
    if ts > now:
        return None
    return ts.year


def _bucket_years(timestamp_lists: List[List[datetime]], now: datetime) -> Tuple[pd.DataFrame, int]:
    """Explode per-item timestamps into (item, year) rows; invalid stamps use the fallback year."""
    fallback_year = config.sentinel_date.year
    items, years = [], []
    fallback = 0
    for idx, stamps in enumerate(timestamp_lists):
        for ts in stamps:
            year = _year_of(ts, now)
            if year is None:
                fallback += 1
                year = fallback_year
            items.append(idx)
            years.append(year)
    return pd.DataFrame({"item": items, "year": years}, dtype="int64"), fallback


def _sorted_by_year(df: pd.DataFrame, topn: int) -> pd.DataFrame:
    df = df.sort_values(
        ["year", "score", "play_count", "name"],
        ascending=[True, False, False, True],
        kind="mergesort",
    )
    return df.groupby("year", sort=True).head(topn)


def rank_tracks_by_year(
    tracks: List[TrackAggregate],
    now: Optional[datetime] = None,
    topn: Optional[int] = None,
) -> Tuple[Dict[int, List[YearlyTrackEntry]], int]:
    """
    Per calendar year, the top tracks by score = plays ** 1.5.
    A year's listening time is the lifetime total apportioned by the
    year's share of plays. Returns (entries by year, fallback count).
    """
    now = _as_utc(now or datetime.now(timezone.utc))
    topn = topn or config.yearly_top_n

    rows, fallback = _bucket_years([t.timestamps for t in tracks], now)
    if fallback:
        logging.warning(f"{fallback} play timestamps were invalid or in the future; counted in {config.sentinel_date.year}")
    if rows.empty:
        return {}, fallback

    counts = rows.groupby(["year", "item"]).size().reset_index(name="play_count")
    lifetime_ms = np.array([t.total_played_ms for t in tracks], dtype="float64")
    lifetime_count = np.array([max(t.play_count, 1) for t in tracks], dtype="float64")

    counts["total_played_ms"] = (
        lifetime_ms[counts["item"]] * counts["play_count"] / lifetime_count[counts["item"]]
    )
    counts["score"] = counts["play_count"].astype("float64") ** 1.5
    counts["name"] = [tracks[i].display_name or tracks[i].track_name for i in counts["item"]]

    result: Dict[int, List[YearlyTrackEntry]] = {}
    for row in _sorted_by_year(counts, topn).itertuples(index=False):
        result.setdefault(int(row.year), []).append(YearlyTrackEntry(
            track=tracks[row.item],
            year=int(row.year),
            play_count=int(row.play_count),
            total_played_ms=float(row.total_played_ms),
            score=float(row.score),
        ))
    return result, fallback


def rank_artists_by_year(
    plays: List[NormalizedPlay],
    now: Optional[datetime] = None,
    topn: Optional[int] = None,
) -> Dict[int, List[YearlyArtistEntry]]:
    """Per calendar year, the top artists by score = plays ** 1.5 with exact listening time."""
    now = _as_utc(now or datetime.now(timezone.utc))
    topn = topn or config.yearly_top_n
    if not plays:
        return {}

    fallback_year = config.sentinel_date.year
    df = pd.DataFrame({
        "name": [p.artist_name for p in plays],
        "match_key": [p.match_key for p in plays],
        "ms": [p.event.ms_played for p in plays],
        "year": [_year_of(p.event.timestamp, now) or fallback_year for p in plays],
    })

    grouped = df.groupby(["year", "name"], sort=False).agg(
        play_count=("ms", "size"),
        total_played_ms=("ms", "sum"),
        track_count=("match_key", "nunique"),
    ).reset_index()
    grouped["score"] = grouped["play_count"].astype("float64") ** 1.5

    result: Dict[int, List[YearlyArtistEntry]] = {}
    for row in _sorted_by_year(grouped, topn).itertuples(index=False):
        result.setdefault(int(row.year), []).append(YearlyArtistEntry(
            name=row.name,
            year=int(row.year),
            play_count=int(row.play_count),
            total_played_ms=int(row.total_played_ms),
            track_count=int(row.track_count),
            score=float(row.score),
        ))
    return result


# ------------------------------------------------------------
# Column Ordering Helper
# ------------------------------------------------------------

def apply_column_order(df: pd.DataFrame) -> pd.DataFrame:
    """Reorder the DataFrame columns according to PREFERRED_COLUMN_ORDER."""
    all_cols = df.columns.tolist()
    ordered_cols = [c for c in PREFERRED_COLUMN_ORDER if c in all_cols]
    remaining_cols = [c for c in all_cols if c not in ordered_cols]
    return df[ordered_cols + remaining_cols]


def _hours(ms) -> float:
    return round(ms / (1000 * 60 * 60), 1)


# ------------------------------------------------------------
# Top-N Reports (Artist, Album, Track)
# ------------------------------------------------------------

def _artist_rows(artists: List[ArtistAggregate]) -> List[dict]:
    return [{
        "artist": a.name,
        "total_listens": a.play_count,
        "total_hours_listened": _hours(a.total_played_ms),
        "first_listened": a.first_listen,
        "first_track": a.first_track,
        "most_played_track": a.most_played_track,
        "most_played_count": a.most_played_count,
        "longest_streak": a.longest_streak,
        "current_streak": a.current_streak,
        "streak_start": a.streak_start,
        "streak_end": a.streak_end,
    } for a in artists]


def _album_rows(albums: List[AlbumAggregate]) -> List[dict]:
    return [{
        "artist": a.artist,
        "album": a.name,
        "total_listens": a.play_count,
        "total_hours_listened": _hours(a.total_played_ms),
        "track_count": a.track_count,
        "first_listened": a.first_listen,
        "years": ", ".join(str(y) for y in a.years),
    } for a in albums]


def _track_rows(tracks: List[TrackAggregate]) -> List[dict]:
    return [{
        "artist": t.display_artist or t.full_artist,
        "album": t.album_name,
        "track_name": t.display_name or t.track_name,
        "total_listens": t.play_count,
        "total_hours_listened": _hours(t.total_played_ms),
        "feature_artists": ", ".join(t.feature_artists),
        "variants": len(t.variants),
        "isrc": t.isrc or "",
    } for t in tracks]


ROW_BUILDERS = {
    "artist": (_artist_rows, "Artists", ["artist", "total_listens", "total_hours_listened"]),
    "album": (_album_rows, "Albums", ["artist", "album", "total_listens", "total_hours_listened"]),
    "track": (_track_rows, "Tracks", ["artist", "album", "track_name", "total_listens", "total_hours_listened"]),
}


def report_top(entities: list, entity: str = "artist", by: str = "total_listens", topn: int = 100, **kwargs):
    """
    Generate a Top-N report for artists, albums, or tracks.
    `by` is "total_listens" or "total_hours_listened".
    Accepts **kwargs to sink unused arguments.
    """
    builder, label, empty_cols = ROW_BUILDERS.get(entity, ROW_BUILDERS["artist"])
    rows = builder(entities)
    if not rows:
        return pd.DataFrame(columns=empty_cols), {"entity": label, "topn": topn, "days": None, "metric": "none"}

    df = pd.DataFrame(rows)
    sorted_df = df.sort_values(by, ascending=False, kind="mergesort")
    result = sorted_df if (topn is None or topn == 0) else sorted_df.head(topn)
    result = apply_column_order(result.reset_index(drop=True))

    meta = {
        "entity": label,
        "topn": topn,
        "days": None,
        "metric": "listens" if by == "total_listens" else "duration",
    }
    return result, meta


def report_obsessions(obsessions: List[ObsessionRecord], topn: int = None, **kwargs):
    """Tabular view of brief obsessions, already ranked."""
    records = obsessions[:topn] if topn else obsessions
    df = pd.DataFrame([{
        "Rank": i + 1,
        "artist": o.track.display_artist or o.track.full_artist,
        "track_name": o.track.display_name or o.track.track_name,
        "album": o.track.album_name,
        "plays_in_week": o.plays_in_week,
        "window_start": o.window_start,
        "total_listens": o.track.play_count,
    } for i, o in enumerate(records)], columns=[
        "Rank", "artist", "track_name", "album", "plays_in_week", "window_start", "total_listens",
    ])
    meta = {"entity": "Obsessions", "topn": topn, "days": None, "metric": "burst"}
    return apply_column_order(df), meta


def report_yearly(yearly: Dict[int, List[YearlyTrackEntry]], topn: int = None, **kwargs):
    """Flatten yearly rankings into one table (Year, Rank, track...)."""
    rows = []
    for year in sorted(yearly):
        entries = yearly[year][:topn] if topn else yearly[year]
        for rank, e in enumerate(entries, start=1):
            rows.append({
                "Year": year,
                "Rank": rank,
                "artist": e.track.display_artist or e.track.full_artist,
                "track_name": e.track.display_name or e.track.track_name,
                "album": e.track.album_name,
                "total_listens": e.play_count,
                "total_hours_listened": _hours(e.total_played_ms),
                "score": round(e.score, 2),
            })
    df = pd.DataFrame(rows, columns=[
        "Year", "Rank", "artist", "track_name", "album", "total_listens", "total_hours_listened", "score",
    ])
    meta = {"entity": "YearlyTracks", "topn": topn, "days": None, "metric": "score"}
    return apply_column_order(df), meta


def report_yearly_artists(yearly: Dict[int, List[YearlyArtistEntry]], topn: int = None, **kwargs):
    rows = []
    for year in sorted(yearly):
        entries = yearly[year][:topn] if topn else yearly[year]
        for rank, e in enumerate(entries, start=1):
            rows.append({
                "Year": year,
                "Rank": rank,
                "artist": e.name,
                "total_listens": e.play_count,
                "total_hours_listened": _hours(e.total_played_ms),
                "track_count": e.track_count,
                "score": round(e.score, 2),
            })
    df = pd.DataFrame(rows, columns=[
        "Year", "Rank", "artist", "total_listens", "total_hours_listened", "track_count", "score",
    ])
    meta = {"entity": "YearlyArtists", "topn": topn, "days": None, "metric": "score"}
    return apply_column_order(df), meta


# ------------------------------------------------------------
# Saving Reports
# ------------------------------------------------------------

def save_report(df: pd.DataFrame, meta: dict = None, report_name: str = None, reports_dir: str = None) -> str:
    """Save the DataFrame to a CSV file in the reports directory."""
    reports_dir = reports_dir or config.reports_dir
    os.makedirs(reports_dir, exist_ok=True)

    timestamp = time.strftime("%Y%m%d_%H%M%S")

    if report_name:
        filename = f"{timestamp}_{report_name}.csv"
    else:
        meta = meta or {}
        topn = meta.get("topn")
        topn_str = "All" if (topn is None or topn == 0) else f"Top{topn}"
        metric_str = "By" + str(meta.get("metric", "none")).capitalize()
        filename = f"{timestamp}_{topn_str}_{meta.get('entity', 'Report')}_AllTime_{metric_str}.csv"

    filepath = os.path.join(reports_dir, filename)
    df.to_csv(filepath, index=False)
    logging.info(f"Report saved to {filepath}")
    return filepath
