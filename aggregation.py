"""
aggregation.py
Single-pass aggregation of normalized plays into per-track, per-artist
and per-album totals.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from config import config
from matching import choose_display_variant, merge_unique, normalize_album_name
from models import (
    AlbumAggregate,
    ArtistAggregate,
    NormalizedPlay,
    SummaryStats,
    TrackAggregate,
    TrackVariant,
)


@dataclass
class AggregationResult:
    tracks: List[TrackAggregate] = field(default_factory=list)
    artists: List[ArtistAggregate] = field(default_factory=list)
    albums: List[AlbumAggregate] = field(default_factory=list)
    stats: SummaryStats = field(default_factory=SummaryStats)


def album_key(album_name: str, artist_name: str) -> Tuple[str, str]:
    return normalize_album_name(album_name) or album_name.lower(), artist_name.lower().strip()


def build_aggregates(
    plays: List[NormalizedPlay],
    skipped: Optional[Dict[str, int]] = None,
    total_files: int = 0,
) -> AggregationResult:
    """
    One pass over normalized plays. Totals are exact integer sums; each
    artist's most-played track only changes on a strictly greater count,
    so the first track to reach a tied maximum keeps it.
    """
    skipped = skipped or {}
    tracks: Dict[str, TrackAggregate] = {}
    artists: Dict[str, ArtistAggregate] = {}
    albums: Dict[Tuple[str, str], AlbumAggregate] = {}
    album_tracks: Dict[Tuple[str, str], set] = {}
    album_years: Dict[Tuple[str, str], set] = {}
    artist_track_counts: Dict[str, Dict[str, int]] = {}
    authoritative_albums: set = set()
    per_service: Dict[str, int] = {}
    total_ms = 0
    clamped = 0

    for play in plays:
        event = play.event
        ms = event.ms_played
        ts = event.timestamp
        total_ms += ms
        per_service[event.source] = per_service.get(event.source, 0) + ms
        if event.timestamp_clamped:
            clamped += 1

        # --- Track ---
        track = tracks.get(play.match_key)
        if track is None:
            track = TrackAggregate(
                match_key=play.match_key,
                track_name=play.track_name,
                artist=play.primary_artist,
                full_artist=play.artist_name,
                album_name=play.album_name,
                isrc=event.isrc,
            )
            tracks[play.match_key] = track
        track.total_played_ms += ms
        track.play_count += 1
        track.timestamps.append(ts)
        # First authoritative album wins; anything else only fills an unknown album
        if play.album_name != config.unknown_album and play.match_key not in authoritative_albums:
            if event.source == config.authoritative_source:
                track.album_name = play.album_name
                authoritative_albums.add(play.match_key)
            elif track.album_name == config.unknown_album:
                track.album_name = play.album_name
        if not track.isrc and event.isrc:
            track.isrc = event.isrc
        variant = TrackVariant(play.track_name, play.artist_name, play.album_name, event.source, event.isrc)
        if not any(
            (v.track_name, v.artist_name, v.album_name, v.source) == (variant.track_name, variant.artist_name, variant.album_name, variant.source)
            for v in track.variants
        ):
            track.variants.append(variant)
        merge_unique(track.feature_artists, play.feature_artists)

        # --- Artist ---
        artist = artists.get(play.artist_name)
        if artist is None:
            artist = ArtistAggregate(name=play.artist_name, first_listen=ts, first_track=play.track_name)
            artists[play.artist_name] = artist
            artist_track_counts[play.artist_name] = {}
        artist.total_played_ms += ms
        artist.play_count += 1
        artist.timestamps.append(ts)
        if ts < artist.first_listen:
            artist.first_listen = ts
            artist.first_track = play.track_name

        counts = artist_track_counts[play.artist_name]
        counts[play.match_key] = counts.get(play.match_key, 0) + 1
        if counts[play.match_key] > artist.most_played_count:
            artist.most_played_count = counts[play.match_key]
            artist.most_played_track = play.track_name

        # --- Album ---
        key = album_key(play.album_name, play.artist_name)
        album = albums.get(key)
        if album is None:
            album = AlbumAggregate(name=play.album_name, artist=play.artist_name, first_listen=ts)
            albums[key] = album
            album_tracks[key] = set()
            album_years[key] = set()
        album.total_played_ms += ms
        album.play_count += 1
        album_tracks[key].add(play.match_key)
        album_years[key].add(ts.year)
        if ts < album.first_listen:
            album.first_listen = ts

    for key, album in albums.items():
        album.track_count = len(album_tracks[key])
        album.years = sorted(album_years[key])

    for track in tracks.values():
        best = choose_display_variant(track.variants)
        if best is not None and len(track.variants) > 1:
            track.display_name = best.track_name
            track.display_artist = best.artist_name
        else:
            track.display_name = track.track_name
            track.display_artist = track.full_artist or track.artist

    null_track = skipped.get("null_track", 0)
    short = skipped.get("short", 0)
    stats = SummaryStats(
        total_files=total_files,
        total_entries=len(plays) + null_track + short,
        processed_plays=len(plays),
        short_plays=short,
        null_track_plays=null_track,
        unique_tracks=len(tracks),
        total_listening_ms=total_ms,
        per_service_ms=per_service,
        clamped_timestamps=clamped,
    )

    logging.info(
        f"Aggregated {stats.processed_plays} plays into {len(tracks)} tracks, "
        f"{len(artists)} artists, {len(albums)} albums "
        f"(skipped {short} short, {null_track} without title)"
    )

    return AggregationResult(
        tracks=list(tracks.values()),
        artists=list(artists.values()),
        albums=list(albums.values()),
        stats=stats,
    )


def ranked(items: list, by: str = "total_played_ms", topn: Optional[int] = None) -> list:
    """Sort aggregates descending by `by`; stable, so equal values keep first-seen order."""
    result = sorted(items, key=lambda item: getattr(item, by), reverse=True)
    return result[:topn] if topn else result
