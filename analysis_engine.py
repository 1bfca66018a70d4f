"""
analysis_engine.py
Controller logic for running an analysis.
Acts as the bridge between the CLI, ingestion, matching, aggregation and
the derived analytics.
"""

import hashlib
import logging
import time
from datetime import datetime, timezone
from typing import Callable, List, Optional

import parsing
import reporting
from aggregation import build_aggregates, ranked
from matching import MatchCache, normalize_events
from models import AnalysisResult, ExportSnapshot, PlayEvent


def dataset_identity(events: List[PlayEvent]) -> str:
    """Stable fingerprint of an event set, independent of input order."""
    digest = hashlib.sha1()
    for event in sorted(events, key=lambda e: e.sort_key()):
        digest.update(repr(event.sort_key()).encode("utf-8"))
    return f"{len(events)}:{digest.hexdigest()}"


class AnalysisEngine:
    """
    Runs the pipeline: load -> normalize -> aggregate -> streaks,
    obsessions and yearly rankings.
    """

    def __init__(self, cache: Optional[MatchCache] = None) -> None:
        self.cache = cache if cache is not None else MatchCache()

    def load(self, paths: List[str], progress_callback: Optional[Callable] = None) -> List[PlayEvent]:
        if progress_callback:
            progress_callback(0, 100, f"Reading {len(paths)} files...")
        events = parsing.load_files(paths)
        logging.info(f"Loaded {len(events)} entries from {len(paths)} files")
        return events

    def analyze(
        self,
        events: List[PlayEvent],
        total_files: int = 0,
        now: Optional[datetime] = None,
        progress_callback: Optional[Callable] = None,
        is_cancelled: Optional[Callable] = None,
    ) -> Optional[AnalysisResult]:
        """
        Master orchestration method. Returns None if cancelled between stages.
        """
        started = time.perf_counter()
        now = now or datetime.now(timezone.utc)

        # --------------------------------------------------------
        # 1. Canonical ordering & cache binding
        # --------------------------------------------------------
        ordered = sorted(events, key=lambda e: e.sort_key())
        identity = dataset_identity(ordered)
        self.cache.bind(identity)

        if progress_callback:
            progress_callback(20, 100, "Matching tracks...")
        plays, skipped = normalize_events(ordered, self.cache)

        if is_cancelled and is_cancelled():
            logging.info("Analysis cancelled after matching.")
            return None

        # --------------------------------------------------------
        # 2. Aggregation
        # --------------------------------------------------------
        if progress_callback:
            progress_callback(50, 100, "Aggregating...")
        agg = build_aggregates(plays, skipped, total_files=total_files)

        if is_cancelled and is_cancelled():
            logging.info("Analysis cancelled after aggregation.")
            return None

        # --------------------------------------------------------
        # 3. Derived analytics
        # --------------------------------------------------------
        if progress_callback:
            progress_callback(70, 100, "Calculating streaks and rankings...")
        reporting.apply_streaks(agg.artists, now=now)
        obsessions = reporting.find_obsessions(agg.tracks)
        yearly_tracks, fallback = reporting.rank_tracks_by_year(agg.tracks, now=now)
        yearly_artists = reporting.rank_artists_by_year(plays, now=now)
        # Clamped stamps already sit in the fallback year
        agg.stats.yearly_fallback_count = fallback + agg.stats.clamped_timestamps

        if progress_callback:
            progress_callback(100, 100, "Complete.")

        elapsed = time.perf_counter() - started
        logging.info(
            f"Analysis complete in {elapsed:.2f}s: {agg.stats.processed_plays} plays, "
            f"{len(obsessions)} obsessions, {len(yearly_tracks)} years"
        )

        return AnalysisResult(
            stats=agg.stats,
            tracks=ranked(agg.tracks),
            artists=ranked(agg.artists),
            albums=ranked(agg.albums),
            yearly_tracks=yearly_tracks,
            yearly_artists=yearly_artists,
            obsessions=obsessions,
            events=ordered,
            meta={
                "dataset_identity": identity,
                "cache_entries": len(self.cache),
                "cache_hits": self.cache.hits,
                "elapsed_seconds": round(elapsed, 3),
            },
        )

    def run(self, paths: List[str], now: Optional[datetime] = None,
            progress_callback: Optional[Callable] = None,
            is_cancelled: Optional[Callable] = None) -> Optional[AnalysisResult]:
        events = self.load(paths, progress_callback)
        if is_cancelled and is_cancelled():
            return None
        return self.analyze(events, total_files=len(paths), now=now,
                            progress_callback=progress_callback, is_cancelled=is_cancelled)


def build_snapshot(result: AnalysisResult, include_history: bool = True) -> ExportSnapshot:
    """Copy what the export needs out of an analysis result."""
    return ExportSnapshot(
        stats=result.stats,
        artists=list(result.artists),
        albums=list(result.albums),
        tracks=list(result.tracks),
        yearly={year: list(entries) for year, entries in result.yearly_tracks.items()},
        yearly_artists={year: list(entries) for year, entries in result.yearly_artists.items()},
        obsessions=list(result.obsessions),
        events=list(result.events) if include_history else [],
    )
