"""
tests/test_analysis_engine.py
End-to-end pipeline tests: files -> events -> matching -> aggregates -> analytics.
"""

import random
from datetime import datetime, timezone

from analysis_engine import AnalysisEngine, build_snapshot, dataset_identity
from config import config
from matching import MatchCache

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


def _summary(result):
    return (
        result.stats,
        [(t.match_key, t.play_count, t.total_played_ms, t.album_name, t.display_name) for t in result.tracks],
        [(a.name, a.play_count, a.first_track, a.most_played_track, a.longest_streak) for a in result.artists],
        [(a.name, a.artist, a.play_count, a.track_count) for a in result.albums],
        {y: [(e.track.match_key, e.play_count) for e in entries] for y, entries in result.yearly_tracks.items()},
        [(o.track.match_key, o.plays_in_week) for o in result.obsessions],
    )


def test_full_pipeline(all_source_files):
    result = AnalysisEngine().run(all_source_files, now=NOW)
    stats = result.stats

    assert stats.total_files == 8
    assert stats.total_entries == 17
    assert stats.null_track_plays == 1
    assert stats.short_plays == 2
    assert stats.processed_plays == 14
    assert stats.processed_plays + stats.short_plays + stats.null_track_plays == stats.total_entries
    assert set(stats.per_service_ms) == {"spotify", "apple_music", "tidal", "soundcloud", "deezer", "youtube_music"}
    assert sum(stats.per_service_ms.values()) == stats.total_listening_ms

    midnight = next(t for t in result.tracks if t.match_key == "midnight city|m83")
    assert midnight.play_count == 8
    assert midnight.album_name == "Hurry Up, We're Dreaming"
    assert midnight.display_name == "Midnight City"
    assert midnight.display_artist == "M83"

    m83 = next(a for a in result.artists if a.name == "M83")
    assert m83.most_played_track == "Midnight City"

    # Ranked descending by listening time
    totals = [t.total_played_ms for t in result.tracks]
    assert totals == sorted(totals, reverse=True)


def test_results_independent_of_input_order(all_source_files):
    events = AnalysisEngine().load(all_source_files)
    shuffled = list(events)
    random.Random(7).shuffle(shuffled)

    first = AnalysisEngine().analyze(events, total_files=8, now=NOW)
    second = AnalysisEngine().analyze(shuffled, total_files=8, now=NOW)
    assert _summary(first) == _summary(second)
    assert first.meta["dataset_identity"] == second.meta["dataset_identity"]


def test_clamped_timestamps_reach_fallback_count(spotify_extended_file):
    result = AnalysisEngine().run([spotify_extended_file], now=NOW)

    assert result.stats.clamped_timestamps == 1
    assert result.stats.yearly_fallback_count == 1
    fallback_year = result.yearly_tracks[config.sentinel_date.year]
    assert [e.track.track_name for e in fallback_year] == ["Wait"]


def test_failing_file_is_isolated(all_source_files, broken_json_file):
    result = AnalysisEngine().run(all_source_files + [broken_json_file], now=NOW)
    assert result.stats.total_files == 9
    assert result.stats.total_entries == 17


def test_cache_rebinds_on_new_dataset(make_event):
    cache = MatchCache()
    engine = AnalysisEngine(cache)
    first = [make_event("2024-01-01T10:00:00", track="A")]
    second = [make_event("2024-01-01T10:00:00", track="B")]

    engine.analyze(first, now=NOW)
    assert cache.identity == dataset_identity(first)
    engine.analyze(second, now=NOW)
    assert cache.identity == dataset_identity(second)
    assert dataset_identity(first) != dataset_identity(second)


def test_kenny_rogers_variants_merge(make_event):
    events = [
        make_event("2024-01-01T10:00:00", track="Just Dropped In", artist="Kenny Rogers"),
        make_event(
            "2024-01-02T10:00:00",
            track="Just Dropped In (To See What Condition My Condition Is In)",
            artist="Kenny Rogers & The First Edition",
            source="apple_music",
        ),
    ]
    result = AnalysisEngine().analyze(events, now=NOW)
    assert len(result.tracks) == 1
    assert result.tracks[0].play_count == 2
    assert [a.name for a in result.artists] == ["Kenny Rogers & The First Edition"]


def test_cancel_between_stages(make_event):
    events = [make_event("2024-01-01T10:00:00")]
    assert AnalysisEngine().analyze(events, now=NOW, is_cancelled=lambda: True) is None


def test_progress_callback(make_event):
    seen = []
    AnalysisEngine().analyze(
        [make_event("2024-01-01T10:00:00")], now=NOW,
        progress_callback=lambda cur, total, msg: seen.append(cur),
    )
    assert seen == sorted(seen)
    assert seen[-1] == 100


def test_build_snapshot(make_event):
    result = AnalysisEngine().analyze([make_event("2024-01-01T10:00:00")], now=NOW)
    assert len(build_snapshot(result).events) == 1
    assert build_snapshot(result, include_history=False).events == []


def test_build_snapshot_carries_yearly_artists(make_event):
    result = AnalysisEngine().analyze([make_event("2024-01-01T10:00:00", artist="A")], now=NOW)
    snapshot = build_snapshot(result)
    assert [e.name for e in snapshot.yearly_artists[2024]] == ["A"]
