"""
tests/test_export.py
Tests for export_formats.py and export_engine.py (in-process jobs and the
background export process).
"""

import pytest
import dataclasses
import io
import json
import time
from datetime import date, datetime, timedelta, timezone

from openpyxl import load_workbook

import export_formats
from analysis_engine import AnalysisEngine, build_snapshot
from config import config
from export_engine import (
    ExportCancelled,
    ExportError,
    ExportJob,
    ExportManager,
    ExportOptions,
    default_selection,
)
from models import ResourceHints

UTC = timezone.utc
NOW = datetime(2025, 1, 1, tzinfo=UTC)


def _stalled_worker(commands, events):
    time.sleep(30)


def _silent_worker(commands, events):
    return


@pytest.fixture
def snapshot(make_event):
    base = datetime(2023, 1, 1, 12, tzinfo=UTC)
    events = [
        make_event(
            base + timedelta(days=i * 20),
            track=f"Track {i % 6}",
            artist=f"Artist {i % 3}",
            album=f"Album {i % 3}",
            ms=60000 + i * 1000,
        )
        for i in range(30)
    ]
    burst = datetime(2024, 2, 1, tzinfo=UTC)
    events += [
        make_event(burst + timedelta(hours=h), track="Burst", artist="Burst Artist", album="Burst Album")
        for h in range(5)
    ]
    result = AnalysisEngine().analyze(events, total_files=1, now=NOW)
    return build_snapshot(result)


@pytest.fixture
def no_yield(monkeypatch):
    monkeypatch.setattr(config, "export_yield_seconds", 0)


def _run_job(snapshot, **option_kwargs):
    emitted = []
    payload = ExportJob(snapshot, ExportOptions(**option_kwargs)).run(emitted.append)
    return payload, emitted


# ------------------------------------------------------------
# Formatting Helpers
# ------------------------------------------------------------

@pytest.mark.parametrize("ms, expected", [
    (420000, "7m"),
    (3660000, "1h 1m"),
    (90061000, "1d 1h"),
    (0, "0m"),
])
def test_format_duration(ms, expected):
    assert export_formats.format_duration(ms) == expected


def test_sample_history_fixed_stride():
    sampled, stride = export_formats.sample_history(list(range(10)), 4)
    assert stride == 3
    assert sampled == [0, 3, 6, 9]

    sampled, stride = export_formats.sample_history(list(range(10)), 10)
    assert stride == 1
    assert sampled == list(range(10))


def test_export_filename():
    day = date(2024, 1, 2)
    assert export_formats.export_filename("xlsx", True, day) == "streamscope-2024-01-02-with-history.xlsx"
    assert export_formats.export_filename("json", False, day) == "streamscope-2024-01-02-summary-only.json"


def test_tabular_writer_rejects_unconvertible_value():
    writer = export_formats.TabularWriter()
    writer.add_sheet("Sheet", "Title", ["a"])
    writer.append([object()])
    writer.append([1])
    assert writer.placeholders == 1
    assert writer.rows_written == 1


def test_default_selection():
    assert default_selection()["history"] is False
    assert default_selection(True)["history"] is True
    assert ExportOptions(selection=default_selection(True)).include_history


# ------------------------------------------------------------
# Structured (JSON) Export
# ------------------------------------------------------------

def test_json_sections_round_trip(snapshot, no_yield):
    payload, emitted = _run_job(snapshot, format="json")
    document = json.loads(payload)

    assert [a["name"] for a in document["artists"]] == [a.name for a in snapshot.artists]
    assert [a["name"] for a in document["albums"]] == [a.name for a in snapshot.albums]
    assert document["artists"][0]["totalPlayed"] == snapshot.artists[0].total_played_ms
    assert document["artists"][0]["rank"] == 1
    assert document["tracks"][0]["trackName"] == snapshot.tracks[0].display_name
    assert set(document["yearly"]) == {"2023", "2024"}
    assert set(document["yearlyArtists"]) == {"2023", "2024"}
    assert document["obsessions"][0]["intensePeriod"]["playsInWeek"] == 5
    assert "history" not in document

    meta = document["metadata"]
    assert meta["totalEntries"] == 35
    assert meta["processedPlays"] == snapshot.stats.processed_plays
    assert "history" not in meta["sections"]

    assert emitted[-1]["progress"] == 100
    assert emitted[-1]["payload"] == payload


def test_json_export_is_idempotent_apart_from_metadata(snapshot, no_yield):
    selection = default_selection(include_history=True)
    first, _ = _run_job(snapshot, format="json", selection=selection)
    second, _ = _run_job(snapshot, format="json", selection=selection)
    first_doc, second_doc = json.loads(first), json.loads(second)

    for section in export_formats.SECTIONS:
        assert export_formats.section_bytes(first_doc, section) == export_formats.section_bytes(second_doc, section)


def test_progress_is_monotonic(snapshot, no_yield, monkeypatch):
    monkeypatch.setitem(config.export_profiles["standard"], "batch_size", 2)
    _, emitted = _run_job(snapshot, format="json", selection=default_selection(True))
    progress = [e["progress"] for e in emitted]
    assert progress == sorted(progress)
    assert progress[0] == 0
    assert progress[-1] == 100
    assert sum(1 for e in emitted if e["payload"] is not None) == 1


def test_low_memory_samples_history(snapshot, no_yield, monkeypatch):
    monkeypatch.setitem(config.export_profiles["constrained"], "history_sample_threshold", 10)
    payload, _ = _run_job(
        snapshot, format="json",
        selection={"history": True},
        hints=ResourceHints(low_memory=True),
    )
    document = json.loads(payload)

    assert document["metadata"]["historyStride"] == 4
    assert document["metadata"]["historyTotal"] == 35
    assert len(document["history"]) == 9
    assert document["history"][0]["ts"] == export_formats.history_record(snapshot.events[0], 1)["ts"]


def test_low_memory_caps_entries(snapshot, no_yield, monkeypatch):
    monkeypatch.setitem(config.export_profiles["constrained"], "max_entries", 2)
    payload, _ = _run_job(snapshot, format="json", hints=ResourceHints(low_memory=True))
    assert len(json.loads(payload)["artists"]) == 2


def test_json_bad_row_becomes_error_record(snapshot, no_yield):
    broken = dataclasses.replace(snapshot, artists=list(snapshot.artists) + [None])
    payload, _ = _run_job(broken, format="json", selection={"artists": True})
    artists = json.loads(payload)["artists"]

    assert len(artists) == len(snapshot.artists) + 1
    assert artists[-1]["index"] == len(snapshot.artists) + 1
    assert artists[-1]["error"].startswith("Error processing entry")


def test_unknown_format_rejected(snapshot):
    with pytest.raises(ValueError):
        ExportJob(snapshot, ExportOptions(format="csv"))


# ------------------------------------------------------------
# Tabular (xlsx) Export
# ------------------------------------------------------------

def test_xlsx_sheet_layout(snapshot, no_yield):
    payload, _ = _run_job(snapshot, format="xlsx", selection=default_selection(True))
    wb = load_workbook(io.BytesIO(payload))

    assert wb.sheetnames == [
        "Summary", "Top Artists", "Top Albums", "Top All-Time Tracks",
        "Top Tracks 2024", "Top Artists 2024", "Top Tracks 2023", "Top Artists 2023",
        "Brief Obsessions", "Streaming History",
    ]

    ws = wb["Top Artists"]
    assert ws.cell(row=1, column=1).value == "Top Artists"
    assert ws.cell(row=1, column=1).font.bold
    assert ws.cell(row=2, column=1).value is None
    assert [c.value for c in ws[3]] == export_formats.ARTIST_HEADER
    assert ws.cell(row=3, column=1).font.bold
    assert ws.cell(row=4, column=1).value == 1
    assert ws.cell(row=4, column=2).value == snapshot.artists[0].name

    history = wb["Streaming History"]
    assert history.max_row == 3 + len(snapshot.events)


def test_xlsx_yearly_artist_sheet(snapshot, no_yield):
    payload, _ = _run_job(snapshot, format="xlsx", selection={"yearly": True})
    ws = load_workbook(io.BytesIO(payload))["Top Artists 2024"]
    top = snapshot.yearly_artists[2024][0]

    assert ws.cell(row=1, column=1).value == "Top Artists of 2024"
    assert [c.value for c in ws[3]] == export_formats.YEARLY_ARTIST_HEADER
    assert ws.cell(row=4, column=1).value == 1
    assert ws.cell(row=4, column=2).value == top.name
    assert ws.cell(row=4, column=4).value == top.play_count
    assert ws.cell(row=4, column=5).value == top.track_count


def test_json_yearly_artists(snapshot, no_yield):
    payload, _ = _run_job(snapshot, format="json", selection={"yearly": True})
    records = json.loads(payload)["yearlyArtists"]["2024"]
    expected = snapshot.yearly_artists[2024]

    assert [r["name"] for r in records] == [e.name for e in expected]
    assert [r["rank"] for r in records] == list(range(1, len(expected) + 1))
    assert records[0]["year"] == 2024
    assert records[0]["totalPlayed"] == expected[0].total_played_ms
    assert records[0]["trackCount"] == expected[0].track_count


def test_xlsx_bad_row_becomes_placeholder(snapshot, no_yield):
    broken = dataclasses.replace(snapshot, artists=[None] + list(snapshot.artists))
    payload, _ = _run_job(broken, format="xlsx", selection={"artists": True})
    ws = load_workbook(io.BytesIO(payload))["Top Artists"]

    assert ws.cell(row=4, column=1).value == export_formats.TABULAR_PLACEHOLDER
    assert ws.cell(row=5, column=1).value == 2


def test_custom_formatter_is_used(snapshot, no_yield):
    payload, _ = _run_job(snapshot, format="xlsx", selection={"artists": True}, formatter=lambda ms: f"{ms}ms")
    ws = load_workbook(io.BytesIO(payload))["Top Artists"]
    assert ws.cell(row=4, column=3).value == f"{snapshot.artists[0].total_played_ms}ms"


# ------------------------------------------------------------
# Cancellation (in-process)
# ------------------------------------------------------------

def test_cancel_stops_at_batch_boundary(snapshot, no_yield, monkeypatch):
    monkeypatch.setitem(config.export_profiles["standard"], "batch_size", 2)
    emitted = []
    job = ExportJob(snapshot, ExportOptions(format="json"))

    with pytest.raises(ExportCancelled):
        job.run(emitted.append, should_cancel=lambda: job.batches_done >= 3)

    # Initializing event, then summary and two artist batches
    assert job.batches_done == 3
    assert len(emitted) == 4
    assert emitted[-1]["section"] == "artists"
    assert all(e["payload"] is None for e in emitted)


# ------------------------------------------------------------
# Background Export Process
# ------------------------------------------------------------

def test_manager_delivers_payload(snapshot):
    seen, completed = [], []
    manager = ExportManager(snapshot, ExportOptions(format="json"), callbacks={
        "on_progress": seen.append,
        "on_complete": completed.append,
    })
    payload = manager.run()

    assert json.loads(payload)["metadata"]["totalEntries"] == 35
    assert completed == [payload]
    assert seen[-1]["progress"] == 100
    progress = [e["progress"] for e in seen]
    assert progress == sorted(progress)


def test_cancel_right_after_start_yields_only_cancelled(snapshot):
    manager = ExportManager(snapshot, ExportOptions(format="xlsx", selection=default_selection(True)))
    manager.start()
    manager.cancel()
    assert list(manager.events()) == [{"type": "cancelled"}]


def test_cancel_before_start(snapshot):
    cancelled = []
    manager = ExportManager(snapshot, callbacks={"on_cancelled": lambda: cancelled.append(True)})
    manager.cancel()
    assert manager.run() is None
    assert cancelled == [True]


def test_unserializable_options_report_setup_error(snapshot):
    errors = []
    options = ExportOptions(formatter=lambda ms: str(ms))
    manager = ExportManager(snapshot, options, callbacks={"on_error": errors.append})

    with pytest.raises(ExportError):
        manager.run()
    assert "serialized" in errors[0]


def test_timeout_terminates_worker(snapshot):
    manager = ExportManager(snapshot, timeout=0.5, worker=_stalled_worker)
    events = list(manager.events())

    assert len(events) == 1
    assert events[0]["type"] == "error"
    assert "timed out" in events[0]["error"]
    assert not manager._process.is_alive()


def test_worker_exit_without_result_is_an_error(snapshot):
    manager = ExportManager(snapshot, timeout=10, worker=_silent_worker)
    with pytest.raises(ExportError, match="exited unexpectedly"):
        manager.run()


def test_large_payload_extends_timeout(snapshot, monkeypatch):
    monkeypatch.setattr(config, "large_payload_threshold", 10)
    manager = ExportManager(snapshot, timeout=60)
    assert manager.extended
    assert manager.timeout == 60 + config.export_timeout_extension_seconds

    monkeypatch.setattr(config, "large_payload_threshold", 1000)
    assert not ExportManager(snapshot, timeout=60).extended
