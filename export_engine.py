"""
export_engine.py
Background export of an analysis snapshot.

The export runs in a separate process and talks to the caller only through
two queues: commands in ("start", "cancel") and events out ("progress",
"error", "cancelled"). Work is done in batches; between batches the worker
yields briefly and checks for a cancel command.
"""

import logging
import multiprocessing
import pickle
import queue
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional

from config import config
from models import ExportSnapshot, ResourceHints
import export_formats as fmt_mod
from export_formats import SECTIONS, format_duration


class ExportCancelled(Exception):
    """Raised inside the job when a cancel command is seen at a batch boundary."""


class ExportError(Exception):
    """Raised by ExportManager.run() when the export ends in an error event."""


def default_selection(include_history: bool = False) -> Dict[str, bool]:
    selection = {name: True for name in SECTIONS}
    selection["history"] = include_history
    return selection


@dataclass
class ExportOptions:
    format: str = "json"
    selection: Dict[str, bool] = field(default_factory=default_selection)
    hints: ResourceHints = field(default_factory=ResourceHints)
    formatter: Callable = format_duration

    def selected(self) -> List[str]:
        return [name for name in SECTIONS if self.selection.get(name)]

    @property
    def include_history(self) -> bool:
        return bool(self.selection.get("history"))


def progress_event(progress: float, phase: str, section: Optional[str] = None, payload: Optional[bytes] = None) -> dict:
    return {
        "type": "progress",
        "progress": int(progress),
        "phase": phase,
        "section": section,
        "payload": payload,
    }


# ======================================================================
# Export Job (runs inside the worker)
# ======================================================================

class ExportJob:
    """
    Serializes the selected sections of a snapshot into one encoding.
    Usable in-process; the worker process wraps it with queue plumbing.
    """

    HISTORY_WEIGHT = 5

    def __init__(self, snapshot: ExportSnapshot, options: ExportOptions):
        if options.format not in ("json", "xlsx"):
            raise ValueError(f"Unknown export format: {options.format}")
        self.snapshot = snapshot
        self.options = options
        self.profile = config.export_profile(options.hints.low_memory)
        self.formatter = options.formatter or format_duration
        self.progress = 0.0
        self.batches_done = 0

    # --- Plumbing ---

    def _checkpoint(self):
        if config.export_yield_seconds:
            time.sleep(config.export_yield_seconds)
        if self._should_cancel():
            logging.info(f"Export cancelled after {self.batches_done} batches.")
            raise ExportCancelled()

    def _report(self, phase: str, section: Optional[str] = None, payload: Optional[bytes] = None):
        self._emit(progress_event(self.progress, phase, section, payload))

    def _limited(self, items: list) -> list:
        max_entries = self.profile.get("max_entries")
        return items[:max_entries] if max_entries else list(items)

    def _years(self) -> List[int]:
        years = sorted(set(self.snapshot.yearly) | set(self.snapshot.yearly_artists), reverse=True)
        max_years = self.profile.get("max_years")
        return years[:max_years] if max_years else years

    def _history(self) -> list:
        events = self.snapshot.events
        if self.options.format == "json":
            sampled, stride = fmt_mod.sample_history(events, self.profile["history_sample_threshold"])
            self.history_stride = stride
            return sampled
        self.history_stride = 1
        return list(events)

    def _plan(self) -> List[tuple]:
        """(section, weight) for every selected section with data."""
        available = {
            "summary": True,
            "artists": bool(self.snapshot.artists),
            "albums": bool(self.snapshot.albums),
            "tracks": bool(self.snapshot.tracks),
            "yearly": bool(self.snapshot.yearly or self.snapshot.yearly_artists),
            "obsessions": bool(self.snapshot.obsessions),
            "history": bool(self.snapshot.events),
        }
        plan = []
        for name in self.options.selected():
            if available[name]:
                plan.append((name, self.HISTORY_WEIGHT if name == "history" else 1))
        return plan

    def _batched(self, section: str, label: str, items: list, build: Callable, sink: Callable,
                 on_error: Callable, span: float, batch_size: int):
        """Build rows batch by batch, reporting progress and honoring cancel between batches."""
        start = self.progress
        total_batches = max(1, -(-len(items) // batch_size))
        for batch_index in range(total_batches):
            offset = batch_index * batch_size
            for i, item in enumerate(items[offset:offset + batch_size]):
                rank = offset + i + 1
                try:
                    row = build(item, rank)
                except Exception as e:
                    logging.warning(f"{label}: row {rank} could not be serialized: {e}")
                    on_error(rank, e)
                    continue
                sink(row)
            self.batches_done += 1
            self.progress = start + span * (batch_index + 1) / total_batches
            self._report(f"Processing {label}... ({batch_index + 1}/{total_batches})", section)
            self._checkpoint()

    # --- Entry point ---

    def run(self, emit: Callable[[dict], Any], should_cancel: Callable[[], bool] = lambda: False) -> bytes:
        self._emit = emit
        self._should_cancel = should_cancel
        self.progress = 0.0
        self._report("Initializing export process...")

        plan = self._plan()
        total_weight = sum(w for _, w in plan) or 1
        unit = 95.0 / total_weight
        history = self._history() if any(name == "history" for name, _ in plan) else []

        if self.options.format == "xlsx":
            writer = fmt_mod.TabularWriter()
            for name, weight in plan:
                self._tabular_section(writer, name, unit * weight, history)
        else:
            writer = fmt_mod.StructuredWriter(self._metadata(history))
            for name, weight in plan:
                self._structured_section(writer, name, unit * weight, history)

        if self._should_cancel():
            raise ExportCancelled()

        self.progress = 95
        self._report("Finalizing export...")
        self.progress = 98
        self._report("Generating file...")
        payload = writer.to_bytes()

        if self._should_cancel():
            raise ExportCancelled()

        self.progress = 100
        self._report("Export complete!", None, payload)
        logging.info(f"Export complete: {len(payload)} bytes ({self.options.format}), {writer.placeholders} placeholder rows")
        return payload

    # --- Tabular (xlsx) ---

    def _tabular_section(self, writer, name: str, span: float, history: list):
        fmt = self.formatter
        snap = self.snapshot
        batch_size = self.profile["batch_size"]

        if name == "summary":
            writer.add_sheet("Summary", "Streaming History Analysis Summary", None)
            for row in fmt_mod.summary_rows(snap.stats, fmt, self.options.selected(), len(snap.events)):
                writer.append(row)
            self.batches_done += 1
            self.progress += span
            self._report("Summary sheet complete", "summary")
            self._checkpoint()

        elif name == "artists":
            writer.add_sheet("Top Artists", "Top Artists", fmt_mod.ARTIST_HEADER)
            self._batched(name, "Top Artists", self._limited(snap.artists),
                          lambda a, r: fmt_mod.artist_row(a, r, fmt), writer.append,
                          lambda r, e: writer.placeholder(), span, batch_size)

        elif name == "albums":
            writer.add_sheet("Top Albums", "Top Albums", fmt_mod.ALBUM_HEADER)
            self._batched(name, "Top Albums", self._limited(snap.albums),
                          lambda a, r: fmt_mod.album_row(a, r, fmt), writer.append,
                          lambda r, e: writer.placeholder(), span, batch_size)

        elif name == "tracks":
            writer.add_sheet("Top All-Time Tracks", "All-Time Top Tracks", fmt_mod.TRACK_HEADER)
            self._batched(name, "Top Tracks", self._limited(snap.tracks),
                          lambda t, r: fmt_mod.track_row(t, r, fmt), writer.append,
                          lambda r, e: writer.placeholder(), span, batch_size)

        elif name == "yearly":
            years = self._years()
            # Each year gets a track sheet followed by an artist sheet
            share = span / (2 * len(years))
            for year in years:
                writer.add_sheet(f"Top Tracks {year}", f"Top Tracks of {year}", fmt_mod.TRACK_HEADER)
                self._batched(name, f"Top Tracks {year}", snap.yearly.get(year, []),
                              lambda e, r: fmt_mod.yearly_row(e, r, fmt), writer.append,
                              lambda r, e: writer.placeholder(), share, batch_size)
                writer.add_sheet(f"Top Artists {year}", f"Top Artists of {year}", fmt_mod.YEARLY_ARTIST_HEADER)
                self._batched(name, f"Top Artists {year}", snap.yearly_artists.get(year, []),
                              lambda e, r: fmt_mod.yearly_artist_row(e, r, fmt), writer.append,
                              lambda r, e: writer.placeholder(), share, batch_size)

        elif name == "obsessions":
            writer.add_sheet("Brief Obsessions", "Brief Obsessions (Songs with intense listening periods)",
                             fmt_mod.OBSESSION_HEADER)
            self._batched(name, "Brief Obsessions", self._limited(snap.obsessions),
                          lambda o, r: fmt_mod.obsession_row(o, r, fmt), writer.append,
                          lambda r, e: writer.placeholder(), span, batch_size)

        elif name == "history":
            writer.add_sheet("Streaming History", "Complete Streaming History (Chronological Order)",
                             fmt_mod.HISTORY_HEADER)
            self._batched(name, "streaming history", history,
                          lambda ev, r: fmt_mod.history_row(ev, r, fmt), writer.append,
                          lambda r, e: writer.placeholder(), span, self.profile["history_batch_size"])

    # --- Structured (json) ---

    def _metadata(self, history: list) -> dict:
        stats = self.snapshot.stats
        return {
            "exportDate": datetime.now(timezone.utc).isoformat(),
            "totalEntries": stats.total_entries,
            "totalListeningTime": stats.total_listening_ms,
            "perServiceTime": dict(sorted(stats.per_service_ms.items())),
            "processedPlays": stats.processed_plays,
            "uniqueTracks": stats.unique_tracks,
            "sections": self.options.selected(),
            "historyEntries": len(history),
            "historyTotal": len(self.snapshot.events),
            "historyStride": getattr(self, "history_stride", 1),
            "lowMemory": self.options.hints.low_memory,
        }

    def _structured_list(self, writer, name: str, label: str, items: list, build: Callable,
                         span: float, batch_size: int, key: Optional[str] = None):
        records: List[dict] = []

        def on_error(rank, error):
            records.append(fmt_mod.error_record(rank, error))
            writer.placeholders += 1

        self._batched(name, label, items, build, records.append, on_error, span, batch_size)
        return records

    def _structured_section(self, writer, name: str, span: float, history: list):
        snap = self.snapshot
        batch_size = self.profile["batch_size"]

        if name == "summary":
            writer.set_section("summary", fmt_mod.summary_record(snap.stats, self.formatter))
            self.batches_done += 1
            self.progress += span
            self._report("Summary complete", "summary")
            self._checkpoint()

        elif name == "artists":
            writer.set_section("artists", self._structured_list(
                writer, name, "Top Artists", self._limited(snap.artists), fmt_mod.artist_record, span, batch_size))

        elif name == "albums":
            writer.set_section("albums", self._structured_list(
                writer, name, "Top Albums", self._limited(snap.albums), fmt_mod.album_record, span, batch_size))

        elif name == "tracks":
            writer.set_section("tracks", self._structured_list(
                writer, name, "Top Tracks", self._limited(snap.tracks), fmt_mod.track_record, span, batch_size))

        elif name == "yearly":
            years = self._years()
            share = span / (2 * len(years))
            yearly, yearly_artists = {}, {}
            for year in years:
                yearly[str(year)] = self._structured_list(
                    writer, name, f"Top Tracks {year}", snap.yearly.get(year, []), fmt_mod.yearly_record,
                    share, batch_size)
                yearly_artists[str(year)] = self._structured_list(
                    writer, name, f"Top Artists {year}", snap.yearly_artists.get(year, []),
                    fmt_mod.yearly_artist_record, share, batch_size)
            writer.set_section("yearly", yearly)
            writer.set_section("yearlyArtists", yearly_artists)

        elif name == "obsessions":
            writer.set_section("obsessions", self._structured_list(
                writer, name, "Brief Obsessions", self._limited(snap.obsessions), fmt_mod.obsession_record,
                span, batch_size))

        elif name == "history":
            writer.set_section("history", self._structured_list(
                writer, name, "streaming history", history, fmt_mod.history_record, span,
                self.profile["history_batch_size"]))


# ======================================================================
# Worker Process
# ======================================================================

def export_worker(commands, events):
    """
    Process entry point. Waits for one "start" command carrying the pickled
    (snapshot, options), then runs the job, polling `commands` for "cancel"
    between batches.
    """
    message = commands.get()
    if not isinstance(message, dict) or message.get("type") != "start":
        events.put({"type": "error", "error": f"Expected a start command, got {message!r}"})
        return

    state = {"cancelled": False}

    def should_cancel() -> bool:
        while not state["cancelled"]:
            try:
                command = commands.get_nowait()
            except queue.Empty:
                break
            if isinstance(command, dict) and command.get("type") == "cancel":
                state["cancelled"] = True
        return state["cancelled"]

    try:
        snapshot, options = pickle.loads(message["data"])
        ExportJob(snapshot, options).run(events.put, should_cancel)
    except ExportCancelled:
        events.put({"type": "cancelled"})
    except Exception as e:
        logging.error(f"Export worker failed: {e}", exc_info=True)
        events.put({"type": "error", "error": str(e) or e.__class__.__name__})


# ======================================================================
# Export Manager (caller side)
# ======================================================================

class ExportManager:
    """
    Starts the export process and relays its events.

    callbacks (all optional): on_progress(event), on_complete(payload),
    on_error(message), on_cancelled().
    """

    def __init__(self, snapshot: ExportSnapshot, options: Optional[ExportOptions] = None,
                 callbacks: Optional[Dict[str, Callable]] = None, context=None,
                 timeout: Optional[float] = None, worker: Callable = export_worker):
        self.snapshot = snapshot
        self.options = options or ExportOptions()
        self.callbacks = callbacks or {}
        self.context = context or multiprocessing.get_context()
        self.worker = worker

        self.timeout = config.export_timeout_seconds if timeout is None else timeout
        self.extended = False
        if len(snapshot.events) > config.large_payload_threshold:
            self.timeout += config.export_timeout_extension_seconds
            self.extended = True
            logging.info(f"ExportManager: large payload ({len(snapshot.events)} events), timeout extended to {self.timeout}s")

        self.cancel_flag = False
        self._process = None
        self._commands = None
        self._events = None
        self._setup_error: Optional[str] = None
        self._deadline: Optional[float] = None
        self._finished = False

    def start(self):
        try:
            data = pickle.dumps((self.snapshot, self.options))
        except Exception as e:
            self._setup_error = f"Export data could not be serialized: {e}"
            logging.error(f"ExportManager: {self._setup_error}")
            return

        try:
            self._commands = self.context.Queue()
            self._events = self.context.Queue()
            self._process = self.context.Process(
                target=self.worker, args=(self._commands, self._events), daemon=True
            )
            self._process.start()
        except Exception as e:
            self._setup_error = f"Export process could not be started: {e}"
            logging.error(f"ExportManager: {self._setup_error}", exc_info=True)
            self._cleanup()
            return

        self._commands.put({"type": "start", "data": data})
        if self.cancel_flag:
            self._commands.put({"type": "cancel"})
        self._deadline = time.monotonic() + self.timeout
        logging.info(f"ExportManager: started export process (format={self.options.format}, sections={self.options.selected()})")

    def cancel(self):
        logging.info("ExportManager: Cancellation requested by user.")
        self.cancel_flag = True
        if self._commands is not None and not self._finished:
            try:
                self._commands.put({"type": "cancel"})
            except (ValueError, OSError) as e:
                logging.warning(f"ExportManager: could not deliver cancel command: {e}")

    def _next_event(self) -> Optional[dict]:
        """Block until an event arrives, the deadline passes, or the worker dies."""
        while True:
            remaining = self._deadline - time.monotonic()
            if remaining <= 0:
                return {"type": "error", "error": f"Export timed out after {self.timeout:g}s"}
            try:
                return self._events.get(timeout=min(remaining, 0.5))
            except queue.Empty:
                pass
            if not self._process.is_alive():
                try:
                    return self._events.get(timeout=0.1)
                except queue.Empty:
                    return {
                        "type": "error",
                        "error": f"Export process exited unexpectedly (exit code {self._process.exitcode})",
                    }

    def events(self) -> Iterator[dict]:
        """
        Yield events until a terminal one. After cancel() only the
        "cancelled" acknowledgement is yielded.
        """
        if self._process is None and self._setup_error is None:
            self.start()
        if self._setup_error is not None:
            self._finished = True
            yield {"type": "error", "error": self._setup_error}
            return

        try:
            while True:
                event = self._next_event()
                kind = event.get("type")
                terminal = kind in ("error", "cancelled") or (kind == "progress" and event.get("payload") is not None)

                if self.cancel_flag:
                    if terminal:
                        yield {"type": "cancelled"}
                        return
                    continue

                yield event
                if terminal:
                    if kind == "error":
                        logging.error(f"ExportManager: export failed: {event.get('error')}")
                    return
        finally:
            self._finished = True
            self._cleanup()

    def run(self) -> Optional[bytes]:
        """
        Drive the export to completion, dispatching callbacks.
        Returns the payload, or None if cancelled. Raises ExportError on failure.
        """
        for event in self.events():
            kind = event["type"]
            if kind == "progress":
                if "on_progress" in self.callbacks:
                    self.callbacks["on_progress"](event)
                if event.get("payload") is not None:
                    if "on_complete" in self.callbacks:
                        self.callbacks["on_complete"](event["payload"])
                    return event["payload"]
            elif kind == "cancelled":
                if "on_cancelled" in self.callbacks:
                    self.callbacks["on_cancelled"]()
                return None
            elif kind == "error":
                if "on_error" in self.callbacks:
                    self.callbacks["on_error"](event["error"])
                raise ExportError(event["error"])
        return None

    def _cleanup(self):
        if self._process is not None:
            self._process.join(timeout=1.0)
            if self._process.is_alive():
                logging.warning("ExportManager: terminating export process.")
                self._process.terminate()
                self._process.join(timeout=1.0)
        for q in (self._commands, self._events):
            if q is not None:
                q.cancel_join_thread()
                q.close()
