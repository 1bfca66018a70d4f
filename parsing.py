"""
parsing.py
Data ingestion for StreamScope.

Each vendor export is handled by a FormatAdapter registered in ADAPTERS.
Adapters sniff the file content (JSON keys, CSV headers, workbook sheets)
and turn it into canonical PlayEvents. A file that fails to parse
contributes an empty list; it never aborts the run.
"""

import csv
import io
import json
import logging
import numbers
import re
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional, Tuple

import pandas as pd

from config import config
from models import PlayEvent, SourceFile


# ------------------------------------------------------------
# Value Cleaning
# ------------------------------------------------------------

def _clean(val: Any) -> Optional[str]:
    """Return a stripped string, or None for empty/NaN values."""
    if val is None:
        return None
    try:
        if pd.isna(val):
            return None
    except (TypeError, ValueError):
        pass
    text = str(val).strip()
    return text or None


def _duration(val: Any, default: int) -> int:
    """Coerce a millisecond value to a non-negative int, falling back to `default`."""
    try:
        number = float(val)
    except (TypeError, ValueError):
        return default
    if pd.isna(number):
        return default
    return max(0, int(number))


def _truthy(val: Any) -> bool:
    if isinstance(val, bool):
        return val
    text = _clean(val)
    return text is not None and text.lower() in ("true", "1", "yes", "y")


def _optional_bool(val: Any) -> Optional[bool]:
    if val is None or isinstance(val, bool):
        return val
    text = _clean(val)
    if text is None:
        return None
    return text.lower() in ("true", "1", "yes", "y")


def split_artist_track(text: str) -> Tuple[str, str]:
    """
    Split a combined "Artist - Track" field.
    Without a separator the whole value is the track and the artist is unknown.
    """
    text = text or ""
    dash = text.find(" - ")
    if dash > 0:
        return text[:dash].strip(), text[dash + 3:].strip()
    return config.unknown_artist, text.strip()


# ------------------------------------------------------------
# Timestamp Normalization
# ------------------------------------------------------------

def _looks_numeric(val: Any) -> bool:
    """Epoch candidates: real numbers or digit-only strings."""
    if isinstance(val, bool):
        return False
    if isinstance(val, numbers.Number):
        return not pd.isna(val)
    return isinstance(val, str) and val.strip().isdigit()


# datetime64[ns] covers roughly +/-9.2e15 milliseconds around the epoch
MAX_EPOCH_MS = 9.2e15


def parse_timestamps(values: Iterable[Any], now: Optional[datetime] = None) -> Tuple[List[datetime], List[bool]]:
    """
    Convert heterogeneous timestamp values into timezone-aware UTC datetimes.

    Accepts ISO strings, "YYYY-MM-DD HH:MM" strings, epoch seconds or
    milliseconds (numbers or digit strings) and datetime objects.
    Unparseable, out-of-range or future-dated values are clamped to
    config.sentinel_date. Returns (timestamps, clamped flags).
    """
    now = now or datetime.now(timezone.utc)
    series = pd.Series(list(values), dtype=object)
    if series.empty:
        return [], []

    looks_numeric = series.map(_looks_numeric).astype(bool)
    numeric = pd.to_numeric(series.where(looks_numeric), errors="coerce").astype("float64")
    is_num = looks_numeric & numeric.notna()

    # Epoch values below 1e11 are seconds
    epoch_ms = numeric.where(numeric.abs() >= 1e11, numeric * 1000)
    epoch_ms = epoch_ms.where(is_num & (epoch_ms.abs() < MAX_EPOCH_MS))
    from_num = pd.to_datetime(epoch_ms, unit="ms", utc=True, errors="coerce")

    text = series.where(~looks_numeric)
    from_text = pd.to_datetime(text, utc=True, errors="coerce", format="mixed")

    parsed = from_num.where(is_num, from_text)
    bad = parsed.isna() | (parsed > pd.Timestamp(now))
    if bad.any():
        logging.warning(f"Clamped {int(bad.sum())} unparseable or future timestamps to {config.sentinel_date.date()}")

    stamps = [
        config.sentinel_date if is_bad else ts.to_pydatetime()
        for ts, is_bad in zip(parsed, bad)
    ]
    return stamps, [bool(b) for b in bad]


def coerce_timestamps(values: Iterable[Any], now: Optional[datetime] = None) -> List[datetime]:
    return parse_timestamps(values, now=now)[0]


# ------------------------------------------------------------
# Delimited Text Helpers
# ------------------------------------------------------------

def sniff_delimiter(text: str) -> str:
    """Guess the delimiter among the configured candidates; default to comma."""
    sample = text[:4096]
    try:
        return csv.Sniffer().sniff(sample, delimiters="".join(config.csv_delimiters)).delimiter
    except csv.Error:
        first_line = sample.splitlines()[0] if sample else ""
        counts = {d: first_line.count(d) for d in config.csv_delimiters}
        best = max(config.csv_delimiters, key=lambda d: counts[d])
        return best if counts[best] > 0 else ","


def header_fields(source: SourceFile) -> List[str]:
    """Return the stripped header names of a delimited file."""
    text = source.text
    lines = text.splitlines()
    if not lines:
        return []
    sep = sniff_delimiter(text)
    row = next(csv.reader([lines[0]], delimiter=sep), [])
    return [h.strip() for h in row]


def read_delimited(source: SourceFile) -> pd.DataFrame:
    """Read a delimited file into an all-string DataFrame (empty cells are "")."""
    text = source.text
    df = pd.read_csv(
        io.StringIO(text),
        sep=sniff_delimiter(text),
        dtype=str,
        keep_default_na=False,
        skip_blank_lines=True,
    )
    df.columns = [str(c).strip() for c in df.columns]
    return df


def select_layout(layouts: List[Tuple[str, Tuple[str, ...]]], fields: Iterable[str]) -> Optional[str]:
    """Return the first layout whose required fields are all present."""
    present = set(fields)
    for name, required in layouts:
        if all(f in present for f in required):
            return name
    return None


def _load_json_records(source: SourceFile) -> List[dict]:
    data = json.loads(source.text)
    if not isinstance(data, list):
        return []
    return [r for r in data if isinstance(r, dict)]


# ------------------------------------------------------------
# Adapter Interface
# ------------------------------------------------------------

class FormatAdapter:
    """Capability interface: claim a file by its content, then parse it."""

    name = "base"
    source = "unknown"
    extensions: Tuple[str, ...] = ()

    def detect(self, source_file: SourceFile) -> bool:
        raise NotImplementedError

    def parse(self, source_file: SourceFile) -> List[PlayEvent]:
        raise NotImplementedError

    def _has_extension(self, source_file: SourceFile) -> bool:
        return source_file.extension in self.extensions


# ------------------------------------------------------------
# Spotify (JSON)
# ------------------------------------------------------------

class SpotifyJsonAdapter(FormatAdapter):
    """Spotify extended streaming history and the older account-data export."""

    name = "Spotify JSON"
    source = "spotify"
    extensions = ("json",)
    layouts = [
        ("extended", ("ts", "ms_played")),
        ("account", ("endTime", "msPlayed")),
    ]

    def _layout(self, records: List[dict]) -> Optional[str]:
        fields = set()
        for record in records[:50]:
            fields.update(record.keys())
        return select_layout(self.layouts, fields)

    def detect(self, source_file: SourceFile) -> bool:
        if not self._has_extension(source_file):
            return False
        try:
            records = _load_json_records(source_file)
        except ValueError:
            return False
        return bool(records) and self._layout(records) is not None

    def parse(self, source_file: SourceFile) -> List[PlayEvent]:
        records = _load_json_records(source_file)
        layout = self._layout(records)
        if layout == "extended":
            return self._parse_extended(records)
        if layout == "account":
            return self._parse_account(records)
        return []

    def _parse_extended(self, records: List[dict]) -> List[PlayEvent]:
        stamps, clamped = parse_timestamps([r.get("ts") for r in records])
        events = []
        for record, ts, bad in zip(records, stamps, clamped):
            show = _clean(record.get("episode_show_name"))
            events.append(PlayEvent(
                timestamp=ts,
                track_name=_clean(record.get("master_metadata_track_name")),
                artist_name=_clean(record.get("master_metadata_album_artist_name")) or show or config.unknown_artist,
                album_name=_clean(record.get("master_metadata_album_album_name")),
                ms_played=_duration(record.get("ms_played"), 0),
                source=self.source,
                platform=_clean(record.get("platform")) or "",
                episode_name=_clean(record.get("episode_name")),
                episode_show=show,
                track_uri=_clean(record.get("spotify_track_uri")),
                shuffle=_optional_bool(record.get("shuffle")),
                reason_start=_clean(record.get("reason_start")),
                reason_end=_clean(record.get("reason_end")),
                timestamp_clamped=bad,
            ))
        return events

    def _parse_account(self, records: List[dict]) -> List[PlayEvent]:
        stamps, clamped = parse_timestamps([r.get("endTime") for r in records])
        return [
            PlayEvent(
                timestamp=ts,
                track_name=_clean(record.get("trackName")),
                artist_name=_clean(record.get("artistName")) or config.unknown_artist,
                album_name=None,
                ms_played=_duration(record.get("msPlayed"), 0),
                source=self.source,
                timestamp_clamped=bad,
            )
            for record, ts, bad in zip(records, stamps, clamped)
        ]


# ------------------------------------------------------------
# YouTube Music (Google Takeout JSON)
# ------------------------------------------------------------

class YouTubeMusicJsonAdapter(FormatAdapter):
    """Takeout watch history; only entries tagged as YouTube Music are kept."""

    name = "YouTube Music JSON"
    source = "youtube_music"
    extensions = ("json",)
    estimated_ms = 180000

    def detect(self, source_file: SourceFile) -> bool:
        if not self._has_extension(source_file):
            return False
        try:
            records = _load_json_records(source_file)
        except ValueError:
            return False
        return any(r.get("header") == "YouTube Music" and "title" in r for r in records[:200])

    def parse(self, source_file: SourceFile) -> List[PlayEvent]:
        records = [
            r for r in _load_json_records(source_file)
            if r.get("header") == "YouTube Music" and _clean(r.get("title"))
        ]
        stamps, clamped = parse_timestamps([r.get("time") for r in records])
        events = []
        for record, ts, bad in zip(records, stamps, clamped):
            title = _clean(record.get("title"))
            if title.startswith("Watched "):
                title = title[len("Watched "):]

            artist = config.unknown_artist
            subtitles = record.get("subtitles") or []
            if subtitles and isinstance(subtitles[0], dict):
                name = _clean(subtitles[0].get("name"))
                if name:
                    artist = re.sub(r"\s+-\s+Topic$", "", name)

            events.append(PlayEvent(
                timestamp=ts,
                track_name=title,
                artist_name=artist,
                album_name=None,
                ms_played=self.estimated_ms,
                source=self.source,
                platform="YOUTUBE_MUSIC",
                timestamp_clamped=bad,
            ))
        return events


# ------------------------------------------------------------
# Deezer (XLSX)
# ------------------------------------------------------------

class DeezerXlsxAdapter(FormatAdapter):
    """Deezer personal data workbook; only the listening history sheet is read."""

    name = "Deezer XLSX"
    source = "deezer"
    extensions = ("xlsx",)
    default_ms = 210000

    def detect(self, source_file: SourceFile) -> bool:
        if not self._has_extension(source_file):
            return False
        try:
            with pd.ExcelFile(io.BytesIO(source_file.content)) as book:
                return config.deezer_history_sheet in book.sheet_names
        except Exception:
            return False

    def parse(self, source_file: SourceFile) -> List[PlayEvent]:
        df = pd.read_excel(io.BytesIO(source_file.content), sheet_name=config.deezer_history_sheet)
        logging.info(f"Processing {len(df)} Deezer history entries")
        if df.empty:
            return []

        rows = df.to_dict("records")
        stamps, clamped = parse_timestamps([r.get("Date") for r in rows])
        events = []
        for row, ts, bad in zip(rows, stamps, clamped):
            seconds = row.get("Listening Time")
            ms = _duration(seconds, -1)
            ms = ms * 1000 if ms >= 0 else self.default_ms

            platform = (_clean(row.get("Platform Name")) or "deezer").upper()
            model = _clean(row.get("Platform Model"))

            events.append(PlayEvent(
                timestamp=ts,
                track_name=_clean(row.get("Song Title")),
                artist_name=_clean(row.get("Artist")) or config.unknown_artist,
                album_name=_clean(row.get("Album Title")) or config.unknown_album,
                ms_played=ms,
                source=self.source,
                platform=f"DEEZER-{platform}" + (f"-{model.upper()}" if model else ""),
                isrc=_clean(row.get("ISRC")),
                timestamp_clamped=bad,
            ))
        return events


# ------------------------------------------------------------
# SoundCloud (CSV)
# ------------------------------------------------------------

class SoundcloudCsvAdapter(FormatAdapter):
    name = "SoundCloud CSV"
    source = "soundcloud"
    extensions = ("csv", "tsv", "txt")
    required = ("play_time", "track_title")

    def detect(self, source_file: SourceFile) -> bool:
        if not self._has_extension(source_file):
            return False
        fields = set(header_fields(source_file))
        return all(f in fields for f in self.required)

    @staticmethod
    def estimate_duration(track_name: str) -> int:
        """Long-form uploads get 30 minutes, intros/skits 90 seconds, the rest 3.5 minutes."""
        title = track_name.lower()
        if any(word in title for word in ("podcast", "episode", "mix", "set")):
            return 1800000
        if "intro" in title or "skit" in title:
            return 90000
        return 210000

    def parse(self, source_file: SourceFile) -> List[PlayEvent]:
        df = read_delimited(source_file)
        df = df[(df["play_time"] != "") & (df["track_title"] != "")]
        rows = df.to_dict("records")
        stamps, clamped = parse_timestamps([r["play_time"] for r in rows])

        events = []
        for row, ts, bad in zip(rows, stamps, clamped):
            title = row["track_title"].strip()
            artist, track = config.unknown_artist, title

            if " - " in title:
                parts = title.split(" - ")
                artist = parts[0].strip()
                track = " - ".join(parts[1:]).strip()
            else:
                match = re.match(r"^(.*?)\s+(feat\.|ft\.|\(feat\.|\(ft\.)", title, re.IGNORECASE)
                if match:
                    artist = match.group(1).strip()
                    track = title[len(match.group(0)):].strip()

            url = row.get("track_url", "") or ""
            url_parts = url.split("/")
            uploader = url_parts[3] if len(url_parts) > 3 and url_parts[3] else "unknown"

            events.append(PlayEvent(
                timestamp=ts,
                track_name=track or None,
                artist_name=artist or config.unknown_artist,
                album_name=uploader,
                ms_played=self.estimate_duration(track),
                source=self.source,
                platform="SOUNDCLOUD",
                shuffle=False,
                reason_start="trackdone",
                reason_end="trackdone",
                timestamp_clamped=bad,
            ))
        return events


# ------------------------------------------------------------
# Tidal (CSV)
# ------------------------------------------------------------

class TidalCsvAdapter(FormatAdapter):
    name = "Tidal CSV"
    source = "tidal"
    extensions = ("csv", "tsv", "txt")
    required = ("artist_name", "track_title", "entry_date", "stream_duration_ms")
    default_ms = 210000

    def detect(self, source_file: SourceFile) -> bool:
        if not self._has_extension(source_file):
            return False
        fields = set(header_fields(source_file))
        if all(f in fields for f in self.required):
            return True
        return "tidal" in source_file.name.lower() and {"artist_name", "track_title"} <= fields

    def parse(self, source_file: SourceFile) -> List[PlayEvent]:
        df = read_delimited(source_file)
        df = df[(df["track_title"] != "") & (df["artist_name"] != "")]
        rows = df.to_dict("records")
        stamps, clamped = parse_timestamps([r.get("entry_date") for r in rows])
        return [
            PlayEvent(
                timestamp=ts,
                track_name=row["track_title"].strip(),
                artist_name=row["artist_name"].strip(),
                album_name=_clean(row.get("album_name")) or config.unknown_album,
                ms_played=_duration(row.get("stream_duration_ms"), self.default_ms),
                source=self.source,
                platform="TIDAL",
                shuffle=False,
                reason_start="trackdone",
                reason_end="trackdone",
                timestamp_clamped=bad,
            )
            for row, ts, bad in zip(rows, stamps, clamped)
        ]


# ------------------------------------------------------------
# Apple Music (CSV)
# ------------------------------------------------------------

class AppleMusicCsvAdapter(FormatAdapter):
    """
    Apple Media Services exports. Several files share the .csv extension;
    the layout is decided from the header row, most specific first.
    """

    name = "Apple Music CSV"
    source = "apple_music"
    extensions = ("csv", "tsv", "txt")
    layouts = [
        ("recently_played", ("Track Description", "Total plays")),
        ("play_history", ("Track Name", "Last Played Date")),
        ("daily_tracks", ("Track Description", "Date Played")),
    ]
    user_initiated_ms = 240000
    passive_ms = 30000
    daily_default_ms = 210000
    generic_ms = 180000

    def detect(self, source_file: SourceFile) -> bool:
        if not self._has_extension(source_file):
            return False
        if select_layout(self.layouts, header_fields(source_file)):
            return True
        return "apple" in source_file.name.lower()

    def parse(self, source_file: SourceFile) -> List[PlayEvent]:
        df = read_delimited(source_file)
        layout = select_layout(self.layouts, df.columns)
        logging.info(f"Apple Music file '{source_file.name}' detected as layout: {layout or 'generic'}")

        if layout == "recently_played":
            return self._parse_recently_played(df)
        if layout == "play_history":
            return self._parse_play_history(df)
        if layout == "daily_tracks":
            return self._parse_daily_tracks(df)
        return self._parse_generic(df)

    def _entry(self, track, artist, ts, ms, album=None, platform="APPLE", podcast=False, clamped=False) -> PlayEvent:
        return PlayEvent(
            timestamp=ts,
            track_name=track or None,
            artist_name=artist or config.unknown_artist,
            album_name=album or config.unknown_album,
            ms_played=ms,
            source=self.source,
            platform=platform,
            episode_name=track if podcast else None,
            episode_show=artist if podcast else None,
            timestamp_clamped=clamped,
        )

    def _parse_recently_played(self, df: pd.DataFrame) -> List[PlayEvent]:
        """Each row summarizes N plays; spread them evenly between first and last play."""
        rows = [r for r in df.to_dict("records") if r["Track Description"] and _duration(r["Total plays"], 0) > 0]
        firsts, first_bad = parse_timestamps([r.get("First Event Timestamp") for r in rows])
        lasts, last_bad = parse_timestamps([r.get("Last Event End Timestamp") for r in rows])

        events = []
        for row, first, last, bad_first, bad_last in zip(rows, firsts, lasts, first_bad, last_bad):
            description = row["Track Description"]
            artist, track = split_artist_track(description)
            plays = _duration(row["Total plays"], 1) or 1
            total_ms = _duration(row.get("Total play duration in millis"), 0)
            media_ms = _duration(row.get("Media duration in millis"), 0)
            avg_ms = total_ms // plays if total_ms else media_ms

            podcast = (
                row.get("Media type") == "PODCAST"
                or "podcast" in description.lower()
                or media_ms > 1800000
            )
            container_type = row.get("Container Type") or ""
            album = row.get("Container Description") if "ALBUM" in container_type else None

            if plays == 1:
                stamps = [last]
            else:
                step = (last - first) / (plays - 1)
                stamps = [first + step * i for i in range(plays)]

            for ts in stamps:
                events.append(self._entry(track, artist, ts, avg_ms, album=album, podcast=podcast, clamped=bad_first or bad_last))
        return events

    def _parse_play_history(self, df: pd.DataFrame) -> List[PlayEvent]:
        """No durations in this layout: user-initiated plays are assumed to be full listens."""
        rows = [r for r in df.to_dict("records") if r["Track Name"] and r["Last Played Date"]]
        stamps, clamped = parse_timestamps([r["Last Played Date"] for r in rows])
        events = []
        for row, ts, bad in zip(rows, stamps, clamped):
            artist, track = split_artist_track(row["Track Name"])
            ms = self.user_initiated_ms if _truthy(row.get("Is User Initiated")) else self.passive_ms
            events.append(self._entry(track, artist, ts, ms, clamped=bad))
        return events

    def _daily_timestamp(self, row: dict, now: datetime) -> Tuple[datetime, bool]:
        played = str(row["Date Played"]).strip()
        if len(played) == 8 and played.isdigit():
            hours = 12
            hours_text = str(row.get("Hours") or "").split(",")[0].strip()
            if hours_text.isdigit():
                hours = int(hours_text)
            try:
                ts = datetime(int(played[:4]), int(played[4:6]), int(played[6:8]), hours, tzinfo=timezone.utc)
            except ValueError:
                return config.sentinel_date, True
            if ts > now:
                return config.sentinel_date, True
            return ts, False
        stamps, clamped = parse_timestamps([played], now=now)
        return stamps[0], clamped[0]

    def _parse_daily_tracks(self, df: pd.DataFrame) -> List[PlayEvent]:
        now = datetime.now(timezone.utc)
        events = []
        for row in df.to_dict("records"):
            if not row["Track Description"] or not row["Date Played"]:
                continue
            description = row["Track Description"]
            artist, track = split_artist_track(description)
            ms = _duration(row.get("Play Duration Milliseconds") or None, self.daily_default_ms)
            podcast = "podcast" in description.lower() or (row.get("Media type") == "VIDEO" and ms > 1200000)
            ts, clamped = self._daily_timestamp(row, now)
            events.append(self._entry(
                track, artist, ts, ms,
                platform=_clean(row.get("Source Type")) or "APPLE",
                podcast=podcast,
                clamped=clamped,
            ))
        return events

    def _parse_generic(self, df: pd.DataFrame) -> List[PlayEvent]:
        columns = list(df.columns)
        name_fields = [c for c in columns if any(k in c.lower() for k in ("track", "song", "name", "title", "description"))]
        date_fields = [c for c in columns if any(k in c.lower() for k in ("date", "played", "time"))]
        if not name_fields or not date_fields:
            logging.warning("Could not identify required fields in Apple Music file")
            return []

        name_field, date_field = name_fields[0], date_fields[0]
        rows = [r for r in df.to_dict("records") if r[name_field]]
        stamps, clamped = parse_timestamps([r[date_field] for r in rows])
        events = []
        for row, ts, bad in zip(rows, stamps, clamped):
            artist, track = split_artist_track(row[name_field])
            events.append(self._entry(track, artist, ts, self.generic_ms, platform="", clamped=bad))
        return events


# ------------------------------------------------------------
# Registry & Dispatch
# ------------------------------------------------------------

ADAPTERS: List[FormatAdapter] = [
    SpotifyJsonAdapter(),
    YouTubeMusicJsonAdapter(),
    DeezerXlsxAdapter(),
    SoundcloudCsvAdapter(),
    TidalCsvAdapter(),
    AppleMusicCsvAdapter(),
]


def select_adapter(source: SourceFile, adapters: Optional[List[FormatAdapter]] = None) -> Optional[FormatAdapter]:
    """Return the first registered adapter that claims the file."""
    for adapter in adapters if adapters is not None else ADAPTERS:
        try:
            if adapter.detect(source):
                return adapter
        except Exception as e:
            logging.warning(f"{adapter.name} detection failed for '{source.name}': {e}")
    return None


def parse_source(source: SourceFile, adapters: Optional[List[FormatAdapter]] = None) -> List[PlayEvent]:
    """Parse one file. Any failure is logged and yields an empty list."""
    adapter = select_adapter(source, adapters)
    if adapter is None:
        logging.warning(f"File '{source.name}' doesn't match any known format.")
        return []

    try:
        events = adapter.parse(source)
    except Exception as e:
        logging.error(f"Error processing file '{source.name}' as {adapter.name}: {e}", exc_info=True)
        return []

    logging.info(f"Parsed {len(events)} entries from '{source.name}' ({adapter.name})")
    return events


def parse_file(path: str) -> List[PlayEvent]:
    try:
        source = SourceFile.from_path(path)
    except OSError as e:
        logging.error(f"Could not read '{path}': {e}")
        return []
    return parse_source(source)


def load_files(paths: List[str], max_workers: Optional[int] = None) -> List[PlayEvent]:
    """
    Parse files concurrently and concatenate their events.
    Order of the returned list follows `paths`, but downstream results do not depend on it.
    """
    if not paths:
        return []

    workers = max(1, min(max_workers or config.parse_workers, len(paths)))
    with ThreadPoolExecutor(max_workers=workers) as executor:
        results = list(executor.map(parse_file, paths))

    events: List[PlayEvent] = []
    for batch in results:
        events.extend(batch)
    return events
