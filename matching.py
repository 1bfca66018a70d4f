"""
matching.py
Track identity matching for StreamScope.

Collapses naming variance across services so that "Song (feat. X)" by
"A & X" and "Song" by "A" count as one track. Also resolves the best-known
album name for every play.
"""

import re
from typing import Dict, Iterable, List, Optional, Tuple

from config import config
from models import NormalizedPlay, PlayEvent, TrackVariant


# ------------------------------------------------------------
# Patterns
# ------------------------------------------------------------

# Order matters: each pattern removes its first match before the next runs.
FEATURE_PATTERNS = [
    re.compile(r"\(feat\.\s*(.*?)\)", re.IGNORECASE),
    re.compile(r"\[feat\.\s*(.*?)\]", re.IGNORECASE),
    re.compile(r"\(ft\.\s*(.*?)\)", re.IGNORECASE),
    re.compile(r"\[ft\.\s*(.*?)\]", re.IGNORECASE),
    re.compile(r"\(with\s*(.*?)\)", re.IGNORECASE),
    re.compile(r"\[with\s*(.*?)\]", re.IGNORECASE),
    re.compile(r"\sfeat\.?\s+(.*?)(?=\s*[-,]|$)", re.IGNORECASE),
    re.compile(r"\sft\.?\s+(.*?)(?=\s*[-,]|$)", re.IGNORECASE),
    re.compile(r"\sfeaturing\s+(.*?)(?=\s*[-,]|$)", re.IGNORECASE),
]

HYPHEN_REMIX = re.compile(r"\s-\s.*?remix", re.IGNORECASE)

TITLE_CLEANUP = [
    (re.compile(r"\(.*?version\)"), ""),
    (re.compile(r"\[.*?version\]"), ""),
    (re.compile(r"\(.*?edit\)"), ""),
    (re.compile(r"\[.*?edit\]"), ""),
    (re.compile(r"\(.*?remix\)"), ""),
    (re.compile(r"\[.*?remix\]"), ""),
    (re.compile(r"\s+"), " "),
    (re.compile(r"\s-\s"), " "),
    (re.compile(r"^\s*-\s*"), ""),
    (re.compile(r"\s*-\s*$"), ""),
    (re.compile(r"[^\w\s]"), ""),
]

ARTIST_SEPARATORS = re.compile(r"\s*(?:&|,|\bfeat\.|\bft\.|\band\b)\s*", re.IGNORECASE)

ALBUM_CLEANUP = [
    re.compile(
        r"(\(|\[)?\s*(deluxe|special|expanded|remastered|anniversary|edition|version|complete|bonus|tracks)"
        r"(\s*edition)?\s*(\)|\])?",
        re.IGNORECASE,
    ),
    re.compile(r"(\(|\[)\s*\d{4}\s*(\)|\])"),
    re.compile(r"(\(|\[)?\s*feat\..*(\)|\])?", re.IGNORECASE),
    re.compile(r"(\(|\[)\s*(\)|\])"),
]

DISPLAY_FEATURE = re.compile(r"feat\.|ft\.|with", re.IGNORECASE)

# Known mis-split that the general heuristic cannot resolve:
# (required substrings of "track artist", canonical track, canonical artist)
CANONICAL_IDENTITIES = [
    (
        ("just dropped in", "kenny rogers"),
        "Just Dropped In (To See What Condition My Condition Is In)",
        "Kenny Rogers & The First Edition",
    ),
]


# ------------------------------------------------------------
# Normalization Primitives
# ------------------------------------------------------------

def normalize_title(text: Optional[str]) -> Tuple[str, List[str]]:
    """
    Normalize a track title (or artist name) for matching.
    Returns (normalized_text, feature_artists).
    """
    if not text:
        return "", []

    features = []
    working = text
    for pattern in FEATURE_PATTERNS:
        match = pattern.search(working)
        if match and match.group(1):
            features.append(match.group(1).strip())
            working = working.replace(match.group(0), " ", 1)

    working = working.lower()
    working = HYPHEN_REMIX.sub("", working, count=1)
    for pattern, repl in TITLE_CLEANUP:
        working = pattern.sub(repl, working)

    return working.strip(), features


def split_artists(artist: Optional[str]) -> List[str]:
    """Split an artist credit on collaboration separators. First entry is the primary artist."""
    if not artist or not artist.strip():
        return [config.unknown_artist]
    parts = [p.strip() for p in ARTIST_SEPARATORS.split(artist) if p and p.strip()]
    return parts or [artist.strip()]


def primary_artist(artist: Optional[str]) -> str:
    return split_artists(artist)[0]


def canonical_identity(track: Optional[str], artist: Optional[str]) -> Optional[Tuple[str, str]]:
    """Return the fixed (track, artist) for a known special case, else None."""
    combined = f"{track or ''} {artist or ''}".lower()
    for needles, canon_track, canon_artist in CANONICAL_IDENTITIES:
        if all(n in combined for n in needles):
            return canon_track, canon_artist
    return None


def make_match_key(track: Optional[str], artist: Optional[str]) -> str:
    """normalized(track) | normalized(primary artist). Empty when either side is missing."""
    if not track or not artist:
        return ""
    canon = canonical_identity(track, artist)
    if canon:
        track, artist = canon
    return f"{normalize_title(track)[0]}|{normalize_title(primary_artist(artist))[0]}"


def normalize_album_name(album: Optional[str]) -> str:
    if not album:
        return ""
    working = album.lower()
    for pattern in ALBUM_CLEANUP:
        working = pattern.sub("", working)
    return re.sub(r"\s+", " ", working).strip()


def _is_known_album(album: Optional[str]) -> bool:
    return bool(album) and album != config.unknown_album


def merge_unique(target: List[str], values: Iterable[str]):
    """Append values not already present (case-insensitive), preserving order."""
    seen = {v.lower() for v in target}
    for value in values:
        if value and value.lower() not in seen:
            target.append(value)
            seen.add(value.lower())


# ------------------------------------------------------------
# Run-Scoped Cache
# ------------------------------------------------------------

class MatchCache:
    """
    Memoizes normalization results for one pipeline run.
    Bound to a dataset identity; binding to a different identity clears it.
    """

    def __init__(self):
        self.identity: Optional[str] = None
        self._titles: Dict[str, Tuple[str, List[str]]] = {}
        self._keys: Dict[Tuple[str, str], str] = {}
        self.hits = 0
        self.misses = 0

    def bind(self, identity: str):
        if identity != self.identity:
            self.clear()
            self.identity = identity

    def clear(self):
        self._titles.clear()
        self._keys.clear()
        self.hits = 0
        self.misses = 0

    def __len__(self):
        return len(self._titles) + len(self._keys)

    def normalized(self, text: str) -> Tuple[str, List[str]]:
        if text in self._titles:
            self.hits += 1
        else:
            self.misses += 1
            self._titles[text] = normalize_title(text)
        normalized, features = self._titles[text]
        return normalized, list(features)

    def match_key(self, track: str, artist: str) -> str:
        pair = (track, artist)
        if pair in self._keys:
            self.hits += 1
            return self._keys[pair]
        self.misses += 1
        key = make_match_key(track, artist)
        self._keys[pair] = key
        return key


# ------------------------------------------------------------
# Album Resolution
# ------------------------------------------------------------

class AlbumResolver:
    """
    Best-known album per track. Values from the authoritative source win;
    otherwise the first non-empty, non-unknown value seen is kept.
    """

    def __init__(self, authoritative_source: Optional[str] = None):
        self.authoritative_source = authoritative_source or config.authoritative_source
        self.by_pair: Dict[Tuple[str, str], str] = {}
        self.by_key: Dict[str, str] = {}
        self._authoritative_pairs = set()
        self._authoritative_keys = set()

    @staticmethod
    def pair(track: str, artist: str) -> Tuple[str, str]:
        return track.lower().strip(), artist.lower().strip()

    def _offer(self, table: dict, authoritative: set, key, album: str, is_auth: bool):
        if is_auth and key not in authoritative:
            table[key] = album
            authoritative.add(key)
        elif key not in table:
            table[key] = album

    def add(self, track: str, artist: str, album: Optional[str], source: str, match_key: str = ""):
        if not _is_known_album(album):
            return
        is_auth = source == self.authoritative_source
        self._offer(self.by_pair, self._authoritative_pairs, self.pair(track, artist), album, is_auth)
        if match_key:
            self._offer(self.by_key, self._authoritative_keys, match_key, album, is_auth)

    def resolve(self, track: str, artist: str, album: Optional[str], source: str, match_key: str = "") -> str:
        """Authoritative plays keep their own album; others are backfilled from the lookup."""
        if source == self.authoritative_source and _is_known_album(album):
            return album
        found = self.by_pair.get(self.pair(track, artist)) or (self.by_key.get(match_key) if match_key else None)
        if found:
            return found
        return album if _is_known_album(album) else config.unknown_album


# ------------------------------------------------------------
# Display Selection
# ------------------------------------------------------------

def choose_display_variant(variants: List[TrackVariant], authoritative_source: Optional[str] = None) -> Optional[TrackVariant]:
    """
    Prefer the authoritative source, then a title carrying a feature marker,
    then an "&" artist credit. Ties keep the first-seen variant.
    """
    if not variants:
        return None
    auth = authoritative_source or config.authoritative_source
    return min(
        variants,
        key=lambda v: (
            v.source != auth,
            not DISPLAY_FEATURE.search(v.track_name or ""),
            "&" not in (v.artist_name or ""),
        ),
    )


# ------------------------------------------------------------
# Event Normalization
# ------------------------------------------------------------

def skip_reason(event: PlayEvent) -> Optional[str]:
    """
    Classify events excluded from aggregation. Missing titles are checked
    first so that every event lands in exactly one bucket.
    """
    if not event.track_name:
        return "null_track"
    if event.ms_played < config.min_play_ms:
        return "short"
    return None


def normalize_events(events: List[PlayEvent], cache: Optional[MatchCache] = None) -> Tuple[List[NormalizedPlay], Dict[str, int]]:
    """
    Normalize the countable events.
    Returns (plays, skipped) where skipped counts "null_track" and "short" events.
    """
    cache = cache if cache is not None else MatchCache()
    skipped = {"null_track": 0, "short": 0}

    valid = []
    for event in events:
        reason = skip_reason(event)
        if reason:
            skipped[reason] += 1
            continue
        track, artist = event.track_name, event.artist_name or config.unknown_artist
        canon = canonical_identity(track, artist)
        if canon:
            track, artist = canon
        valid.append((event, track, artist, cache.match_key(track, artist)))

    resolver = AlbumResolver()
    for event, track, artist, key in valid:
        resolver.add(track, artist, event.album_name, event.source, key)

    plays = []
    for event, track, artist, key in valid:
        credits = split_artists(artist)
        features: List[str] = []
        merge_unique(features, cache.normalized(track)[1])
        merge_unique(features, cache.normalized(artist)[1])
        merge_unique(features, credits[1:])

        plays.append(NormalizedPlay(
            event=event,
            match_key=key,
            track_name=track,
            artist_name=artist,
            primary_artist=credits[0],
            feature_artists=features,
            album_name=resolver.resolve(track, artist, event.album_name, event.source, key),
        ))

    return plays, skipped
