"""
tests/conftest.py
Pytest fixtures for StreamScope.
Creates synthetic streaming-history exports (one per supported layout)
in temporary directories, plus a PlayEvent factory.
"""

import pytest
import json
import os
import tempfile
from datetime import datetime, timezone

from openpyxl import Workbook

from models import PlayEvent


def _write(directory, name, content):
    path = os.path.join(directory, name)
    mode = "wb" if isinstance(content, bytes) else "w"
    kwargs = {} if isinstance(content, bytes) else {"encoding": "utf-8", "newline": ""}
    with open(path, mode, **kwargs) as f:
        f.write(content)
    return path


@pytest.fixture
def tmp_dir():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def make_event():
    """
    Factory for PlayEvents. `ts` may be a datetime or an ISO string.
    """
    def _make(ts, track="Song", artist="Artist", ms=200000, source="spotify", album=None, **kwargs):
        if isinstance(ts, str):
            ts = datetime.fromisoformat(ts)
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        return PlayEvent(
            timestamp=ts,
            track_name=track,
            artist_name=artist,
            album_name=album,
            ms_played=ms,
            source=source,
            **kwargs,
        )
    return _make


# ------------------------------------------------------------
# Spotify
# ------------------------------------------------------------

@pytest.fixture
def spotify_extended_records():
    return [
        # 1. Normal full play
        {
            "ts": "2024-03-01T10:00:00Z",
            "platform": "ios",
            "ms_played": 240000,
            "master_metadata_track_name": "Midnight City",
            "master_metadata_album_artist_name": "M83",
            "master_metadata_album_album_name": "Hurry Up, We're Dreaming",
            "spotify_track_uri": "spotify:track:0001",
            "episode_name": None,
            "episode_show_name": None,
            "reason_start": "clickrow",
            "reason_end": "trackdone",
            "shuffle": False,
        },
        # 2. Short play (skipped after 10s)
        {
            "ts": "2024-03-02T10:00:00Z",
            "platform": "ios",
            "ms_played": 10000,
            "master_metadata_track_name": "Midnight City",
            "master_metadata_album_artist_name": "M83",
            "master_metadata_album_album_name": "Hurry Up, We're Dreaming",
            "spotify_track_uri": "spotify:track:0001",
            "reason_start": "clickrow",
            "reason_end": "fwdbtn",
            "shuffle": True,
        },
        # 3. Podcast episode (no track name)
        {
            "ts": "2024-03-03T10:00:00Z",
            "platform": "android",
            "ms_played": 1200000,
            "master_metadata_track_name": None,
            "master_metadata_album_artist_name": None,
            "master_metadata_album_album_name": None,
            "episode_name": "Episode 1",
            "episode_show_name": "The Show",
        },
        # 4. Broken timestamp
        {
            "ts": "not a date",
            "platform": "web",
            "ms_played": 200000,
            "master_metadata_track_name": "Wait",
            "master_metadata_album_artist_name": "M83",
            "master_metadata_album_album_name": "Hurry Up, We're Dreaming",
        },
    ]


@pytest.fixture
def spotify_extended_file(tmp_dir, spotify_extended_records):
    return _write(tmp_dir, "Streaming_History_Audio_2024.json", json.dumps(spotify_extended_records))


@pytest.fixture
def spotify_account_file(tmp_dir):
    records = [
        {"endTime": "2023-05-01 12:00", "artistName": "Daft Punk", "trackName": "One More Time", "msPlayed": 320000},
        {"endTime": "2023-05-01 12:06", "artistName": "Daft Punk", "trackName": "Aerodynamic", "msPlayed": 5000},
    ]
    return _write(tmp_dir, "StreamingHistory0.json", json.dumps(records))


# ------------------------------------------------------------
# Apple Music
# ------------------------------------------------------------

@pytest.fixture
def apple_play_history_file(tmp_dir):
    content = (
        "Track Name,Last Played Date,Is User Initiated\n"
        "M83 - Midnight City,1709287200000,true\n"
        "Unknown Song,1709290800000,false\n"
    )
    return _write(tmp_dir, "Apple Music - Track Play History.csv", content)


@pytest.fixture
def apple_recently_played_file(tmp_dir):
    content = (
        "Track Description,Total plays,First Event Timestamp,Last Event End Timestamp,"
        "Total play duration in millis,Media duration in millis,Container Type,Container Description,Media type\n"
        "M83 - Midnight City,3,2024-01-01T00:00:00Z,2024-01-03T00:00:00Z,720000,240000,ALBUM,Hurry Up We're Dreaming,AUDIO\n"
        "Daft Punk - One More Time,0,2024-01-01T00:00:00Z,2024-01-01T00:00:00Z,0,320000,ALBUM,Discovery,AUDIO\n"
    )
    return _write(tmp_dir, "Apple Music - Recently Played Tracks.csv", content)


@pytest.fixture
def apple_daily_tracks_file(tmp_dir):
    content = (
        "Track Description,Date Played,Hours,Play Duration Milliseconds,Source Type,Media type\n"
        'Daft Punk - One More Time,20230115,"14, 15",320000,IPHONE,AUDIO\n'
        "Daft Punk - Aerodynamic,20230116,,,,AUDIO\n"
    )
    return _write(tmp_dir, "Apple Music - Play History Daily Tracks.csv", content)


# ------------------------------------------------------------
# Tidal / SoundCloud
# ------------------------------------------------------------

@pytest.fixture
def tidal_file(tmp_dir):
    content = (
        "artist_name\ttrack_title\tentry_date\tstream_duration_ms\talbum_name\n"
        "M83\tMidnight City\t2024-03-05 10:00\t245000\tHurry Up, We're Dreaming\n"
        "\tNo Artist Row\t2024-03-05 11:00\t245000\t\n"
    )
    return _write(tmp_dir, "streaming.tsv", content)


@pytest.fixture
def soundcloud_file(tmp_dir):
    content = (
        "play_time,track_title,track_url\n"
        "2024-03-06 09:00,M83 - Midnight City (Live),https://soundcloud.com/m83/midnight-city-live\n"
        "2024-03-06 10:00,Weekly Podcast Episode 4,https://soundcloud.com/somepod/ep4\n"
    )
    return _write(tmp_dir, "soundcloud_history.csv", content)


# ------------------------------------------------------------
# Deezer (xlsx) / YouTube Music
# ------------------------------------------------------------

@pytest.fixture
def deezer_file(tmp_dir):
    wb = Workbook()
    profile = wb.active
    profile.title = "1_profile"
    profile.append(["Email", "user@example.com"])

    history = wb.create_sheet("10_listeningHistory")
    history.append([
        "Song Title", "Artist", "ISRC", "Album Title", "IP Address",
        "Listening Time", "Platform Name", "Platform Model", "Date",
    ])
    history.append([
        "Midnight City", "M83", "FR6V81141061", "Hurry Up, We're Dreaming", "127.0.0.1",
        243, "web", None, "2024-03-07 08:00:00",
    ])
    history.append([
        "One More Time", "Daft Punk", "GBDUW0000053", "Discovery", "127.0.0.1",
        None, "ios", "iphone", "2024-03-07 09:00:00",
    ])

    path = os.path.join(tmp_dir, "deezer-data.xlsx")
    wb.save(path)
    return path


@pytest.fixture
def youtube_music_file(tmp_dir):
    records = [
        {
            "header": "YouTube Music",
            "title": "Watched Midnight City",
            "subtitles": [{"name": "M83 - Topic"}],
            "time": "2024-03-08T12:00:00.000Z",
        },
        {
            "header": "YouTube",
            "title": "Watched a cat video",
            "subtitles": [{"name": "Cats"}],
            "time": "2024-03-08T13:00:00.000Z",
        },
    ]
    return _write(tmp_dir, "watch-history.json", json.dumps(records))


@pytest.fixture
def broken_json_file(tmp_dir):
    return _write(tmp_dir, "Streaming_History_Broken.json", "{not valid json")


@pytest.fixture
def all_source_files(
    spotify_extended_file, spotify_account_file, apple_play_history_file,
    apple_recently_played_file, tidal_file, soundcloud_file, deezer_file, youtube_music_file,
):
    return [
        spotify_extended_file, spotify_account_file, apple_play_history_file,
        apple_recently_played_file, tidal_file, soundcloud_file, deezer_file, youtube_music_file,
    ]
