"""
config.py
Centralized configuration management for StreamScope.
Handles file paths, pipeline constants, export tuning and persistent settings (config.json).
"""

import os
import json
import logging
from datetime import datetime, timezone


class AppConfig:
    def __init__(self):
        # ------------------------------------------------------------------
        # 1. Static Paths & Constants
        # ------------------------------------------------------------------
        self.app_root = os.path.abspath(os.path.dirname(__file__))
        self.reports_dir = os.path.join(self.app_root, "reports")
        self.config_path = os.path.join(self.app_root, "config.json")
        self.log_file = os.path.join(self.app_root, "streamscope.log")

        # Ingestion
        self.min_play_ms = 30000
        self.sentinel_date = datetime(2022, 1, 1, tzinfo=timezone.utc)
        self.authoritative_source = "spotify"
        self.unknown_album = "Unknown Album"
        self.unknown_artist = "Unknown Artist"
        self.deezer_history_sheet = "10_listeningHistory"
        self.csv_delimiters = [",", "\t", "|", ";"]

        # Derived analytics
        self.obsession_max_lifetime_plays = 50
        self.obsession_min_plays_in_window = 5
        self.obsession_window_days = 7
        self.obsession_limit = 100
        self.yearly_top_n = 100

        # Export profiles (volume only, never values)
        self.export_profiles = {
            "standard": {
                "batch_size": 250,
                "history_batch_size": 200,
                "history_sample_threshold": 50000,
                "max_years": None,
                "max_entries": None,
            },
            "constrained": {
                "batch_size": 100,
                "history_batch_size": 50,
                "history_sample_threshold": 10000,
                "max_years": 5,
                "max_entries": 250,
            },
        }

        # ------------------------------------------------------------------
        # 2. Dynamic Settings (Loaded from JSON/Env)
        # ------------------------------------------------------------------
        self.log_level = os.environ.get("STREAMSCOPE_LOG_LEVEL", "")
        self.parse_workers = 4
        self.export_yield_seconds = 0.005
        self.export_timeout_seconds = 300.0
        self.export_timeout_extension_seconds = 300.0
        self.large_payload_threshold = 200000

        # Load persistence
        self.load()

        if not self.log_level:
            self.log_level = "INFO"

    def load(self):
        """Load settings from config.json if it exists."""
        try:
            if os.path.exists(self.config_path):
                with open(self.config_path, "r", encoding="utf-8") as f:
                    data = json.load(f)

                # Log level priority: Env Var > Config File > Default
                if not self.log_level:
                    self.log_level = data.get("log_level", "INFO")

                self.parse_workers = int(data.get("parse_workers", self.parse_workers))
                self.export_yield_seconds = float(data.get("export_yield_seconds", self.export_yield_seconds))
                self.export_timeout_seconds = float(data.get("export_timeout_seconds", self.export_timeout_seconds))
                self.export_timeout_extension_seconds = float(
                    data.get("export_timeout_extension_seconds", self.export_timeout_extension_seconds)
                )
                self.large_payload_threshold = int(data.get("large_payload_threshold", self.large_payload_threshold))
        except Exception as e:
            logging.error(f"Failed to load config: {e}")

    def save(self):
        """Persist current settings to config.json."""
        data = {
            "log_level": self.log_level,
            "parse_workers": self.parse_workers,
            "export_yield_seconds": self.export_yield_seconds,
            "export_timeout_seconds": self.export_timeout_seconds,
            "export_timeout_extension_seconds": self.export_timeout_extension_seconds,
            "large_payload_threshold": self.large_payload_threshold,
        }
        try:
            with open(self.config_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
        except Exception as e:
            logging.error(f"Failed to save config: {e}")

    def export_profile(self, low_memory: bool = False) -> dict:
        """Return a copy of the export tuning profile for the given resource constraint."""
        key = "constrained" if low_memory else "standard"
        return dict(self.export_profiles[key])


# Global Singleton instance
# Modules should import this: `from config import config`
config = AppConfig()
