"""
User settings for Ensemble.

Settings live in ~/.ensemble/settings.json and are merged over the
built-in defaults, so keys added in newer versions always exist.
"""
import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

_LOGGER = logging.getLogger(__name__)

HOME_ENV = "ENSEMBLE_HOME"
SETTINGS_FILE = "settings.json"

SAMPLE_BASE_URL = "https://gleitz.github.io/midi-js-soundfonts/FluidR3_GM"

DEFAULT_SETTINGS: Dict[str, Dict[str, Any]] = {
    "audio": {
        "sample_rate": 44100,
        "buffer_size": 512,
        "output_device": "Default",
    },
    "playback": {
        "schedule_ahead": 0.12,  # seconds
        "tick_rate": 60,  # playhead updates per second
    },
    "samples": {
        "base_url": SAMPLE_BASE_URL,
        "local_dir": None,
    },
}


def get_settings_dir() -> Path:
    """Settings directory (ENSEMBLE_HOME or ~/.ensemble)."""
    configured = os.environ.get(HOME_ENV)
    if configured:
        return Path(configured).expanduser()
    return Path.home() / ".ensemble"


def get_settings_path() -> Path:
    """Path to settings.json."""
    return get_settings_dir() / SETTINGS_FILE


def merge_settings(defaults: Dict[str, Dict[str, Any]], loaded: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    merged = copy.deepcopy(defaults)
    for section, values in loaded.items():
        if isinstance(values, dict) and section in merged:
            merged[section].update(values)
        else:
            merged[section] = values
    return merged


def load_settings(path: Optional[Path] = None) -> Dict[str, Dict[str, Any]]:
    """
    Load settings, creating the file with defaults if it does not exist.

    Args:
        path: Settings file (defaults to get_settings_path())

    Returns:
        Settings dictionary, grouped by section
    """
    config_path = Path(path) if path else get_settings_path()

    if config_path.exists():
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                loaded = json.load(f)
            if not isinstance(loaded, dict):
                raise ValueError("settings root must be an object")
            return merge_settings(DEFAULT_SETTINGS, loaded)
        except (OSError, ValueError) as e:
            _LOGGER.warning("[SETTINGS] Failed to load %s, using defaults: %s", config_path, e)
            return copy.deepcopy(DEFAULT_SETTINGS)

    defaults = copy.deepcopy(DEFAULT_SETTINGS)
    try:
        save_settings(defaults, config_path)
        _LOGGER.info("[SETTINGS] Created new settings file with defaults: %s", config_path)
    except OSError as e:
        _LOGGER.warning("[SETTINGS] Failed to save default settings: %s", e)
    return defaults


def save_settings(settings: Dict[str, Any], path: Optional[Path] = None):
    """
    Save settings to disk.

    Args:
        settings: Settings dictionary
        path: Settings file (defaults to get_settings_path())
    """
    config_path = Path(path) if path else get_settings_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w", encoding="utf-8") as f:
        json.dump(settings, f, indent=2)
