"""
AutoCast Settings - Environment configuration and the JSON settings file

Environment variables are read once at import. Tunables (timeouts, retry
policy, discovery) live in a JSON file merged over DEFAULT_SETTINGS.
"""

import copy
import json
import logging
import os

logger = logging.getLogger(__name__)

# ============================================================
# Configuration - Environment with home-directory defaults
# ============================================================
HOME_DIR = os.path.expanduser("~")

DB_PATH = os.environ.get('AUTOCAST_DB_PATH', os.path.join(HOME_DIR, "autocast.db"))
SETTINGS_FILE = os.environ.get('AUTOCAST_SETTINGS_FILE', os.path.join(HOME_DIR, "autocast-settings.json"))
LOG_DIR = os.environ.get('AUTOCAST_LOG_DIR', os.path.join(HOME_DIR, "autocast-logs"))
LOG_LEVEL = os.environ.get('AUTOCAST_LOG_LEVEL', 'INFO').upper()
API_PORT = int(os.environ.get('AUTOCAST_PORT', '3000'))
TIMEZONE = os.environ.get('AUTOCAST_TIMEZONE', 'Asia/Tokyo')
YOUTUBE_API_KEY = os.environ.get('YOUTUBE_API_KEY', '')

AUTOCAST_VERSION = "1.0.0"

# ============================================================
# Settings Management
# ============================================================
DEFAULT_SETTINGS = {
    "cast": {"connectTimeout": 10.0, "launchTimeout": 15.0, "loadTimeout": 15.0,
             "stopTimeout": 10.0, "defaultPort": 8009},
    "discovery": {"timeout": 5.0, "probeTimeout": 1.0, "probeWorkers": 64},
    "retry": {"maxRetries": 3, "backoffSeconds": 5.0},
}


def load_settings(path=None):
    """Settings file merged section by section over the defaults."""
    path = path or SETTINGS_FILE
    settings = copy.deepcopy(DEFAULT_SETTINGS)
    try:
        if os.path.exists(path):
            with open(path, 'r') as f:
                saved = json.load(f)
            for key in saved:
                if key in settings and isinstance(settings[key], dict) and isinstance(saved[key], dict):
                    settings[key].update(saved[key])
                elif key in settings:
                    settings[key] = saved[key]
    except (OSError, ValueError) as e:
        logger.warning(f"Error loading settings from {path}: {e}")
    return settings


def save_settings(settings, path=None):
    path = path or SETTINGS_FILE
    try:
        with open(path, 'w') as f:
            json.dump(settings, f, indent=2)
        return True
    except OSError as e:
        logger.error(f"Error saving settings to {path}: {e}")
        return False


app_settings = load_settings()


def get_setting(section, key, default=None):
    """Read one merged value, e.g. get_setting('retry', 'maxRetries')."""
    return app_settings.get(section, {}).get(key, default)


def reload_settings(path=None):
    global app_settings
    app_settings = load_settings(path)
    return app_settings
