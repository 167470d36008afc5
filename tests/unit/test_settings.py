"""
Unit Tests for AutoCast settings loading
"""

import json

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

import core_settings


class TestLoadSettings:
    """Tests for the settings file merge."""

    def test_defaults_without_file(self, tmp_path):
        """A missing file yields the defaults."""
        settings = core_settings.load_settings(str(tmp_path / "missing.json"))
        assert settings == core_settings.DEFAULT_SETTINGS

    def test_section_merge(self, tmp_path):
        """Saved keys override defaults within a section."""
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"retry": {"maxRetries": 5}}))
        settings = core_settings.load_settings(str(path))
        assert settings["retry"]["maxRetries"] == 5
        assert settings["retry"]["backoffSeconds"] == 5.0
        assert settings["cast"]["connectTimeout"] == 10.0

    def test_defaults_not_mutated(self, tmp_path):
        """Merging never mutates DEFAULT_SETTINGS."""
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"discovery": {"timeout": 30}}))
        core_settings.load_settings(str(path))
        assert core_settings.DEFAULT_SETTINGS["discovery"]["timeout"] == 5.0

    def test_corrupt_file(self, tmp_path):
        """Unreadable JSON falls back to defaults."""
        path = tmp_path / "settings.json"
        path.write_text("{not json")
        assert core_settings.load_settings(str(path)) == core_settings.DEFAULT_SETTINGS

    def test_save_and_get(self, tmp_path):
        """Saved settings are read back through get_setting."""
        path = str(tmp_path / "settings.json")
        settings = core_settings.load_settings(path)
        settings["retry"]["maxRetries"] = 7
        assert core_settings.save_settings(settings, path) is True
        try:
            core_settings.reload_settings(path)
            assert core_settings.get_setting("retry", "maxRetries") == 7
            assert core_settings.get_setting("retry", "unknown", "fallback") == "fallback"
        finally:
            core_settings.reload_settings()
