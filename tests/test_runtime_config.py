"""
Tests for runtime config validation and merging.
"""
import pytest

from app.core.runtime_config import (
    RuntimeConfig,
    as_hex_color,
    as_number,
    as_string_list,
    resolve_runtime_config,
)


# =============================================================================
# Normalizer Tests
# =============================================================================

class TestNormalizers:
    """Tests for single-field normalizers."""

    def test_number_accepts_numeric_strings(self):
        assert as_number("1.5") == 1.5
        assert as_number(3) == 3.0

    def test_number_rejects_bool_and_non_finite(self):
        assert as_number(True) is None
        assert as_number(float("nan")) is None
        assert as_number(float("inf")) is None
        assert as_number("fast") is None

    def test_hex_color_adds_hash_and_uppercases(self):
        assert as_hex_color("ff00aa") == "#FF00AA"
        assert as_hex_color("#abcdef") == "#ABCDEF"

    def test_hex_color_rejects_malformed(self):
        assert as_hex_color("#fff") is None
        assert as_hex_color("red") is None
        assert as_hex_color(123456) is None

    def test_string_list_caps_items_and_length(self):
        items = as_string_list([f"mechanic-number-{i}-long-name" for i in range(20)])
        assert len(items) == 12
        assert all(len(item) <= 20 for item in items)

    def test_string_list_drops_blank_and_non_strings(self):
        assert as_string_list(["jump", " ", 5, "dash"]) == ["jump", "dash"]


# =============================================================================
# Merge Tests
# =============================================================================

class TestResolveRuntimeConfig:
    """Tests for priority merging and clamping."""

    def test_defaults_when_empty(self):
        config = resolve_runtime_config()
        assert config == RuntimeConfig()
        assert config.time_scale == 1.0
        assert config.difficulty == 0.5
        assert config.primary_color == "#22C55E"
        assert config.fog_density is None

    def test_values_are_clamped(self):
        config = resolve_runtime_config({
            "timeScale": 10,
            "difficulty": -3,
            "speed": 100,
            "gravityY": 5,
            "fogDensity": 1,
        })
        assert config.time_scale == 2.0
        assert config.difficulty == 0.0
        assert config.speed == 20.0
        assert config.gravity_y == 0.0
        assert config.fog_density == 0.1

    def test_camel_and_snake_keys(self):
        config = resolve_runtime_config({"time_scale": 1.5, "primaryColor": "00ff00"})
        assert config.time_scale == 1.5
        assert config.primary_color == "#00FF00"

    def test_first_valid_source_wins(self):
        override = {"theme": "space", "difficulty": "hard"}
        drafted = {"theme": "jungle", "difficulty": 0.8, "genre": "runner"}
        config = resolve_runtime_config(override, drafted)
        assert config.theme == "space"
        assert config.difficulty == 0.8
        assert config.genre == "runner"

    def test_invalid_color_falls_through_to_default(self):
        config = resolve_runtime_config({"accentColor": "not-a-color"})
        assert config.accent_color == "#F59E0B"

    def test_fog_enabled_requires_bool(self):
        assert resolve_runtime_config({"fogEnabled": "yes"}).fog_enabled is None
        assert resolve_runtime_config({"fogEnabled": False}).fog_enabled is False

    def test_unknown_keys_ignored(self):
        config = resolve_runtime_config({"script": "rm -rf /", "theme": "city"})
        assert "script" not in config.to_patch_dict()
        assert config.theme == "city"

    def test_long_strings_truncated(self):
        config = resolve_runtime_config({"theme": "x" * 100, "notes": "n" * 900})
        assert len(config.theme) == 40
        assert len(config.notes) == 500

    def test_patch_dict_uses_camel_case_and_omits_unset(self):
        data = resolve_runtime_config({"cameraZoom": 12}).to_patch_dict()
        assert data["timeScale"] == 1.0
        assert data["cameraZoom"] == 12.0
        assert "fogDensity" not in data
        assert "playerColor" not in data

    @pytest.mark.parametrize("value", [None, "", [], {}])
    def test_empty_values_use_fallback(self, value):
        assert resolve_runtime_config({"theme": value}).theme == "default"
