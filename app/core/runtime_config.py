"""
Runtime configuration validation and merging.

Every value that reaches a generated patch file passes through here. Sources are
merged field by field in priority order (caller overrides, then drafted values,
then fallbacks); the first source holding a usable value wins and is clamped
into range.
"""
import math
import re
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

# =============================================================================
# Constants
# =============================================================================

HEX_COLOR_PATTERN = re.compile(r"^#[0-9a-fA-F]{6}$")

MAX_THEME_LENGTH = 40
MAX_NOTES_LENGTH = 500
MAX_GENRE_LENGTH = 30
MAX_ASSETS_TYPE_LENGTH = 30
MAX_MECHANICS = 12
MAX_MECHANIC_LENGTH = 20

# field -> (min, max, fallback); fallback None means the field is optional
NUMERIC_FIELDS: dict[str, tuple[float, float, Optional[float]]] = {
    "time_scale": (0.5, 2.0, 1.0),
    "difficulty": (0.0, 1.0, 0.5),
    "speed": (0.0, 20.0, 5.0),
    "fog_density": (0.0, 0.1, None),
    "camera_zoom": (1.0, 30.0, None),
    "gravity_y": (-50.0, 0.0, None),
    "jump_force": (0.0, 50.0, None),
}

# field -> (max length, fallback)
STRING_FIELDS: dict[str, tuple[int, str]] = {
    "theme": (MAX_THEME_LENGTH, "default"),
    "notes": (MAX_NOTES_LENGTH, ""),
    "genre": (MAX_GENRE_LENGTH, "platformer"),
    "assets_type": (MAX_ASSETS_TYPE_LENGTH, "lowpoly"),
}

COLOR_FIELDS: dict[str, Optional[str]] = {
    "primary_color": "#22C55E",
    "secondary_color": "#3B82F6",
    "accent_color": "#F59E0B",
    "player_color": None,
}


class RuntimeConfig(BaseModel):
    """Validated runtime parameters embedded into the built project."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    time_scale: float = 1.0
    difficulty: float = 0.5
    theme: str = "default"
    notes: str = ""
    speed: float = 5.0
    genre: str = "platformer"
    assets_type: str = "lowpoly"
    mechanics: list[str] = []
    primary_color: str = "#22C55E"
    secondary_color: str = "#3B82F6"
    accent_color: str = "#F59E0B"
    player_color: Optional[str] = None
    fog_enabled: Optional[bool] = None
    fog_density: Optional[float] = None
    camera_zoom: Optional[float] = None
    gravity_y: Optional[float] = None
    jump_force: Optional[float] = None

    def to_patch_dict(self) -> dict[str, Any]:
        """Serialize with camelCase keys, omitting unset optional fields."""
        return self.model_dump(by_alias=True, exclude_none=True)


# =============================================================================
# Field Normalizers (return None when the value is unusable)
# =============================================================================

def clamp(value: float, low: float, high: float) -> float:
    """Clamp value into [low, high]."""
    return max(low, min(high, value))


def as_number(value: Any) -> Optional[float]:
    """Accept finite ints/floats and numeric strings; reject bools."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(number):
        return None
    return number


def as_short_string(value: Any, max_length: int) -> Optional[str]:
    """Trimmed non-empty string cut to max_length."""
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    return text[:max_length]


def as_string_list(value: Any) -> Optional[list[str]]:
    """Trimmed non-empty strings, each capped, at most MAX_MECHANICS items."""
    if not isinstance(value, (list, tuple)):
        return None
    items = []
    for item in value:
        text = as_short_string(item, MAX_MECHANIC_LENGTH)
        if text:
            items.append(text)
        if len(items) >= MAX_MECHANICS:
            break
    return items


def as_hex_color(value: Any) -> Optional[str]:
    """Normalize to uppercase #RRGGBB, adding a missing '#'."""
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    if not text.startswith("#"):
        text = f"#{text}"
    if not HEX_COLOR_PATTERN.match(text):
        return None
    return text.upper()


def as_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    return None


# =============================================================================
# Merging
# =============================================================================

def _snake_case(key: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower()


def _normalize_keys(source: Optional[Mapping[str, Any]]) -> dict[str, Any]:
    if not source:
        return {}
    return {_snake_case(str(key)): value for key, value in source.items()}


def _first(sources: list[dict[str, Any]], field: str, normalize) -> Any:
    for source in sources:
        if field not in source:
            continue
        value = normalize(source[field])
        if value is not None:
            return value
    return None


def resolve_runtime_config(*sources: Optional[Mapping[str, Any]]) -> RuntimeConfig:
    """
    Merge config bags in priority order into a validated RuntimeConfig.

    Keys may be camelCase or snake_case. Unknown keys are ignored. Numbers are
    clamped into range; colors and strings that fail validation fall through to
    the next source and finally to the fallback.
    """
    bags = [_normalize_keys(source) for source in sources]
    values: dict[str, Any] = {}

    for field, (low, high, fallback) in NUMERIC_FIELDS.items():
        number = _first(bags, field, as_number)
        if number is None:
            number = fallback
        values[field] = clamp(number, low, high) if number is not None else None

    for field, (max_length, fallback) in STRING_FIELDS.items():
        text = _first(bags, field, lambda v, n=max_length: as_short_string(v, n))
        values[field] = text if text is not None else fallback

    mechanics = _first(bags, "mechanics", as_string_list)
    values["mechanics"] = mechanics if mechanics is not None else []

    for field, fallback in COLOR_FIELDS.items():
        color = _first(bags, field, as_hex_color)
        values[field] = color if color is not None else fallback

    values["fog_enabled"] = _first(bags, "fog_enabled", as_bool)

    return RuntimeConfig(**values)
