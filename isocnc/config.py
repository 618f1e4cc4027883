"""Configuration file loading and the settings schema for both writers.

The config file holds one ``key : value`` pair per line. Blank lines and
lines starting with ``#``, ``/``, ``+`` or ``-`` are ignored. Values of
string settings may contain ``\\n``, ``\\r`` and ``\\t`` escapes.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from .templates import CodeTemplate

logger = logging.getLogger(__name__)


DEFAULT_TOOL_CHANGE_CODE = (
    "M05\nG0 Z{tool_change_height:.4f}\nG0 X0 Y0\n"
    "M06 T{tool_number} ( {tool_diameter:.4f} )\nM00\n"
    "M03 S{spindle_speed:.0f}\nG4 P{tool_pause:.2f}\nG0 Z{tool_lift:.4f}"
)

DEFAULT_DRILL_CODE = (
    "G0 X{x:.4f} Y{y:.4f}\nG1 Z{depth:.4f} F{feed:.1f}\n"
    "G4 P{pause:.2f}\nG0 Z{lift:.4f}"
)

TOOL_CHANGE_MAP = {
    "tool_number": 0,
    "tool_diameter": 1,
    "tool_lift": 2,
    "tool_change_height": 3,
    "spindle_speed": 4,
    "tool_pause": 5,
}

DRILL_CODE_MAP = {
    "x": 0,
    "y": 1,
    "depth": 2,
    "lift": 3,
    "feed": 4,
    "pause": 5,
}

# Values of the types the writers pass, used to try out templates.
_TOOL_CHANGE_SAMPLE = (1, 1.0, 1.0, 1.0, 1.0, 1.0)
_DRILL_CODE_SAMPLE = (1.0, 1.0, 1.0, 1.0, 1.0, 1.0)


class ConfigError(ValueError):
    """One or more settings are missing, malformed or duplicated."""

    def __init__(self, problems: list[str]):
        self.problems = list(problems)
        super().__init__("; ".join(self.problems))


_REQUIRED = object()


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    raise ValueError(value)


def _decode_escapes(value: str) -> str:
    return value.replace("\\n", "\n").replace("\\r", "\r").replace("\\t", "\t")


class ConfigStore:
    """Raw ``key -> value`` strings with typed accessors."""

    COMMENT_START = ("#", "/", "+", "-")

    def __init__(self, values: dict[str, str] | None = None, source: str = "<config>"):
        self.values: dict[str, str] = dict(values or {})
        self.source = source

    @classmethod
    def parse(cls, text: str, source: str = "<config>") -> "ConfigStore":
        """Parse config text; duplicate keys raise ConfigError."""
        values: dict[str, str] = {}
        duplicates = []
        for raw_line in text.splitlines():
            line = raw_line.strip()
            if not line or line.startswith(cls.COMMENT_START):
                continue
            idx = line.find(":")
            if idx < 1:
                continue
            key = line[:idx].strip()
            if key in values:
                duplicates.append(f"setting {key} appears more than once in {source}")
                continue
            values[key] = line[idx + 1:].strip()
        if duplicates:
            raise ConfigError(duplicates)
        return cls(values, source)

    @classmethod
    def load(cls, path: Path) -> "ConfigStore":
        """Load a config file. OSError propagates to the caller."""
        path = Path(path)
        text = path.read_text(encoding="utf-8")
        store = cls.parse(text, source=str(path))
        logger.debug("Loaded %d settings from %s", len(store.values), path)
        return store

    def __contains__(self, key: str) -> bool:
        return key in self.values

    def _lookup(self, key: str, default: Any) -> tuple[bool, Any]:
        if key in self.values:
            return True, self.values[key]
        if default is _REQUIRED:
            raise ConfigError([f"setting {key} is missing from {self.source}"])
        return False, default

    def _typed(self, key: str, default: Any, convert: Callable[[str], Any], kind: str) -> Any:
        found, value = self._lookup(key, default)
        if not found:
            return value
        try:
            return convert(value)
        except ValueError:
            raise ConfigError([f"value {value!r} is not a valid {kind} for setting {key}"]) from None

    def get_string(self, key: str, default: Any = _REQUIRED) -> str:
        found, value = self._lookup(key, default)
        return _decode_escapes(value) if found else value

    def get_int(self, key: str, default: Any = _REQUIRED) -> int:
        return self._typed(key, default, int, "integer")

    def get_float(self, key: str, default: Any = _REQUIRED) -> float:
        return self._typed(key, default, float, "floating point value")

    def get_bool(self, key: str, default: Any = _REQUIRED) -> bool:
        return self._typed(key, default, _parse_bool, "boolean value")


class _SettingsReader:
    """Reads settings from a store, collecting every problem."""

    def __init__(self, store: ConfigStore):
        self.store = store
        self.problems: list[str] = []

    def read(self, getter: Callable, key: str, default: Any = _REQUIRED) -> Any:
        try:
            return getter(key, default)
        except ConfigError as e:
            self.problems.extend(e.problems)
            return None

    def text(self, key: str, default: Any = _REQUIRED) -> str:
        return self.read(self.store.get_string, key, default)

    def number(self, key: str, default: Any = _REQUIRED) -> float:
        return self.read(self.store.get_float, key, default)

    def flag(self, key: str, default: Any = _REQUIRED) -> bool:
        return self.read(self.store.get_bool, key, default)

    def template(self, key: str, default: str, value_table: dict[str, int], sample: tuple) -> str:
        """A code template, checked by formatting it with sample values."""
        template = self.text(key, default)
        if template is None:
            return None
        try:
            CodeTemplate(value_table).compile(template).format(*sample)
        except (IndexError, KeyError, ValueError, TypeError, AttributeError) as e:
            self.problems.append(f"setting {key} is not a valid code template: {e!r}")
        return template

    def finish(self) -> None:
        if self.problems:
            raise ConfigError(self.problems)


def _read_common(reader: _SettingsReader) -> dict[str, Any]:
    return dict(
        metric_mode=reader.flag("metric_mode", True),
        coordinate_system=reader.text("coordinate_system"),
        coordinate_system_mirror=reader.text("coordinate_system_mirror"),
        file_end_code=reader.text("file_end_code"),
        tool_change_code=reader.template(
            "tool_change_code", DEFAULT_TOOL_CHANGE_CODE, TOOL_CHANGE_MAP, _TOOL_CHANGE_SAMPLE
        ),
        tool_change_height=reader.number("tool_change_height", 40.0),
    )


@dataclass
class IsoSettings:
    """Settings for isolation routing. Lengths are in output units."""
    metric_mode: bool = True
    coordinate_system: str = ""
    coordinate_system_mirror: str = ""
    file_end_code: str = ""
    tool_change_code: str = DEFAULT_TOOL_CHANGE_CODE
    tool_change_height: float = 40.0
    tool_size: float = 0.189
    tool2_size: float = 0.0
    path_overlap: float = 0.2
    isolation_min: float = 0.6
    isolation_max: float = 0.0
    milling_conventional: bool = True
    cut_depth: float = -0.1
    feed_rate: float = 100.0
    plunge_rate: float = 50.0
    lift: float = 2.0
    spindle_speed: float = 10000.0
    relative_code: bool = False

    @classmethod
    def from_store(cls, store: ConfigStore) -> "IsoSettings":
        reader = _SettingsReader(store)
        settings = cls(
            **_read_common(reader),
            tool_size=reader.number("iso_tool_size"),
            tool2_size=reader.number("iso_tool2_size", 0.0),
            path_overlap=reader.number("iso_path_overlap", 0.2),
            isolation_min=reader.number("iso_isolation_min"),
            isolation_max=reader.number("iso_isolation_max", 0.0),
            milling_conventional=reader.flag("iso_milling_conventional", True),
            cut_depth=reader.number("iso_cut_depth"),
            feed_rate=reader.number("iso_feed_rate"),
            plunge_rate=reader.number("iso_plunge_rate"),
            lift=reader.number("iso_lift", 2.0),
            spindle_speed=reader.number("iso_spindle_speed"),
            relative_code=reader.flag("relative_code", False),
        )
        reader.finish()
        if settings.isolation_max < settings.isolation_min:
            settings.isolation_max = settings.isolation_min
        return settings


@dataclass
class DrillSettings:
    """Settings for drilling. Lengths are in output units."""
    metric_mode: bool = True
    coordinate_system: str = ""
    coordinate_system_mirror: str = ""
    file_end_code: str = ""
    tool_change_code: str = DEFAULT_TOOL_CHANGE_CODE
    tool_change_height: float = 40.0
    drill_slots: bool = False
    drill_depth: float = -2.5
    drill_lift: float = 3.0
    drill_feed_rate: float = 400.0
    drill_pause: float = 0.05
    slot_drill_overlap: float = 0.25
    mill_feed_rate: float = 100.0
    spindle_speed: float = 26000.0
    drill_code: str = DEFAULT_DRILL_CODE

    @classmethod
    def from_store(cls, store: ConfigStore) -> "DrillSettings":
        reader = _SettingsReader(store)
        settings = cls(
            **_read_common(reader),
            drill_slots=reader.flag("drill_slots", False),
            drill_depth=reader.number("drill_depth", -2.5),
            drill_lift=reader.number("drill_lift", 3.0),
            drill_feed_rate=reader.number("drill_feed_rate", 400.0),
            drill_pause=reader.number("drill_pause", 0.05),
            slot_drill_overlap=reader.number("slot_drill_overlap", 0.25),
            mill_feed_rate=reader.number("mill_feed_rate", 100.0),
            spindle_speed=reader.number("drill_spindle_speed", 26000.0),
            drill_code=reader.template("drill_code", DEFAULT_DRILL_CODE, DRILL_CODE_MAP, _DRILL_CODE_SAMPLE),
        )
        reader.finish()
        return settings

