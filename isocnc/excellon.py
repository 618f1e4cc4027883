"""Excellon drill file reader.

Tools become circular apertures numbered like the tools, drill hits become
flashes and slots (``G85`` or routed ``M15``/``M16`` pairs) become linear
strokes.
"""

import logging
import re
from pathlib import Path
from typing import Optional

from .image import (
    ApertureState,
    CircleAperture,
    FileType,
    Image,
    Interpolation,
    Level,
    Net,
    NetState,
    Unit,
)
from .rs274x import parse_gerber_coord

logger = logging.getLogger(__name__)


class DrillParseError(ValueError):
    """The drill file contains something the reader cannot interpret."""

    def __init__(self, message: str, path: str = "<drill>"):
        self.path = path
        super().__init__(f"{path}: {message}")


_TOOL_DEF = re.compile(r"^T(\d+)(?:[FSB][0-9.]+)*C([0-9.]+)")
_TOOL_SELECT = re.compile(r"^T(\d+)$")
_AXIS = re.compile(r"([XY])([+-]?[0-9.]+)")


class ExcellonReader:
    """One-shot reader; call :meth:`parse` once per file."""

    def __init__(self, name: str = "<drill>"):
        self.name = name
        self.image = Image(FileType.DRILL, name=name)
        self.level = Level()
        self.net_state = NetState()
        self.int_digits: Optional[int] = None
        self.dec_digits: Optional[int] = None
        # Excellon names the zeros that are kept: LZ keeps leading zeros
        self.keep_leading = True
        self.tool = 0
        self.x = 0.0
        self.y = 0.0
        self.rout_start: Optional[tuple[float, float]] = None
        self.plunged = False

    def error(self, message: str) -> DrillParseError:
        return DrillParseError(message, self.name)

    def _set_unit(self, unit: Unit) -> None:
        self.image.unit = unit
        self.net_state.unit = unit

    def _coord(self, value: str) -> float:
        int_digits = self.int_digits
        dec_digits = self.dec_digits
        if int_digits is None or dec_digits is None:
            int_digits, dec_digits = (3, 3) if self.image.is_metric else (2, 4)
        suppression = "T" if self.keep_leading else "L"
        return parse_gerber_coord(value, int_digits, dec_digits, suppression)

    def _point(self, text: str) -> tuple[float, float]:
        x, y = self.x, self.y
        for axis, value in _AXIS.findall(text):
            if axis == "X":
                x = self._coord(value)
            else:
                y = self._coord(value)
        return x, y

    def _add_net(self, start, stop, state: ApertureState) -> None:
        if self.tool not in self.image.apertures:
            raise self.error(f"tool T{self.tool} used before it is defined")
        self.image.nets.append(Net(
            start_x=start[0],
            start_y=start[1],
            stop_x=stop[0],
            stop_y=stop[1],
            aperture=self.tool,
            aperture_state=state,
            interpolation=Interpolation.LINEAR,
            level=self.level,
            net_state=self.net_state,
        ))

    def parse(self, text: str) -> Image:
        for lineno, raw in enumerate(text.splitlines(), 1):
            line = raw.strip()
            if not line:
                continue
            try:
                if self._line(line.upper() if not line.startswith(";") else line):
                    break
            except DrillParseError:
                raise
            except ValueError as e:
                raise self.error(f"line {lineno}: cannot read {line!r}: {e}") from e
        logger.debug("%s: %d tools, %d nets", self.name, len(self.image.apertures), len(self.image.nets))
        return self.image

    def _line(self, line: str) -> bool:
        """Handle one line; returns True at the end of program."""
        if line.startswith(";"):
            fmt = re.search(r"FILE_FORMAT\s*=\s*(\d+):(\d+)", line)
            if fmt:
                self.int_digits, self.dec_digits = int(fmt.group(1)), int(fmt.group(2))
            return False

        if line.startswith(("METRIC", "INCH")):
            self._set_unit(Unit.MM if line.startswith("METRIC") else Unit.INCH)
            if ",TZ" in line:
                self.keep_leading = False
            elif ",LZ" in line:
                self.keep_leading = True
            digits = re.search(r",(0+)\.(0+)", line)
            if digits:
                self.int_digits, self.dec_digits = len(digits.group(1)), len(digits.group(2))
            return False
        if line in ("M71", "M72"):
            self._set_unit(Unit.MM if line == "M71" else Unit.INCH)
            return False
        if line in ("M30", "M00"):
            return True

        tool_def = _TOOL_DEF.match(line)
        if tool_def:
            number = int(tool_def.group(1))
            self.image.apertures[number] = CircleAperture(float(tool_def.group(2)), unit=self.image.unit)
            self.tool = number
            return False
        tool_select = _TOOL_SELECT.match(line)
        if tool_select:
            self.tool = int(tool_select.group(1))
            return False

        if line.startswith("G00") and _AXIS.search(line):
            self.x, self.y = self._point(line[3:])
            self.rout_start = (self.x, self.y)
            return False
        if line == "M15":
            self.plunged = True
            return False
        if line == "M16" or line == "M17":
            self.plunged = False
            return False
        if line.startswith("G01") and _AXIS.search(line):
            stop = self._point(line[3:])
            if self.plunged:
                self._add_net((self.x, self.y), stop, ApertureState.ON)
            self.x, self.y = stop
            return False

        if line.startswith(("X", "Y")):
            if "G85" in line:
                first, second = line.split("G85", 1)
                start = self._point(first)
                self.x, self.y = start
                stop = self._point(second)
                self._add_net(start, stop, ApertureState.ON)
                self.x, self.y = stop
            else:
                self.x, self.y = self._point(line)
                self._add_net((self.x, self.y), (self.x, self.y), ApertureState.FLASH)
            return False

        logger.debug("Ignoring %s", line)
        return False


def parse_excellon(text: str, name: str = "<drill>") -> Image:
    return ExcellonReader(name).parse(text)


def read_excellon(path: Path) -> Image:
    """Read a drill file. OSError propagates to the caller."""
    path = Path(path)
    text = path.read_text(encoding="utf-8", errors="ignore")
    return parse_excellon(text, str(path))
