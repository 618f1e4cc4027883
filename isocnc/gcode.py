"""G-code machine driver: tracks position, units and coordinate mode."""

import logging
from typing import Optional, TextIO

from .config import DEFAULT_DRILL_CODE, DRILL_CODE_MAP
from .templates import CodeTemplate

logger = logging.getLogger(__name__)

MM_PER_INCH = 25.4


def format_coord(value: float) -> str:
    """Format a coordinate with 4 decimals, trailing zeros stripped."""
    text = f"{value:.4f}".rstrip("0").rstrip(".")
    if text in ("-0", ""):
        return "0"
    return text


def unit_factor(input_metric: bool, output_metric: bool) -> float:
    """Output units per input unit."""
    if input_metric == output_metric:
        return 1.0
    return MM_PER_INCH if output_metric else 1.0 / MM_PER_INCH


class Machine:
    """Emits G-code lines to a stream and tracks the machine state.

    Every length handed to the machine is in input units; it is scaled by
    ``input_scale * output_scale`` before being written.
    """

    RAPID_MOVE_CODE = "G0"
    LINEAR_MOVE_CODE = "G1"

    def __init__(self, stream: TextIO, drill_code: str = DEFAULT_DRILL_CODE):
        self.stream = stream
        self.x = 0.0
        self.y = 0.0
        self.z = 0.0
        self.drill_depth = 0.0
        self.drill_lift = 0.0
        self.drill_feed_rate = 0.0
        self.drill_pause = 0.0
        self.relative = False
        self.metric = True
        self.input_metric = False
        self.input_scale = MM_PER_INCH
        self.output_scale = 1.0
        self.drill_format = CodeTemplate(DRILL_CODE_MAP).compile(drill_code)

    def _write(self, line: str) -> None:
        self.stream.write(line + "\n")

    @property
    def scale(self) -> float:
        return unit_factor(self.input_metric, self.metric)

    def _scale(self, value: Optional[float]) -> Optional[float]:
        if value is None:
            return None
        return value * self.scale

    def to_input_units(self, value: float) -> float:
        """Convert a value given in output units to input units."""
        return value / self.scale

    def set_input_unit(self, metric: bool) -> None:
        self.input_metric = metric
        self.input_scale = 1.0 if metric else MM_PER_INCH

    def _motion(
        self,
        code: str,
        x: Optional[float],
        y: Optional[float],
        z: Optional[float],
        feed: Optional[float],
    ) -> None:
        x, y, z, feed = (self._scale(v) for v in (x, y, z, feed))
        words = [code]
        for letter, value, current in (("X", x, self.x), ("Y", y, self.y), ("Z", z, self.z)):
            if value is None:
                continue
            written = value - current if self.relative else value
            words.append(f"{letter}{format_coord(written)}")
        if feed is not None:
            words.append(f"F{format_coord(feed)}")
        self._write(" ".join(words))
        if x is not None:
            self.x = x
        if y is not None:
            self.y = y
        if z is not None:
            self.z = z

    def move(
        self,
        x: Optional[float] = None,
        y: Optional[float] = None,
        z: Optional[float] = None,
        feed: Optional[float] = None,
    ) -> None:
        """Linear move; absent axes are left out of the line."""
        self._motion(self.LINEAR_MOVE_CODE, x, y, z, feed)

    def rapid_move(
        self,
        x: Optional[float] = None,
        y: Optional[float] = None,
        z: Optional[float] = None,
        feed: Optional[float] = None,
    ) -> None:
        """Rapid move; absent axes are left out of the line."""
        self._motion(self.RAPID_MOVE_CODE, x, y, z, feed)

    def drill_move(
        self,
        x: float,
        y: float,
        depth: Optional[float] = None,
        lift: Optional[float] = None,
        feed: Optional[float] = None,
        pause: Optional[float] = None,
    ) -> None:
        """Drill one hole using the drill template.

        Overrides replace the standing drill defaults. The pause is a time in
        seconds and is not scaled.
        """
        if depth is not None:
            self.drill_depth = depth
        if lift is not None:
            self.drill_lift = lift
        if feed is not None:
            self.drill_feed_rate = feed
        if pause is not None:
            self.drill_pause = pause

        sx, sy = self._scale(x), self._scale(y)
        wx, wy = (sx - self.x, sy - self.y) if self.relative else (sx, sy)
        code = self.drill_format.format(
            wx,
            wy,
            self._scale(self.drill_depth),
            self._scale(self.drill_lift),
            self._scale(self.drill_feed_rate),
            self.drill_pause,
        )
        self.insert_code(code)
        self.x = sx
        self.y = sy
        self.z = self._scale(self.drill_lift)

    def relative_mode(self, on: bool) -> None:
        self.relative = on
        self._write("G91 (relative mode)" if on else "G90 (absolute mode)")

    def metric_mode(self, on: bool) -> None:
        self.metric = on
        if on:
            self.output_scale = 1.0
            self._write("G21 (metric mode)")
        else:
            self.output_scale = 1.0 / MM_PER_INCH
            self._write("G20 (imperial mode)")

    def spindle_on(self, speed: float) -> None:
        self._write(f"M03 S{speed:.0f}")

    def spindle_off(self) -> None:
        self._write("M05")

    def insert_code(self, code: Optional[str]) -> None:
        """Write a block of raw code, one non-empty line at a time."""
        if not code:
            return
        for line in code.splitlines():
            if line.strip():
                self._write(line)

    def comment(self, text: str) -> None:
        for line in text.splitlines():
            self._write(f"( {line} )")
