"""G-code emitters for isolation routing and drilling."""

import logging
import math
from dataclasses import dataclass
from typing import Optional, TextIO

import numpy as np
from shapely.geometry import LinearRing
from shapely.geometry.base import BaseGeometry

from .config import TOOL_CHANGE_MAP, DrillSettings, IsoSettings
from .gcode import Machine
from .geometry import iter_polygons
from .image import ApertureState, Image, Interpolation
from .templates import CodeTemplate
from .tools import collect_drill_tools

logger = logging.getLogger(__name__)

# Tool number used when the isolation job switches to its second tool.
ISO_SECOND_TOOL_NUMBER = 2

# Slack so slots that are an exact multiple of the step do not get an extra hit.
SLOT_TOLERANCE = 1e-9


def oriented_coords(ring: LinearRing, ccw: bool = True) -> list[tuple[float, float]]:
    """Ring coordinates in the requested winding."""
    coords = [(x, y) for x, y, *_ in ring.coords]
    if ccw != ring.is_ccw:
        coords.reverse()
    return coords


def slot_drill_points(start, end, diameter: float, overlap: float) -> np.ndarray:
    """Evenly spaced drill hits along a slot centerline, both ends included.

    The hits are at most ``(1 - overlap) * diameter`` apart. A zero length
    slot gets a single hit.
    """
    start = np.asarray(start, dtype=float)
    end = np.asarray(end, dtype=float)
    length = float(np.hypot(*(end - start)))
    if length == 0:
        return start.reshape(1, 2)
    step = (1 - overlap) * diameter
    if step <= 0:
        raise ValueError("slot drill step must be positive")
    count = max(math.ceil(length / step - SLOT_TOLERANCE), 1)
    t = np.linspace(0.0, 1.0, count + 1)
    return start + t[:, None] * (end - start)


@dataclass
class IsoOptions:
    """Per-pass options for the isolation writer."""
    ccw: bool = True
    mirror_x: bool = False
    tool_diameter: float = 0.0  # output units
    path_number: int = 0
    last_tool: bool = True
    last_path: bool = True


class IsoWriter:
    """Writes isolation passes; the header goes out with the first pass."""

    def __init__(self, settings: IsoSettings, stream: TextIO, input_metric: bool = False):
        self.settings = settings
        self.input_metric = input_metric
        self.machine = Machine(stream)
        self.tool_change_format = CodeTemplate(TOOL_CHANGE_MAP).compile(settings.tool_change_code)
        self.current_tool_diameter = 0.0
        self.started = False

    def _write_header(self, options: IsoOptions) -> None:
        s = self.settings
        m = self.machine
        m.comment(f"Tool size {options.tool_diameter:.3f}")
        m.set_input_unit(self.input_metric)
        m.insert_code(s.coordinate_system_mirror if options.mirror_x else s.coordinate_system)
        m.metric_mode(s.metric_mode)
        m.relative_mode(s.relative_code)
        m.spindle_on(s.spindle_speed)
        m.rapid_move(z=m.to_input_units(s.lift))

    def _change_tool(self, diameter: float) -> None:
        s = self.settings
        logger.info("Changing to the %.3f tool", diameter)
        code = self.tool_change_format.format(
            ISO_SECOND_TOOL_NUMBER,
            diameter,
            s.lift,
            s.tool_change_height,
            s.spindle_speed,
            0.0,
        )
        self.machine.insert_code(code)

    def _write_ring(self, ring: LinearRing, ccw: bool) -> None:
        s = self.settings
        m = self.machine
        coords = oriented_coords(ring, ccw)
        if not coords:
            return
        (x0, y0), rest = coords[0], coords[1:]
        m.rapid_move(x0, y0)
        m.move(z=m.to_input_units(s.cut_depth), feed=m.to_input_units(s.plunge_rate))
        m.move(feed=m.to_input_units(s.feed_rate))
        for x, y in rest:
            m.move(x, y)
        m.rapid_move(z=m.to_input_units(s.lift))

    def write(self, region: Optional[BaseGeometry], options: IsoOptions) -> None:
        if not self.started:
            self.started = True
            self._write_header(options)
        elif abs(self.current_tool_diameter - options.tool_diameter) > 0.001:
            self._change_tool(options.tool_diameter)
        self.current_tool_diameter = options.tool_diameter

        rings = 0
        for polygon in iter_polygons(region):
            self._write_ring(polygon.exterior, options.ccw)
            rings += 1
            for interior in polygon.interiors:
                self._write_ring(interior, options.ccw)
                rings += 1
        logger.debug("Pass %d wrote %d rings", options.path_number, rings)

        if options.last_tool and options.last_path:
            self.machine.insert_code(self.settings.file_end_code)


@dataclass
class DrillOptions:
    mirror_x: bool = False


class DrillWriter:
    """Writes one drill program for every circular aperture in an image."""

    def __init__(self, settings: DrillSettings, stream: TextIO):
        self.settings = settings
        self.machine = Machine(stream, settings.drill_code)
        self.tool_change_format = CodeTemplate(TOOL_CHANGE_MAP).compile(settings.tool_change_code)

    def write(self, image: Image, options: Optional[DrillOptions] = None) -> None:
        options = options or DrillOptions()
        s = self.settings
        m = self.machine

        m.set_input_unit(image.is_metric)
        m.insert_code(s.coordinate_system_mirror if options.mirror_x else s.coordinate_system)
        m.metric_mode(s.metric_mode)
        # the drill template writes absolute coordinates
        m.relative_mode(False)

        tools = collect_drill_tools(image)
        m.comment("Tool| Size")
        for tool in tools:
            m.comment(f"T{tool.number:02d} | {tool.diameter_mm:.4f}mm {tool.diameter_inch:.4f}in")
        m.comment("end of header")

        m.spindle_on(s.spindle_speed)
        m.rapid_move(z=m.to_input_units(s.drill_lift))

        depth = m.to_input_units(s.drill_depth)
        lift = m.to_input_units(s.drill_lift)
        drill_feed = m.to_input_units(s.drill_feed_rate)
        mill_feed = m.to_input_units(s.mill_feed_rate)
        sign = -1.0 if options.mirror_x else 1.0

        holes = 0
        for tool in tools:
            code = self.tool_change_format.format(
                tool.number,
                tool.diameter_in(s.metric_mode),
                s.drill_lift,
                s.tool_change_height,
                s.spindle_speed,
                s.drill_pause,
            )
            m.insert_code(code)

            for net in image.nets:
                if net.aperture != tool.number:
                    continue
                start = (sign * net.start_x, net.start_y)
                stop = (sign * net.stop_x, net.stop_y)
                if net.aperture_state == ApertureState.FLASH:
                    m.drill_move(stop[0], stop[1], depth, lift, drill_feed, s.drill_pause)
                    holes += 1
                elif net.aperture_state == ApertureState.ON and net.interpolation == Interpolation.LINEAR:
                    if s.drill_slots:
                        diameter = tool.diameter_in(image.is_metric)
                        for x, y in slot_drill_points(start, stop, diameter, s.slot_drill_overlap):
                            m.drill_move(x, y, depth, lift, drill_feed, s.drill_pause)
                            holes += 1
                    else:
                        m.rapid_move(*start)
                        m.move(z=depth, feed=mill_feed)
                        m.move(*stop)
                        m.rapid_move(z=lift)

        logger.info("Wrote %d drill hits with %d tools", holes, len(tools))
        m.insert_code(s.file_end_code)
