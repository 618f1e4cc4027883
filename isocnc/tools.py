"""Drill tools found in an image, and isolation pass planning."""

import logging
from dataclasses import dataclass
from typing import Iterator

from .image import ApertureState, CircleAperture, Image, Interpolation, Unit

logger = logging.getLogger(__name__)

MM_PER_INCH = 25.4


@dataclass
class DrillTool:
    """A circular aperture used as a drill bit."""
    number: int
    diameter: float  # in the aperture's own unit
    unit: Unit = Unit.INCH

    @property
    def diameter_mm(self) -> float:
        return self.diameter * MM_PER_INCH if self.unit == Unit.INCH else self.diameter

    @property
    def diameter_inch(self) -> float:
        return self.diameter_mm / MM_PER_INCH

    def diameter_in(self, metric: bool) -> float:
        """Diameter in output units."""
        return self.diameter_mm if metric else self.diameter_inch


def _drills_with(image: Image, number: int) -> bool:
    for net in image.nets:
        if net.aperture != number:
            continue
        if net.aperture_state == ApertureState.FLASH:
            return True
        if net.aperture_state == ApertureState.ON and net.interpolation == Interpolation.LINEAR:
            return True
    return False


def collect_drill_tools(image: Image) -> list[DrillTool]:
    """Circular apertures referenced by a flash or a linear stroke, by ascending number."""
    tools = []
    for number in sorted(image.apertures):
        aperture = image.apertures[number]
        if not isinstance(aperture, CircleAperture):
            logger.debug("Aperture D%d is not circular, not a drill", number)
            continue
        if not _drills_with(image, number):
            continue
        tools.append(DrillTool(number, aperture.diameter, aperture.unit))
    return tools


@dataclass
class IsolationPass:
    """One offset pass around the copper."""
    number: int
    tool_diameter: float  # output units
    distance: float  # offset of the tool center from the copper, output units
    last_tool: bool
    last_path: bool


def plan_isolation_passes(
    tool_size: float,
    isolation_min: float,
    isolation_max: float,
    path_overlap: float = 0.2,
    tool2_size: float = 0.0,
) -> Iterator[IsolationPass]:
    """Yield the offset passes needed to clear the isolation width.

    The first tool cuts until ``isolation_max`` is cleared, or only
    ``isolation_min`` when a larger second tool finishes the job. The second
    tool starts where its edge overlaps the last pass of the first one.
    """
    if tool_size <= 0:
        raise ValueError("tool size must be positive")
    step_factor = 1 - path_overlap
    if step_factor <= 0:
        raise ValueError("path overlap must be below 1")
    isolation_max = max(isolation_max, isolation_min)

    tool = tool_size
    distance = tool / 2
    number = 0
    while True:
        last_tool = not tool < tool2_size
        target = isolation_max if last_tool else isolation_min
        last_path = distance + tool / 2 >= target
        yield IsolationPass(number, tool, distance, last_tool, last_path)
        number += 1
        if last_path and last_tool:
            return
        if last_path:
            old_tool = tool
            tool = tool2_size
            distance += tool / 2 - step_factor * old_tool / 2
        else:
            distance += step_factor * tool
