"""Shared fixtures: config text, settings and a small image builder."""
import pytest

from isocnc.config import ConfigStore, DrillSettings, IsoSettings
from isocnc.image import (
    ApertureState,
    CircleSegment,
    FileType,
    Image,
    Interpolation,
    Level,
    Net,
    NetState,
    Unit,
)


CONFIG_TEXT = """\
# test machine
/ both comment styles
metric_mode : true
coordinate_system : G54
coordinate_system_mirror : G55
file_end_code : M05\\nM30
iso_tool_size : 0.2
iso_isolation_min : 0.6
iso_cut_depth : -0.1
iso_feed_rate : 120
iso_plunge_rate : 60
iso_spindle_speed : 12000
"""


class ImageBuilder:
    """Builds images net by net, the way a reader would."""

    def __init__(self, unit=Unit.MM, file_type=FileType.RS274X):
        self.image = Image(file_type, unit)
        self.current_level = Level()
        self.state = NetState(unit=unit)
        self.x = 0.0
        self.y = 0.0

    def aperture(self, number, aperture):
        self.image.apertures[number] = aperture
        return self

    def level(self, **kwargs):
        self.current_level = Level(**kwargs)
        return self

    def net_state(self, **kwargs):
        self.state = NetState(unit=self.image.unit, **kwargs)
        return self

    def _net(self, aperture, x, y, state, interpolation, segment=None):
        self.image.nets.append(Net(
            start_x=self.x,
            start_y=self.y,
            stop_x=x,
            stop_y=y,
            aperture=aperture,
            aperture_state=state,
            interpolation=interpolation,
            level=self.current_level,
            net_state=self.state,
            circle_segment=segment,
        ))
        self.x, self.y = x, y
        return self

    def move(self, aperture, x, y):
        return self._net(aperture, x, y, ApertureState.OFF, Interpolation.LINEAR)

    def flash(self, aperture, x, y):
        return self._net(aperture, x, y, ApertureState.FLASH, Interpolation.LINEAR)

    def line(self, aperture, x0, y0, x1, y1):
        self.move(aperture, x0, y0)
        return self._net(aperture, x1, y1, ApertureState.ON, Interpolation.LINEAR)

    def arc(self, aperture, center, radius, start_angle, end_angle, stop):
        segment = CircleSegment(center[0], center[1], 2 * radius, 2 * radius, start_angle, end_angle)
        interpolation = Interpolation.CCW_CIRCULAR if end_angle > start_angle else Interpolation.CW_CIRCULAR
        return self._net(aperture, stop[0], stop[1], ApertureState.ON, interpolation, segment)

    def region(self, *contours):
        """Each contour is a closed list of points."""
        self._net(0, self.x, self.y, ApertureState.OFF, Interpolation.REGION_START)
        for contour in contours:
            self.move(0, *contour[0])
            for point in contour[1:]:
                self._net(0, point[0], point[1], ApertureState.ON, Interpolation.LINEAR)
        return self._net(0, self.x, self.y, ApertureState.OFF, Interpolation.REGION_END)

    def build(self):
        return self.image


@pytest.fixture
def config_text():
    return CONFIG_TEXT


@pytest.fixture
def config_store():
    return ConfigStore.parse(CONFIG_TEXT, source="test.cfg")


@pytest.fixture
def iso_settings(config_store):
    return IsoSettings.from_store(config_store)


@pytest.fixture
def drill_settings(config_store):
    return DrillSettings.from_store(config_store)


@pytest.fixture
def builder():
    return ImageBuilder()


@pytest.fixture
def inch_builder():
    return ImageBuilder(unit=Unit.INCH)
