"""Decoded Gerber/Excellon image: apertures, nets, levels and net states."""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class Unit(Enum):
    INCH = "inch"
    MM = "mm"


class FileType(Enum):
    RS274X = "rs274x"
    DRILL = "drill"


class Polarity(Enum):
    POSITIVE = "positive"  # image: draw using the level polarity
    NEGATIVE = "negative"  # image: invert every level polarity
    DARK = "dark"
    CLEAR = "clear"


class Interpolation(Enum):
    LINEAR = "linear"
    CW_CIRCULAR = "cw"
    CCW_CIRCULAR = "ccw"
    REGION_START = "region_start"
    REGION_END = "region_end"
    DELETED = "deleted"


class ApertureState(Enum):
    OFF = "off"
    ON = "on"
    FLASH = "flash"
    DELETED = "deleted"


class MirrorState(Enum):
    NONE = "none"
    FLIP_A = "flip_a"
    FLIP_B = "flip_b"
    FLIP_AB = "flip_ab"


class AxisSelect(Enum):
    NONE = "none"
    SWAP_AB = "swap_ab"


# Apertures

@dataclass(frozen=True)
class CircleAperture:
    diameter: float
    hole_x: float = 0.0
    hole_y: float = 0.0
    unit: Unit = Unit.INCH


@dataclass(frozen=True)
class RectangleAperture:
    width: float
    height: float
    hole_x: float = 0.0
    hole_y: float = 0.0
    unit: Unit = Unit.INCH


@dataclass(frozen=True)
class OvalAperture:
    width: float
    height: float
    hole_x: float = 0.0
    hole_y: float = 0.0
    unit: Unit = Unit.INCH


@dataclass(frozen=True)
class PolygonAperture:
    diameter: float
    sides: int
    rotation: float = 0.0  # degrees
    hole_x: float = 0.0
    hole_y: float = 0.0
    unit: Unit = Unit.INCH


# Simplified macro primitives. Coordinates are in the macro's local frame,
# rotation is in degrees about the macro origin.

@dataclass(frozen=True)
class MacroCircle:
    exposure: bool
    diameter: float
    center_x: float
    center_y: float
    rotation: float = 0.0


@dataclass(frozen=True)
class MacroOutline:
    exposure: bool
    points: tuple[tuple[float, float], ...]
    rotation: float = 0.0


@dataclass(frozen=True)
class MacroPolygon:
    exposure: bool
    sides: int
    center_x: float
    center_y: float
    diameter: float
    rotation: float = 0.0


@dataclass(frozen=True)
class MacroMoire:
    center_x: float
    center_y: float
    outer_diameter: float
    ring_thickness: float
    gap: float
    max_rings: int
    crosshair_thickness: float
    crosshair_length: float
    rotation: float = 0.0


@dataclass(frozen=True)
class MacroThermal:
    center_x: float
    center_y: float
    outer_diameter: float
    inner_diameter: float
    gap: float
    rotation: float = 0.0


@dataclass(frozen=True)
class MacroVectorLine:
    """Primitive 20: a line of given width between two points."""
    exposure: bool
    width: float
    start_x: float
    start_y: float
    end_x: float
    end_y: float
    rotation: float = 0.0


@dataclass(frozen=True)
class MacroCenterLine:
    """Primitive 21: a rectangle given by its center."""
    exposure: bool
    width: float
    height: float
    center_x: float
    center_y: float
    rotation: float = 0.0


@dataclass(frozen=True)
class MacroLowerLeftLine:
    """Primitive 22 (deprecated): a rectangle given by its lower left corner."""
    exposure: bool
    width: float
    height: float
    lower_left_x: float
    lower_left_y: float
    rotation: float = 0.0


MacroPrimitive = (
    MacroCircle | MacroOutline | MacroPolygon | MacroMoire | MacroThermal
    | MacroVectorLine | MacroCenterLine | MacroLowerLeftLine
)


@dataclass(frozen=True)
class MacroAperture:
    name: str
    primitives: tuple[MacroPrimitive, ...] = ()
    unit: Unit = Unit.INCH
    # primitives with codes the reader does not know
    skipped_primitives: int = 0


Aperture = CircleAperture | RectangleAperture | OvalAperture | PolygonAperture | MacroAperture


# Levels and net states are shared by runs of nets and compared by identity.

@dataclass
class StepAndRepeat:
    x: int = 1
    y: int = 1
    distance_x: float = 0.0
    distance_y: float = 0.0


@dataclass(eq=False)
class Knockout:
    first_instance: bool = False
    polarity: Polarity = Polarity.DARK
    lower_left_x: float = 0.0
    lower_left_y: float = 0.0
    width: float = 0.0
    height: float = 0.0
    border: float = 0.0


@dataclass(eq=False)
class Level:
    polarity: Polarity = Polarity.DARK
    step_and_repeat: StepAndRepeat = field(default_factory=StepAndRepeat)
    knockout: Optional[Knockout] = None
    name: Optional[str] = None


@dataclass(eq=False)
class NetState:
    axis_select: AxisSelect = AxisSelect.NONE
    mirror_state: MirrorState = MirrorState.NONE
    unit: Unit = Unit.INCH
    offset_a: float = 0.0
    offset_b: float = 0.0
    scale_a: float = 1.0
    scale_b: float = 1.0


@dataclass
class CircleSegment:
    """Arc description; angles in degrees, width/height are diameters."""
    center_x: float
    center_y: float
    width: float
    height: float
    start_angle: float
    end_angle: float

    @property
    def sweep_angle(self) -> float:
        return self.end_angle - self.start_angle


@dataclass(eq=False)
class Net:
    """One plot primitive of the image."""
    start_x: float
    start_y: float
    stop_x: float
    stop_y: float
    aperture: int
    aperture_state: ApertureState
    interpolation: Interpolation
    level: Level
    net_state: NetState
    circle_segment: Optional[CircleSegment] = None

    @property
    def length(self) -> float:
        return math.hypot(self.stop_x - self.start_x, self.stop_y - self.start_y)


@dataclass
class ImageInfo:
    polarity: Polarity = Polarity.POSITIVE
    offset_a: float = 0.0
    offset_b: float = 0.0
    image_rotation: float = 0.0  # degrees
    justify_offset_a: float = 0.0
    justify_offset_b: float = 0.0


@dataclass
class Image:
    """A decoded image: ordered nets plus the aperture table they index."""
    file_type: FileType
    unit: Unit = Unit.INCH
    info: ImageInfo = field(default_factory=ImageInfo)
    apertures: dict[int, Aperture] = field(default_factory=dict)
    nets: list[Net] = field(default_factory=list)
    name: Optional[str] = None

    @property
    def is_metric(self) -> bool:
        return self.unit == Unit.MM
