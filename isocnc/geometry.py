"""Render a decoded Gerber image into a single shapely region.

Nets are composited in document order: dark primitives are unioned into the
region, clear primitives are cut out of it. Every primitive is built in its
local frame and mapped to board coordinates through a stack of affine
transforms (image transform, net state, flash position).
"""

import logging
import math
from typing import Iterator, Optional

import numpy as np
from shapely import affinity
from shapely.geometry import LineString, MultiPoint, MultiPolygon, Point, Polygon, box
from shapely.geometry.base import BaseGeometry
from shapely.geometry.polygon import orient
from shapely.validation import explain_validity

from .image import (
    ApertureState,
    AxisSelect,
    CircleAperture,
    Image,
    Interpolation,
    Knockout,
    MacroAperture,
    MacroCenterLine,
    MacroCircle,
    MacroLowerLeftLine,
    MacroMoire,
    MacroOutline,
    MacroPolygon,
    MacroPrimitive,
    MacroThermal,
    MacroVectorLine,
    MirrorState,
    Net,
    NetState,
    OvalAperture,
    Polarity,
    PolygonAperture,
    RectangleAperture,
    StepAndRepeat,
)

logger = logging.getLogger(__name__)

# Segments used for a full circle, both for flashed circles and for arcs.
CIRCLE_SEGMENTS = 64

Region = Polygon | MultiPolygon


# Affine helpers. Matrices are 3x3 and act on column vectors, so
# ``a @ b`` applies ``b`` first.

def identity() -> np.ndarray:
    return np.eye(3)


def translation(dx: float, dy: float) -> np.ndarray:
    return np.array([[1.0, 0.0, dx], [0.0, 1.0, dy], [0.0, 0.0, 1.0]])


def rotation(degrees: float) -> np.ndarray:
    a = math.radians(degrees)
    c, s = math.cos(a), math.sin(a)
    return np.array([[c, -s, 0.0], [s, c, 0.0], [0.0, 0.0, 1.0]])


def scaling(sx: float, sy: float) -> np.ndarray:
    return np.array([[sx, 0.0, 0.0], [0.0, sy, 0.0], [0.0, 0.0, 1.0]])


def reflection(x0: float, y0: float, x1: float, y1: float) -> np.ndarray:
    """Reflection across the line through (x0, y0) and (x1, y1)."""
    dx, dy = x1 - x0, y1 - y0
    length = math.hypot(dx, dy)
    if length == 0:
        raise ValueError("mirror line needs two distinct points")
    ux, uy = dx / length, dy / length
    mirror = np.array([
        [2 * ux * ux - 1, 2 * ux * uy, 0.0],
        [2 * ux * uy, 2 * uy * uy - 1, 0.0],
        [0.0, 0.0, 1.0],
    ])
    return translation(x0, y0) @ mirror @ translation(-x0, -y0)


def apply_transform(matrix: np.ndarray, geom: BaseGeometry) -> BaseGeometry:
    return affinity.affine_transform(
        geom,
        [matrix[0, 0], matrix[0, 1], matrix[1, 0], matrix[1, 1], matrix[0, 2], matrix[1, 2]],
    )


class TransformStack:
    """Stack of affine transforms; the top maps local coordinates to the board."""

    def __init__(self, base: Optional[np.ndarray] = None):
        self._stack = [identity() if base is None else base]

    @property
    def top(self) -> np.ndarray:
        return self._stack[-1]

    def push(self, local: np.ndarray) -> None:
        """Enter a local frame: ``local`` is applied before the current top."""
        self._stack.append(self.top @ local)

    def pop(self) -> np.ndarray:
        if len(self._stack) == 1:
            raise IndexError("cannot pop the base transform")
        return self._stack.pop()

    def replace(self, matrix: np.ndarray) -> None:
        self._stack[-1] = matrix

    def apply(self, geom: BaseGeometry) -> BaseGeometry:
        return apply_transform(self.top, geom)


def net_state_transform(state: NetState) -> np.ndarray:
    """Scale, then offset, then axis swap, then mirror."""
    matrix = translation(state.offset_a, state.offset_b) @ scaling(state.scale_a, state.scale_b)
    if state.axis_select == AxisSelect.SWAP_AB:
        # mirror Y then a quarter turn exchanges the axes
        matrix = rotation(90) @ scaling(1.0, -1.0) @ matrix
    if state.mirror_state == MirrorState.FLIP_A:
        matrix = scaling(-1.0, 1.0) @ matrix
    elif state.mirror_state == MirrorState.FLIP_B:
        matrix = scaling(1.0, -1.0) @ matrix
    elif state.mirror_state == MirrorState.FLIP_AB:
        matrix = scaling(-1.0, -1.0) @ matrix
    return matrix


# Shape builders, all in local coordinates.

def expose(region: BaseGeometry, shape: Optional[BaseGeometry], exposure: bool = True) -> BaseGeometry:
    """Composite ``shape`` into ``region``: union when exposed, difference when clear."""
    if shape is None or shape.is_empty:
        return region
    if exposure:
        return region.union(shape)
    return region.difference(shape)


def iter_polygons(geom: Optional[BaseGeometry]) -> Iterator[Polygon]:
    """Yield the non-empty polygons contained in any geometry."""
    if geom is None or geom.is_empty:
        return
    if isinstance(geom, Polygon):
        yield geom
    elif hasattr(geom, "geoms"):
        for part in geom.geoms:
            yield from iter_polygons(part)


def circle_points(cx: float, cy: float, diameter: float, segments: int = CIRCLE_SEGMENTS) -> np.ndarray:
    angles = np.arange(segments) * (2 * math.pi / segments)
    r = diameter / 2
    return np.column_stack([cx + r * np.cos(angles), cy + r * np.sin(angles)])


def circle_polygon(cx: float, cy: float, diameter: float) -> Polygon:
    if diameter <= 0:
        return Polygon()
    return Polygon(circle_points(cx, cy, diameter))


def arc_points(
    cx: float,
    cy: float,
    diameter: float,
    start_angle: float,
    sweep_angle: float,
) -> np.ndarray:
    """Tessellate an arc; angles in degrees, one segment per 360/64 degrees of sweep."""
    n_points = math.ceil(abs(sweep_angle) * CIRCLE_SEGMENTS / 360)
    if n_points <= 0:
        return np.empty((0, 2))
    angles = np.radians(start_angle + np.arange(n_points + 1) * sweep_angle / n_points)
    r = diameter / 2
    return np.column_stack([cx + r * np.cos(angles), cy + r * np.sin(angles)])


def regular_polygon(cx: float, cy: float, diameter: float, sides: int, rotation_deg: float = 0.0) -> Polygon:
    """N-gon with its first vertex on the X axis, rotated about its center."""
    if sides < 3 or diameter <= 0:
        return Polygon()
    angles = np.radians(rotation_deg) + np.arange(sides) * (2 * math.pi / sides)
    r = diameter / 2
    return Polygon(np.column_stack([cx + r * np.cos(angles), cy + r * np.sin(angles)]))


def oblong(width: float, height: float) -> Polygon:
    """Capsule centered on the origin, rounded along its short side."""
    if width > height:
        dx = (width - height) / 2
        return LineString([(-dx, 0), (dx, 0)]).buffer(height / 2)
    if width < height:
        dy = (height - width) / 2
        return LineString([(0, -dy), (0, dy)]).buffer(width / 2)
    return circle_polygon(0, 0, width)


def aperture_hole(hole_x: float, hole_y: float) -> Optional[Polygon]:
    """Rectangular hole if both sizes are given, circular if only the first."""
    if hole_x <= 0:
        return None
    if hole_y > 0:
        return box(-hole_x / 2, -hole_y / 2, hole_x / 2, hole_y / 2)
    return circle_polygon(0, 0, hole_x)


def rectangle_sweep(start: tuple, stop: tuple, half_width: float, half_height: float) -> Polygon:
    """Area swept by a rectangular aperture moving from ``start`` to ``stop``."""
    (x0, y0), (x1, y1) = start, stop
    dx = -half_width if x0 > x1 else half_width
    dy = -half_height if y0 > y1 else half_height
    points = [
        (x0 - dx, y0 - dy),
        (x0 - dx, y0 + dy),
        (x1 - dx, y1 + dy),
        (x1 + dx, y1 + dy),
        (x1 + dx, y1 - dy),
        (x0 + dx, y0 - dy),
    ]
    return MultiPoint(points).convex_hull


def line_stroke(start: tuple, stop: tuple, width: float, cap_style: str = "round") -> BaseGeometry:
    if start == stop:
        if cap_style == "round":
            return Point(start).buffer(width / 2)
        return Polygon()
    return LineString([start, stop]).buffer(width / 2, cap_style=cap_style)


def _rotated(geom: BaseGeometry, degrees: float) -> BaseGeometry:
    if degrees == 0 or geom.is_empty:
        return geom
    return apply_transform(rotation(degrees), geom)


def _crosshair(cx: float, cy: float, length: float, thickness: float) -> BaseGeometry:
    half = length / 2
    horizontal = box(cx - half, cy - thickness / 2, cx + half, cy + thickness / 2)
    vertical = box(cx - thickness / 2, cy - half, cx + thickness / 2, cy + half)
    return horizontal.union(vertical)


class GeometrySynthesizer:
    """Composite one image into one region.

    ``unsupported`` counts primitives that could not be rendered (unknown
    aperture or macro primitive kinds, strokes drawn with macro apertures,
    references to undefined apertures). ``dropped_rings`` counts region and
    outline rings left out because they were too short or self-intersecting.
    """

    def __init__(self, image: Image):
        self.image = image
        self.region: BaseGeometry = Polygon()
        self.transforms = TransformStack()
        self.unsupported = 0
        self.dropped_rings = 0

    def synthesize(self, ccw: bool = True, mirror_line: Optional[tuple] = None) -> Region:
        image = self.image
        info = image.info
        initial = (
            rotation(info.image_rotation)
            @ translation(info.offset_a, info.offset_b)
            @ translation(info.justify_offset_a, info.justify_offset_b)
        )
        self.transforms = TransformStack(initial)
        self.region = Polygon()

        invert = info.polarity == Polarity.NEGATIVE
        exposure = not invert
        repeat = StepAndRepeat()
        old_level = None
        old_state = None

        nets = image.nets
        index = 0
        while index < len(nets):
            net = nets[index]
            if net.level is not old_level:
                exposure = (net.level.polarity == Polarity.CLEAR) == invert
                repeat = net.level.step_and_repeat
                knockout = net.level.knockout
                logger.debug("Level %s: %s", net.level.name or "unnamed", net.level.polarity.name)
                if knockout is not None and knockout.first_instance:
                    self._draw_knockout(knockout, initial)
                old_level = net.level

            if net.net_state is not old_state:
                self.transforms.replace(initial @ net_state_transform(net.net_state))
                old_state = net.net_state

            for rx in range(max(repeat.x, 1)):
                for ry in range(max(repeat.y, 1)):
                    self._draw_net(index, rx * repeat.distance_x, ry * repeat.distance_y, exposure)

            index = self._next_render_index(index)

        region = self.region
        if mirror_line is not None:
            region = apply_transform(reflection(*mirror_line), region)
        return orient_region(region, ccw)

    def _next_render_index(self, index: int) -> int:
        nets = self.image.nets
        if nets[index].interpolation == Interpolation.REGION_START:
            while index < len(nets) and nets[index].interpolation != Interpolation.REGION_END:
                index += 1
        return index + 1

    def _expose(self, shape: Optional[BaseGeometry], exposure: bool) -> None:
        self.region = expose(self.region, shape, exposure)

    def _draw_knockout(self, knockout: Knockout, initial: np.ndarray) -> None:
        x0 = knockout.lower_left_x - knockout.border
        y0 = knockout.lower_left_y - knockout.border
        width = knockout.width + 2 * knockout.border
        height = knockout.height + 2 * knockout.border
        rect = apply_transform(initial, box(x0, y0, x0 + width, y0 + height))
        self._expose(rect, knockout.polarity != Polarity.CLEAR)

    def _draw_net(self, index: int, dx: float, dy: float, exposure: bool) -> None:
        net = self.image.nets[index]
        if net.interpolation == Interpolation.REGION_START:
            self._fill_region(index, dx, dy, exposure)
            return
        if net.interpolation == Interpolation.DELETED:
            return
        if net.aperture_state not in (ApertureState.ON, ApertureState.FLASH):
            return

        aperture = self.image.apertures.get(net.aperture)
        if aperture is None:
            logger.debug("Net references undefined aperture D%d", net.aperture)
            self.unsupported += 1
            return

        if net.aperture_state == ApertureState.ON:
            shape = self._stroke(net, aperture, dx, dy)
        else:
            shape = self._flash(net, aperture, dx, dy)
        self._expose(shape, exposure)

    def _stroke(self, net: Net, aperture, dx: float, dy: float) -> Optional[BaseGeometry]:
        start = (net.start_x + dx, net.start_y + dy)
        stop = (net.stop_x + dx, net.stop_y + dy)

        if isinstance(aperture, CircleAperture):
            width = aperture.diameter
        elif isinstance(aperture, (RectangleAperture, OvalAperture)):
            width = aperture.width
        elif isinstance(aperture, PolygonAperture):
            width = aperture.diameter
        else:
            # macros can only be flashed
            self.unsupported += 1
            return None

        if net.interpolation == Interpolation.LINEAR:
            if isinstance(aperture, RectangleAperture):
                sweep = rectangle_sweep(start, stop, aperture.width / 2, aperture.height / 2)
                return self.transforms.apply(sweep)
            # ovals and polygons are drawn like circles
            if net.length == 0:
                return self.transforms.apply(Point(start).buffer(width / 2))
            return self.transforms.apply(LineString([start, stop]).buffer(width / 2))

        if net.interpolation in (Interpolation.CW_CIRCULAR, Interpolation.CCW_CIRCULAR):
            segment = net.circle_segment
            if segment is None or segment.sweep_angle == 0 or segment.width == 0:
                return None
            points = arc_points(
                segment.center_x + dx,
                segment.center_y + dy,
                segment.width,
                segment.start_angle,
                segment.sweep_angle,
            )
            if len(points) < 2:
                return None
            cap = "flat" if isinstance(aperture, RectangleAperture) else "round"
            return self.transforms.apply(LineString(points).buffer(width / 2, cap_style=cap))

        return None

    def _flash(self, net: Net, aperture, dx: float, dy: float) -> Optional[BaseGeometry]:
        self.transforms.push(translation(net.stop_x + dx, net.stop_y + dy))
        try:
            shape = self._aperture_shape(aperture)
            if shape is None:
                return None
            return self.transforms.apply(shape)
        finally:
            self.transforms.pop()

    def _aperture_shape(self, aperture) -> Optional[BaseGeometry]:
        if isinstance(aperture, CircleAperture):
            shape = circle_polygon(0, 0, aperture.diameter)
        elif isinstance(aperture, RectangleAperture):
            shape = box(-aperture.width / 2, -aperture.height / 2, aperture.width / 2, aperture.height / 2)
        elif isinstance(aperture, OvalAperture):
            shape = oblong(aperture.width, aperture.height)
        elif isinstance(aperture, PolygonAperture):
            shape = regular_polygon(0, 0, aperture.diameter, int(aperture.sides), aperture.rotation)
        elif isinstance(aperture, MacroAperture):
            return self._macro_shape(aperture)
        else:
            self.unsupported += 1
            return None

        hole = aperture_hole(aperture.hole_x, aperture.hole_y)
        if hole is not None:
            shape = shape.difference(hole)
        return shape

    def _macro_shape(self, aperture: MacroAperture) -> BaseGeometry:
        """Composite the macro primitives, each with its own exposure, in the macro frame."""
        surface: BaseGeometry = Polygon()
        self.unsupported += aperture.skipped_primitives
        for primitive in aperture.primitives:
            shape, exposure = self._macro_primitive(primitive)
            if shape is not None:
                surface = expose(surface, shape, exposure)
        return surface

    def _macro_primitive(self, primitive: MacroPrimitive) -> tuple[Optional[BaseGeometry], bool]:
        if isinstance(primitive, MacroCircle):
            shape = circle_polygon(primitive.center_x, primitive.center_y, primitive.diameter)
            return _rotated(shape, primitive.rotation), primitive.exposure

        if isinstance(primitive, MacroOutline):
            points = list(primitive.points)
            if len(points) < 3:
                self.dropped_rings += 1
                return None, primitive.exposure
            outline = Polygon(points)
            if not outline.is_valid:
                logger.warning("Dropping macro outline: %s", explain_validity(outline))
                self.dropped_rings += 1
                return None, primitive.exposure
            return _rotated(outline, primitive.rotation), primitive.exposure

        if isinstance(primitive, MacroPolygon):
            shape = regular_polygon(primitive.center_x, primitive.center_y, primitive.diameter, int(primitive.sides))
            return _rotated(shape, primitive.rotation), primitive.exposure

        if isinstance(primitive, MacroMoire):
            return _rotated(self._moire(primitive), primitive.rotation), True

        if isinstance(primitive, MacroThermal):
            cx, cy = primitive.center_x, primitive.center_y
            pad = circle_polygon(cx, cy, primitive.outer_diameter).difference(
                circle_polygon(cx, cy, primitive.inner_diameter)
            )
            cross = _crosshair(cx, cy, 2 * primitive.outer_diameter, primitive.gap)
            return _rotated(pad.difference(cross), primitive.rotation), True

        if isinstance(primitive, MacroVectorLine):
            start = (primitive.start_x, primitive.start_y)
            end = (primitive.end_x, primitive.end_y)
            shape = line_stroke(start, end, primitive.width, cap_style="flat")
            return _rotated(shape, primitive.rotation), primitive.exposure

        if isinstance(primitive, MacroCenterLine):
            hw, hh = primitive.width / 2, primitive.height / 2
            shape = box(primitive.center_x - hw, primitive.center_y - hh, primitive.center_x + hw, primitive.center_y + hh)
            return _rotated(shape, primitive.rotation), primitive.exposure

        if isinstance(primitive, MacroLowerLeftLine):
            x0, y0 = primitive.lower_left_x, primitive.lower_left_y
            shape = box(x0, y0, x0 + primitive.width, y0 + primitive.height)
            return _rotated(shape, primitive.rotation), primitive.exposure

        logger.debug("Unsupported macro primitive %r", type(primitive).__name__)
        self.unsupported += 1
        return None, True

    @staticmethod
    def _moire(primitive: MacroMoire) -> BaseGeometry:
        cx, cy = primitive.center_x, primitive.center_y
        shape: BaseGeometry = Polygon()
        diameter = primitive.outer_diameter
        for _ in range(max(int(primitive.max_rings), 0)):
            if diameter <= 0:
                break
            inner = diameter - 2 * primitive.ring_thickness
            ring = circle_polygon(cx, cy, diameter)
            if inner > 0:
                ring = ring.difference(circle_polygon(cx, cy, inner))
            shape = shape.union(ring)
            diameter = inner - 2 * primitive.gap
        if primitive.crosshair_thickness > 0 and primitive.crosshair_length > 0:
            shape = shape.union(_crosshair(cx, cy, primitive.crosshair_length, primitive.crosshair_thickness))
        return shape

    def _region_rings(self, index: int, dx: float, dy: float) -> tuple[list, list]:
        """Walk a region block and split its outline into filled and void runs.

        A run is a sequence of consecutive nets with the same aperture state;
        drawn (on) runs are filled contours, moves (off) form void runs.
        """
        filled: list[list] = []
        void: list[list] = []
        run: list = []
        run_on: Optional[bool] = None

        for net in self.image.nets[index + 1:]:
            if net.interpolation == Interpolation.REGION_END:
                break
            if net.interpolation == Interpolation.DELETED:
                continue
            on = net.aperture_state == ApertureState.ON
            if run_on is not None and on != run_on and run:
                (filled if run_on else void).append(run)
                run = []
            run_on = on

            if net.interpolation == Interpolation.LINEAR:
                if not run:
                    run.append((net.start_x + dx, net.start_y + dy))
                run.append((net.stop_x + dx, net.stop_y + dy))
            elif net.interpolation in (Interpolation.CW_CIRCULAR, Interpolation.CCW_CIRCULAR):
                segment = net.circle_segment
                if segment is None:
                    continue
                points = arc_points(
                    segment.center_x + dx,
                    segment.center_y + dy,
                    segment.width,
                    segment.start_angle,
                    segment.sweep_angle,
                )
                run.extend(tuple(p) for p in points)

        if run:
            (filled if run_on else void).append(run)
        return filled, void

    def _fill_region(self, index: int, dx: float, dy: float, exposure: bool) -> None:
        filled, void = self._region_rings(index, dx, dy)
        if not filled:
            logger.warning("Region at net %d has no outline", index)
            self.dropped_rings += 1
        for ring in filled:
            self._expose_ring(ring, exposure, report=True)
        for ring in void:
            self._expose_ring(ring, not exposure, report=False)

    def _expose_ring(self, ring: list, exposure: bool, report: bool) -> None:
        if len(ring) <= 3:
            if report:
                logger.warning("Dropping region ring with %d points", len(ring))
                self.dropped_rings += 1
            return
        polygon = Polygon(ring)
        if not polygon.is_valid or polygon.area == 0:
            if report:
                logger.warning("Dropping region ring: %s", explain_validity(polygon))
                self.dropped_rings += 1
            return
        self._expose(self.transforms.apply(polygon), exposure)


def orient_region(region: BaseGeometry, ccw: bool = True) -> Region:
    """Orient exterior rings CCW (or CW) and collapse to Polygon/MultiPolygon."""
    sign = 1.0 if ccw else -1.0
    polygons = [orient(p, sign) for p in iter_polygons(region)]
    if not polygons:
        return Polygon()
    if len(polygons) == 1:
        return polygons[0]
    return MultiPolygon(polygons)


def synthesize(image: Image, ccw: bool = True, mirror_line: Optional[tuple] = None) -> Region:
    """Composite ``image`` into one region, reporting skipped primitives."""
    synthesizer = GeometrySynthesizer(image)
    region = synthesizer.synthesize(ccw, mirror_line)
    if synthesizer.unsupported:
        logger.warning("Skipped %d unsupported primitives", synthesizer.unsupported)
    if synthesizer.dropped_rings:
        logger.warning("Dropped %d malformed rings", synthesizer.dropped_rings)
    logger.info("Synthesized %d copper areas from %d nets", len(list(iter_polygons(region))), len(image.nets))
    return region
