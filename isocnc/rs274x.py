"""Reader for the subset of RS-274X the geometry synthesizer consumes.

Produces an :class:`~isocnc.image.Image`: the aperture table (standard and
macro apertures), and the ordered net list with levels and net states.
Attribute commands (``TF``, ``TA``, ``TO``, ``TD``) are accepted and ignored.
"""

import ast
import logging
import math
import operator
import re
from dataclasses import replace
from pathlib import Path
from typing import Iterator, Optional

from .image import (
    ApertureState,
    AxisSelect,
    CircleAperture,
    CircleSegment,
    FileType,
    Image,
    Interpolation,
    Knockout,
    Level,
    MacroAperture,
    MacroCenterLine,
    MacroCircle,
    MacroLowerLeftLine,
    MacroMoire,
    MacroOutline,
    MacroPolygon,
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
    Unit,
)

logger = logging.getLogger(__name__)


class GerberParseError(ValueError):
    """The Gerber file contains something the reader cannot interpret."""

    def __init__(self, message: str, path: str = "<gerber>"):
        self.path = path
        super().__init__(f"{path}: {message}")


def parse_gerber_coord(value: str, int_digits: int, dec_digits: int, zero_suppression: str) -> float:
    """Decode a fixed-format coordinate such as ``-12500`` with format 2.4."""
    sign = -1.0 if value.startswith("-") else 1.0
    digits = value[1:] if value[:1] in "+-" else value
    if "." in digits:
        return sign * float(digits)

    total = int_digits + dec_digits
    if len(digits) < total:
        if zero_suppression == "T":
            digits = digits.ljust(total, "0")
        else:
            digits = digits.rjust(total, "0")
    return sign * (int(digits) / (10 ** dec_digits))


# Macro arithmetic

_BINARY_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
}
_UNARY_OPS = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}


def evaluate_macro_expression(expr: str, variables: dict[int, float]) -> float:
    """Evaluate a macro expression; ``x`` multiplies and ``$n`` reads a variable.

    Undefined variables read as 0.
    """
    source = re.sub(r"\$(\d+)", r"v\1", expr.replace("x", "*").replace("X", "*"))
    try:
        tree = ast.parse(source, mode="eval")
    except SyntaxError as e:
        raise ValueError(f"bad macro expression {expr!r}") from e

    def walk(node):
        if isinstance(node, ast.Expression):
            return walk(node.body)
        if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)):
            return float(node.value)
        if isinstance(node, ast.Name) and node.id.startswith("v"):
            return variables.get(int(node.id[1:]), 0.0)
        if isinstance(node, ast.BinOp) and type(node.op) in _BINARY_OPS:
            return _BINARY_OPS[type(node.op)](walk(node.left), walk(node.right))
        if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
            return _UNARY_OPS[type(node.op)](walk(node.operand))
        raise ValueError(f"bad macro expression {expr!r}")

    try:
        return walk(tree)
    except ZeroDivisionError as e:
        raise ValueError(f"division by zero in macro expression {expr!r}") from e


def _exposure(value: float) -> bool:
    return value != 0


def _pad(values: list[float], count: int) -> list[float]:
    return values + [0.0] * (count - len(values))


def build_macro_primitive(code: int, values: list[float]):
    """Turn one evaluated macro statement into a primitive, or None if unknown."""
    if code == 1:
        exposure, diameter, cx, cy, rot = _pad(values, 5)[:5]
        return MacroCircle(_exposure(exposure), diameter, cx, cy, rot)
    if code == 4:
        exposure, n = _pad(values, 2)[:2]
        n = int(n)
        coords = _pad(values[2:], 2 * (n + 1) + 1)
        points = tuple((coords[2 * i], coords[2 * i + 1]) for i in range(n + 1))
        return MacroOutline(_exposure(exposure), points, coords[2 * (n + 1)])
    if code == 5:
        exposure, n, cx, cy, diameter, rot = _pad(values, 6)[:6]
        return MacroPolygon(_exposure(exposure), int(n), cx, cy, diameter, rot)
    if code == 6:
        v = _pad(values, 9)
        return MacroMoire(v[0], v[1], v[2], v[3], v[4], int(v[5]), v[6], v[7], v[8])
    if code == 7:
        return MacroThermal(*_pad(values, 6)[:6])
    if code in (2, 20):
        exposure, *rest = _pad(values, 7)[:7]
        return MacroVectorLine(_exposure(exposure), *rest)
    if code == 21:
        exposure, *rest = _pad(values, 6)[:6]
        return MacroCenterLine(_exposure(exposure), *rest)
    if code == 22:
        exposure, *rest = _pad(values, 6)[:6]
        return MacroLowerLeftLine(_exposure(exposure), *rest)
    return None


def expand_macro(name: str, body: list[str], parameters: list[float], unit: Unit) -> MacroAperture:
    """Run a macro program with the aperture's parameters bound to $1, $2, ..."""
    variables = {i + 1: value for i, value in enumerate(parameters)}
    primitives = []
    skipped = 0
    for statement in body:
        if not statement or statement.startswith("0"):
            continue
        assignment = re.match(r"^\$(\d+)=(.+)$", statement)
        if assignment:
            variables[int(assignment.group(1))] = evaluate_macro_expression(assignment.group(2), variables)
            continue
        fields = statement.split(",")
        code = int(fields[0])
        values = [evaluate_macro_expression(f, variables) for f in fields[1:] if f]
        primitive = build_macro_primitive(code, values)
        if primitive is None:
            logger.warning("Macro %s: unsupported primitive %d", name, code)
            skipped += 1
            continue
        primitives.append(primitive)
    return MacroAperture(name, tuple(primitives), unit, skipped)


def iter_blocks(text: str) -> Iterator[tuple[bool, str]]:
    """Split Gerber text into ``(extended, statement)`` pairs, whitespace removed.

    A macro definition is returned as one extended statement with its inner
    ``*`` separators kept.
    """
    pos = 0
    size = len(text)
    while pos < size:
        ch = text[pos]
        if ch.isspace():
            pos += 1
        elif ch == "%":
            end = text.find("%", pos + 1)
            if end < 0:
                end = size
            body = "".join(text[pos + 1:end].split())
            if body.startswith("AM"):
                yield True, body
            else:
                for statement in body.split("*"):
                    if statement:
                        yield True, statement
            pos = end + 1
        else:
            end = text.find("*", pos)
            if end < 0:
                end = size
            raw = text[pos:end]
            # keep comment text as written
            statement = raw.strip() if raw.lstrip().startswith("G04") else "".join(raw.split())
            if statement:
                yield False, statement
            pos = end + 1


_WORD = re.compile(r"([A-Z])([+-]?[0-9.]+)")
_INTERPOLATIONS = {
    1: Interpolation.LINEAR,
    2: Interpolation.CW_CIRCULAR,
    3: Interpolation.CCW_CIRCULAR,
}


class GerberReader:
    """One-shot reader; call :meth:`parse` once per file."""

    def __init__(self, name: str = "<gerber>"):
        self.name = name
        self.image = Image(FileType.RS274X, name=name)
        self.int_digits = 2
        self.dec_digits = 4
        self.zero_suppression = "L"
        self.incremental = False
        self.macros: dict[str, list[str]] = {}
        self.level = Level()
        self.net_state = NetState()
        self.interpolation = Interpolation.LINEAR
        self.multi_quadrant = False
        self.in_region = False
        self.aperture = 0
        self.last_operation = 2
        self.x = 0.0
        self.y = 0.0
        self.done = False

    def error(self, message: str) -> GerberParseError:
        return GerberParseError(message, self.name)

    def parse(self, text: str) -> Image:
        for extended, statement in iter_blocks(text):
            if self.done:
                break
            try:
                if extended:
                    self._extended(statement)
                else:
                    self._operation(statement)
            except GerberParseError:
                raise
            except ValueError as e:
                raise self.error(f"cannot read {statement!r}: {e}") from e
        if self.in_region:
            logger.warning("%s: region not closed before end of file", self.name)
        logger.debug("%s: %d apertures, %d nets", self.name, len(self.image.apertures), len(self.image.nets))
        return self.image

    # extended commands

    def _new_level(self, **changes) -> None:
        current = self.level
        self.level = Level(
            polarity=changes.get("polarity", current.polarity),
            step_and_repeat=changes.get("step_and_repeat", current.step_and_repeat),
            knockout=changes.get("knockout"),
            name=changes.get("name", current.name),
        )

    def _new_state(self, **changes) -> None:
        self.net_state = replace(self.net_state, **changes)

    def _number(self, pattern: str, statement: str, default: float = 0.0) -> float:
        match = re.search(pattern + r"([+-]?[0-9.]+)", statement)
        return float(match.group(1)) if match else default

    def _extended(self, statement: str) -> None:
        command = statement[:2]
        if command == "FS":
            match = re.match(r"^FS([LTD])([AI])X(\d)(\d)Y(\d)(\d)", statement)
            if not match:
                raise self.error(f"bad format statement {statement!r}")
            self.zero_suppression = match.group(1)
            self.incremental = match.group(2) == "I"
            self.int_digits, self.dec_digits = int(match.group(3)), int(match.group(4))
        elif command == "MO":
            unit = Unit.MM if statement[2:4] == "MM" else Unit.INCH
            self.image.unit = unit
            self._new_state(unit=unit)
        elif command == "AD":
            self._aperture_definition(statement)
        elif command == "AM":
            lines = statement[2:].split("*")
            self.macros[lines[0]] = [line for line in lines[1:] if line]
        elif command == "LP":
            polarity = Polarity.CLEAR if statement[2:3] == "C" else Polarity.DARK
            self._new_level(polarity=polarity)
        elif command == "LN":
            self._new_level(name=statement[2:])
        elif command == "SR":
            repeat = StepAndRepeat(
                x=int(self._number("X", statement, 1)),
                y=int(self._number("Y", statement, 1)),
                distance_x=self._number("I", statement),
                distance_y=self._number("J", statement),
            )
            self._new_level(step_and_repeat=repeat)
        elif command == "KO":
            self._knockout(statement)
        elif command == "IP":
            negative = statement[2:5] == "NEG"
            self.image.info.polarity = Polarity.NEGATIVE if negative else Polarity.POSITIVE
        elif command == "IR":
            self.image.info.image_rotation = self._number("IR", statement)
        elif command == "IO":
            self.image.info.offset_a = self._number("A", statement)
            self.image.info.offset_b = self._number("B", statement)
        elif command == "IN":
            self.image.name = statement[2:]
        elif command == "OF":
            self._new_state(offset_a=self._number("A", statement), offset_b=self._number("B", statement))
        elif command == "SF":
            self._new_state(scale_a=self._number("A", statement, 1.0), scale_b=self._number("B", statement, 1.0))
        elif command == "MI":
            a = self._number("A", statement) != 0
            b = self._number("B", statement) != 0
            mirror = {
                (False, False): MirrorState.NONE,
                (True, False): MirrorState.FLIP_A,
                (False, True): MirrorState.FLIP_B,
                (True, True): MirrorState.FLIP_AB,
            }[(a, b)]
            self._new_state(mirror_state=mirror)
        elif command == "AS":
            swap = statement.startswith("ASAY")
            self._new_state(axis_select=AxisSelect.SWAP_AB if swap else AxisSelect.NONE)
        elif command in ("TF", "TA", "TO", "TD", "IJ", "IC", "PF", "SM"):
            logger.debug("Ignoring %s", statement)
        else:
            logger.warning("%s: unsupported command %s", self.name, statement)

    def _knockout(self, statement: str) -> None:
        if len(statement) == 2:
            self._new_level()
            return
        knockout = Knockout(
            first_instance=True,
            polarity=Polarity.CLEAR if statement[2:3] == "C" else Polarity.DARK,
            lower_left_x=self._number("X", statement),
            lower_left_y=self._number("Y", statement),
            width=self._number("I", statement),
            height=self._number("J", statement),
            border=self._number("K", statement),
        )
        self._new_level(knockout=knockout)

    def _aperture_definition(self, statement: str) -> None:
        match = re.match(r"^ADD(\d+)([A-Za-z_.$][^,]*)(?:,(.*))?$", statement)
        if not match:
            raise self.error(f"bad aperture definition {statement!r}")
        number = int(match.group(1))
        kind = match.group(2)
        params = [float(p) for p in match.group(3).split("X") if p] if match.group(3) else []
        unit = self.image.unit

        if kind == "C":
            d, hx, hy = _pad(params, 3)[:3]
            aperture = CircleAperture(d, hx, hy, unit)
        elif kind == "R":
            w, h, hx, hy = _pad(params, 4)[:4]
            aperture = RectangleAperture(w, h, hx, hy, unit)
        elif kind == "O":
            w, h, hx, hy = _pad(params, 4)[:4]
            aperture = OvalAperture(w, h, hx, hy, unit)
        elif kind == "P":
            d, sides, rot, hx, hy = _pad(params, 5)[:5]
            aperture = PolygonAperture(d, int(sides), rot, hx, hy, unit)
        elif kind in self.macros:
            aperture = expand_macro(kind, self.macros[kind], params, unit)
        else:
            raise self.error(f"aperture D{number} uses undefined macro {kind}")
        self.image.apertures[number] = aperture

    # operations

    def _coord(self, value: Optional[str], current: float) -> float:
        if value is None:
            return current
        decoded = parse_gerber_coord(value, self.int_digits, self.dec_digits, self.zero_suppression)
        return current + decoded if self.incremental else decoded

    def _offset(self, value: Optional[str]) -> float:
        if value is None:
            return 0.0
        return parse_gerber_coord(value, self.int_digits, self.dec_digits, self.zero_suppression)

    def _operation(self, statement: str) -> None:
        if statement.startswith("G04"):
            return
        coords: dict[str, str] = {}
        operation = None
        for letter, value in _WORD.findall(statement):
            if letter == "G":
                self._g_code(int(float(value)))
            elif letter == "D":
                code = int(value)
                if code >= 10:
                    self.aperture = code
                else:
                    operation = code
            elif letter == "M":
                if int(value) in (0, 2):
                    self.done = True
            elif letter in "XYIJ":
                coords[letter] = value

        if not coords and operation is None:
            return
        if operation is None:
            # modal D01 is deprecated but still produced by old exporters
            operation = self.last_operation
        self.last_operation = operation

        x = self._coord(coords.get("X"), self.x)
        y = self._coord(coords.get("Y"), self.y)
        if operation == 1:
            self._draw(x, y, self._offset(coords.get("I")), self._offset(coords.get("J")))
        elif operation == 2:
            self._add_net(x, y, ApertureState.OFF, Interpolation.LINEAR)
        elif operation == 3:
            self._add_net(x, y, ApertureState.FLASH, Interpolation.LINEAR)
        else:
            raise self.error(f"unknown operation D{operation:02d}")
        self.x, self.y = x, y

    def _g_code(self, code: int) -> None:
        if code in _INTERPOLATIONS:
            self.interpolation = _INTERPOLATIONS[code]
        elif code == 36:
            self.in_region = True
            self._add_net(self.x, self.y, ApertureState.OFF, Interpolation.REGION_START)
        elif code == 37:
            self.in_region = False
            self._add_net(self.x, self.y, ApertureState.OFF, Interpolation.REGION_END)
        elif code == 74:
            self.multi_quadrant = False
        elif code == 75:
            self.multi_quadrant = True
        elif code == 70:
            self.image.unit = Unit.INCH
        elif code == 71:
            self.image.unit = Unit.MM
        elif code == 90:
            self.incremental = False
        elif code == 91:
            self.incremental = True

    def _add_net(self, x: float, y: float, state: ApertureState, interpolation: Interpolation,
                 segment: Optional[CircleSegment] = None) -> None:
        self.image.nets.append(Net(
            start_x=self.x,
            start_y=self.y,
            stop_x=x,
            stop_y=y,
            aperture=self.aperture,
            aperture_state=state,
            interpolation=interpolation,
            level=self.level,
            net_state=self.net_state,
            circle_segment=segment,
        ))

    def _draw(self, x: float, y: float, i: float, j: float) -> None:
        if self.interpolation == Interpolation.LINEAR:
            self._add_net(x, y, ApertureState.ON, Interpolation.LINEAR)
            return
        clockwise = self.interpolation == Interpolation.CW_CIRCULAR
        if self.multi_quadrant:
            segment = arc_segment(self.x, self.y, x, y, self.x + i, self.y + j, clockwise, full_circle=True)
        else:
            segment = single_quadrant_segment(self.x, self.y, x, y, abs(i), abs(j), clockwise)
        self._add_net(x, y, ApertureState.ON, self.interpolation, segment)


def arc_segment(x0: float, y0: float, x1: float, y1: float, cx: float, cy: float,
                clockwise: bool, full_circle: bool) -> CircleSegment:
    """Arc from (x0, y0) to (x1, y1) around (cx, cy); angles in degrees."""
    radius = math.hypot(x0 - cx, y0 - cy)
    start = math.degrees(math.atan2(y0 - cy, x0 - cx))
    end = math.degrees(math.atan2(y1 - cy, x1 - cx))
    if clockwise:
        if end > start or (full_circle and math.isclose(end, start)):
            end -= 360.0
    elif end < start or (full_circle and math.isclose(end, start)):
        end += 360.0
    return CircleSegment(cx, cy, 2 * radius, 2 * radius, start, end)


def single_quadrant_segment(x0: float, y0: float, x1: float, y1: float, i: float, j: float,
                            clockwise: bool) -> CircleSegment:
    """Pick the center sign combination that gives an arc of at most 90 degrees."""
    best = None
    for sx in (1, -1):
        for sy in (1, -1):
            cx, cy = x0 + sx * i, y0 + sy * j
            segment = arc_segment(x0, y0, x1, y1, cx, cy, clockwise, full_circle=False)
            if abs(segment.sweep_angle) > 90.0 + 1e-6:
                continue
            error = abs(math.hypot(x1 - cx, y1 - cy) - segment.width / 2)
            if best is None or error < best[0]:
                best = (error, segment)
    if best is None:
        return arc_segment(x0, y0, x1, y1, x0 + i, y0 + j, clockwise, full_circle=False)
    return best[1]


def parse_gerber(text: str, name: str = "<gerber>") -> Image:
    return GerberReader(name).parse(text)


def read_gerber(path: Path) -> Image:
    """Read a Gerber file. OSError propagates to the caller."""
    path = Path(path)
    text = path.read_text(encoding="utf-8", errors="ignore")
    return parse_gerber(text, str(path))
