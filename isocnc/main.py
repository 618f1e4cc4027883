"""Command line entry point: Gerber copper to isolation G-code, Excellon to drill G-code."""

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional, TextIO

from .config import ConfigError, ConfigStore, DrillSettings, IsoSettings
from .excellon import DrillParseError, parse_excellon
from .gcode import unit_factor
from .geometry import iter_polygons, synthesize
from .image import FileType, Image
from .rs274x import GerberParseError, parse_gerber
from .toolpaths import DrillOptions, DrillWriter, IsoOptions, IsoWriter
from .tools import plan_isolation_passes

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(levelname)s %(name)s: %(message)s"

# Mirroring flips the board about the Y axis.
MIRROR_LINE = (0.0, 0.0, 0.0, 1.0)


class InputFileError(Exception):
    """An input or config file could not be read."""

    def __init__(self, path: Path, reason: str):
        self.path = path
        super().__init__(f"cannot read {path}: {reason}")


class OutputFileError(Exception):
    """The output file could not be written."""

    def __init__(self, path: Path, reason: str):
        self.path = path
        super().__init__(f"cannot write {path}: {reason}")


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="isocnc",
        description="Generate isolation routing G-code from a Gerber file or drill G-code from an Excellon file.",
    )
    parser.add_argument("input", type=Path, help="Gerber (RS-274X) or Excellon drill file.")
    parser.add_argument("output", type=Path, help="G-code file to write.")
    parser.add_argument("config", type=Path, help="Machine configuration file.")
    parser.add_argument(
        "--mirror-x",
        action="store_true",
        help="Mirror the board about the Y axis (for bottom layers).",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug messages.")
    return parser


def parse_args(argv: list[str], parser: Optional[argparse.ArgumentParser] = None) -> argparse.Namespace:
    parser = parser or build_arg_parser()
    return parser.parse_args(argv)


def setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(format=LOG_FORMAT)
    logging.getLogger().setLevel(logging.DEBUG if verbose else logging.INFO)


def detect_file_type(text: str) -> Optional[FileType]:
    if "%FS" in text or "%MO" in text:
        return FileType.RS274X
    if "M48" in text:
        return FileType.DRILL
    return None


def read_image(path: Path) -> Image:
    try:
        text = path.read_text(encoding="utf-8", errors="ignore")
    except OSError as e:
        raise InputFileError(path, e.strerror or str(e)) from e

    file_type = detect_file_type(text)
    if file_type == FileType.RS274X:
        return parse_gerber(text, str(path))
    if file_type == FileType.DRILL:
        return parse_excellon(text, str(path))
    raise InputFileError(path, "neither a Gerber nor an Excellon file")


def load_config(path: Path) -> ConfigStore:
    try:
        return ConfigStore.load(path)
    except OSError as e:
        raise InputFileError(path, e.strerror or str(e)) from e


def write_isolation(image: Image, settings: IsoSettings, stream: TextIO, mirror_x: bool = False) -> int:
    """Write every isolation pass for ``image``; returns the number of passes."""
    region = synthesize(image, mirror_line=MIRROR_LINE if mirror_x else None)
    copper = len(list(iter_polygons(region)))
    if not copper:
        logger.warning("%s has no copper to isolate", image.name)

    # settings are in output units, the region is in the file's units
    factor = unit_factor(image.is_metric, settings.metric_mode)
    writer = IsoWriter(settings, stream, image.is_metric)
    passes = 0
    for iso_pass in plan_isolation_passes(
        settings.tool_size,
        settings.isolation_min,
        settings.isolation_max,
        settings.path_overlap,
        settings.tool2_size,
    ):
        path = region.buffer(iso_pass.distance / factor, join_style=1, quad_segs=16)
        if iso_pass.number == 0 and len(list(iter_polygons(path))) < copper:
            logger.warning("The tool diameter is too large: not every copper island is isolated")
        options = IsoOptions(
            ccw=settings.milling_conventional,
            mirror_x=mirror_x,
            tool_diameter=iso_pass.tool_diameter,
            path_number=iso_pass.number,
            last_tool=iso_pass.last_tool,
            last_path=iso_pass.last_path,
        )
        writer.write(path, options)
        passes += 1
    return passes


def write_drill(image: Image, settings: DrillSettings, stream: TextIO, mirror_x: bool = False) -> None:
    DrillWriter(settings, stream).write(image, DrillOptions(mirror_x=mirror_x))


def run(args: argparse.Namespace) -> None:
    store = load_config(args.config)
    image = read_image(args.input)

    if image.file_type == FileType.RS274X:
        settings = IsoSettings.from_store(store)
    else:
        settings = DrillSettings.from_store(store)

    try:
        with open(args.output, "w", encoding="ascii", errors="replace", newline="\n") as stream:
            if image.file_type == FileType.RS274X:
                passes = write_isolation(image, settings, stream, args.mirror_x)
                logger.info("Wrote %d isolation passes to %s", passes, args.output)
            else:
                write_drill(image, settings, stream, args.mirror_x)
                logger.info("Wrote drill program to %s", args.output)
    except OSError as e:
        raise OutputFileError(args.output, e.strerror or str(e)) from e


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_arg_parser()
    args = parse_args(sys.argv[1:] if argv is None else argv, parser)
    setup_logging(args.verbose)
    try:
        run(args)
    except (ConfigError, GerberParseError, DrillParseError, InputFileError, OutputFileError) as e:
        logger.error("%s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
