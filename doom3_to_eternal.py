#!/usr/bin/env python3
"""
Doom 3 .map -> Doom Eternal .map brush converter.

Only brushDef3 blocks are carried over. Every plane line inside a block has its
distance rescaled from Doom 3 world units to Doom Eternal units, and (unless
disabled) its texture-projection matrix rescaled by the inverse ratio.

Output layout:
- Version / HierarchyVersion header
- one static worldspawn entity
- one wrapper block per converted brush, closed by an indent-only line

Input bytes that are not valid UTF-8 are carried through unchanged and a
leading byte order mark is ignored.

Entities, patches and comments of the source map are not converted.
"""

from __future__ import annotations

import argparse
import logging
import re
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

Vector3 = Tuple[float, float, float]
TextureMatrix = Tuple[Vector3, Vector3]

# Units per metre in each engine.
DOOM3_UNITS = 52.4934
ETERNAL_UNITS = 1.325

DEFAULT_DISTANCE_SCALE = ETERNAL_UNITS / DOOM3_UNITS
DEFAULT_TEXTURE_SCALE = DOOM3_UNITS / ETERNAL_UNITS

MAP_EXTENSION = ".map"
DEFAULT_OUTPUT_SUFFIX = "_converted"
BRUSH_START_TOKEN = "brushDef3"
BLOCK_END_TOKEN = "}"
BRUSH_INDENT = "  "

# Undecodable bytes pass through to the output unchanged.
MAP_ENCODING = "utf-8-sig"
MAP_ERRORS = "surrogateescape"
LINE_BREAK_RX = re.compile(r"\r\n|\r|\n")

ETERNAL_HEADER = (
    "Version 7",
    "HierarchyVersion 1",
)

ETERNAL_WORLD_ENTITY = (
    "entity {",
    "\tentityDef world {",
    '\t\tinherit = "worldspawn";',
    "\t\tedit = {",
    "\t\t}",
    "\t}",
)

_NUM = r"(-?\d+\.?\d*)"
_PLANE = r"\(\s*" + r"\s*".join([_NUM] * 4) + r"\s*\)"
_TRIPLET = r"\(\s*" + r"\s*".join([_NUM] * 3) + r"\s*\)"

PLANE_RX = re.compile(_PLANE)
PLANE_WITH_TEXTURE_RX = re.compile(_PLANE + r"\s*\(\s*" + _TRIPLET + r"\s*" + _TRIPLET + r"\s*\)")

log = logging.getLogger("doom3_to_eternal")


@dataclass(frozen=True)
class ScaleConfig:
    distance: float = DEFAULT_DISTANCE_SCALE
    texture: float = DEFAULT_TEXTURE_SCALE
    rescale_texture: bool = True

    @classmethod
    def from_units(cls, doom3_units: float, eternal_units: float, rescale_texture: bool = True) -> "ScaleConfig":
        """Build the ratio pair from the number of units per metre in each engine.

        Texture density is inversely proportional to world-unit size, so the
        texture ratio is the reciprocal of the distance ratio.
        """
        if doom3_units <= 0 or eternal_units <= 0:
            raise ValueError(
                f"unit sizes must be positive (doom3={doom3_units}, eternal={eternal_units})"
            )
        return cls(
            distance=eternal_units / doom3_units,
            texture=doom3_units / eternal_units,
            rescale_texture=rescale_texture,
        )


@dataclass(frozen=True)
class PlaneMatch:
    start: int
    end: int
    normal: Tuple[str, str, str]
    dist: float
    texture: Optional[TextureMatrix] = None


@dataclass(frozen=True)
class Brush:
    lines: Tuple[str, ...]

    @property
    def text(self) -> str:
        return "".join(f"{line}\n" for line in self.lines)


@dataclass
class ConversionStats:
    input_lines: int = 0
    brushes: int = 0
    rescaled_planes: int = 0
    dropped_unterminated: int = 0
    discarded_restarted: int = 0


def setup_logging(level: int = logging.INFO) -> None:
    """Attach a stdout handler to the converter logger."""
    logger = logging.getLogger("doom3_to_eternal")
    logger.setLevel(level)

    if logger.hasHandlers():
        logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s", datefmt="%H:%M:%S")
    )
    logger.addHandler(handler)


def parse_number(text: str) -> float:
    try:
        return float(text)
    except ValueError as exc:
        raise ValueError(f"malformed numeric literal in plane: {text!r}") from exc


def extract_plane(line: str, rescale_texture: bool = True) -> Optional[PlaneMatch]:
    """Locate the first plane tuple on a line.

    With ``rescale_texture`` the plane must be followed by its two texture
    axis triplets, ``( nx ny nz d ) ( ( u1 v1 w1 ) ( u2 v2 w2 ) )``; without
    it only the ``( nx ny nz d )`` part is matched.
    """
    rx = PLANE_WITH_TEXTURE_RX if rescale_texture else PLANE_RX
    m = rx.search(line)
    if not m:
        return None

    groups = m.groups()
    texture: Optional[TextureMatrix] = None
    if rescale_texture:
        values = [parse_number(g) for g in groups[4:10]]
        texture = (
            (values[0], values[1], values[2]),
            (values[3], values[4], values[5]),
        )

    return PlaneMatch(
        start=m.start(),
        end=m.end(),
        normal=(groups[0], groups[1], groups[2]),
        dist=parse_number(groups[3]),
        texture=texture,
    )


def format_fixed(v: float) -> str:
    # Correctly rounded fixed point: ties go to even on the exact binary value.
    return f"{v:.8f}"


def format_plane(match: PlaneMatch, scale: ScaleConfig) -> str:
    nx, ny, nz = match.normal
    plane = f"( {nx} {ny} {nz} {format_fixed(match.dist * scale.distance)} )"
    if match.texture is None:
        return plane

    axes = []
    for axis in match.texture:
        axes.append("( " + " ".join(format_fixed(v * scale.texture) for v in axis) + " )")
    return f"{plane} ( {axes[0]} {axes[1]} )"


def replace_plane(line: str, match: PlaneMatch, scale: ScaleConfig) -> str:
    return line[: match.start] + format_plane(match, scale) + line[match.end :]


def rescale_line(line: str, scale: ScaleConfig, stats: Optional[ConversionStats] = None) -> str:
    match = extract_plane(line, scale.rescale_texture)
    if match is None:
        return line
    if stats is not None:
        stats.rescaled_planes += 1
    return replace_plane(line, match, scale)


def is_brush_start(line: str) -> bool:
    return line.strip().startswith(BRUSH_START_TOKEN)


def is_block_end(line: str) -> bool:
    return line.strip() == BLOCK_END_TOKEN


def scan_brushes(
    lines: Iterable[str],
    scale: ScaleConfig,
    stats: Optional[ConversionStats] = None,
) -> List[Brush]:
    """Collect every terminated brushDef3 block, rescaling its lines.

    The marker line and the closing brace are not part of the block. Lines
    outside a block are dropped, as is a block still open at end of input.
    """
    if stats is None:
        stats = ConversionStats()

    brushes: List[Brush] = []
    inside = False
    current: List[str] = []

    for line_no, line in enumerate(lines, start=1):
        stats.input_lines += 1

        if is_brush_start(line):
            if inside:
                stats.discarded_restarted += 1
                log.debug("line %d: brushDef3 restarted, discarding %d open line(s)", line_no, len(current))
            inside = True
            current = []
        elif inside and is_block_end(line):
            inside = False
            brushes.append(Brush(lines=tuple(current)))
            current = []

        if inside:
            current.append(rescale_line(line, scale, stats))

    if inside:
        stats.dropped_unterminated += 1
        log.debug("unterminated brushDef3 at end of input, dropping %d line(s)", len(current))

    stats.brushes = len(brushes)
    return brushes


def build_brush_block(brush: Brush) -> str:
    # The text ends with a newline, so the last piece is empty and becomes an
    # indent-only line before the closing braces.
    out = ["{"]
    out.extend(f"{BRUSH_INDENT}{line}" for line in brush.text.split("\n"))
    out.extend(["\t}", "}"])
    return "\n".join(out)


def build_eternal_map(brushes: Sequence[Brush]) -> str:
    out: List[str] = list(ETERNAL_HEADER)
    out.extend(ETERNAL_WORLD_ENTITY)
    out.extend(build_brush_block(brush) for brush in brushes)
    out.extend(["}", "}"])
    return "\n".join(out) + "\n"


def write_eternal_map(output_path: Path, brushes: Sequence[Brush]) -> None:
    text = build_eternal_map(brushes)
    with output_path.open("w", encoding="utf-8", errors=MAP_ERRORS, newline="\n") as f:
        f.write(text)


def is_map_file(path: Path) -> bool:
    return path.suffix.lower() == MAP_EXTENSION


def default_output_path(input_path: Path, suffix: str = DEFAULT_OUTPUT_SUFFIX) -> Path:
    return input_path.with_name(f"{input_path.stem}{suffix}{input_path.suffix}")


def split_map_lines(text: str) -> List[str]:
    # Only CR, LF and CRLF end a line; form feeds and the like stay inside it.
    lines = LINE_BREAK_RX.split(text)
    if lines and lines[-1] == "":
        lines.pop()
    return lines


def read_map_lines(input_path: Path) -> List[str]:
    return split_map_lines(input_path.read_text(encoding=MAP_ENCODING, errors=MAP_ERRORS))


def convert_map_file(input_path: Path, output_path: Path, scale: ScaleConfig) -> ConversionStats:
    stats = ConversionStats()
    lines = read_map_lines(input_path)
    log.info("read %d line(s) from %s", len(lines), input_path)

    brushes = scan_brushes(lines, scale, stats)
    log.info(
        "found %d brush(es), rescaled %d plane(s), texture_scale=%s",
        stats.brushes,
        stats.rescaled_planes,
        "on" if scale.rescale_texture else "off",
    )

    write_eternal_map(output_path, brushes)
    return stats


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="doom3-to-eternal",
        description="Convert Doom 3 brushDef3 geometry to the Doom Eternal map layout.",
    )
    p.add_argument("input", nargs="*", help="Input Doom 3 .map file")
    p.add_argument("--output", default="", help="Output path (default: <input>_converted.map next to the input)")
    p.add_argument(
        "--suffix",
        default=DEFAULT_OUTPUT_SUFFIX,
        help="Suffix appended to the input stem for the default output path",
    )
    p.add_argument("--doom3-units", type=float, default=DOOM3_UNITS, help="Doom 3 units per metre")
    p.add_argument("--eternal-units", type=float, default=ETERNAL_UNITS, help="Doom Eternal units per metre")
    p.add_argument(
        "--no-texture-scale",
        dest="rescale_texture",
        action="store_false",
        default=True,
        help="Only rescale plane distances and leave texture matrices untouched",
    )
    p.add_argument("--verbose", action="store_true", help="Log scan details")
    return p


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    if len(args.input) != 1:
        print(parser.format_usage(), end="")
        return 2

    setup_logging(logging.DEBUG if args.verbose else logging.WARNING)

    input_path = Path(args.input[0])
    if not is_map_file(input_path):
        print(f"[error] input file must have a {MAP_EXTENSION} extension: {input_path}")
        return 1

    output_path = Path(args.output) if args.output else default_output_path(input_path, args.suffix)

    try:
        scale = ScaleConfig.from_units(args.doom3_units, args.eternal_units, args.rescale_texture)
        stats = convert_map_file(input_path, output_path, scale)
    except (OSError, ValueError) as exc:
        print(f"[error] {exc}", file=sys.stderr)
        return 1

    print(
        "[ok] converted "
        f"output={output_path} "
        f"brushes={stats.brushes} "
        f"planes={stats.rescaled_planes} "
        f"dropped={stats.dropped_unterminated}"
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
