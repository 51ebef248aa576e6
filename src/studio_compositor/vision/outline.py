"""Outline paths: parse SVG-like path strings and rasterize them into masks.

Segmentation outlines arrive as path data in normalized coordinates, e.g.
``"M 0 0.76 L 0 0.32 C 0.1 0.2 0.3 0.2 0.4 0.3 Z"``. Curves are flattened
to polylines; each subpath becomes one filled polygon.
"""

from __future__ import annotations

import re

from PIL import Image, ImageDraw

Point = tuple[float, float]

_TOKEN_RE = re.compile(r"[MmLlHhVvCcSsQqTtZz]|[-+]?(?:\d*\.\d+|\d+\.?)(?:[eE][-+]?\d+)?")
_ARGS_PER_COMMAND = {"M": 2, "L": 2, "H": 1, "V": 1, "C": 6, "S": 4, "Q": 4, "T": 2, "Z": 0}
CURVE_STEPS = 8


def _cubic(p0: Point, p1: Point, p2: Point, p3: Point, steps: int) -> list[Point]:
    out: list[Point] = []
    for i in range(1, steps + 1):
        t = i / steps
        mt = 1.0 - t
        x = mt**3 * p0[0] + 3 * mt**2 * t * p1[0] + 3 * mt * t**2 * p2[0] + t**3 * p3[0]
        y = mt**3 * p0[1] + 3 * mt**2 * t * p1[1] + 3 * mt * t**2 * p2[1] + t**3 * p3[1]
        out.append((x, y))
    return out


def _quadratic(p0: Point, p1: Point, p2: Point, steps: int) -> list[Point]:
    out: list[Point] = []
    for i in range(1, steps + 1):
        t = i / steps
        mt = 1.0 - t
        x = mt**2 * p0[0] + 2 * mt * t * p1[0] + t**2 * p2[0]
        y = mt**2 * p0[1] + 2 * mt * t * p1[1] + t**2 * p2[1]
        out.append((x, y))
    return out


def parse_outline_path(path: str, *, curve_steps: int = CURVE_STEPS) -> list[list[Point]]:
    """Parse path data into polygons (one list of points per subpath).

    Supports absolute and relative M, L, H, V, C, S, Q, T and Z commands.

    Raises:
        ValueError: If the path contains unsupported commands or is malformed.
    """
    tokens = _TOKEN_RE.findall(path)
    leftover = _TOKEN_RE.sub("", path).replace(",", "").strip()
    if leftover:
        raise ValueError(f"Unsupported outline path content: {leftover[:20]!r}")

    polygons: list[list[Point]] = []
    current: list[Point] = []
    pos: Point = (0.0, 0.0)
    start: Point = (0.0, 0.0)
    last_ctrl: Point | None = None
    last_cmd = ""
    cmd = ""
    i = 0

    def _close_current() -> None:
        nonlocal current
        if len(current) >= 3:
            polygons.append(current)
        current = []

    while i < len(tokens):
        tok = tokens[i]
        if tok.isalpha():
            cmd = tok
            i += 1
            if cmd in "Zz":
                pos = start
                _close_current()
                last_ctrl = None
                last_cmd = cmd
                continue
        elif not cmd or cmd in "Zz":
            raise ValueError(f"Unexpected coordinate {tok!r} in outline path")

        upper = cmd.upper()
        n = _ARGS_PER_COMMAND[upper]
        if i + n > len(tokens) or any(t.isalpha() for t in tokens[i : i + n]):
            raise ValueError(f"Truncated arguments for command {cmd!r}")
        args = [float(t) for t in tokens[i : i + n]]
        i += n
        rel = cmd.islower()
        ox, oy = pos if rel else (0.0, 0.0)

        if upper == "M":
            _close_current()
            pos = (args[0] + ox, args[1] + oy)
            start = pos
            current = [pos]
            # Implicit lineto for repeated coordinate pairs after a moveto.
            cmd = "l" if rel else "L"
            last_ctrl = None
        elif upper == "L":
            pos = (args[0] + ox, args[1] + oy)
            current.append(pos)
            last_ctrl = None
        elif upper == "H":
            pos = (args[0] + ox, pos[1])
            current.append(pos)
            last_ctrl = None
        elif upper == "V":
            pos = (pos[0], args[0] + oy)
            current.append(pos)
            last_ctrl = None
        elif upper == "C":
            c1 = (args[0] + ox, args[1] + oy)
            c2 = (args[2] + ox, args[3] + oy)
            end = (args[4] + ox, args[5] + oy)
            current.extend(_cubic(pos, c1, c2, end, curve_steps))
            last_ctrl, pos = c2, end
        elif upper == "S":
            c1 = pos
            if last_ctrl is not None and last_cmd.upper() in {"C", "S"}:
                c1 = (2 * pos[0] - last_ctrl[0], 2 * pos[1] - last_ctrl[1])
            c2 = (args[0] + ox, args[1] + oy)
            end = (args[2] + ox, args[3] + oy)
            current.extend(_cubic(pos, c1, c2, end, curve_steps))
            last_ctrl, pos = c2, end
        elif upper == "Q":
            c = (args[0] + ox, args[1] + oy)
            end = (args[2] + ox, args[3] + oy)
            current.extend(_quadratic(pos, c, end, curve_steps))
            last_ctrl, pos = c, end
        elif upper == "T":
            c = pos
            if last_ctrl is not None and last_cmd.upper() in {"Q", "T"}:
                c = (2 * pos[0] - last_ctrl[0], 2 * pos[1] - last_ctrl[1])
            end = (args[0] + ox, args[1] + oy)
            current.extend(_quadratic(pos, c, end, curve_steps))
            last_ctrl, pos = c, end
        last_cmd = cmd

    _close_current()
    return polygons


def rasterize_outline(path: str, w: int, h: int) -> Image.Image:
    """Rasterize a normalized outline path into a `w`x`h` binary mask.

    Returns:
        An "L" image, 255 inside the outline and 0 elsewhere.
    """
    mask = Image.new("L", (w, h), 0)
    draw = ImageDraw.Draw(mask)
    for poly in parse_outline_path(path):
        draw.polygon([(x * w, y * h) for x, y in poly], fill=255)
    return mask
