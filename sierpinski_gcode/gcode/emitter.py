"""Toolpath emitter -- pyramid layers to G-code.

Writes one complete print program for a stack of :class:`Layer` outlines:

    header comments -> start G-code -> prime line -> layers -> fan off
    -> end G-code

Feed rate convention:
    Python stores speeds in **mm/s**.  This module converts to the G-code
    ``F`` parameter (mm/min) at the output boundary::

        F_value = speed_mm_s * 60.0

Move styles:
    Most of the file is ``G1 X.. Y.. E..`` with no Z and no F, formatted
    with :func:`float_to_smallest_string`; these moves inherit the feed of
    the last full move.  Layer changes, the prime line, fins and the raft
    use full ``G1 X Y Z E F`` moves in verbose ``%f`` formatting.

Layer changes are printed, not travelled: the move to the next layer's
first vertex extrudes.  On this shape that leaves a cleaner seam than a
non-extruding hop.

Octahedron mode:
    The pyramid is printed on top of its own upside-down copy.  A raft
    goes down first, then every layer in reverse order (shifted up one
    layer height) with support fins at the four outline corners, then the
    real pyramid above the inverted stack.  Fins are short low-flow
    detours from an outline corner out to the footprint's bounding square
    and back, printed at double speed, that tie overhanging corners to
    something solid.
"""

from __future__ import annotations

import enum
import logging
import math
from dataclasses import dataclass
from io import StringIO
from typing import TYPE_CHECKING, Sequence, TextIO

import numpy as np

from sierpinski_gcode import BUILD_REVISION, __version__
from sierpinski_gcode.gcode.formatting import float_to_smallest_string, format_verbose
from sierpinski_gcode.geometry.layers import Layer, layer_path_lengths

if TYPE_CHECKING:
    from sierpinski_gcode.configs.loader import PrintParams

logger = logging.getLogger(__name__)

Point = tuple[float, float, float]

POSITION_EPSILON = 1e-4
"""Moves shorter than this (mm) are dropped."""

_EPSILON_SQR = POSITION_EPSILON * POSITION_EPSILON


class GCodeError(Exception):
    """Raised when G-code emission fails (sink error or soft-limit hit)."""

    pass


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------


class EmitterPhase(enum.Enum):
    IDLE = "idle"
    CONFIGURED = "configured"
    PRIMING = "priming"
    PRINTING = "printing"
    FINISHED = "finished"


@dataclass
class EmitterState:
    """Mutable bookkeeping for one emission run.

    Attributes
    ----------
    position : Point | None
        Last commanded toolhead position, ``None`` before the first move.
    extruder_position : float
        Running E value (absolute extrusion mode only).
    filament_used : float
        Total filament pushed so far (mm), in either extrusion mode.
    prime_filament_used : float
        Portion of ``filament_used`` spent on the prime line.
    fan_on : bool
        Whether ``M106`` has been issued.
    phase : EmitterPhase
        Current stage of the program.
    lines_written : int
        Lines written to the sink.
    """

    position: Point | None = None
    extruder_position: float = 0.0
    filament_used: float = 0.0
    prime_filament_used: float = 0.0
    fan_on: bool = False
    phase: EmitterPhase = EmitterPhase.IDLE
    lines_written: int = 0


# ---------------------------------------------------------------------------
# Fin layout
# ---------------------------------------------------------------------------


class BoundaryKind(enum.Enum):
    """Role of an outline vertex for fin placement."""

    START = "start"
    LOWER_RIGHT = "lower_right"
    UPPER_RIGHT = "upper_right"
    UPPER_LEFT = "upper_left"
    PLAIN = "plain"


def boundary_kinds(n: int) -> list[BoundaryKind]:
    """Tag each of ``n`` outline vertices.

    Outlines keep their bounding-square corners at the quarter indices, so
    vertex ``0`` is the lower-left corner (where every layer starts and
    ends), ``n/4`` the lower-right, ``n/2`` the upper-right and ``3n/4``
    the upper-left.
    """
    kinds = [BoundaryKind.PLAIN] * n
    if n < 4:
        return kinds
    q = n // 4
    kinds[0] = BoundaryKind.START
    kinds[q] = BoundaryKind.LOWER_RIGHT
    kinds[2 * q] = BoundaryKind.UPPER_RIGHT
    kinds[3 * q] = BoundaryKind.UPPER_LEFT
    return kinds


@dataclass(frozen=True)
class FinCorner:
    """Where a corner fin goes and which way round it is printed.

    Attributes
    ----------
    sign : tuple[int, int]
        Bounding-square corner the fin reaches, ``-1`` for the min side
        and ``+1`` for the max side of each axis.
    still_axis : int
        Axis checked on the move arriving at the vertex.  If the toolhead
        did not move along it, the fin leaves along ``primary_axis``;
        otherwise along the other axis.  This keeps the fin pointing away
        from the model whichever way the outline turns into the corner.
    primary_axis : int
        Axis the fin leaves along in the first case.
    """

    sign: tuple[int, int]
    still_axis: int
    primary_axis: int


FIN_CORNERS: dict[BoundaryKind, FinCorner] = {
    BoundaryKind.LOWER_RIGHT: FinCorner(sign=(1, -1), still_axis=0, primary_axis=1),
    BoundaryKind.UPPER_RIGHT: FinCorner(sign=(1, 1), still_axis=1, primary_axis=0),
    BoundaryKind.UPPER_LEFT: FinCorner(sign=(-1, 1), still_axis=0, primary_axis=1),
}

LOWER_LEFT_SIGN = (-1, -1)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _approx_eq(a: Sequence[float], b: Sequence[float]) -> bool:
    return sum((x - y) ** 2 for x, y in zip(a, b)) < _EPSILON_SQR


def _distance(a: Sequence[float], b: Sequence[float]) -> float:
    return math.sqrt(sum((x - y) ** 2 for x, y in zip(a, b)))


def _f(speed_mm_s: float) -> str:
    """Convert mm/s speed to the G-code ``F`` word (mm/min)."""
    return f"F{format_verbose(speed_mm_s * 60.0)}"


def model_filament(params: PrintParams, layers: Sequence[Layer]) -> float:
    """Filament needed to trace ``layers`` once, prime line excluded.

    Sums each layer's printed path (see :func:`layer_path_lengths`) at the
    extrusion rate that layer is printed with.
    """
    total = 0.0
    for layer, length in zip(layers, layer_path_lengths(layers)):
        if params.is_first_layer(layer.z):
            total += length * params.first_layer_extrusion_per_mm
        else:
            total += length * params.extrusion_per_mm
    return total


def raft_path(params: PrintParams) -> list[Point]:
    """Serpentine raft laid under an octahedron print.

    Rows of first-layer width run across the footprint, then the path
    wraps around the top and left edges and steps up to the first layer
    of the inverted stack.
    """
    cfg = params.config
    w = params.first_layer_extrusion_width
    lo, hi = params.xy_min, params.xy_max
    z0 = cfg.z_offset

    path: list[Point] = []
    for i in range((math.ceil(cfg.size / w) + 1) // 2):
        y0 = lo + 2 * i * w
        y1 = y0 + w
        path += [(lo, y0, z0), (hi, y0, z0), (hi, y1, z0), (lo, y1, z0)]
    path += [
        (lo, hi + w, z0),
        (lo - w, hi + w, z0),
        (lo - w, lo, z0),
        (lo, lo, z0 + cfg.layer_height),
    ]
    return path


def estimate_filament(params: PrintParams, layers: Sequence[Layer]) -> float:
    """Header estimate of the filament used by the whole program (mm).

    Counts the prime line and every model pass; octahedron prints add the
    inverted stack and the raft.  Support fins and the lead-in move onto
    the raft are not counted, so the estimate is low for fin prints.
    """
    cfg = params.config
    total = model_filament(params, layers) + cfg.prime_filament_length
    if cfg.octahedron:
        total += model_filament(params, layers)
        raft = raft_path(params)
        raft_mm = sum(_distance(a, b) for a, b in zip(raft, raft[1:]))
        total += raft_mm * params.first_layer_extrusion_per_mm
    return total


# ---------------------------------------------------------------------------
# Emitter
# ---------------------------------------------------------------------------


class ToolpathEmitter:
    """Convert pyramid layers to a G-code program.

    Parameters
    ----------
    params : PrintParams
        Resolved print parameters.

    Notes
    -----
    Single use per :meth:`emit` call: state is reset at the start of every
    emission and owned exclusively by this object.  Writing stops at the
    first sink error; whatever was already written stays in the sink.
    """

    def __init__(self, params: PrintParams) -> None:
        self._params = params
        self._cfg = params.config
        self._sink: TextIO | None = None
        self._fin_offset = self._cfg.extrusion_width * 4
        self._fin_rate = params.extrusion_per_mm * self._cfg.support_extrusion_factor
        self._fin_speed = self._cfg.speed * 2
        self.state = EmitterState(phase=EmitterPhase.CONFIGURED)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def emit(self, layers: Sequence[Layer], sink: TextIO) -> EmitterState:
        """Write the full program for ``layers`` to ``sink``.

        Parameters
        ----------
        layers : sequence of Layer
            Layers in print order, bottom first.
        sink : TextIO
            Open text stream.

        Returns
        -------
        EmitterState
            Final state (filament totals, line count).

        Raises
        ------
        GCodeError
            If writing fails or a move leaves the bed.
        """
        self.state = EmitterState(phase=EmitterPhase.CONFIGURED)
        self._sink = sink
        try:
            self._write_header(layers)
            self._write_start_gcode()

            self._enter(EmitterPhase.PRIMING)
            self._write_prime_line()
            self.state.prime_filament_used = self.state.filament_used

            self._enter(EmitterPhase.PRINTING)
            self._line("; sierpinski pyramid starts now")
            if self._cfg.octahedron:
                self._write_octahedron(layers)
            else:
                for i, layer in enumerate(layers):
                    self.print_layer(layer.points)
                    self._maybe_fan_on(i)
            self._fan_off()
            self._write_end_gcode()
            self._enter(EmitterPhase.FINISHED)
        finally:
            self._sink = None

        logger.info(
            "Emitted %d lines, %.1f mm of filament",
            self.state.lines_written,
            self.state.filament_used,
        )
        return self.state

    def generate(self, layers: Sequence[Layer]) -> str:
        """Return the full program for ``layers`` as a string."""
        buf = StringIO()
        self.emit(layers, buf)
        return buf.getvalue()

    def begin(self, sink: TextIO) -> None:
        """Attach ``sink`` for direct use of the move primitives."""
        self._sink = sink

    # ------------------------------------------------------------------
    # Move primitives
    # ------------------------------------------------------------------

    def travel_to(self, p: Sequence[float]) -> None:
        """Non-extruding move; dropped if already at ``p``."""
        p = self._point(p)
        if self._at(p):
            return
        self._validate_xy(p)
        x, y, z = (format_verbose(v) for v in p)
        self._line(f"G0 X{x} Y{y} Z{z} {_f(self._cfg.speed)}")
        self.state.position = p

    def print_to(self, p: Sequence[float]) -> None:
        """Extruding full move; first-layer width and speed below layer 2."""
        p = self._point(p)
        if self._at(p):
            return
        if self._params.is_first_layer(p[2]):
            self._extrude_to(p, self._cfg.speed / 2, self._params.first_layer_extrusion_per_mm)
        else:
            self._extrude_to(p, self._cfg.speed, self._params.extrusion_per_mm)

    def print_to_xy(self, p: Sequence[float]) -> None:
        """Shortest-form ``G1 X Y E`` move.

        Z and F are not written; the caller must already be at ``p``'s
        height and the last full move sets the feed.
        """
        p = self._point(p)
        if self._at(p):
            return
        self._validate_xy(p)
        if self._params.is_first_layer(p[2]):
            rate = self._params.first_layer_extrusion_per_mm
        else:
            rate = self._params.extrusion_per_mm
        e = self._extrude(self._travelled(p) * rate)
        xy = self._cfg.gcode_xy_decimals
        self._line(
            f"G1 X{float_to_smallest_string(p[0], xy)}"
            f" Y{float_to_smallest_string(p[1], xy)}"
            f" E{float_to_smallest_string(e, self._params.gcode_e_decimals)}"
        )
        self.state.position = p

    def print_layer(self, points: np.ndarray) -> None:
        """Trace one closed outline at the height of its vertices."""
        if len(points) == 0:
            return
        self._print_outline(points, float(points[0][2]), fins=False)

    # ------------------------------------------------------------------
    # Internal: moves
    # ------------------------------------------------------------------

    @staticmethod
    def _point(p: Sequence[float]) -> Point:
        return (float(p[0]), float(p[1]), float(p[2]))

    def _at(self, p: Point) -> bool:
        pos = self.state.position
        return pos is not None and _approx_eq(pos, p)

    def _travelled(self, p: Point) -> float:
        if self.state.position is None:
            raise GCodeError("Extruding move issued before the toolhead position is known")
        return _distance(p, self.state.position)

    def _extrude(self, amount: float) -> float:
        """Book ``amount`` mm of filament and return the E word value."""
        self.state.filament_used += amount
        if self._cfg.relative_extrusion:
            return amount
        self.state.extruder_position += amount
        return self.state.extruder_position

    def _extrude_to(self, p: Point, speed_mm_s: float, rate: float) -> None:
        """Full ``G1`` move with explicit speed and flow, never dropped.

        A zero-length call is how the feed is restored after a fin.
        """
        self._validate_xy(p)
        e = self._extrude(self._travelled(p) * rate)
        x, y, z = (format_verbose(v) for v in p)
        self._line(f"G1 X{x} Y{y} Z{z} E{format_verbose(e)} {_f(speed_mm_s)}")
        self.state.position = p

    def _fin_to(self, x: float, y: float, z: float) -> None:
        self._extrude_to((x, y, z), self._fin_speed, self._fin_rate)

    def _restore_feed(self, p: Point) -> None:
        self._extrude_to(p, self._cfg.speed, self._params.extrusion_per_mm)

    # ------------------------------------------------------------------
    # Internal: outlines and fins
    # ------------------------------------------------------------------

    def _fin_detour(
        self,
        pt: Sequence[float],
        sign: tuple[int, int],
        first_axis: int,
    ) -> list[tuple[float, float]]:
        """Four-point detour from ``pt`` to the bounding-square corner and back.

        The detour steps off ``pt`` along ``first_axis``, runs to the
        corner, crosses it, and returns to ``pt`` along the other axis.
        """
        f = self._fin_offset
        p = self._params
        corner = [p.xy_max if s > 0 else p.xy_min for s in sign]
        other = 1 - first_axis

        def shifted(base: Sequence[float], axis: int, delta: float) -> tuple[float, float]:
            out = [float(base[0]), float(base[1])]
            out[axis] += delta
            return out[0], out[1]

        return [
            shifted(pt, first_axis, sign[first_axis] * f),
            shifted(corner, other, -sign[other] * f),
            shifted(corner, first_axis, -sign[first_axis] * f),
            shifted(pt, other, sign[other] * f),
        ]

    def _print_outline(self, points: np.ndarray, z: float, fins: bool) -> None:
        n = len(points)
        first = (float(points[0][0]), float(points[0][1]), z)
        last = (float(points[-1][0]), float(points[-1][1]), z)

        if fins:
            # The lower-left fin straddles the layer change: its tail ends
            # this layer and its head opens the next one, joined at the
            # seam point.  Base squares need it mirrored.
            ll_axis = 1 if n == 4 else 0
            ll_detour = self._fin_detour(first, LOWER_LEFT_SIGN, ll_axis)
            seam = 2 if ll_axis == 0 else 1
            for x, y in ll_detour[seam:]:
                self._fin_to(x, y, z)
            self._fin_to(*first)
            self._restore_feed(first)
            kinds = boundary_kinds(n)
        else:
            self.print_to(first)

        for i, v in enumerate(points):
            pt = (float(v[0]), float(v[1]), z)
            before = self.state.position
            self.print_to_xy(pt)
            if not fins:
                continue
            corner = FIN_CORNERS.get(kinds[i])
            if corner is None:
                continue
            still = abs(pt[corner.still_axis] - before[corner.still_axis]) < POSITION_EPSILON
            axis = corner.primary_axis if still else 1 - corner.primary_axis
            for x, y in self._fin_detour(pt, corner.sign, axis):
                self._fin_to(x, y, z)
            self._fin_to(*pt)
            self._restore_feed(pt)

        if not _approx_eq(first, last):
            self.print_to(first)

        if fins:
            for x, y in ll_detour[: seam + 1]:
                self._fin_to(x, y, z)

    def _write_octahedron(self, layers: Sequence[Layer]) -> None:
        cfg = self._cfg
        p = self._params

        for point in raft_path(p):
            self.print_to(point)

        # Inverted stack, one layer height up so it sits on the raft.
        n = len(layers)
        for i in range(n):
            base_z = layers[i].z
            self._print_outline(
                layers[n - 1 - i].points,
                base_z + cfg.layer_height,
                fins=base_z < p.support_fin_height,
            )
            self._maybe_fan_on(i)

        # The pyramid itself, on top of the inverted stack.
        lift = layers[-1].z - cfg.z_offset + cfg.layer_height if layers else 0.0
        for i, layer in enumerate(layers):
            self._print_outline(layer.points, layer.z + lift, fins=False)
            self._maybe_fan_on(i)

    # ------------------------------------------------------------------
    # Internal: program sections
    # ------------------------------------------------------------------

    def _write_header(self, layers: Sequence[Layer]) -> None:
        cfg = self._cfg
        p = self._params
        filament = estimate_filament(p, layers)

        self._line("; generated by sierpinski_gcode")
        self._line(f"; version: {__version__} (commit {BUILD_REVISION})")
        self._line()
        self._line("; input config file:")
        for text in p.source_text.split("\n"):
            self._line(f"; {text}")
        self._line()
        self._line("; calculated variables")
        self._line(f"; pyramid_z_height: {p.pyramid_z_height:f}")
        self._line(f"; num_layers: {len(layers)}")
        self._line(f"; extrusion_per_mm: {p.extrusion_per_mm:f}")
        self._line(f"; smallest_pyramid_size: {p.smallest_pyramid_size:f}")
        self._line()
        # Keys understood by PrusaSlicer-aware firmware (RepRapFirmware
        # FileInfoParser) for print-time and filament display.
        print_time_s = filament / p.extrusion_per_mm / cfg.speed
        self._line(f"; estimated printing time (normal mode) = {print_time_s:f}s")
        self._line(f"; filament used [mm] = {filament:f}")
        self._line(f"; layer_height = {cfg.layer_height:f}")
        self._line(f"; END_LAYER_OBJECT z={p.pyramid_z_height:f}")
        self._line()

    def _write_start_gcode(self) -> None:
        self._line("; start gcode:")
        self._line(self._cfg.start_gcode.rstrip("\n"))
        self._line("G21 ; set units to mm")
        if self._cfg.relative_extrusion:
            self._line("M83 ; set relative extrusion")
        else:
            self._line("M82 ; set absolute extrusion")
        self._line()

    def _write_end_gcode(self) -> None:
        self._line()
        self._line("; end gcode:")
        self._line(self._cfg.end_gcode.rstrip("\n"))
        self._line()

    def _write_prime_line(self) -> None:
        """Prime the nozzle with back-and-forth lines in front of the model.

        Lines are printed two at a time, in this shape::

            |
            |__________________________
            __________________________|
            |
        """
        cfg = self._cfg
        p = self._params
        self._line("; prime the nozzle")
        half_bed = cfg.bed_size / 2
        half_size = cfg.size / 2

        count = math.ceil(cfg.prime_filament_length / p.first_layer_extrusion_per_mm / cfg.size)
        if count % 2 == 1:
            count += 1
        separation = p.first_layer_extrusion_width * 2
        gap = max(5.0, 2 * separation)

        min_x = half_bed - half_size
        max_x = half_bed + half_size
        start_y = half_bed - half_size - gap - separation * count
        z = cfg.z_offset

        self.travel_to((min_x, start_y, z))
        for i in range(count // 2):
            y0 = start_y + 2 * i * separation
            y1 = y0 + separation
            self.print_to((min_x, y0, z))
            self.print_to((max_x, y0, z))
            self.print_to((max_x, y1, z))
            self.print_to((min_x, y1, z))
        # Finish on the pyramid's first vertex.
        self.print_to((min_x, half_bed - half_size, z))
        self._line()

    def _maybe_fan_on(self, layer_index: int) -> None:
        if layer_index == self._cfg.fan_start_layer and not self.state.fan_on:
            self._line("M106 S255")
            self.state.fan_on = True
            logger.debug("Fan on after layer %d", layer_index)

    def _fan_off(self) -> None:
        self._line("M107")
        self.state.fan_on = False

    def _enter(self, phase: EmitterPhase) -> None:
        logger.debug("Emitter %s -> %s", self.state.phase.value, phase.value)
        self.state.phase = phase

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def _line(self, text: str = "") -> None:
        if self._sink is None:
            raise GCodeError("No output sink attached")
        try:
            self._sink.write(text + "\n")
        except OSError as exc:
            raise GCodeError(f"Failed to write G-code: {exc}") from exc
        self.state.lines_written += 1

    def _validate_xy(self, p: Point) -> None:
        """Reject positions outside the bed.

        Raises
        ------
        GCodeError
            If either coordinate is out of bounds.
        """
        bed = self._cfg.bed_size
        x, y = p[0], p[1]
        if x < 0 or x > bed:
            raise GCodeError(f"X={x:.3f} mm outside bed [0, {bed:.1f}]")
        if y < 0 or y > bed:
            raise GCodeError(f"Y={y:.3f} mm outside bed [0, {bed:.1f}]")
