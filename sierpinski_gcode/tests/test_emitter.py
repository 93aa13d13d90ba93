"""Tests for the toolpath emitter.

Validates move deduplication, number formats per move style, extrusion
modes, fan placement, program structure, filament accounting, octahedron
mode and sink failure handling.
"""

from __future__ import annotations

import re
from io import StringIO
from typing import Callable

import numpy as np
import pytest

from sierpinski_gcode.configs.loader import PrintParams
from sierpinski_gcode.gcode.emitter import (
    BoundaryKind,
    EmitterPhase,
    GCodeError,
    ToolpathEmitter,
    boundary_kinds,
    estimate_filament,
    model_filament,
    raft_path,
)
from sierpinski_gcode.gcode.formatting import float_to_smallest_string, format_verbose
from sierpinski_gcode.gcode.vm import GCodeVM
from sierpinski_gcode.geometry.layers import Layer, build_layers

E_WORD = re.compile(r"\bE(-?(?:\d+\.?\d*|\.\d+))")


def _layers(params: PrintParams) -> list[Layer]:
    cfg = params.config
    return build_layers(
        cfg.order, params.num_layers, cfg.size, params.bed_center, cfg.layer_height
    )


def _e_values(gcode: str) -> list[float]:
    values = []
    for line in gcode.splitlines():
        if line.startswith("G1"):
            match = E_WORD.search(line)
            if match:
                values.append(float(match.group(1)))
    return values


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def attached(params: PrintParams) -> tuple[ToolpathEmitter, StringIO]:
    """Emitter writing into a buffer, for direct use of the move primitives."""
    buf = StringIO()
    emitter = ToolpathEmitter(params)
    emitter.begin(buf)
    return emitter, buf


# ---------------------------------------------------------------------------
# Move primitives
# ---------------------------------------------------------------------------


class TestTravel:
    def test_travel_format(self, attached: tuple[ToolpathEmitter, StringIO]) -> None:
        emitter, buf = attached
        emitter.travel_to((10, 10, 5))
        assert buf.getvalue() == "G0 X10.000000 Y10.000000 Z5.000000 F2400.000000\n"

    def test_repeated_travel_is_dropped(
        self, attached: tuple[ToolpathEmitter, StringIO]
    ) -> None:
        emitter, buf = attached
        emitter.travel_to((10, 10, 5))
        emitter.travel_to((10, 10, 5))
        emitter.travel_to((10, 10.00001, 5))
        assert buf.getvalue().count("G0") == 1

    def test_out_of_bed_rejected(
        self, attached: tuple[ToolpathEmitter, StringIO]
    ) -> None:
        emitter, _ = attached
        with pytest.raises(GCodeError, match="outside bed"):
            emitter.travel_to((-1, 10, 5))
        with pytest.raises(GCodeError, match="outside bed"):
            emitter.travel_to((10, 101, 5))


class TestPrintMoves:
    def test_print_before_position_known(
        self, attached: tuple[ToolpathEmitter, StringIO]
    ) -> None:
        emitter, _ = attached
        with pytest.raises(GCodeError):
            emitter.print_to((10, 10, 5))

    def test_first_layer_uses_half_speed_and_wide_bead(
        self, attached: tuple[ToolpathEmitter, StringIO], params: PrintParams
    ) -> None:
        emitter, buf = attached
        emitter.travel_to((10, 10, 0.2))
        emitter.print_to((20, 10, 0.2))
        e = format_verbose(10 * params.first_layer_extrusion_per_mm)
        assert buf.getvalue().splitlines()[-1] == (
            f"G1 X20.000000 Y10.000000 Z0.200000 E{e} F1200.000000"
        )

    def test_regular_layer_speed(
        self, attached: tuple[ToolpathEmitter, StringIO], params: PrintParams
    ) -> None:
        emitter, buf = attached
        emitter.travel_to((10, 10, 5))
        emitter.print_to((20, 10, 5))
        e = format_verbose(10 * params.extrusion_per_mm)
        assert buf.getvalue().splitlines()[-1] == (
            f"G1 X20.000000 Y10.000000 Z5.000000 E{e} F2400.000000"
        )

    def test_print_to_xy_is_minimal(
        self, attached: tuple[ToolpathEmitter, StringIO], params: PrintParams
    ) -> None:
        emitter, buf = attached
        emitter.travel_to((10, 10, 5))
        emitter.print_to_xy((13, 14, 5))
        emitter.print_to_xy((13, 14, 5))
        e = float_to_smallest_string(5 * params.extrusion_per_mm, params.gcode_e_decimals)
        lines = buf.getvalue().splitlines()
        assert len(lines) == 2
        assert lines[-1] == f"G1 X13 Y14 E{e}"

    def test_filament_bookkeeping(
        self, attached: tuple[ToolpathEmitter, StringIO], params: PrintParams
    ) -> None:
        emitter, _ = attached
        emitter.travel_to((10, 10, 5))
        emitter.print_to((20, 10, 5))
        emitter.print_to_xy((20, 20, 5))
        assert emitter.state.filament_used == pytest.approx(20 * params.extrusion_per_mm)
        assert emitter.state.position == (20.0, 20.0, 5.0)


class TestPrintLayer:
    SQUARE = np.array(
        [[10, 10, 5], [20, 10, 5], [20, 20, 5], [10, 20, 5]], dtype=float
    )

    def test_open_outline_is_closed(
        self, attached: tuple[ToolpathEmitter, StringIO], params: PrintParams
    ) -> None:
        emitter, buf = attached
        emitter.travel_to((10, 10, 5))
        start = len(buf.getvalue().splitlines())
        emitter.print_layer(self.SQUARE)
        lines = buf.getvalue().splitlines()[start:]
        assert lines[:3] == [
            f"G1 X20 Y10 E{float_to_smallest_string(10 * params.extrusion_per_mm, params.gcode_e_decimals)}",
            f"G1 X20 Y20 E{float_to_smallest_string(10 * params.extrusion_per_mm, params.gcode_e_decimals)}",
            f"G1 X10 Y20 E{float_to_smallest_string(10 * params.extrusion_per_mm, params.gcode_e_decimals)}",
        ]
        assert lines[3].startswith("G1 X10.000000 Y10.000000 Z5.000000 E")
        assert len(lines) == 4
        assert emitter.state.filament_used == pytest.approx(40 * params.extrusion_per_mm)

    def test_closed_outline_gets_no_extra_move(
        self, attached: tuple[ToolpathEmitter, StringIO]
    ) -> None:
        emitter, buf = attached
        emitter.travel_to((10, 10, 5))
        start = len(buf.getvalue().splitlines())
        emitter.print_layer(np.vstack((self.SQUARE, self.SQUARE[:1])))
        lines = buf.getvalue().splitlines()[start:]
        assert len(lines) == 4
        assert all(" Z" not in line for line in lines)

    def test_layer_change_is_a_print_move(
        self, attached: tuple[ToolpathEmitter, StringIO]
    ) -> None:
        emitter, buf = attached
        emitter.travel_to((10, 10, 4))
        start = len(buf.getvalue().splitlines())
        emitter.print_layer(self.SQUARE)
        first = buf.getvalue().splitlines()[start]
        assert first.startswith("G1 X10.000000 Y10.000000 Z5.000000 E")


# ---------------------------------------------------------------------------
# Whole program
# ---------------------------------------------------------------------------


class TestProgram:
    def test_section_order(self, params: PrintParams) -> None:
        gcode = ToolpathEmitter(params).generate(_layers(params))
        markers = [
            "; input config file:",
            "; start gcode:",
            "G21 ; set units to mm",
            "; prime the nozzle",
            "; sierpinski pyramid starts now",
            "M107",
            "; end gcode:",
        ]
        positions = [gcode.index(m) for m in markers]
        assert positions == sorted(positions)

    def test_header_echoes_config(self, make_params: Callable[..., PrintParams]) -> None:
        params = make_params(source_text="order: 1\nsize: 20")
        layers = _layers(params)
        gcode = ToolpathEmitter(params).generate(layers)
        lines = gcode.splitlines()
        assert "; order: 1" in lines
        assert "; size: 20" in lines
        assert f"; num_layers: {len(layers)}" in lines
        assert f"; filament used [mm] = {estimate_filament(params, layers):f}" in lines
        assert f"; END_LAYER_OBJECT z={params.pyramid_z_height:f}" in lines

    def test_start_gcode_text(self, make_params: Callable[..., PrintParams]) -> None:
        params = make_params(start_gcode="G28\nM104 S200\n")
        gcode = ToolpathEmitter(params).generate(_layers(params))
        assert "; start gcode:\nG28\nM104 S200\nG21 ; set units to mm\n" in gcode

    def test_final_state(self, params: PrintParams) -> None:
        emitter = ToolpathEmitter(params)
        buf = StringIO()
        state = emitter.emit(_layers(params), buf)
        assert state.phase is EmitterPhase.FINISHED
        assert state.prime_filament_used > 0
        assert state.filament_used > state.prime_filament_used
        assert state.lines_written == len(buf.getvalue().splitlines())
        assert not state.fan_on

    def test_no_moves_leave_the_bed(self, params: PrintParams) -> None:
        gcode = ToolpathEmitter(params).generate(_layers(params))
        vm = GCodeVM(bed_size=params.config.bed_size)
        vm.load_string(gcode)
        assert vm.run()["violations"] == []


class TestExtrusionModes:
    def test_relative_mode(self, make_params: Callable[..., PrintParams]) -> None:
        params = make_params(relative_extrusion=True)
        emitter = ToolpathEmitter(params)
        buf = StringIO()
        state = emitter.emit(_layers(params), buf)
        gcode = buf.getvalue()
        assert "M83 ; set relative extrusion" in gcode
        values = _e_values(gcode)
        assert sum(values) == pytest.approx(state.filament_used, abs=1e-2)
        assert max(values) < state.filament_used / 2
        assert state.extruder_position == 0.0

    def test_absolute_mode_is_monotonic(
        self, make_params: Callable[..., PrintParams]
    ) -> None:
        params = make_params(relative_extrusion=False)
        emitter = ToolpathEmitter(params)
        buf = StringIO()
        state = emitter.emit(_layers(params), buf)
        gcode = buf.getvalue()
        assert "M82 ; set absolute extrusion" in gcode
        values = _e_values(gcode)
        assert all(b >= a - 1e-6 for a, b in zip(values, values[1:]))
        assert values[-1] == pytest.approx(state.filament_used, abs=1e-5)

    def test_replayed_filament_matches(self, make_params: Callable[..., PrintParams]) -> None:
        for relative in (True, False):
            params = make_params(relative_extrusion=relative)
            buf = StringIO()
            state = ToolpathEmitter(params).emit(_layers(params), buf)
            vm = GCodeVM()
            vm.load_string(buf.getvalue())
            assert vm.run()["filament_mm"] == pytest.approx(state.filament_used, abs=1e-2)


class TestFan:
    def test_fan_turns_on_after_start_layer(self, params: PrintParams) -> None:
        gcode = ToolpathEmitter(params).generate(_layers(params))
        lines = gcode.splitlines()
        assert lines.count("M106 S255") == 1
        assert lines.count("M107") == 1

        before_fan = lines[: lines.index("M106 S255")]
        vm = GCodeVM()
        vm.load_string("\n".join(before_fan))
        assert vm.run()["layer_count"] == params.config.fan_start_layer + 1

    def test_fan_never_on_for_short_prints(
        self, make_params: Callable[..., PrintParams]
    ) -> None:
        params = make_params(fan_start_layer=500)
        gcode = ToolpathEmitter(params).generate(_layers(params))
        assert "M106" not in gcode
        assert "M107" in gcode


class TestFilamentEstimate:
    def test_layer_count_for_reference_print(
        self, make_params: Callable[..., PrintParams]
    ) -> None:
        params = make_params(order=2, size=100.0, bed_size=200.0, layer_height=1.0)
        assert params.num_layers == 71

    def test_emitted_total_matches_model(
        self, make_params: Callable[..., PrintParams]
    ) -> None:
        params = make_params(order=2, size=100.0, bed_size=200.0, layer_height=1.0)
        layers = _layers(params)
        state = ToolpathEmitter(params).emit(layers, StringIO())
        printed = state.filament_used - state.prime_filament_used
        assert printed == pytest.approx(model_filament(params, layers), rel=1e-6)

    def test_estimate_adds_prime_length(
        self, make_params: Callable[..., PrintParams]
    ) -> None:
        params = make_params()
        layers = _layers(params)
        assert estimate_filament(params, layers) == pytest.approx(
            model_filament(params, layers) + params.config.prime_filament_length
        )

    def test_octahedron_estimate_counts_raft(
        self, make_params: Callable[..., PrintParams]
    ) -> None:
        params = make_params(octahedron=True, support_fin_height=5.0)
        layers = _layers(params)
        raft = raft_path(params)
        raft_mm = sum(
            float(np.linalg.norm(np.subtract(b, a))) for a, b in zip(raft, raft[1:])
        )
        # Rows one width apart cover the footprint area.
        assert raft_mm >= params.config.size**2 / params.first_layer_extrusion_width
        assert estimate_filament(params, layers) == pytest.approx(
            2 * model_filament(params, layers)
            + params.config.prime_filament_length
            + raft_mm * params.first_layer_extrusion_per_mm
        )


# ---------------------------------------------------------------------------
# Octahedron mode
# ---------------------------------------------------------------------------


class TestOctahedron:
    def test_boundary_kinds(self) -> None:
        assert boundary_kinds(8) == [
            BoundaryKind.START,
            BoundaryKind.PLAIN,
            BoundaryKind.LOWER_RIGHT,
            BoundaryKind.PLAIN,
            BoundaryKind.UPPER_RIGHT,
            BoundaryKind.PLAIN,
            BoundaryKind.UPPER_LEFT,
            BoundaryKind.PLAIN,
        ]
        assert boundary_kinds(4) == [
            BoundaryKind.START,
            BoundaryKind.LOWER_RIGHT,
            BoundaryKind.UPPER_RIGHT,
            BoundaryKind.UPPER_LEFT,
        ]

    def test_stack_structure(self, make_params: Callable[..., PrintParams]) -> None:
        params = make_params(octahedron=True, support_fin_height=5.0)
        layers = _layers(params)
        gcode = ToolpathEmitter(params).generate(layers)

        vm = GCodeVM(bed_size=params.config.bed_size)
        vm.load_string(gcode)
        result = vm.run()
        assert result["violations"] == []
        # Raft, inverted stack, then the pyramid; the widest layer of both
        # halves shares one height.
        n = len(layers)
        assert result["layer_count"] == 2 * n
        top = layers[-1].z + params.config.layer_height
        assert max(result["layer_heights"]) == pytest.approx(top + layers[-1].z - 0.2)

    def test_fins_only_below_fin_height(
        self, make_params: Callable[..., PrintParams]
    ) -> None:
        params = make_params(octahedron=True, support_fin_height=5.0)
        gcode = ToolpathEmitter(params).generate(_layers(params))
        fin_feed = f"F{format_verbose(params.config.speed * 2 * 60)}"
        fin_lines = [line for line in gcode.splitlines() if line.endswith(fin_feed)]
        assert fin_lines
        heights = {float(re.search(r"Z(\S+)", line).group(1)) for line in fin_lines}
        assert max(heights) <= 5.0 + params.config.layer_height + 1e-6

    def test_fins_reach_bounding_square(
        self, make_params: Callable[..., PrintParams]
    ) -> None:
        params = make_params(octahedron=True, support_fin_height=5.0)
        gcode = ToolpathEmitter(params).generate(_layers(params))
        fin_feed = f"F{format_verbose(params.config.speed * 2 * 60)}"
        xs = [
            float(re.search(r"X(\S+)", line).group(1))
            for line in gcode.splitlines()
            if line.endswith(fin_feed)
        ]
        assert min(xs) == pytest.approx(params.xy_min)
        assert max(xs) == pytest.approx(params.xy_max)

    def test_plain_mode_has_no_fins(self, params: PrintParams) -> None:
        gcode = ToolpathEmitter(params).generate(_layers(params))
        assert f"F{format_verbose(params.config.speed * 2 * 60)}" not in gcode


def _fin_moves(gcode: str, params: PrintParams) -> list[tuple[float, float]]:
    """XY targets of the moves written at fin speed, in order."""
    fin_feed = f"F{format_verbose(params.config.speed * 2 * 60)}"
    moves = []
    for line in gcode.splitlines():
        if line.endswith(fin_feed):
            match = re.search(r"X(\S+) Y(\S+)", line)
            moves.append((float(match.group(1)), float(match.group(2))))
    return moves


class TestFinDirections:
    """Fin detours at the bounding-square corners of one layer.

    The footprint spans 40..60 on both axes and fins reach 1.6 mm
    (four extrusion widths) past the outline.
    """

    Z = 5.2

    def _trace(
        self, attached: tuple[ToolpathEmitter, StringIO], points: list[tuple[float, float]]
    ) -> list[tuple[float, float]]:
        emitter, buf = attached
        outline = np.array([[x, y, self.Z] for x, y in points], dtype=float)
        emitter.travel_to(outline[0])
        start = len(buf.getvalue())
        emitter._print_outline(outline, self.Z, fins=True)
        return _fin_moves(buf.getvalue()[start:], emitter._params)

    def test_base_square(
        self, attached: tuple[ToolpathEmitter, StringIO]
    ) -> None:
        # Lower-right and upper-left are entered along X, upper-right along
        # Y.  The lower-left fin is mirrored and split at its second point.
        moves = self._trace(attached, [(40, 40), (60, 40), (60, 60), (40, 60)])
        expected = [
            # lower-left head
            (41.6, 40), (40, 41.6), (38.4, 40), (40, 40),
            # lower-right
            (61.6, 40), (60, 41.6), (58.4, 40), (60, 38.4), (60, 40),
            # upper-right
            (60, 61.6), (58.4, 60), (60, 58.4), (61.6, 60), (60, 60),
            # upper-left
            (38.4, 60), (40, 58.4), (41.6, 60), (40, 61.6), (40, 60),
            # lower-left tail, after closing the outline
            (40, 38.4), (41.6, 40),
        ]
        assert moves == [pytest.approx(m) for m in expected]

    def test_corners_entered_the_other_way(
        self, attached: tuple[ToolpathEmitter, StringIO]
    ) -> None:
        # Lower-right and upper-left are entered along Y, upper-right along
        # X.  Larger outlines use the unmirrored lower-left fin, split at its
        # third point.
        outline = [
            (40, 40), (60, 50), (60, 40), (50, 60),
            (60, 60), (40, 50), (40, 60), (45, 50),
        ]
        moves = self._trace(attached, outline)
        expected = [
            # lower-left head
            (41.6, 40), (40, 38.4), (40, 40),
            # lower-right
            (60, 38.4), (58.4, 40), (60, 41.6), (61.6, 40), (60, 40),
            # upper-right
            (61.6, 60), (60, 58.4), (58.4, 60), (60, 61.6), (60, 60),
            # upper-left
            (40, 61.6), (41.6, 60), (40, 58.4), (38.4, 60), (40, 60),
            # lower-left tail
            (38.4, 40), (40, 41.6), (41.6, 40),
        ]
        assert moves == [pytest.approx(m) for m in expected]

    def test_feed_restored_after_each_fin(
        self, attached: tuple[ToolpathEmitter, StringIO], params: PrintParams
    ) -> None:
        _, buf = attached
        self._trace(attached, [(40, 40), (60, 40), (60, 60), (40, 60)])
        lines = buf.getvalue().splitlines()
        fin_feed = f"F{format_verbose(params.config.speed * 2 * 60)}"
        print_feed = f"F{format_verbose(params.config.speed * 60)}"
        for i, line in enumerate(lines[:-1]):
            if line.endswith(fin_feed) and not lines[i + 1].endswith(fin_feed):
                assert lines[i + 1].endswith(print_feed)

    def test_pyramid_layer(
        self, attached: tuple[ToolpathEmitter, StringIO], params: PrintParams
    ) -> None:
        points = _layers(params)[2].points
        assert len(points) == 20
        moves = self._trace(attached, [(float(x), float(y)) for x, y, _ in points])
        # Three corner fins of five moves plus the split lower-left fin.
        assert len(moves) == 21
        offset = params.config.extrusion_width * 4
        for corner in [
            (params.xy_min, params.xy_min),
            (params.xy_max, params.xy_min),
            (params.xy_max, params.xy_max),
            (params.xy_min, params.xy_max),
        ]:
            near = [
                m for m in moves
                if abs(np.hypot(m[0] - corner[0], m[1] - corner[1]) - offset) < 1e-6
            ]
            assert len(near) >= 2


# ---------------------------------------------------------------------------
# Sink failures
# ---------------------------------------------------------------------------


class FailingSink(StringIO):
    def __init__(self, fail_after: int) -> None:
        super().__init__()
        self.fail_after = fail_after
        self.calls = 0

    def write(self, s: str) -> int:
        self.calls += 1
        if self.calls > self.fail_after:
            raise OSError("No space left on device")
        return super().write(s)


class TestSinkFailure:
    def test_write_error_aborts(self, params: PrintParams) -> None:
        sink = FailingSink(fail_after=5)
        emitter = ToolpathEmitter(params)
        with pytest.raises(GCodeError, match="No space left"):
            emitter.emit(_layers(params), sink)
        assert len(sink.getvalue().splitlines()) == 5
        assert emitter.state.phase is not EmitterPhase.FINISHED

    def test_failure_mid_layers(self, params: PrintParams) -> None:
        sink = FailingSink(fail_after=200)
        with pytest.raises(GCodeError):
            ToolpathEmitter(params).emit(_layers(params), sink)
        assert sink.calls == 201
