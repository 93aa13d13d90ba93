"""Offline G-code reader for dry-run checks.

Replays a generated program without a printer:
    - Position, positioning mode (G90/G91) and feed tracking
    - Extrusion bookkeeping in absolute (M82) or relative (M83) mode
    - Printed layers (distinct Z heights with extrusion)
    - Fan events (M106/M107)
    - Bed soft limits
    - Time estimate from modal feeds at constant velocity

Used by:
    - ``sierpinski-gcode --check``: sanity-check a file after writing it
    - Tests: assert on the emitted stream instead of on raw text

Usage::

    from sierpinski_gcode.gcode.vm import GCodeVM

    vm = GCodeVM(bed_size=200.0)
    vm.load_file("pyramid.gcode")
    result = vm.run()
    print(f"{result['layer_count']} layers, {result['filament_mm']:.1f} mm filament")
"""

from __future__ import annotations

import logging
import math
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

_WORD = re.compile(r"([A-Z])\s*([-+]?(?:\d+(?:\.\d*)?|\.\d+))", re.IGNORECASE)
_COMMAND = re.compile(r"^([GM])0*(\d+)\b", re.IGNORECASE)

LAYER_Z_DECIMALS = 4
"""Z values are rounded to this many places when grouping layers."""


class GCodeVM:
    """Offline G-code interpreter.

    Parameters
    ----------
    bed_size : float, optional
        Square bed edge (mm).  ``None`` disables soft-limit checks.
    default_feed_mm_min : float
        Feed assumed before the first ``F`` word.

    Attributes
    ----------
    pos : Tuple[float, float, float]
        Current position (mm).
    feed : float
        Modal feed (mm/min).
    relative_extrusion : bool
        M83 (True) or M82 (False).
    violations : List[str]
        Soft-limit violations, one message each.
    """

    def __init__(self, bed_size: Optional[float] = None, default_feed_mm_min: float = 1200.0):
        self.bed_size = bed_size
        self.default_feed_mm_min = default_feed_mm_min
        self.gcode_lines: List[str] = []
        self.reset()

    def load_file(self, path: str | Path) -> None:
        """Load a G-code file.

        Raises
        ------
        FileNotFoundError
            If the file doesn't exist.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"G-code file not found: {path}")
        self.gcode_lines = path.read_text(encoding="utf-8").splitlines()
        logger.info("Loaded %d G-code lines from %s", len(self.gcode_lines), path)

    def load_string(self, gcode: str) -> None:
        self.gcode_lines = gcode.splitlines()
        logger.debug("Loaded %d G-code lines from string", len(self.gcode_lines))

    def reset(self) -> None:
        """Return to the power-on state."""
        self.pos: Tuple[float, float, float] = (0.0, 0.0, 0.0)
        self.feed: float = self.default_feed_mm_min
        self.absolute_positioning = True
        self.relative_extrusion = False
        self.e_pos = 0.0
        self.filament_mm = 0.0
        self.e_words: List[float] = []
        self.print_moves = 0
        self.travel_moves = 0
        self.layer_heights: set[float] = set()
        self.fan_events: List[Tuple[int, str]] = []
        self.violations: List[str] = []
        self.total_time = 0.0

    @staticmethod
    def parse_words(line: str) -> Dict[str, float]:
        """Parse parameter words (``X1.5``, ``E.02``) after the command."""
        words: Dict[str, float] = {}
        for letter, value in _WORD.findall(line):
            words[letter.upper()] = float(value)
        return words

    def check_soft_limits(self, x: float, y: float, z: float, line_idx: int) -> None:
        if self.bed_size is None:
            return
        where = f"line {line_idx + 1}"
        if not (0 <= x <= self.bed_size):
            self.violations.append(f"X={x:.3f} outside bed [0, {self.bed_size}] at {where}")
        if not (0 <= y <= self.bed_size):
            self.violations.append(f"Y={y:.3f} outside bed [0, {self.bed_size}] at {where}")
        if z < 0:
            self.violations.append(f"Z={z:.3f} below bed at {where}")

    def execute_line(self, line: str, line_idx: int = 0) -> None:
        """Apply one G-code line to the VM state."""
        line = line.split(";", 1)[0].strip()
        if not line:
            return

        match = _COMMAND.match(line)
        if match is None:
            logger.debug("Ignoring unrecognised line %d: %s", line_idx + 1, line)
            return
        code = f"{match.group(1).upper()}{int(match.group(2))}"
        words = self.parse_words(line[match.end():])

        if code in ("G0", "G1"):
            self._move(words, is_travel=code == "G0", line_idx=line_idx)
        elif code == "G28":
            self.pos = (0.0, 0.0, 0.0)
        elif code == "G90":
            self.absolute_positioning = True
        elif code == "G91":
            self.absolute_positioning = False
        elif code == "G92":
            if "E" in words:
                self.e_pos = words["E"]
            self.pos = tuple(
                words.get(axis, current) for axis, current in zip("XYZ", self.pos)
            )
        elif code == "M82":
            self.relative_extrusion = False
        elif code == "M83":
            self.relative_extrusion = True
        elif code in ("M106", "M107"):
            self.fan_events.append((line_idx, code))

    def _move(self, words: Dict[str, float], is_travel: bool, line_idx: int) -> None:
        if "F" in words:
            self.feed = words["F"]

        if self.absolute_positioning:
            new_pos = tuple(words.get(axis, current) for axis, current in zip("XYZ", self.pos))
        else:
            new_pos = tuple(current + words.get(axis, 0.0) for axis, current in zip("XYZ", self.pos))

        extruded = 0.0
        if "E" in words:
            self.e_words.append(words["E"])
            if self.relative_extrusion:
                extruded = words["E"]
            else:
                extruded = words["E"] - self.e_pos
                self.e_pos = words["E"]
            self.filament_mm += extruded

        if is_travel:
            self.travel_moves += 1
        else:
            self.print_moves += 1
            if extruded > 0:
                self.layer_heights.add(round(new_pos[2], LAYER_Z_DECIMALS))

        self.check_soft_limits(*new_pos, line_idx=line_idx)
        dist = math.dist(self.pos, new_pos)
        if dist > 0 and self.feed > 0:
            self.total_time += dist / (self.feed / 60.0)
        self.pos = new_pos

    def run(self) -> Dict[str, Any]:
        """Replay the loaded program and summarise it.

        Returns
        -------
        Dict[str, Any]
            Keys: ``time_estimate_s``, ``filament_mm``, ``print_moves``,
            ``travel_moves``, ``layer_count``, ``layer_heights`` (sorted),
            ``fan_events`` (``(line_idx, "M106"|"M107")``),
            ``relative_extrusion``, ``violations``, ``final_pos``.

        Raises
        ------
        RuntimeError
            If nothing was loaded.
        """
        if not self.gcode_lines:
            raise RuntimeError("No G-code loaded, call load_file() or load_string() first")

        self.reset()
        for i, line in enumerate(self.gcode_lines):
            self.execute_line(line, line_idx=i)

        logger.info(
            "Replayed %d lines: %d print moves, %d layers, %.1f mm filament, ~%.0fs",
            len(self.gcode_lines),
            self.print_moves,
            len(self.layer_heights),
            self.filament_mm,
            self.total_time,
        )
        for msg in self.violations[:10]:
            logger.warning(msg)
        if len(self.violations) > 10:
            logger.warning("... and %d more violations", len(self.violations) - 10)

        return {
            "time_estimate_s": self.total_time,
            "filament_mm": self.filament_mm,
            "print_moves": self.print_moves,
            "travel_moves": self.travel_moves,
            "layer_count": len(self.layer_heights),
            "layer_heights": sorted(self.layer_heights),
            "fan_events": list(self.fan_events),
            "relative_extrusion": self.relative_extrusion,
            "violations": list(self.violations),
            "final_pos": self.pos,
        }
