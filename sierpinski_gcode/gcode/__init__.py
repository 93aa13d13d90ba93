"""G-code output: toolpath emission, number formatting, sinks, offline reader."""

from sierpinski_gcode.gcode.emitter import (
    BoundaryKind,
    EmitterPhase,
    EmitterState,
    GCodeError,
    ToolpathEmitter,
    estimate_filament,
    model_filament,
)
from sierpinski_gcode.gcode.formatting import float_to_smallest_string, format_verbose
from sierpinski_gcode.gcode.sink import FileTarget, OutputTarget, StreamTarget, open_sink, resolve_output
from sierpinski_gcode.gcode.vm import GCodeVM

__all__ = [
    "BoundaryKind",
    "EmitterPhase",
    "EmitterState",
    "FileTarget",
    "GCodeError",
    "GCodeVM",
    "OutputTarget",
    "StreamTarget",
    "ToolpathEmitter",
    "estimate_filament",
    "float_to_smallest_string",
    "format_verbose",
    "model_filament",
    "open_sink",
    "resolve_output",
]
