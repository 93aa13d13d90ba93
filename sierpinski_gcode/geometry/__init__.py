"""
Pyramid geometry.

Affine helpers, recursive cross-sections and layer stacking.
"""

from sierpinski_gcode.geometry.cross_section import (
    PYRAMID_NOMINAL_HEIGHT,
    CrossSectionError,
    StitchError,
    generate,
    generate_occlusion,
)
from sierpinski_gcode.geometry.layers import (
    Layer,
    build_layers,
    layer_path_lengths,
    nominal_heights,
)

__all__ = [
    "PYRAMID_NOMINAL_HEIGHT",
    "CrossSectionError",
    "Layer",
    "StitchError",
    "build_layers",
    "generate",
    "generate_occlusion",
    "layer_path_lengths",
    "nominal_heights",
]
