"""
Sierpinski Pyramid G-code Package.

Slices a recursively defined Sierpinski pyramid into closed horizontal
cross-sections and writes them out as a 3D-printer toolpath.

Subpackages:
    geometry: Affine helpers, recursive cross-sections, layer stacking
    gcode: Toolpath emission, number formatting, output sinks, offline reader
    configs: Print configuration loading and validation
    utils: Logging setup and YAML helpers
    scripts: Command-line entry points
"""

__version__ = "0.3.0"

# Injected at build time by release tooling; "HEAD" for source checkouts.
BUILD_REVISION = "HEAD"

__all__ = ["geometry", "gcode", "configs", "utils", "scripts"]
