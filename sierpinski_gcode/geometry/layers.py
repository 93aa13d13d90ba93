"""Layer stacking: cross-sections mapped onto the print bed.

Each layer pairs a world-space outline with the Z it is printed at.  The
cross-section to compute and the Z to print it at are chosen separately:
the outline comes from the nominal height ``H * i / layer_count``, while
the printed Z is always ``origin_z + i * layer_height``.  Printed layers
therefore land on exact multiples of the layer height no matter how much
rounding the recursive placement accumulated.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

import numpy as np

from sierpinski_gcode.geometry.cross_section import PYRAMID_NOMINAL_HEIGHT, generate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Layer:
    """One printable slice.

    Parameters
    ----------
    points : np.ndarray
        ``(N, 3)`` outline in bed coordinates (mm), implicitly closed.
        Every row has ``z == self.z``.
    z : float
        Physical print height in mm.
    index : int
        Position in the stack, 0 at the bed.
    """

    points: np.ndarray
    z: float
    index: int

    def __len__(self) -> int:
        return len(self.points)


def nominal_heights(layer_count: int) -> list[float]:
    """Cut heights of ``layer_count`` equally spaced layers, apex excluded."""
    return [PYRAMID_NOMINAL_HEIGHT * i / layer_count for i in range(layer_count)]


def build_layers(
    order: int,
    layer_count: int,
    size_scale: float,
    world_origin: Sequence[float],
    layer_height: float,
) -> list[Layer]:
    """Slice the pyramid into ``layer_count`` bed-space layers.

    Parameters
    ----------
    order : int
        Fractal recursion order.
    layer_count : int
        Number of layers to produce.
    size_scale : float
        Base edge length of the printed pyramid in mm.  Unit-pyramid
        coordinates (base ``[-1, 1]``) are scaled by ``size_scale / 2``.
    world_origin : sequence of 3 floats
        Bed position of the base centre; its Z is the first layer height.
    layer_height : float
        Physical Z step between consecutive layers in mm.

    Returns
    -------
    list[Layer]
        Layers in print order (bottom first).
    """
    origin = np.asarray(world_origin, dtype=float)
    half = size_scale / 2
    layers: list[Layer] = []
    for i, height in enumerate(nominal_heights(layer_count)):
        z = float(origin[2] + i * layer_height)
        points = generate(order, height) * half + origin
        points[:, 2] = z
        layers.append(Layer(points=points, z=z, index=i))

    logger.debug(
        "Built %d layers (order=%d, %d..%d vertices)",
        len(layers),
        order,
        min((len(l) for l in layers), default=0),
        max((len(l) for l in layers), default=0),
    )
    return layers


def layer_path_lengths(
    layers: Sequence[Layer],
    start: Sequence[float] | None = None,
) -> list[float]:
    """Distance the nozzle prints while tracing each layer.

    For every layer this sums the approach from the previous position to
    the first vertex, each outline edge and the closing edge, which is the
    path the emitter prints in plain (fin-less) mode.

    Parameters
    ----------
    layers : sequence of Layer
        Layers in print order.
    start : sequence of 3 floats, optional
        Toolhead position before the first layer.  Defaults to the first
        vertex of the first layer.

    Returns
    -------
    list[float]
        One length (mm) per layer.
    """
    if not layers:
        return []
    last = np.asarray(layers[0].points[0] if start is None else start, dtype=float)
    lengths: list[float] = []
    for layer in layers:
        pts = layer.points
        approach = float(np.linalg.norm(pts[0] - last))
        ring = np.vstack((pts, pts[:1]))
        edges = float(np.linalg.norm(np.diff(ring, axis=0), axis=1).sum())
        lengths.append(approach + edges)
        last = pts[0]
    return lengths
