"""Affine transforms in 3D homogeneous form.

Transforms are plain 4x4 ``numpy`` arrays.  Points are stored as ``(N, 3)``
arrays (one row per vertex) and are lifted to homogeneous coordinates only
inside :func:`apply`.

Composition convention:
    ``compose(a, b, c)`` returns ``a @ b @ c``, so the **rightmost**
    transform is applied to a point first::

        place = compose(translate(0.5, 0.5, 0), scale(0.5))
        # scale first, then translate

No function here mutates its arguments.
"""

from __future__ import annotations

import math
from functools import reduce

import numpy as np


def identity() -> np.ndarray:
    """Return the 4x4 identity transform."""
    return np.eye(4)


def translate(x: float, y: float, z: float) -> np.ndarray:
    """Return a translation by ``(x, y, z)``."""
    m = np.eye(4)
    m[:3, 3] = (x, y, z)
    return m


def scale(sx: float, sy: float | None = None, sz: float | None = None) -> np.ndarray:
    """Return a scale transform.

    Parameters
    ----------
    sx : float
        X scale factor.  Used for all three axes when ``sy`` and ``sz``
        are omitted.
    sy, sz : float, optional
        Per-axis factors for non-uniform scaling (e.g. ``scale(1, 1, -1)``
        mirrors Z).
    """
    if sy is None:
        sy = sx
    if sz is None:
        sz = sx
    return np.diag((sx, sy, sz, 1.0))


def rotate_z(angle: float) -> np.ndarray:
    """Return a counter-clockwise rotation about the Z axis (radians)."""
    c = math.cos(angle)
    s = math.sin(angle)
    m = np.eye(4)
    m[0, 0] = c
    m[0, 1] = -s
    m[1, 0] = s
    m[1, 1] = c
    return m


def compose(*transforms: np.ndarray) -> np.ndarray:
    """Multiply transforms left to right; the rightmost applies first."""
    if not transforms:
        return identity()
    return reduce(np.matmul, transforms)


def apply(transform: np.ndarray, points: np.ndarray) -> np.ndarray:
    """Map ``(N, 3)`` points through a homogeneous transform.

    Parameters
    ----------
    transform : np.ndarray
        4x4 affine matrix.
    points : np.ndarray
        ``(N, 3)`` array of points.

    Returns
    -------
    np.ndarray
        New ``(N, 3)`` array; the input is left untouched.
    """
    pts = np.asarray(points, dtype=float)
    out = pts @ transform[:3, :3].T + transform[:3, 3]
    w = pts @ transform[3, :3] + transform[3, 3]
    if not np.allclose(w, 1.0):
        out = out / w[:, None]
    return out
