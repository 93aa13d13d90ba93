"""Recursive horizontal cross-sections of a Sierpinski pyramid.

The unit pyramid stands on the ``[-1, 1]`` square in X/Y and rises to its
apex at ``z = sqrt(2)`` (:data:`PYRAMID_NOMINAL_HEIGHT`).  A pyramid of
order *n* is made of five half-size pyramids of order *n - 1*:

    - four corner copies (lower-left, lower-right, upper-right, upper-left)
      standing on the base;
    - one middle copy, upside down, filling the octahedral gap between
      them, whose top face meets the base of the upper half.

Cutting below half height hits all five copies.  Their outlines touch
corner to corner, so they are stitched into **one** closed loop that walks
the middle outline and detours around each corner outline in turn::

    LL[:n/2]  M[:m/4]  LR  M[m/4:m/2]  UR  M[m/2:3m/4]  UL  M[3m/4:]  LL[n/2:]

Cutting at or above half height only hits the upper copy, which is the
same order *n - 1* pyramid scaled and lifted.

Every outline produced here keeps its four bounding-square corners at
indices ``0, N/4, N/2, 3N/4`` (lower-left, lower-right, upper-right,
upper-left) and winds counter-clockwise.  Splicing depends on that layout,
hence the length-divisible-by-4 check at every level.

Both public functions are pure: the same ``(order, height)`` always yields
an equal, freshly allocated array.
"""

from __future__ import annotations

import math

import numpy as np

from sierpinski_gcode.geometry.affine import apply, compose, rotate_z, scale, translate

PYRAMID_NOMINAL_HEIGHT = math.sqrt(2)
"""Apex height of the unit pyramid (base spans ``[-1, 1]``)."""

_H = PYRAMID_NOMINAL_HEIGHT


class CrossSectionError(ValueError):
    """Raised when a cross-section is requested outside the pyramid."""

    pass


class StitchError(CrossSectionError):
    """Raised when a sub-outline breaks the four-quarter vertex layout."""

    pass


# ---------------------------------------------------------------------------
# Sub-pyramid placements (rightmost transform applies first)
# ---------------------------------------------------------------------------

LOWER_LEFT = compose(translate(-0.5, -0.5, 0), scale(0.5))
LOWER_RIGHT = compose(translate(0.5, -0.5, 0), scale(0.5), rotate_z(-math.pi / 2))
UPPER_RIGHT = compose(translate(0.5, 0.5, 0), scale(0.5))
UPPER_LEFT = compose(translate(-0.5, 0.5, 0), scale(0.5), rotate_z(math.pi / 2))
MIDDLE_INVERTED = compose(translate(0, 0, _H / 2), scale(1, 1, -1), scale(0.5))
MIDDLE_UPPER = compose(translate(0, 0, _H / 2), scale(0.5))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _check_args(order: int, height: float) -> None:
    if order < 0:
        raise CrossSectionError(f"order must be >= 0, got {order}")
    if not 0.0 <= height <= _H:
        raise CrossSectionError(
            f"height {height!r} outside pyramid range [0, {_H}]"
        )


def _check_quarters(seq: np.ndarray, name: str) -> None:
    if len(seq) % 4 != 0:
        raise StitchError(
            f"{name} sub-section has {len(seq)} entries, expected a multiple of 4"
        )


def _stitch(
    lower_left: np.ndarray,
    lower_right: np.ndarray,
    upper_right: np.ndarray,
    upper_left: np.ndarray,
    middle: np.ndarray,
) -> np.ndarray:
    """Splice five per-vertex sequences into one loop.

    Works for any array whose first axis runs over vertices, so the same
    order serves both coordinates and occlusion counters.
    """
    for name, seq in (
        ("lower-left", lower_left),
        ("lower-right", lower_right),
        ("upper-right", upper_right),
        ("upper-left", upper_left),
        ("middle", middle),
    ):
        _check_quarters(seq, name)

    n = len(lower_left)
    q = len(middle) // 4
    return np.concatenate(
        (
            lower_left[: n // 2],
            middle[:q],
            lower_right,
            middle[q : 2 * q],
            upper_right,
            middle[2 * q : 3 * q],
            upper_left,
            middle[3 * q :],
            lower_left[n // 2 :],
        )
    )


def _base_square(height: float) -> np.ndarray:
    s = (_H - height) / _H
    return np.array(
        [
            [-s, -s, height],
            [s, -s, height],
            [s, s, height],
            [-s, s, height],
        ]
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def generate(order: int, height: float) -> np.ndarray:
    """Outline of the order-``order`` pyramid cut at ``height``.

    Parameters
    ----------
    order : int
        Recursion depth, ``>= 0``.  Order 0 is a plain square pyramid.
    height : float
        Cut height in ``[0, PYRAMID_NOMINAL_HEIGHT]``.

    Returns
    -------
    np.ndarray
        ``(N, 3)`` vertex array, implicitly closed, ``N % 4 == 0``.  All
        vertices carry ``z == height`` up to rounding.

    Raises
    ------
    CrossSectionError
        If ``order`` is negative or ``height`` is out of range.
    StitchError
        If a sub-outline has a vertex count not divisible by 4.
    """
    _check_args(order, height)
    if order == 0:
        return _base_square(height)

    if height < _H / 2:
        # The four corner copies are identical before placement.
        corner = generate(order - 1, height * 2)
        _check_quarters(corner, "corner")
        middle = generate(order - 1, _H - height * 2)
        return _stitch(
            apply(LOWER_LEFT, corner),
            apply(LOWER_RIGHT, corner),
            apply(UPPER_RIGHT, corner),
            apply(UPPER_LEFT, corner),
            apply(MIDDLE_INVERTED, middle),
        )

    middle = generate(order - 1, (height - _H / 2) * 2)
    _check_quarters(middle, "middle")
    return apply(MIDDLE_UPPER, middle)


def generate_occlusion(order: int, height: float) -> np.ndarray:
    """Per-edge occlusion depth for :func:`generate` at the same arguments.

    Entry ``i`` counts how many enclosing shells hide the edge from vertex
    ``i`` to vertex ``i + 1`` when the pyramid is viewed from the fixed
    front-left viewpoint used for the layer previews.  It is a cheap
    visibility approximation, not hidden-line removal; other viewpoints
    need their own offsets.

    Returns
    -------
    np.ndarray
        Non-negative ``int`` array with ``len(generate(order, height))``
        entries.

    Raises
    ------
    CrossSectionError
        Same preconditions as :func:`generate`.
    """
    _check_args(order, height)
    if order == 0:
        return np.zeros(4, dtype=int)

    if height < _H / 2:
        corner = generate_occlusion(order - 1, height * 2)
        _check_quarters(corner, "corner")
        middle = generate_occlusion(order - 1, _H - height * 2)
        n = len(corner)

        # Lower-left: the inner half is behind the other three corners.
        lower_left = corner.copy()
        lower_left[n // 4 : 3 * n // 4] += 1

        # The others: the outer quarters are behind the lower-left corner.
        behind = corner.copy()
        behind[: n // 4] += 1
        behind[3 * n // 4 :] += 1

        return _stitch(lower_left, behind, behind, behind, middle)

    return generate_occlusion(order - 1, (height - _H / 2) * 2)
