"""Number formatting for G-code words.

Two styles are used:

    - **verbose** (``%f``, six decimals) for the occasional full move that
      also carries Z and F;
    - **smallest** for the bulk ``G1 X Y E`` moves.  The value is rounded
      to a fixed number of decimals, then the leading ``0`` before the
      point, trailing zeros and a dangling ``.`` are dropped.  Marlin and
      RepRapFirmware both parse ``.01`` as ``0.01``.

At high fractal orders almost every line of the file is a smallest-style
move, so this is what keeps output size in check.
"""

from __future__ import annotations


def float_to_smallest_string(value: float, decimals: int) -> str:
    """Shortest decimal text for ``value`` rounded to ``decimals`` places.

    Examples
    --------
    >>> float_to_smallest_string(1024, 4)
    '1024'
    >>> float_to_smallest_string(12.111111111111, 4)
    '12.1111'
    >>> float_to_smallest_string(0.01, 4)
    '.01'
    >>> float_to_smallest_string(0.00001, 4)
    '0'
    >>> float_to_smallest_string(0.00005, 4)
    '.0001'
    """
    s = f"{value:.{decimals}f}"
    if "." not in s:
        return s
    if s[0] == "0":
        s = s[1:]
    s = s.rstrip("0").rstrip(".")
    if s in ("", "-", "-0"):
        return "0"
    return s


def format_verbose(value: float) -> str:
    """Full-precision style used by Z/F-carrying moves."""
    return f"{value:f}"
