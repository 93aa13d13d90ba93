"""Output targets for generated G-code.

The ``outputFilename`` config value is resolved **once** into an
:data:`OutputTarget`; nothing downstream compares sentinel strings.

    - ``"-"`` or ``"stdout"``  -> :class:`StreamTarget` (standard output)
    - empty / missing          -> :class:`FileTarget` next to the config
    - anything else            -> :class:`FileTarget` at that path
"""

from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, TextIO, Union

from sierpinski_gcode.utils.fs import ensure_dir

logger = logging.getLogger(__name__)

STDOUT_SENTINELS = ("-", "stdout")


@dataclass(frozen=True)
class StreamTarget:
    """Write to the process's standard output."""

    def describe(self) -> str:
        return "<stdout>"


@dataclass(frozen=True)
class FileTarget:
    """Write to a file, replacing any existing content."""

    path: Path

    def describe(self) -> str:
        return str(self.path)


OutputTarget = Union[StreamTarget, FileTarget]


def resolve_output(
    value: str | None,
    config_path: str | Path | None = None,
) -> OutputTarget:
    """Turn the configured output name into a target.

    Parameters
    ----------
    value : str | None
        Configured output name.
    config_path : str | Path | None
        Path of the config file; the default output is
        ``<config_path>.gcode``.

    Raises
    ------
    ValueError
        If no name is configured and there is no config path to derive
        one from.
    """
    if value in STDOUT_SENTINELS:
        return StreamTarget()
    if value:
        return FileTarget(Path(value))
    if config_path is None:
        raise ValueError("No output filename configured and no config path to derive one")
    return FileTarget(Path(f"{config_path}.gcode"))


@contextmanager
def open_sink(target: OutputTarget) -> Iterator[TextIO]:
    """Open ``target`` for writing for the duration of the block.

    File sinks are closed on every exit path.  The standard output stream
    is flushed but left open.
    """
    if isinstance(target, StreamTarget):
        try:
            yield sys.stdout
        finally:
            sys.stdout.flush()
        return

    ensure_dir(target.path.parent)
    logger.info("Writing G-code to %s", target.path)
    with open(target.path, "w", encoding="utf-8", newline="\n") as fh:
        yield fh
