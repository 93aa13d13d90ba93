"""Filesystem helpers for config files and output paths.

YAML is always read with ``yaml.safe_load``; config files are plain
key/value documents and never need arbitrary object construction.

Usage:
    from sierpinski_gcode.utils import fs
    data, text = fs.load_yaml_with_source("pyramid.yaml")
    fs.ensure_dir(output_path.parent)
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Tuple, Union

import yaml


def ensure_dir(p: Union[str, Path]) -> Path:
    """Create directory if it doesn't exist, return Path object.

    Creates parent directories as needed.
    """
    p = Path(p)
    p.mkdir(parents=True, exist_ok=True)
    return p


def load_yaml_with_source(path: Union[str, Path]) -> Tuple[Dict[str, Any], str]:
    """Load YAML file safely and also return its raw text.

    Parameters
    ----------
    path : Union[str, Path]
        YAML file path

    Returns
    -------
    Tuple[Dict[str, Any], str]
        Parsed content (``None`` for an empty document) and the file text

    Raises
    ------
    FileNotFoundError
        If file doesn't exist
    yaml.YAMLError
        If YAML parsing fails

    Notes
    -----
    The raw text is echoed verbatim into G-code headers so a print can
    always be traced back to the exact config that produced it.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"YAML file not found: {path}")

    text = path.read_text(encoding="utf-8")
    try:
        return yaml.safe_load(text), text
    except yaml.YAMLError as e:
        raise yaml.YAMLError(f"Failed to parse YAML file {path}: {e}") from e
