"""Shared fixtures: small, fast print configurations."""

from __future__ import annotations

from typing import Any, Callable

import pytest

from sierpinski_gcode.configs.loader import PrintParams, parse_config

BASE_CONFIG: dict[str, Any] = {
    "order": 1,
    "size": 20.0,
    "bed_size": 100.0,
    "speed": 40.0,
    "layer_height": 1.0,
    "z_offset": 0.2,
    "extrusion_width": 0.4,
    "filament_diameter": 1.75,
    "fan_start_layer": 3,
    "prime_filament_length": 10.0,
}


@pytest.fixture()
def make_params() -> Callable[..., PrintParams]:
    """Build PrintParams from BASE_CONFIG plus overrides, writing to stdout."""

    def _make(**overrides: Any) -> PrintParams:
        source_text = overrides.pop("source_text", "")
        data = {**BASE_CONFIG, **overrides}
        return PrintParams.from_config(
            parse_config(data), source_text=source_text, output="-"
        )

    return _make


@pytest.fixture()
def params(make_params: Callable[..., PrintParams]) -> PrintParams:
    return make_params()
