"""Configuration loader for pyramid prints.

Loads a print config YAML, validates it against a strict pydantic schema
(unknown keys are rejected), and resolves it into a frozen
:class:`PrintParams` holding every derived quantity the emitter needs.

Keys are accepted both in the historical camelCase form (``bedSize``,
``gcodeXYDecimals``) and in snake_case (``bed_size``).  A value of ``0`` for
``firstLayerExtrusionWidth``, ``gcodeEDecimals`` or ``supportFinHeight``
means "derive it", same as leaving the key out.

Speeds are stored in **mm/s**.  Conversion to the G-code ``F`` parameter
(mm/min) happens only in the emitter.

Usage::

    from sierpinski_gcode.configs.loader import load_print_params
    params = load_print_params("pyramid.yaml")
    params = load_print_params("pyramid.yaml", output="-")   # force stdout
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from sierpinski_gcode.gcode.sink import OutputTarget, resolve_output
from sierpinski_gcode.geometry.cross_section import PYRAMID_NOMINAL_HEIGHT
from sierpinski_gcode.utils.fs import load_yaml_with_source

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent / "example.yaml"

FIRST_LAYER_TOLERANCE = 0.001
"""Relative slack when deciding whether a Z belongs to the first layer."""


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ConfigError(Exception):
    """Raised when configuration validation fails."""

    pass


# ---------------------------------------------------------------------------
# Schema -- mirrors the YAML structure
# ---------------------------------------------------------------------------


class PyramidConfig(BaseModel):
    """Print configuration schema.  Lengths in mm, speeds in mm/s."""

    model_config = ConfigDict(
        extra="forbid",
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
    )

    order: int = Field(..., ge=0, le=12, description="Fractal recursion order")
    size: float = Field(..., gt=0, description="Base edge length of the pyramid (mm)")
    speed: float = Field(40.0, gt=0, description="Print/travel speed (mm/s)")
    bed_size: float = Field(..., gt=0, description="Square bed edge length (mm)")
    z_offset: float = Field(0.0, description="Z of the first layer (mm)")
    fan_start_layer: int = Field(3, ge=0, description="Layer after which the fan turns on")
    relative_extrusion: bool = Field(True, description="M83 (true) or M82 (false)")
    extrusion_width: float = Field(0.4, gt=0, description="Bead width (mm)")
    first_layer_extrusion_width: float = Field(
        0.0, ge=0, description="First-layer bead width (mm); 0 = 1.5 x extrusion_width"
    )
    filament_diameter: float = Field(1.75, gt=0, description="Filament diameter (mm)")
    layer_height: float = Field(0.2, gt=0, description="Layer height (mm)")
    start_gcode: str = Field("", description="Free-form G-code emitted before printing")
    end_gcode: str = Field("", description="Free-form G-code emitted after printing")
    output_filename: str = Field(
        "", description="Output path; '-' or 'stdout' for standard output"
    )
    gcode_xy_decimals: int = Field(
        2, ge=0, le=10, alias="gcodeXYDecimals", description="Decimals for X/Y words"
    )
    gcode_e_decimals: int = Field(
        0, ge=0, le=12, alias="gcodeEDecimals", description="Decimals for E words; 0 = derive"
    )
    prime_filament_length: float = Field(
        10.0, ge=0, description="Filament pushed through the prime line (mm)"
    )
    octahedron: bool = Field(
        False, description="Print an inverted support stack with fins under the pyramid"
    )
    support_fin_height: float = Field(
        0.0, ge=0, description="Fins stop above this Z (mm); 0 = derive"
    )
    support_extrusion_factor: float = Field(
        0.25, gt=0, description="Fin extrusion relative to normal extrusion"
    )

    @model_validator(mode="after")
    def validate_fits_on_bed(self) -> "PyramidConfig":
        if self.size > self.bed_size:
            raise ValueError(
                f"Pyramid size ({self.size}) exceeds bed size ({self.bed_size})"
            )
        return self


# ---------------------------------------------------------------------------
# Resolved parameters
# ---------------------------------------------------------------------------


def _extrusion_per_mm(layer_height: float, width: float, filament_diameter: float) -> float:
    """Filament length consumed per mm of bead."""
    return layer_height * width / (math.pi * (filament_diameter / 2) ** 2)


@dataclass(frozen=True)
class PrintParams:
    """Validated config plus every quantity derived from it.

    Parameters
    ----------
    config : PyramidConfig
        The validated source config.
    pyramid_z_height : float
        Physical height of the pyramid (mm).
    num_layers : int
        Number of layers, ``ceil(pyramid_z_height / layer_height)``.
    extrusion_per_mm : float
        Filament per mm of bead on regular layers.
    first_layer_extrusion_width : float
        Resolved first-layer bead width (mm).
    first_layer_extrusion_per_mm : float
        Filament per mm of bead on the first layer.
    gcode_e_decimals : int
        Resolved decimals for E words.
    support_fin_height : float
        Resolved Z above which no fins are printed (mm).
    smallest_pyramid_size : float
        Base edge of the smallest sub-pyramid (mm).
    bed_center : tuple[float, float, float]
        Base centre of the pyramid on the bed; Z is the first layer.
    xy_min, xy_max : float
        Bounding square of the pyramid footprint (mm).
    output : OutputTarget
        Where the G-code goes.
    source_text : str
        Raw config text, echoed into the G-code header.
    """

    config: PyramidConfig
    pyramid_z_height: float
    num_layers: int
    extrusion_per_mm: float
    first_layer_extrusion_width: float
    first_layer_extrusion_per_mm: float
    gcode_e_decimals: int
    support_fin_height: float
    smallest_pyramid_size: float
    bed_center: tuple[float, float, float]
    xy_min: float
    xy_max: float
    output: OutputTarget
    source_text: str = ""

    @classmethod
    def from_config(
        cls,
        cfg: PyramidConfig,
        config_path: str | Path | None = None,
        source_text: str = "",
        output: str | None = None,
    ) -> "PrintParams":
        """Derive print parameters from a validated config.

        Parameters
        ----------
        cfg : PyramidConfig
            Validated config.
        config_path : str | Path | None
            Path the config came from; used for the default output name.
        source_text : str
            Raw config text for the header echo.
        output : str | None
            Overrides ``cfg.output_filename`` when given.
        """
        z_height = PYRAMID_NOMINAL_HEIGHT * cfg.size / 2
        extrusion_per_mm = _extrusion_per_mm(
            cfg.layer_height, cfg.extrusion_width, cfg.filament_diameter
        )

        first_width = cfg.first_layer_extrusion_width or cfg.extrusion_width * 1.5

        e_decimals = cfg.gcode_e_decimals
        if e_decimals == 0:
            e_decimals = math.ceil(
                math.log2(2 ** cfg.gcode_xy_decimals / extrusion_per_mm)
            )
            if not cfg.relative_extrusion:
                e_decimals += cfg.gcode_xy_decimals
            e_decimals = max(e_decimals, 0)

        fin_height = cfg.support_fin_height or min(
            z_height - 20 * cfg.layer_height, z_height * 0.85
        )

        half_bed = cfg.bed_size / 2
        try:
            target = resolve_output(
                output if output is not None else cfg.output_filename, config_path
            )
        except ValueError as exc:
            raise ConfigError(str(exc)) from exc

        params = cls(
            config=cfg,
            pyramid_z_height=z_height,
            num_layers=max(1, math.ceil(z_height / cfg.layer_height)),
            extrusion_per_mm=extrusion_per_mm,
            first_layer_extrusion_width=first_width,
            first_layer_extrusion_per_mm=_extrusion_per_mm(
                cfg.layer_height, first_width, cfg.filament_diameter
            ),
            gcode_e_decimals=e_decimals,
            support_fin_height=fin_height,
            smallest_pyramid_size=cfg.size / 2**cfg.order,
            bed_center=(half_bed, half_bed, cfg.z_offset),
            xy_min=half_bed - cfg.size / 2,
            xy_max=half_bed + cfg.size / 2,
            output=target,
            source_text=source_text,
        )
        _check_advisories(params)
        return params

    def is_first_layer(self, z: float) -> bool:
        """True when a move at ``z`` prints with first-layer settings."""
        cfg = self.config
        return z <= (cfg.z_offset + cfg.layer_height) * (1 + FIRST_LAYER_TOLERANCE)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _check_advisories(params: PrintParams) -> None:
    """Log non-fatal warnings about print quality."""
    cfg = params.config
    recommended = 5.0 * cfg.extrusion_width
    if params.smallest_pyramid_size < recommended:
        logger.warning(
            "Smallest pyramids (%.3f mm) are small compared to the extrusion "
            "width (%.3f mm); consider lowering the fractal order. "
            "A smallest pyramid of %.3f mm or larger is recommended.",
            params.smallest_pyramid_size,
            cfg.extrusion_width,
            recommended,
        )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def parse_config(data: dict[str, Any] | None) -> PyramidConfig:
    """Validate a parsed YAML mapping.

    Raises
    ------
    ConfigError
        If the mapping is empty, has unknown keys, or fails validation.
    """
    if data is None:
        raise ConfigError("Empty configuration")
    if not isinstance(data, dict):
        raise ConfigError(
            f"Configuration must be a mapping, got {type(data).__name__}"
        )
    try:
        return PyramidConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc


def load_config(path: str | Path | None = None) -> PyramidConfig:
    """Load and validate a print configuration from YAML.

    Parameters
    ----------
    path : str | Path | None
        Config path.  ``None`` loads the example shipped alongside this
        module.

    Returns
    -------
    PyramidConfig
        Validated, frozen configuration.

    Raises
    ------
    ConfigError
        If any field is missing, unknown, or fails validation.
    FileNotFoundError
        If *path* does not exist.
    """
    config, _ = _load(path)
    return config


def load_print_params(
    path: str | Path | None = None,
    output: str | None = None,
) -> PrintParams:
    """Load a config file and resolve it into :class:`PrintParams`.

    Parameters
    ----------
    path : str | Path | None
        Config path; ``None`` loads the shipped example.
    output : str | None
        Output override (``"-"`` for standard output).

    Notes
    -----
    With the shipped example the derived output name is resolved in the
    working directory, not next to the installed package.
    """
    if path is None:
        config, text = _load(DEFAULT_CONFIG_PATH)
        output_base = Path(DEFAULT_CONFIG_PATH.name)
    else:
        config, text = _load(path)
        output_base = Path(path)
    return PrintParams.from_config(
        config, config_path=output_base, source_text=text, output=output
    )


def _load(path: str | Path | None) -> tuple[PyramidConfig, str]:
    path = DEFAULT_CONFIG_PATH if path is None else Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    logger.info("Loading configuration from %s", path)
    try:
        data, text = load_yaml_with_source(path)
    except yaml.YAMLError as exc:
        raise ConfigError(str(exc)) from exc
    config = parse_config(data)
    logger.info("Configuration loaded successfully")
    return config, text
