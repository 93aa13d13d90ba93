#!/usr/bin/env python3
"""
Generate Pyramid G-code.

Load a print config, slice the Sierpinski pyramid and write the toolpath.

Usage:
    sierpinski-gcode pyramid.yaml
    sierpinski-gcode pyramid.yaml --output - > pyramid.gcode
    sierpinski-gcode pyramid.yaml --check --log-level DEBUG
    python -m sierpinski_gcode.scripts.generate            # shipped example

Without ``--output`` the file named by ``output_filename`` in the config is
written, or ``<config>.gcode`` when that is empty.
"""

from __future__ import annotations

import argparse
import logging
import sys

from sierpinski_gcode import __version__
from sierpinski_gcode.configs.loader import ConfigError, load_print_params
from sierpinski_gcode.gcode.emitter import GCodeError, ToolpathEmitter
from sierpinski_gcode.gcode.sink import FileTarget, open_sink
from sierpinski_gcode.gcode.vm import GCodeVM
from sierpinski_gcode.geometry.cross_section import CrossSectionError
from sierpinski_gcode.geometry.layers import build_layers
from sierpinski_gcode.utils.logging_config import (
    install_excepthook,
    pop_context,
    push_context,
    setup_logging,
    shutdown,
)

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sierpinski-gcode",
        description="Generate G-code for a Sierpinski pyramid",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "config",
        nargs="?",
        help="Configuration file path (default: shipped example)",
    )
    parser.add_argument(
        "--output",
        "-o",
        type=str,
        help="Output path, '-' for standard output (overrides the config)",
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="Re-read the written file and report layers, filament and limits",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO)",
    )
    parser.add_argument("--log-file", type=str, help="Also log to this file")
    parser.add_argument("--json-logs", action="store_true", help="Log JSON lines")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    setup_logging(
        log_level=args.log_level,
        log_file=args.log_file,
        json=args.json_logs,
        context={"app": "generate"},
    )
    install_excepthook()

    try:
        params = load_print_params(args.config, output=args.output)
        cfg = params.config
        push_context(order=cfg.order)
        logger.info(
            "Pyramid: size %.1f mm, height %.2f mm, %d layers",
            cfg.size,
            params.pyramid_z_height,
            params.num_layers,
        )

        layers = build_layers(
            cfg.order,
            params.num_layers,
            cfg.size,
            params.bed_center,
            cfg.layer_height,
        )

        with open_sink(params.output) as sink:
            state = ToolpathEmitter(params).emit(layers, sink)
        logger.info("G-code written to %s", params.output.describe())

        if args.check:
            if not isinstance(params.output, FileTarget):
                logger.warning("--check needs a file output; skipped for standard output")
            else:
                vm = GCodeVM(bed_size=cfg.bed_size)
                vm.load_file(params.output.path)
                result = vm.run()
                if abs(result["filament_mm"] - state.filament_used) > 1e-3 * max(1.0, state.filament_used):
                    logger.warning(
                        "Replayed filament %.3f mm differs from emitted %.3f mm",
                        result["filament_mm"],
                        state.filament_used,
                    )
                if result["violations"]:
                    logger.error("%d soft-limit violations", len(result["violations"]))
                    return 1
    except (ConfigError, CrossSectionError, GCodeError, OSError) as exc:
        logger.error("%s", exc)
        return 1
    finally:
        pop_context()
        shutdown()

    return 0


if __name__ == "__main__":
    sys.exit(main())
