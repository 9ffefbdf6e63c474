"""CLI entry point: fit a garment GLB onto a skinned avatar GLB.

Usage::

    # Default configuration (hull fit into Spine2, full export):
    python -m tools.fit_armor avatar.glb chestplate.glb -o fitted.glb

    # Named preset from assets/config/fitting_presets.json:
    python -m tools.fit_armor avatar.glb helmet.glb -o helmet_fit.glb --preset helmet

    # JSON config file (camelCase request keys accepted), with overrides:
    python -m tools.fit_armor avatar.glb cloak.glb -o cloak.glb \\
        --config cloak.json --rigidity 0.2 --export-method static

    # Print the summary as JSON:
    python -m tools.fit_armor avatar.glb chestplate.glb -o out.glb --json
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path

from armorfit.core.config import FittingConfig
from armorfit.core.config_loader import load_fitting_config, load_preset, load_presets
from armorfit.core.errors import FittingInputError
from armorfit.export.glb_exporter import write_glb
from armorfit.export.glb_loader import load_glb_file
from armorfit.fitting.service import ArmorFittingService, FittingResult

logger = logging.getLogger(__name__)

# CLI flag -> FittingConfig field
_OVERRIDES = (
    "method",
    "margin",
    "target_offset",
    "iterations",
    "rigidity",
    "smoothing_passes",
    "search_radius",
    "target_region",
    "export_method",
    "workers",
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Fit an armor/clothing mesh onto a skinned avatar",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("avatar", type=Path, help="Skinned avatar .glb")
    parser.add_argument("garment", type=Path, help="Garment .glb to fit")
    parser.add_argument(
        "-o", "--output", type=Path, default=None, metavar="FILE",
        help="Write the fitted garment to this .glb",
    )

    source = parser.add_mutually_exclusive_group()
    source.add_argument(
        "--preset", default=None, metavar="NAME",
        help="Named preset from fitting_presets.json",
    )
    source.add_argument(
        "--list-presets", action="store_true",
        help="List available presets and exit",
    )
    parser.add_argument(
        "--config", type=Path, default=None, metavar="FILE",
        help="JSON config file (layered over --preset if both given)",
    )

    tuning = parser.add_argument_group("overrides")
    tuning.add_argument("--method", default=None,
                        help="boundingBox, shrinkwrap, hull or collision")
    tuning.add_argument("--margin", type=float, default=None)
    tuning.add_argument("--target-offset", type=float, default=None)
    tuning.add_argument("--iterations", type=int, default=None)
    tuning.add_argument("--rigidity", type=float, default=None)
    tuning.add_argument("--smoothing-passes", type=int, default=None)
    tuning.add_argument("--search-radius", type=float, default=None)
    tuning.add_argument("--target-region", default=None, metavar="BONE")
    tuning.add_argument("--export-method", default=None,
                        help="full, minimal (game) or static")
    tuning.add_argument("--workers", type=int, default=None,
                        help="Parallel workers for spatial queries (-1 = all cores)")
    tuning.add_argument("--no-geometry-transform", action="store_true",
                        help="Do not bake the avatar's pose into the garment")

    parser.add_argument("--json", action="store_true", help="Print summary as JSON")
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Enable verbose logging",
    )
    return parser


def resolve_config(args: argparse.Namespace) -> FittingConfig:
    """Layer preset, config file and CLI overrides into one config."""
    if args.config is not None:
        config = load_fitting_config(args.config, preset=args.preset)
    elif args.preset is not None:
        config = load_preset(args.preset)
    else:
        config = FittingConfig()

    overrides = {
        name: getattr(args, name)
        for name in _OVERRIDES
        if getattr(args, name) is not None
    }
    if args.no_geometry_transform:
        overrides["apply_geometry_transform"] = False
    return config.merged(**overrides) if overrides else config


def summarize(result: FittingResult) -> dict:
    summary: dict = {
        "ok": result.ok,
        "stats": asdict(result.stats),
        "warnings": [w.message for w in result.warnings],
    }
    if result.failure is not None:
        summary["failure"] = {
            "code": result.failure.code.value,
            "message": result.failure.message,
        }
    if result.skinned is not None:
        summary["fallback_vertices"] = result.skinned.fallback_vertex_count
    return summary


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(level=log_level, format="%(levelname)s: %(message)s")

    if args.list_presets:
        for name, values in sorted(load_presets().items()):
            print(f"{name}: {json.dumps(values, sort_keys=True)}")
        return 0

    try:
        config = resolve_config(args)
    except FittingInputError as exc:
        parser.error(exc.message)

    avatar, _ = load_glb_file(args.avatar)
    garment, _ = load_glb_file(args.garment)

    service = ArmorFittingService()
    result = service.fit_equipment(avatar, garment, config)
    summary = summarize(result)

    if result.ok and args.output is not None:
        payload = service.export(result, config.export_method)
        write_glb(payload, args.output)
        summary["output"] = str(args.output)

    if args.json:
        print(json.dumps(summary, indent=2))
    else:
        stats = result.stats
        if result.failure is not None:
            print(f"FAILED [{result.failure.code.value}]: {result.failure.message}")
        else:
            print(f"Method:       {stats.method}")
            print(f"Body regions: {stats.body_regions}")
            print(f"Vertices:     {stats.vertex_count}")
            print(f"Iterations:   {stats.iterations}")
        for warning in summary["warnings"]:
            print(f"  warning: {warning}")

    if result.failure is not None:
        return 1
    if result.skinned is None:
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
