"""Command line entry point."""

from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Sequence
from pathlib import Path

from kiln.config import DEFAULT_ARCHIVE_MTIME, ToolConfiguration
from kiln.engine import Kiln
from kiln.errors import KilnError
from kiln.platforms import Platform, host_platform


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="kiln", description="Render and build package recipes.")
    commands = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (
        ("render", "print the build plan of every variant"),
        ("build", "build and package every variant"),
    ):
        command = commands.add_parser(name, help=help_text)
        command.add_argument("recipe", type=Path)
        command.add_argument(
            "-m",
            "--variant-config",
            action="append",
            default=[],
            type=Path,
            help="variant file; may be repeated, later files win",
        )
        command.add_argument("--target-platform", default=None)
        command.add_argument("--output-dir", type=Path, default=Path("output"))
        command.add_argument("--concurrency", type=int, default=1)

    build = commands.choices["build"]
    build.add_argument("--timeout", type=float, default=None)
    build.add_argument("--keep-workspace", action="store_true")
    build.add_argument("--skip-existing", action="store_true")
    build.add_argument("--archive-format", choices=("tar.bz2", "tar.gz"), default="tar.bz2")
    build.add_argument("--archive-mtime", type=int, default=DEFAULT_ARCHIVE_MTIME)
    build.add_argument("--report", type=Path, default=None, help="write a JSON build report")
    return parser


def _configuration(args: argparse.Namespace) -> ToolConfiguration:
    target = Platform(args.target_platform) if args.target_platform else host_platform()
    if args.command == "render":
        return ToolConfiguration(
            output_dir=args.output_dir,
            concurrency=args.concurrency,
            target_platform=target,
        )
    return ToolConfiguration(
        output_dir=args.output_dir,
        concurrency=args.concurrency,
        timeout=args.timeout,
        keep_workspace=args.keep_workspace,
        target_platform=target,
        archive_format=args.archive_format,
        archive_mtime=args.archive_mtime,
        skip_existing=args.skip_existing,
    )


def main(argv: Sequence[str] | None = None) -> int:
    args = _parser().parse_args(argv)
    try:
        config = _configuration(args)
        kiln = Kiln.from_paths(args.recipe, *args.variant_config, config=config)
        if args.command == "render":
            rendered = kiln.render()
            payload = [item.plan.to_payload() for item in rendered if item.plan is not None]
            print(json.dumps(payload, indent=2, sort_keys=True))
            for item in rendered:
                if item.error is not None:
                    print(str(item.error), file=sys.stderr)
            return 0 if all(item.ok for item in rendered) else 1
        result = kiln.build()
    except KilnError as exc:
        print(str(exc), file=sys.stderr)
        return 1

    if args.report is not None:
        result.write_report(args.report)
    for variant in result.variants:
        if variant.skipped and variant.plan is not None:
            print(f"skipped {variant.plan.name} (archives exist)")
        if variant.error is not None:
            print(str(variant.error), file=sys.stderr)
        if variant.report is not None:
            for report in variant.report.outputs:
                if report.error is not None:
                    print(str(report.error), file=sys.stderr)
                else:
                    print(f"built {report.archive}")
    return 0 if result.ok else 1


__all__ = ["main"]
