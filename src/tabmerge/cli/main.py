# main.py
# SPDX-License-Identifier: MIT

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Optional, Sequence

from ..core.config import (
    ErrorPolicy,
    JobSection,
    MergeConfig,
    ProcessConfig,
    SchemaConfig,
    WriterConfig,
    load_config_from_path,
)
from ..core.log import configure_logging
from ..core.progress import log_progress
from ..core.registries import default_codec_registry, parse_filter_expression
from ..core.schema import CONVERTERS
from .runner import merge


def _build_parser() -> argparse.ArgumentParser:
    """Build the top-level tabmerge argument parser.

    Subcommands: ``run`` (from a TOML/JSON config), ``merge`` (everything
    on the command line) and ``inspect`` (print the codec and header of
    each input file).
    """
    parser = argparse.ArgumentParser(prog="tabmerge", description="Merge tabular files into one output file.")
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (e.g., DEBUG, INFO, WARNING). Defaults to the config's [logging] level or INFO.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_p = subparsers.add_parser("run", help="Run a merge job from a config file")
    run_p.add_argument("-c", "--config", required=True, help="Path to config file (TOML or JSON).")
    run_p.add_argument("--dry-run", action="store_true", help="Validate and print config, then exit.")

    merge_p = subparsers.add_parser("merge", help="Merge source files given on the command line")
    merge_p.add_argument("sources", nargs="+", help="Input files (.csv, .tsv, .jsonl, .parquet, .xlsx, ...).")
    merge_p.add_argument("-o", "--output", required=True, help="Output file; the format follows its suffix.")
    merge_p.add_argument("--columns", help="Comma-separated output columns (default: first source header).")
    merge_p.add_argument(
        "--type",
        action="append",
        default=[],
        metavar="COL=TYPE",
        help=f"Declare a column type; one of {', '.join(sorted(CONVERTERS))}. Repeatable.",
    )
    merge_p.add_argument("--key", help="Comma-separated key columns; enables deduplication.")
    merge_p.add_argument("--merge", help="Merge strategy for duplicate keys, e.g. keep_last or max:points.")
    merge_p.add_argument(
        "--where",
        action="append",
        default=[],
        metavar="EXPR",
        help="Keep rows matching 'column op value' (ops: == != > >= < <=). Repeatable; all must match.",
    )
    merge_p.add_argument("--batch-size", type=int, help="Rows per batch.")
    merge_p.add_argument("--max-concurrent-files", type=int, help="Files read at the same time.")
    merge_p.add_argument("--chunk-size", type=int, help="Rows per write chunk.")
    merge_p.add_argument("--sheet-name", help="Worksheet name for .xlsx output.")
    merge_p.add_argument("--fail-fast", action="store_true", help="Abort on the first error.")
    merge_p.add_argument("--max-errors", type=int, help="Abort once this many errors were recorded.")
    merge_p.add_argument("--export-errors", action="store_true", help="Write error records next to the output.")
    merge_p.add_argument("--save-config", help="Also write the equivalent JSON config to this path.")

    inspect_p = subparsers.add_parser("inspect", help="Print codec and header of input files")
    inspect_p.add_argument("files", nargs="+", help="Files to inspect.")

    return parser


def _split(value: Optional[str]) -> list[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def _parse_types(pairs: Sequence[str]) -> dict[str, str]:
    types: dict[str, str] = {}
    for pair in pairs:
        col, sep, type_name = pair.partition("=")
        if not sep or not col.strip() or not type_name.strip():
            raise ValueError(f"--type expects COL=TYPE, got {pair!r}")
        types[col.strip()] = type_name.strip()
    return types


def _config_from_args(args: argparse.Namespace) -> MergeConfig:
    """Translate ``merge`` arguments into the same MergeConfig a file would give."""
    cfg = MergeConfig()
    cfg.job = JobSection(sources=[str(Path(s)) for s in args.sources], target=str(Path(args.output)))
    if args.batch_size is not None:
        cfg.job.batch_size = args.batch_size
    if args.max_concurrent_files is not None:
        cfg.job.max_concurrent_files = args.max_concurrent_files
    cfg.schema = SchemaConfig(columns=_split(args.columns), types=_parse_types(args.type))
    filters = []
    for expr in args.where:
        cond = parse_filter_expression(expr)
        filters.append({"column": cond.column, "op": cond.op, "value": cond.value})
    keys = _split(args.key)
    cfg.process = ProcessConfig(deduplicate=bool(keys), key_columns=keys, merge=args.merge, filters=filters)
    cfg.errors = ErrorPolicy(
        continue_on_error=not args.fail_fast,
        max_error_count=args.max_errors if args.max_errors is not None else -1,
        export_error_data=bool(args.export_errors),
    )
    writer = WriterConfig()
    cfg.writer = WriterConfig(
        chunk_size=args.chunk_size if args.chunk_size is not None else writer.chunk_size,
        auto_tune=args.chunk_size is None,
        sheet_name=args.sheet_name or writer.sheet_name,
    )
    return cfg


def _run_config(cfg: MergeConfig) -> int:
    result = merge(cfg, progress_callback=log_progress)
    print(json.dumps(result.to_dict(), indent=2))
    return 0 if result.success else 1


def _cmd_inspect(args: argparse.Namespace) -> int:
    registry = default_codec_registry()
    report = []
    status = 0
    for name in args.files:
        path = Path(name)
        entry: dict[str, object] = {"path": str(path)}
        if not registry.supports(path):
            entry["error"] = f"unsupported file type (supported: {', '.join(registry.suffixes())})"
            status = 1
        else:
            codec = registry.for_path(path)
            entry["codec"] = type(codec).__name__
            try:
                entry["columns"] = codec.read_header(path)
            except Exception as exc:  # noqa: BLE001
                entry["error"] = str(exc)
                status = 1
        report.append(entry)
    print(json.dumps(report, indent=2))
    return status


def _dispatch(args: argparse.Namespace) -> int:
    """Dispatch a parsed CLI command to its handler.

    Returns:
        int: Process exit code; 0 on success, 1 when the job failed.
    """
    configure_logging(level=args.log_level or "INFO")
    cmd = args.command

    if cmd == "run":
        cfg = load_config_from_path(args.config)
        if args.log_level is None:
            cfg.logging.apply()
        if args.dry_run:
            cfg.validate()
            print(json.dumps(cfg.to_dict(), indent=2))
            return 0
        return _run_config(cfg)

    if cmd == "merge":
        cfg = _config_from_args(args)
        if args.save_config:
            cfg.to_json(args.save_config)
        return _run_config(cfg)

    if cmd == "inspect":
        return _cmd_inspect(args)

    print(f"Unknown command: {cmd}", file=sys.stderr)
    return 1


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry point for the tabmerge command-line interface.

    Args:
        argv (Sequence[str] | None): Optional argument list to parse
            instead of ``sys.argv[1:]``. Primarily useful for tests.

    Returns:
        int: Process exit code, where 0 indicates success.
    """
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    try:
        return _dispatch(args)
    except Exception as exc:  # noqa: BLE001
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
