#!/usr/bin/env python3
"""flowtree command-line tool.

Converts flowchart exports and runs them as agent workflows.

Usage:
    flowtree transform chart.csv                 # export -> JSON tree on stdout
    flowtree transform chart.json -o tree.json
    flowtree to-csv chart.json -o chart.csv      # export -> canonical CSV
    flowtree agents                              # list known agents
    flowtree run-tree chart.csv --cli claude --workdir ./repo

Exit codes:
    0  success (including a node that never passed validation)
    1  fatal error while parsing or running
    2  usage error (bad arguments, missing input, unknown agent)
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Mapping, Optional

from flowtree import __version__
from flowtree.config.agent_registry import AgentRegistry, get_registry
from flowtree.config.settings import (
    LogSettings,
    RunDefaults,
    agent_environment,
    load_settings,
)
from flowtree.document import Document, ExportFormat, build, serialize
from flowtree.runtime.engine import RunStatus, WorkflowEngine
from flowtree.runtime.errors import FlowtreeError, UnknownAgentError
from flowtree.runtime.node_config import build_executable_tree
from flowtree.runtime.recorder import RunRecorder
from flowtree.runtime.runner import ShellCommandRunner

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2


class _UsageError(Exception):
    pass


def _export_format(args: argparse.Namespace) -> ExportFormat:
    if args.format:
        return ExportFormat(args.format)
    return ExportFormat.from_path(str(args.input))


def _load_document(args: argparse.Namespace) -> Document:
    fmt = _export_format(args)
    try:
        data = Path(args.input).read_bytes()
    except OSError as e:
        raise _UsageError(f"cannot read {args.input}: {e}") from e
    return build(data, fmt)


def _emit(text: str, output: Optional[Path]) -> None:
    if output is None:
        sys.stdout.write(text)
        if not text.endswith("\n"):
            sys.stdout.write("\n")
        return
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(text, encoding="utf-8")
    logger.info("Wrote %s", output)


# =============================================================================
# Subcommands
# =============================================================================


def cmd_transform(args: argparse.Namespace) -> int:
    doc = _load_document(args)
    _emit(json.dumps(doc.to_dict(), indent=2), args.output)
    return EXIT_OK


def cmd_to_csv(args: argparse.Namespace) -> int:
    doc = _load_document(args)
    _emit(serialize(doc).decode("utf-8"), args.output)
    return EXIT_OK


def cmd_agents(args: argparse.Namespace) -> int:
    registry = get_registry()
    if args.json:
        payload = [
            {
                "codename": agent.codename,
                "name": agent.display_name,
                "command": agent.command,
                "template": agent.template,
                "env_keys": list(agent.env_keys),
                "install": agent.install,
            }
            for agent in registry
        ]
        _emit(json.dumps(payload, indent=2), None)
        return EXIT_OK

    for agent in registry:
        print(f"{agent.codename:<10} {agent.display_name:<20} {agent.command}")
        if args.verbose and agent.install:
            print(f"{'':<10} install: {agent.install}")
    return EXIT_OK


def _resolve_defaults(
    args: argparse.Namespace, registry: AgentRegistry, settings: Mapping[str, str]
) -> RunDefaults:
    defaults = RunDefaults.from_settings(settings)
    if args.cli:
        try:
            agent = registry.lookup(args.cli)
        except UnknownAgentError as e:
            raise _UsageError(str(e)) from e
        defaults = defaults.with_agent(agent.codename)
    return defaults


def cmd_run_tree(args: argparse.Namespace) -> int:
    registry = get_registry()
    settings = load_settings(
        path=args.settings, extra_keys=registry.env_keys()
    )
    defaults = _resolve_defaults(args, registry, settings)
    log_settings = LogSettings.from_settings(settings)

    work_dir = Path(args.workdir).resolve() if args.workdir else Path.cwd()
    if not work_dir.is_dir():
        raise _UsageError(f"working directory does not exist: {work_dir}")

    doc = _load_document(args)
    if doc.root is None:
        print(f"Chart {doc.title!r} has no root node; nothing to run")
        return EXIT_OK

    tree = build_executable_tree(doc.root, defaults, registry.codenames())
    recorder = RunRecorder(
        chart_name=doc.title, stream=sys.stdout if args.echo else None
    )
    engine = WorkflowEngine(
        registry,
        ShellCommandRunner(env=agent_environment(settings, registry.env_keys())),
        work_dir=work_dir,
        default_timeout=args.timeout or None,
        recorder=recorder,
    )

    logger.info("Running chart %r (%d nodes) in %s", doc.title, len(tree), work_dir)
    report = engine.execute(tree)

    log_dir = Path(args.log_dir or log_settings.log_dir)
    if not log_dir.is_absolute():
        log_dir = work_dir / log_dir
    try:
        for path in recorder.write(
            log_dir, log_settings.write_short, log_settings.write_long
        ):
            print(f"Log: {path}")
    except OSError as e:
        logger.warning("Could not write run logs to %s: %s", log_dir, e)

    print(
        f"Visited {len(report.entries)} node(s), "
        f"{report.invocations} agent invocation(s): {report.status.value}"
    )
    if report.status is RunStatus.FAILED:
        print(f"Error: {report.error}", file=sys.stderr)
        return EXIT_FAILED
    if report.status is RunStatus.VALIDATION_EXHAUSTED:
        last = report.entries[-1].node_name if report.entries else "?"
        print(f"Warning: node {last!r} never passed validation", file=sys.stderr)
    return EXIT_OK


# =============================================================================
# Entry point
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="flowtree",
        description="Turn flowchart exports into agent workflows and run them",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Settings are read from FLOWTREE_<KEY> environment variables, then the user
settings file (FLOWTREE_SETTINGS or ~/.flowtree/settings.yaml), then the
packaged defaults.
        """,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "-v", "--verbose", action="count", default=0,
        help="More logging (-v info, -vv debug)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    def add_input(p: argparse.ArgumentParser) -> None:
        p.add_argument("input", type=Path, help="Flowchart export (.csv or .json)")
        p.add_argument(
            "--format", choices=[f.value for f in ExportFormat],
            help="Export format (default: from the file extension)",
        )

    p = sub.add_parser("transform", help="Export -> JSON tree")
    add_input(p)
    p.add_argument("-o", "--output", type=Path, help="Write here instead of stdout")
    p.set_defaults(func=cmd_transform)

    p = sub.add_parser("to-csv", help="Export -> canonical CSV")
    add_input(p)
    p.add_argument("-o", "--output", type=Path, help="Write here instead of stdout")
    p.set_defaults(func=cmd_to_csv)

    p = sub.add_parser("agents", help="List known agents")
    p.add_argument("--json", action="store_true", help="Print as JSON")
    p.set_defaults(func=cmd_agents)

    p = sub.add_parser("run-tree", help="Execute a flowchart as a workflow")
    add_input(p)
    p.add_argument("--cli", help="Agent for run, validate and retry (overrides settings)")
    p.add_argument("--workdir", help="Working directory for agent processes")
    p.add_argument("--log-dir", help="Run log directory (relative to --workdir)")
    p.add_argument(
        "--timeout", type=int, default=0,
        help="Seconds per agent invocation when neither node nor settings set one",
    )
    p.add_argument("--settings", type=Path, help="User settings YAML file")
    p.add_argument("--echo", action="store_true", help="Mirror agent output to stdout")
    p.set_defaults(func=cmd_run_tree)

    return parser


def _configure_logging(verbosity: int) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    try:
        return args.func(args)
    except _UsageError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_USAGE
    except FlowtreeError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
