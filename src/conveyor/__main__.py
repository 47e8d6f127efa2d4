"""Conveyor CLI entry point.

Exit codes for ``run``: the run's status (Success 0, Unstable 1, Failure 2,
Aborted 3), 4 when the run was rejected because the pipeline key is busy,
5 when the definition or its parameters are invalid.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

import aiosqlite

from conveyor.config import ConveyorConfig, load_config
from conveyor.pipeline import (
    ApprovalForbidden,
    ApprovalNotPending,
    ApprovalRequest,
    ConcurrentRunRejected,
    DefinitionInvalid,
    PipelineEngine,
    PipelineKey,
    RunResult,
    ShellTaskRunner,
    SqliteBuildHistory,
    load_definition,
)

EXIT_REJECTED = 4
EXIT_INVALID = 5


def _parse_params(pairs: list[str]) -> dict[str, str]:
    """Turn ``--param K=V`` pairs into a dict."""
    params: dict[str, str] = {}
    for pair in pairs:
        name, sep, value = pair.partition("=")
        if not sep or not name:
            msg = f"Invalid --param {pair!r}; expected NAME=VALUE"
            raise ValueError(msg)
        params[name] = value
    return params


def _print_trail(result: RunResult) -> None:
    depth: dict[str, int] = {}
    for stage in result.stages:
        depth[stage.stage_id] = depth[stage.parent_id] + 1 if stage.parent_id else 0
        duration = f" ({stage.duration_seconds:.1f}s)" if stage.duration_seconds is not None else ""
        message = f" — {stage.message}" if stage.message else ""
        print(f"{'  ' * depth[stage.stage_id]}[{stage.status.value:>8}] {stage.stage_id}{duration}{message}")
    for hook in result.hooks:
        state = "ok" if hook.success else f"failed: {hook.error}"
        print(f"  post/{hook.hook_class.value}: {hook.name} ({state})")
    for warning in result.warnings:
        print(f"  warning: {warning}")
    print(
        f"{result.key} #{result.build_number}: {result.status.value.upper()} "
        f"in {result.duration_ms / 1000:.1f}s"
    )


def _validate(files: list[Path]) -> int:
    exit_code = 0
    for path in files:
        try:
            definition = load_definition(path)
        except DefinitionInvalid as e:
            print(f"{path}: INVALID", file=sys.stderr)
            for error in e.errors:
                print(f"  {error}", file=sys.stderr)
            exit_code = EXIT_INVALID
            continue
        stages = sum(1 for _ in definition.walk())
        print(f"{path}: OK ({definition.name}, {stages} stages)")
    return exit_code


async def _run(args: argparse.Namespace, config: ConveyorConfig) -> int:
    try:
        definition = load_definition(args.file)
        params = _parse_params(args.param)
    except DefinitionInvalid as e:
        print(f"Invalid pipeline definition: {e}", file=sys.stderr)
        for error in e.errors:
            print(f"  {error}", file=sys.stderr)
        return EXIT_INVALID
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_INVALID

    db_path = Path(args.database or config.database)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    async with aiosqlite.connect(str(db_path)) as db:
        history = SqliteBuildHistory(db, num_to_keep=config.retention.num_to_keep)
        await history.initialize()
        engine = PipelineEngine(
            history,
            ShellTaskRunner(
                shell=config.runner.shell,
                inherit_environment=config.runner.inherit_environment,
                kill_grace_seconds=config.runner.kill_grace_seconds,
            ),
            default_run_timeout=config.default_run_timeout_seconds(),
            max_parallel_tasks=config.runner.max_parallel_tasks,
        )

        def answer(request: ApprovalRequest) -> None:
            if not args.approver:
                print(
                    f"Stage '{request.stage_id}' is waiting for approval: {request.message} "
                    "(pass --approver to answer from the CLI)",
                    file=sys.stderr,
                )
                return
            try:
                engine.approvals.submit(
                    request.run_id,
                    request.stage_id,
                    args.approver,
                    approve=not args.reject,
                )
            except (ApprovalForbidden, ApprovalNotPending) as e:
                print(f"Approval not accepted: {e}", file=sys.stderr)

        engine.approvals.add_listener(answer)

        key = PipelineKey(pipeline=definition.name, branch=args.branch)
        try:
            result = await engine.start_run(key, definition, params)
        except DefinitionInvalid as e:
            print(f"Invalid parameters: {e}", file=sys.stderr)
            for error in e.errors:
                print(f"  {error}", file=sys.stderr)
            return EXIT_INVALID
        except ConcurrentRunRejected as e:
            print(f"Rejected: {e}", file=sys.stderr)
            return EXIT_REJECTED

    _print_trail(result)
    return result.exit_code


async def _history(args: argparse.Namespace, config: ConveyorConfig) -> int:
    db_path = Path(args.database or config.database)
    if not db_path.exists():
        print(f"No build history at {db_path}", file=sys.stderr)
        return 1
    async with aiosqlite.connect(str(db_path)) as db:
        history = SqliteBuildHistory(db)
        await history.initialize()
        runs = await history.list_runs(
            PipelineKey(pipeline=args.pipeline, branch=args.branch), limit=args.limit
        )

    if not runs:
        print(f"No runs recorded for {args.pipeline}/{args.branch}")
        return 0
    for run in runs:
        print(
            f"#{run.build_number:<5} {run.status.value:<9} "
            f"{run.timestamp:%Y-%m-%d %H:%M:%S}  {run.duration_ms / 1000:>7.1f}s  {run.run_id}"
        )
    return 0


def main():
    parser = argparse.ArgumentParser(
        prog="conveyor",
        description="Conveyor — declarative pipeline orchestration",
    )
    parser.add_argument(
        "--config-dir",
        type=Path,
        default=Path(".conveyor"),
        help="Directory holding config.yaml (default: .conveyor)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    subparsers = parser.add_subparsers(dest="command")

    # conveyor validate
    validate_parser = subparsers.add_parser("validate", help="Validate pipeline definition files")
    validate_parser.add_argument("files", nargs="+", type=Path)

    # conveyor run
    run_parser = subparsers.add_parser("run", help="Run a pipeline definition once")
    run_parser.add_argument("file", type=Path)
    run_parser.add_argument("--branch", default="main", help="Branch name (default: main)")
    run_parser.add_argument(
        "--param",
        action="append",
        default=[],
        metavar="NAME=VALUE",
        help="Run parameter (repeatable)",
    )
    run_parser.add_argument("--approver", help="Identity that answers approval gates")
    run_parser.add_argument(
        "--reject",
        action="store_true",
        help="Decline approval gates instead of approving them (requires --approver)",
    )
    run_parser.add_argument("--database", help="Build history SQLite path")

    # conveyor history
    history_parser = subparsers.add_parser("history", help="Show recorded runs of a pipeline")
    history_parser.add_argument("pipeline")
    history_parser.add_argument("--branch", default="main")
    history_parser.add_argument("--limit", type=int, default=20)
    history_parser.add_argument("--database", help="Build history SQLite path")

    # conveyor serve
    serve_parser = subparsers.add_parser("serve", help="Start the HTTP server")
    serve_parser.add_argument("--host", help="Host to bind to (default: from config)")
    serve_parser.add_argument("--port", type=int, help="Port to bind to (default: from config)")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if args.command == "validate":
        sys.exit(_validate(args.files))

    try:
        config = load_config(args.config_dir)
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(EXIT_INVALID)

    if args.command == "run":
        sys.exit(asyncio.run(_run(args, config)))

    if args.command == "history":
        sys.exit(asyncio.run(_history(args, config)))

    # serve
    import uvicorn

    from conveyor.server import create_app

    app = create_app(config)
    uvicorn.run(
        app,
        host=args.host or config.server.host,
        port=args.port or config.server.port,
        log_level=args.log_level.lower(),
    )


if __name__ == "__main__":
    main()
