"""
Command-line interface for edgeflow.

Usage:
    edgeflow compile graph.json
    edgeflow save onboarding graph.json
    edgeflow serve --port 8080 --reconcile-interval 60
    edgeflow status <run_id>
    edgeflow resume <run_id>
    edgeflow reconcile
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from edgeflow.config import EngineConfig
from edgeflow.engine.engine import WorkflowEngine
from edgeflow.engine.reconciler import StaleNodeReconciler
from edgeflow.errors import CompilationError, EdgeflowError
from edgeflow.graph.compiler import compile_graph
from edgeflow.graph.definition import GraphDefinition
from edgeflow.graph.registry import TypeRegistry, WorkerType
from edgeflow.observability import configure_logging
from edgeflow.runtime.server import EngineServer, ServerConfig
from edgeflow.storage import GraphVersionStore, SQLiteRunStore

logger = logging.getLogger(__name__)


def _load_definition(path: str) -> GraphDefinition:
    return GraphDefinition.model_validate_json(Path(path).read_text(encoding="utf-8"))


def _build_engine(config: EngineConfig) -> WorkflowEngine:
    return WorkflowEngine(
        store=SQLiteRunStore(config.runs_db_path),
        versions=GraphVersionStore(config.storage_path),
        config=config,
    )


def _print(data) -> None:
    print(json.dumps(data, indent=2, default=str))


# === COMMANDS ===


def cmd_compile(args: argparse.Namespace, config: EngineConfig) -> int:
    registry = TypeRegistry()
    for name, endpoint in config.workers.items():
        registry.register_worker_type(WorkerType(name=name, endpoint=endpoint))
    result = compile_graph(_load_definition(args.file), registry)
    if not result.success:
        _print({"errors": [issue.model_dump(mode="json") for issue in result.errors]})
        return 1
    _print({"execution_graph": result.execution_graph.model_dump(mode="json")})
    return 0


async def cmd_save(args: argparse.Namespace, config: EngineConfig) -> int:
    engine = _build_engine(config)
    try:
        version = await engine.save_version(args.flow_id, _load_definition(args.file))
    except CompilationError as e:
        _print({"errors": [issue.model_dump(mode="json") for issue in e.issues]})
        return 1
    finally:
        await engine.close()
    _print({"version_id": version.version_id})
    return 0


async def cmd_status(args: argparse.Namespace, config: EngineConfig) -> int:
    engine = _build_engine(config)
    try:
        snapshot = await engine.get_snapshot(args.run_id)
    finally:
        await engine.close()
    _print(snapshot.model_dump(mode="json"))
    return 0


async def cmd_resume(args: argparse.Namespace, config: EngineConfig) -> int:
    engine = _build_engine(config)
    try:
        snapshot = await engine.resume_run(args.run_id)
    finally:
        await engine.close()
    _print(snapshot.model_dump(mode="json"))
    return 0


async def cmd_reconcile(args: argparse.Namespace, config: EngineConfig) -> int:
    engine = _build_engine(config)
    try:
        report = await StaleNodeReconciler(engine).reconcile_once()
    finally:
        await engine.close()
    _print(report.to_dict())
    return 0


async def cmd_serve(args: argparse.Namespace, config: EngineConfig) -> int:
    engine = _build_engine(config)
    server = EngineServer(engine, ServerConfig(host=args.host, port=args.port))
    reconciler = StaleNodeReconciler(engine)

    await server.start()
    if args.reconcile_interval > 0:
        await reconciler.start(interval=args.reconcile_interval)
    try:
        await asyncio.Event().wait()
    finally:
        await reconciler.stop()
        await server.stop()
        await engine.close()
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="edgeflow",
        description="edgeflow - edge-walking workflow execution engine",
    )
    parser.add_argument("--config", help="Path to configuration.json")
    parser.add_argument("--log-level", default="INFO", help="Log level (default: INFO)")
    parser.add_argument(
        "--log-format",
        default="auto",
        choices=["auto", "json", "human"],
        help="Log output format",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    compile_parser = subparsers.add_parser("compile", help="Validate and compile a graph file")
    compile_parser.add_argument("file", help="Graph definition JSON file")

    save_parser = subparsers.add_parser("save", help="Compile and save a new flow version")
    save_parser.add_argument("flow_id", help="Flow identifier")
    save_parser.add_argument("file", help="Graph definition JSON file")

    serve_parser = subparsers.add_parser("serve", help="Run the engine HTTP server")
    serve_parser.add_argument("--host", default=None, help="Bind address")
    serve_parser.add_argument("--port", type=int, default=None, help="Bind port")
    serve_parser.add_argument(
        "--reconcile-interval",
        type=float,
        default=60.0,
        help="Seconds between stale-node passes (0 disables)",
    )

    status_parser = subparsers.add_parser("status", help="Show a run's status and node states")
    status_parser.add_argument("run_id")

    resume_parser = subparsers.add_parser("resume", help="Resume a run from storage")
    resume_parser.add_argument("run_id")

    subparsers.add_parser("reconcile", help="Fail (and optionally retry) stale running nodes")

    args = parser.parse_args(argv)
    configure_logging(level=args.log_level, format=args.log_format)
    config = EngineConfig.load(Path(args.config) if args.config else None)

    if args.command == "serve":
        args.host = args.host or config.host
        args.port = config.port if args.port is None else args.port

    try:
        if args.command == "compile":
            return cmd_compile(args, config)
        commands = {
            "save": cmd_save,
            "serve": cmd_serve,
            "status": cmd_status,
            "resume": cmd_resume,
            "reconcile": cmd_reconcile,
        }
        return asyncio.run(commands[args.command](args, config))
    except EdgeflowError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
