"""
Command-line interface for Blockflow.

Usage:
    blockflow validate workflow.json
    blockflow run workflow.json --input '{"input": "hello"}'
    blockflow run workflow.json --trigger chat --selected-output agent1 --stream
    blockflow run workflow.json --tools my_tools.py --log-dir ./executions
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from blockflow.config import EngineConfig
from blockflow.errors import BlockflowError
from blockflow.graph.compiler import WorkflowCompiler, merge_subblock_values
from blockflow.graph.context import ExecutionResult
from blockflow.graph.executor import GraphExecutor
from blockflow.graph.memory import FileMemoryStore
from blockflow.observability import configure_logging
from blockflow.runner.tool_registry import ToolRegistry
from blockflow.runtime.execution_core import WorkflowSnapshot, execute_workflow_core
from blockflow.runtime.log_store import FileExecutionLogStore
from blockflow.runtime.logging_session import LoggingSession
from blockflow.runtime.reconciler import StreamingReconciler, parse_output_ids
from blockflow.runtime.streaming import StreamChannel, stream_execution

logger = logging.getLogger(__name__)


def _load_workflow(path: str) -> dict[str, Any]:
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a JSON object")
    return data


def _block_ids(blocks: list[Any]) -> list[str]:
    return [b["id"] if isinstance(b, dict) else b.id for b in blocks]


def cmd_validate(args: argparse.Namespace) -> int:
    """Compile a workflow file and report what it contains."""
    try:
        snapshot = WorkflowSnapshot.from_dict(_load_workflow(args.workflow))
        workflow = WorkflowCompiler().compile(
            merge_subblock_values(snapshot.blocks, snapshot.live_values),
            snapshot.edges,
            snapshot.loops,
            snapshot.parallels,
        )
    except (OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except BlockflowError as e:
        print(f"Invalid workflow: {e}", file=sys.stderr)
        return 1

    print(
        f"OK: {len(workflow.blocks)} blocks, {len(workflow.edges)} edges, "
        f"{len(workflow.loops)} loops, {len(workflow.parallels)} parallels"
    )
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    """Execute a workflow file and print its output."""
    try:
        document = _load_workflow(args.workflow)
        workflow_input = json.loads(args.input) if args.input else None
    except json.JSONDecodeError as e:
        print(f"Error: invalid --input JSON: {e}", file=sys.stderr)
        return 1
    except (OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    config = EngineConfig()
    if args.log_dir:
        config.log_dir = Path(args.log_dir)

    tool_registry = ToolRegistry()
    if args.tools:
        count = tool_registry.discover_from_module(Path(args.tools))
        logger.info("Loaded %d tools from %s", count, args.tools)

    snapshot = WorkflowSnapshot.from_dict(
        document,
        trigger_type=args.trigger,
        input=workflow_input,
        selected_outputs=list(args.selected_output or []),
    )
    store = FileExecutionLogStore(config.log_dir)
    session = LoggingSession(
        store, snapshot.workflow_id, snapshot.execution_id, trigger_type=snapshot.trigger_type
    )
    executor = GraphExecutor(
        tool_registry=tool_registry,
        config=config,
        memory_store=FileMemoryStore(config.memory_dir),
    )

    try:
        if args.stream:
            success = asyncio.run(_run_streaming(snapshot, executor, session, store))
        else:
            result = asyncio.run(execute_workflow_core(snapshot, executor, session))
            print(json.dumps(result.output, indent=2, default=str))
            if result.error:
                print(f"Error: {result.error}", file=sys.stderr)
            success = result.success
    except BlockflowError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("Cancelled", file=sys.stderr)
        return 130

    print(f"Execution {snapshot.execution_id} logged to {config.log_dir}", file=sys.stderr)
    return 0 if success else 1


async def _run_streaming(
    snapshot: WorkflowSnapshot,
    executor: GraphExecutor,
    session: LoggingSession,
    store: FileExecutionLogStore,
) -> bool:
    cancel_event = asyncio.Event()

    results: list[ExecutionResult] = []

    async def run(channel: StreamChannel) -> ExecutionResult:
        result = await execute_workflow_core(
            snapshot, executor, session, stream=channel, cancel_event=cancel_event
        )
        results.append(result)
        return result

    reconciler = StreamingReconciler(
        store,
        snapshot.execution_id,
        parse_output_ids(snapshot.selected_outputs, _block_ids(snapshot.blocks)),
    )
    records = stream_execution(run, snapshot.selected_outputs, cancel_event=cancel_event)
    async for record in reconciler.reconcile(records):
        text = record.decode()
        sys.stdout.write(text)
        sys.stdout.flush()
    return bool(results) and results[0].success


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="blockflow",
        description="Blockflow - Compile and run block workflows",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument(
        "--json-logs", action="store_true", help="Emit machine-parseable JSON logs"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    validate_parser = subparsers.add_parser("validate", help="Compile a workflow file")
    validate_parser.add_argument("workflow", help="Path to a workflow JSON file")
    validate_parser.set_defaults(func=cmd_validate)

    run_parser = subparsers.add_parser("run", help="Execute a workflow file")
    run_parser.add_argument("workflow", help="Path to a workflow JSON file")
    run_parser.add_argument("--input", "-i", help="Workflow input as JSON")
    run_parser.add_argument(
        "--trigger",
        default="manual",
        choices=["manual", "chat", "api", "webhook", "schedule"],
        help="Trigger type (manual and chat runs skip trigger blocks)",
    )
    run_parser.add_argument(
        "--selected-output",
        action="append",
        metavar="OUTPUT_ID",
        help="Output to stream and surface (<blockId> or <blockId>_<path>); repeatable",
    )
    run_parser.add_argument("--stream", action="store_true", help="Print the run as SSE records")
    run_parser.add_argument("--tools", help="Python module to load tools from")
    run_parser.add_argument("--log-dir", help="Directory for execution records")
    run_parser.set_defaults(func=cmd_run)

    args = parser.parse_args()
    configure_logging(
        level="DEBUG" if args.verbose else "INFO",
        format="json" if args.json_logs else "auto",
    )
    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
