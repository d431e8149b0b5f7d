"""Build the hierarchical TraceSpan tree from an execution's flat block logs.

Shape::

    Workflow Execution
      ├── <block>                      one span per top-level block log
      │     └── <segment>             agent blocks: model/tool time segments
      └── <loop or parallel>
            └── Iteration i
                  └── <member block>  (recursively)

Logs are appended when a block finishes, so a container's member logs always
precede the container's own log. That ordering is what lets member spans be
attached to their container without any back-pointers.
"""

from collections import defaultdict
from datetime import datetime

from blockflow.graph.context import ExecutionResult
from blockflow.runtime.log_schemas import BlockLog, TraceSpan


def _parse_iso(value: str) -> datetime | None:
    try:
        return datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None


def logs_extent_ms(logs: list[BlockLog]) -> int:
    """Milliseconds between the earliest block start and the latest block end."""
    starts = [t for t in (_parse_iso(log.started_at) for log in logs) if t is not None]
    ends = [t for t in (_parse_iso(log.ended_at) for log in logs) if t is not None]
    if not starts or not ends:
        return 0
    return max(0, int((max(ends) - min(starts)).total_seconds() * 1000))


def _block_span(log: BlockLog, span_id: str) -> TraceSpan:
    span = TraceSpan(
        id=span_id,
        name=log.block_name or log.block_id,
        type=log.block_type,
        block_id=log.block_id,
        status="success" if log.success else "error",
        start_time=log.started_at,
        end_time=log.ended_at,
        duration_ms=log.duration_ms,
        model=log.model,
        tokens=log.tokens,
        output=log.output,
        error=log.error,
        tool_calls=list(log.tool_calls),
    )
    if log.timing is not None:
        span.children = [
            TraceSpan(
                id=f"{span_id}-segment-{i}",
                name=segment.name,
                type=segment.type,
                block_id=log.block_id,
                start_time=segment.start_time,
                end_time=segment.end_time,
                duration_ms=segment.duration_ms,
            )
            for i, segment in enumerate(log.timing.time_segments)
        ]
    return span


def _iteration_spans(
    container_span: TraceSpan, members: list[tuple[BlockLog, TraceSpan]]
) -> list[TraceSpan]:
    by_iteration: dict[int, list[tuple[BlockLog, TraceSpan]]] = defaultdict(list)
    for log, span in members:
        by_iteration[log.iteration_index or 0].append((log, span))

    iterations = []
    for index in sorted(by_iteration):
        entries = by_iteration[index]
        logs = [log for log, _ in entries]
        iterations.append(
            TraceSpan(
                id=f"{container_span.id}-iteration-{index}",
                name=f"Iteration {index}",
                type="iteration",
                block_id=container_span.block_id,
                status="success" if all(log.success for log in logs) else "error",
                start_time=min(log.started_at for log in logs),
                end_time=max(log.ended_at for log in logs),
                duration_ms=logs_extent_ms(logs),
                children=[span for _, span in entries],
            )
        )
    return iterations


def build_trace_spans(result: ExecutionResult) -> tuple[list[TraceSpan], int]:
    """Return ``([root span], total_duration_ms)`` for a finished run."""
    total_ms = result.metadata.duration_ms or logs_extent_ms(result.logs)

    top_level: list[TraceSpan] = []
    pending: dict[str, list[tuple[BlockLog, TraceSpan]]] = defaultdict(list)
    counts: dict[str, int] = defaultdict(int)

    for log in result.logs:
        counts[log.block_id] += 1
        span = _block_span(log, f"{log.block_id}-{counts[log.block_id]}")

        members = pending.pop(log.block_id, None)
        if members:
            span.children = _iteration_spans(span, members)

        if log.container_id is None:
            top_level.append(span)
        else:
            pending[log.container_id].append((log, span))

    root = TraceSpan(
        id="workflow-execution",
        name="Workflow Execution",
        type="workflow",
        status="success" if result.success else "error",
        start_time=result.metadata.start_time,
        end_time=result.metadata.end_time,
        duration_ms=total_ms,
        error=result.error,
        children=top_level,
    )
    return [root], total_ms
