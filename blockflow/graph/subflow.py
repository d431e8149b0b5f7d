"""Subflow configs: loops and parallels keyed by their container block's id."""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _SubflowBase(BaseModel):
    id: str
    nodes: list[str] = Field(default_factory=list, description="Direct member block ids, ordered")

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore", frozen=True
    )


class LoopSpec(_SubflowBase):
    """
    Re-run the member sub-graph sequentially.

    - ``for``: ``iterations`` times
    - ``forEach``: once per element of ``for_each_items`` (list, dict, JSON or reference)
    - ``while``: while ``while_condition`` holds, checked before each iteration
    - ``doWhile``: as ``while`` but checked after each iteration
    """

    loop_type: Literal["for", "forEach", "while", "doWhile"] = "for"
    iterations: int = 5
    for_each_items: Any = None
    while_condition: str | None = None


class ParallelSpec(_SubflowBase):
    """
    Run the member sub-graph concurrently.

    - ``count``: ``count`` identical branches
    - ``collection``: one branch per element of ``distribution``
    """

    parallel_type: Literal["count", "collection"] = "count"
    count: int = 2
    distribution: Any = None


SubflowSpec = LoopSpec | ParallelSpec
