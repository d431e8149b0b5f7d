"""Block handlers: one per executable (non-container) block type."""

from blockflow.graph.handlers.agent import AgentBlockHandler, parse_response_format
from blockflow.graph.handlers.base import BlockHandler
from blockflow.graph.handlers.condition import ConditionBlockHandler
from blockflow.graph.handlers.router import RouterBlockHandler
from blockflow.graph.handlers.starter import StarterBlockHandler, TriggerBlockHandler
from blockflow.graph.handlers.tool import ToolBlockHandler

__all__ = [
    "AgentBlockHandler",
    "BlockHandler",
    "ConditionBlockHandler",
    "RouterBlockHandler",
    "StarterBlockHandler",
    "ToolBlockHandler",
    "TriggerBlockHandler",
    "parse_response_format",
]
