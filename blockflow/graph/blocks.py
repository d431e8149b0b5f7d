"""
Blocks - the nodes of a workflow graph.

Two shapes exist:

- ``Block`` is the authoring-side description: a type tag, a bag of named
  sub-block values, and optional subflow membership via ``parent_id``.
- ``SerializedBlock`` is the compiled, immutable form. Its ``config`` is one
  variant of the ``BlockConfig`` tagged union, chosen by the block type.
  Unknown tags never pass through: they fail compilation.
"""

import json
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from blockflow.errors import CompilationError


class BlockType(StrEnum):
    """Executable block kinds."""

    STARTER = "starter"
    AGENT = "agent"
    ROUTER = "router"
    CONDITION = "condition"
    TOOL = "tool"
    LOOP = "loop"
    PARALLEL = "parallel"
    WEBHOOK = "webhook"
    SCHEDULE = "schedule"


TRIGGER_BLOCK_TYPES = frozenset({BlockType.WEBHOOK, BlockType.SCHEDULE})
CONTAINER_BLOCK_TYPES = frozenset({BlockType.LOOP, BlockType.PARALLEL})


# ---------------------------------------------------------------------------
# Authoring side
# ---------------------------------------------------------------------------


class SubBlockState(BaseModel):
    """One named configuration value of a block."""

    id: str
    type: str = "short-input"
    value: Any = None
    mode: Literal["basic", "advanced", "both"] = "both"

    model_config = ConfigDict(extra="allow")

    def is_active(self, advanced_mode: bool) -> bool:
        if self.mode == "both":
            return True
        return (self.mode == "advanced") == advanced_mode


class Block(BaseModel):
    """A block as authored in the editor (camelCase keys accepted)."""

    id: str
    type: str | None = None
    name: str = ""
    sub_blocks: dict[str, SubBlockState] = Field(default_factory=dict)
    parent_id: str | None = None
    advanced_mode: bool = False
    enabled: bool = True
    trigger_mode: bool = False

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    @field_validator("sub_blocks", mode="before")
    @classmethod
    def _fill_sub_block_ids(cls, value: Any) -> Any:
        # Editors often omit the redundant id inside each sub-block
        if isinstance(value, dict):
            return {
                key: {"id": key, **sub} if isinstance(sub, dict) else {"id": key, "value": sub}
                for key, sub in value.items()
            }
        return value

    @property
    def is_trigger(self) -> bool:
        return self.type in TRIGGER_BLOCK_TYPES or self.trigger_mode

    def active_params(self) -> dict[str, Any]:
        """Sub-block values that apply under the block's current mode."""
        return {
            key: sub.value
            for key, sub in self.sub_blocks.items()
            if sub.is_active(self.advanced_mode) and sub.value is not None
        }


# ---------------------------------------------------------------------------
# Compiled configs (tagged union on ``type``)
# ---------------------------------------------------------------------------


def _decode_json_string(value: Any) -> Any:
    if isinstance(value, str) and value.strip()[:1] in ("[", "{"):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value
    return value


class _ConfigBase(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )


class InputField(BaseModel):
    """A declared input of the starter block."""

    name: str
    type: str = "string"
    value: Any = None


class StarterConfig(_ConfigBase):
    type: Literal["starter"] = "starter"
    input_format: list[InputField] = Field(default_factory=list)

    @field_validator("input_format", mode="before")
    @classmethod
    def _decode(cls, value: Any) -> Any:
        return _decode_json_string(value) or []


class TriggerConfig(_ConfigBase):
    type: Literal["webhook", "schedule"]

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="allow", frozen=True
    )


class AgentTool(_ConfigBase):
    """A tool an agent block exposes to its model."""

    name: str
    description: str = ""
    parameters: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    params: dict[str, Any] = Field(
        default_factory=dict, description="Preset arguments merged under the model's arguments"
    )
    usage_control: Literal["auto", "force", "none"] = "auto"


class AgentConfig(_ConfigBase):
    type: Literal["agent"] = "agent"
    provider: str | None = None
    model: str = ""
    system_prompt: str = ""
    user_prompt: Any = ""
    messages: list[dict[str, Any]] | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    api_key: str | None = None
    tools: list[AgentTool] = Field(default_factory=list)
    tool_choice: str | dict[str, Any] | None = None
    response_format: dict[str, Any] | str | None = None
    memory_type: str = "none"
    conversation_id: str = ""

    @field_validator("tools", "messages", "tool_choice", mode="before")
    @classmethod
    def _decode(cls, value: Any) -> Any:
        return _decode_json_string(value)


class ConditionBranch(_ConfigBase):
    id: str
    title: str = "if"
    value: str = ""

    @property
    def is_else(self) -> bool:
        return self.title.strip().lower() == "else"


class ConditionConfig(_ConfigBase):
    type: Literal["condition"] = "condition"
    conditions: list[ConditionBranch] = Field(default_factory=list)

    @field_validator("conditions", mode="before")
    @classmethod
    def _decode(cls, value: Any) -> Any:
        return _decode_json_string(value) or []


class RouterConfig(_ConfigBase):
    type: Literal["router"] = "router"
    prompt: Any = ""
    provider: str | None = None
    model: str = ""
    temperature: float | None = None
    api_key: str | None = None


class ToolConfig(_ConfigBase):
    type: Literal["tool"] = "tool"
    tool: str
    params: dict[str, Any] = Field(default_factory=dict)

    @field_validator("params", mode="before")
    @classmethod
    def _decode(cls, value: Any) -> Any:
        return _decode_json_string(value) or {}


class LoopBlockConfig(_ConfigBase):
    type: Literal["loop"] = "loop"


class ParallelBlockConfig(_ConfigBase):
    type: Literal["parallel"] = "parallel"


BlockConfig = Annotated[
    StarterConfig
    | TriggerConfig
    | AgentConfig
    | ConditionConfig
    | RouterConfig
    | ToolConfig
    | LoopBlockConfig
    | ParallelBlockConfig,
    Field(discriminator="type"),
]

_BLOCK_CONFIG_ADAPTER: TypeAdapter[BlockConfig] = TypeAdapter(BlockConfig)


def build_block_config(block_id: str, block_type: str, params: dict[str, Any]) -> BlockConfig:
    """Validate a block's parameters into its config variant."""
    try:
        return _BLOCK_CONFIG_ADAPTER.validate_python({**params, "type": block_type})
    except ValidationError as e:
        if any(err["type"] == "union_tag_invalid" for err in e.errors()):
            raise CompilationError(
                f"Block '{block_id}' has unknown type '{block_type}'"
            ) from e
        raise CompilationError(f"Block '{block_id}' has invalid configuration: {e}") from e


class SerializedBlock(BaseModel):
    """A compiled, immutable block."""

    id: str
    type: BlockType
    name: str = ""
    config: BlockConfig
    parent_id: str | None = None
    enabled: bool = True

    model_config = ConfigDict(frozen=True)

    @property
    def display_name(self) -> str:
        return self.name or self.id

    @property
    def is_container(self) -> bool:
        return self.type in CONTAINER_BLOCK_TYPES
