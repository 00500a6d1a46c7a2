from enum import IntEnum
from typing import Any, TypeAlias

# pydantic only accepts typing_extensions.TypedDict on Python < 3.12
from typing_extensions import NotRequired, Required, TypedDict


class NodeMode(IntEnum):
    """LiteGraph node modes. NEVER is what the front end shows as "muted"."""

    ALWAYS = 0
    ON_EVENT = 1
    NEVER = 2
    ON_TRIGGER = 3
    BYPASS = 4


PRIMITIVE_NODE_TYPE = "PrimitiveNode"
REROUTE_NODE_TYPE = "Reroute"
NOTE_NODE_TYPES = frozenset({"Note", "MarkdownNote"})

# Front-end only constructs, never sent to the engine
VIRTUAL_NODE_TYPES = frozenset({PRIMITIVE_NODE_TYPE, REROUTE_NODE_TYPE, *NOTE_NODE_TYPES})


# Types for the workflow document written by the LiteGraph front end.
class SerialisedLink(TypedDict, total=False):
    """Object-based link used by LiteGraph.asSerialisable()."""

    id: Required[int]
    origin_id: Required[int]
    origin_slot: Required[int]
    target_id: Required[int]
    target_slot: Required[int]
    type: Any
    parentId: NotRequired[int]


# Legacy array form: [id, origin_id, origin_slot, target_id, target_slot, type]
SerialisedLinkArray: TypeAlias = list[Any]


class SerialisedWidgetRef(TypedDict, total=False):
    name: str


class SerialisedNodeInput(TypedDict, total=False):
    name: NotRequired[str]
    type: Any
    link: int | None
    widget: NotRequired[SerialisedWidgetRef]
    slot_index: NotRequired[int]


class SerialisedNodeOutput(TypedDict, total=False):
    name: NotRequired[str]
    type: Any
    links: list[int] | None
    slot_index: NotRequired[int]


# Older documents store pos/size as {"0": x, "1": y}
SerialisedVector: TypeAlias = list[float] | dict[str, float]


class SerialisedNode(TypedDict, total=False):
    id: Required[int]
    type: Required[str]
    title: NotRequired[str]
    pos: NotRequired[SerialisedVector]
    size: NotRequired[SerialisedVector]
    flags: NotRequired[dict[str, Any]]
    order: NotRequired[int]
    mode: NotRequired[int]
    inputs: NotRequired[list[SerialisedNodeInput]]
    outputs: NotRequired[list[SerialisedNodeOutput]]
    properties: NotRequired[dict[str, Any]]
    widgets_values: NotRequired[list[Any] | dict[str, Any]]


class SerialisedGroup(TypedDict, total=False):
    title: str
    bounding: list[float]
    color: NotRequired[str]
    font_size: NotRequired[float]


class SerialisedGraphState(TypedDict, total=False):
    lastNodeId: int
    lastLinkId: int
    lastGroupId: int
    lastRerouteId: int


class SerialisableGraph(TypedDict, total=False):
    """Workflow document as saved by the front end (both schema versions)."""

    nodes: Required[list[SerialisedNode]]
    links: NotRequired[list[SerialisedLinkArray | SerialisedLink]]
    groups: NotRequired[list[SerialisedGroup]]
    last_node_id: NotRequired[int]
    last_link_id: NotRequired[int]
    state: NotRequired[SerialisedGraphState]
    version: NotRequired[float]
    extra: NotRequired[dict[str, Any]]


# Compiled request shapes
PromptInputValue: TypeAlias = Any
PromptLinkRef: TypeAlias = list[str | int]


class SerialisedPromptNode(TypedDict):
    class_type: str
    inputs: dict[str, PromptInputValue]


class SerialisedPrompt(TypedDict):
    client_id: str
    prompt: dict[str, SerialisedPromptNode]
    extra_data: dict[str, Any]


# Catalog (/object_info) input declaration: [TYPE | [choices], {options}]
InputSpec: TypeAlias = list[Any]
ObjectInfo: TypeAlias = dict[str, dict[str, Any]]


# Graph exceptions
class GraphError(Exception):
    """Base exception for all graph-related errors."""

    pass


class GraphLoadError(GraphError):
    """Raised when a workflow document cannot be read or decoded."""

    def __init__(self, message: str, original_exc: Exception | None = None):
        super().__init__(message)
        self.original_exc = original_exc


class CatalogLoadError(GraphError):
    """Raised when node-type definitions cannot be decoded."""

    pass


class PropertyValueError(ValueError):
    """Raised when a value cannot be stored in a property."""

    def __init__(self, property_name: str, message: str):
        super().__init__(f"Property {property_name}: {message}")
        self.property_name = property_name


__all__ = [
    "NodeMode",
    "PRIMITIVE_NODE_TYPE",
    "REROUTE_NODE_TYPE",
    "NOTE_NODE_TYPES",
    "VIRTUAL_NODE_TYPES",
    "SerialisedLink",
    "SerialisedLinkArray",
    "SerialisedNodeInput",
    "SerialisedNodeOutput",
    "SerialisedNode",
    "SerialisedGroup",
    "SerialisedGraphState",
    "SerialisableGraph",
    "SerialisedPromptNode",
    "SerialisedPrompt",
    "PromptLinkRef",
    "InputSpec",
    "ObjectInfo",
    "GraphError",
    "GraphLoadError",
    "CatalogLoadError",
    "PropertyValueError",
]
