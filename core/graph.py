import copy
import logging
import weakref
from dataclasses import dataclass, field
from typing import Any

from core.diagnostics import DiagnosticCode, Diagnostics
from core.properties import Property
from core.types_registry import (
    PRIMITIVE_NODE_TYPE,
    VIRTUAL_NODE_TYPES,
    NodeMode,
    PropertyValueError,
    SerialisableGraph,
    SerialisedGroup,
    SerialisedLink,
    SerialisedLinkArray,
    SerialisedNode,
    SerialisedVector,
)

logger = logging.getLogger(__name__)

# Height of the title bar the front end draws above a node's position
NODE_TITLE_HEIGHT = 30.0


def _vector(value: SerialisedVector | None, default: tuple[float, float]) -> tuple[float, float]:
    if value is None:
        return default
    if isinstance(value, dict):
        return float(value.get("0", default[0])), float(value.get("1", default[1]))
    if len(value) < 2:
        return default
    return float(value[0]), float(value[1])


@dataclass(frozen=True)
class Rect:
    x: float
    y: float
    width: float
    height: float

    def intersects(self, other: "Rect") -> bool:
        return (
            self.x < other.x + other.width
            and other.x < self.x + self.width
            and self.y < other.y + other.height
            and other.y < self.y + self.height
        )


@dataclass
class Link:
    id: int
    origin_id: int
    origin_slot: int
    target_id: int
    target_slot: int
    type: Any = None

    @classmethod
    def from_serialised(cls, data: SerialisedLinkArray | SerialisedLink) -> "Link":
        if isinstance(data, dict):
            return cls(
                id=data["id"],
                origin_id=data["origin_id"],
                origin_slot=data["origin_slot"],
                target_id=data["target_id"],
                target_slot=data["target_slot"],
                type=data.get("type"),
            )
        if len(data) < 5:
            raise ValueError(f"Link entry needs at least 5 fields, got {len(data)}")
        link_type = data[5] if len(data) > 5 else None
        return cls(int(data[0]), int(data[1]), int(data[2]), int(data[3]), int(data[4]), link_type)


@dataclass
class Group:
    title: str
    bounding: Rect

    @classmethod
    def from_serialised(cls, data: SerialisedGroup) -> "Group":
        bounding = list(data.get("bounding") or [0.0, 0.0, 0.0, 0.0]) + [0.0] * 4
        return cls(
            title=data.get("title", ""),
            bounding=Rect(*(float(v) for v in bounding[:4])),
        )

    def intersects_or_contains(self, node: "GraphNode") -> bool:
        return self.bounding.intersects(node.bounding)


@dataclass
class InputSlot:
    name: str
    type: Any = None
    link: int | None = None
    widget_name: str | None = None
    property: Property | None = None


@dataclass
class OutputSlot:
    name: str
    type: Any = None
    links: list[int] = field(default_factory=list)


class GraphNode:
    def __init__(
        self,
        id: int,
        type: str,
        title: str = "",
        mode: int = NodeMode.ALWAYS,
        order: int = 0,
        pos: tuple[float, float] = (0.0, 0.0),
        size: tuple[float, float] = (0.0, 0.0),
        inputs: list[InputSlot] | None = None,
        outputs: list[OutputSlot] | None = None,
        widget_values: list[Any] | dict[str, Any] | None = None,
    ):
        self.id = id
        self.type = type
        self.title = title
        self.mode = mode
        self.order = order
        self.pos = pos
        self.size = size
        self.inputs: list[InputSlot] = inputs or []
        self.outputs: list[OutputSlot] = outputs or []
        self.widget_values: list[Any] | dict[str, Any] = widget_values if widget_values is not None else []
        self.properties: dict[str, Property] = {}
        self.display_name = ""
        self.description = ""
        self._graph: weakref.ReferenceType["Graph"] | None = None

    @classmethod
    def from_serialised(cls, data: SerialisedNode) -> "GraphNode":
        inputs = [
            InputSlot(
                name=inp.get("name", ""),
                type=inp.get("type"),
                link=inp.get("link"),
                widget_name=(inp.get("widget") or {}).get("name"),
            )
            for inp in data.get("inputs") or []
        ]
        outputs = [
            OutputSlot(name=out.get("name", ""), type=out.get("type"), links=list(out.get("links") or []))
            for out in data.get("outputs") or []
        ]
        return cls(
            id=data["id"],
            type=data["type"],
            title=data.get("title") or "",
            mode=data.get("mode", NodeMode.ALWAYS),
            order=data.get("order", 0),
            pos=_vector(data.get("pos"), (0.0, 0.0)),
            size=_vector(data.get("size"), (0.0, 0.0)),
            inputs=inputs,
            outputs=outputs,
            widget_values=copy.deepcopy(data.get("widgets_values")),
        )

    @property
    def graph(self) -> "Graph | None":
        return self._graph() if self._graph is not None else None

    @graph.setter
    def graph(self, graph: "Graph | None") -> None:
        self._graph = weakref.ref(graph) if graph is not None else None

    @property
    def is_virtual(self) -> bool:
        return self.type in VIRTUAL_NODE_TYPES

    @property
    def is_muted(self) -> bool:
        return self.mode == NodeMode.NEVER

    @property
    def bounding(self) -> Rect:
        x, y = self.pos
        width, height = self.size
        return Rect(x, y - NODE_TITLE_HEIGHT, width, height + NODE_TITLE_HEIGHT)

    @property
    def display_title(self) -> str:
        return self.title or self.display_name

    def get_property_with_name(self, name: str) -> Property | None:
        return self.properties.get(name)

    def get_first_property(self) -> Property | None:
        """The property a caller most likely wants to set on this node."""
        if "value" in self.properties:
            return self.properties["value"]
        indexed = [p for p in self.properties.values() if p.widget_index is not None and p.serializable]
        if not indexed:
            return None
        return min(indexed, key=lambda p: p.widget_index)

    def get_input_with_name(self, name: str) -> InputSlot | None:
        for slot in self.inputs:
            if slot.name == name:
                return slot
        return None

    def affix_property_to_input_slot(self, name: str, prop: Property) -> None:
        for slot in self.inputs:
            # widget inputs converted to slots may carry a relabelled name
            if slot.name == name or slot.widget_name == name:
                slot.property = prop
                return

    def get_input_link(self, slot_index: int) -> Link | None:
        graph = self.graph
        if graph is None or slot_index < 0 or slot_index >= len(self.inputs):
            return None
        link_id = self.inputs[slot_index].link
        if link_id is None:
            return None
        return graph.get_link_by_id(link_id)

    def get_node_for_input(self, slot_index: int) -> "GraphNode | None":
        link = self.get_input_link(slot_index)
        if link is None:
            return None
        graph = self.graph
        return graph.get_node_by_id(link.origin_id) if graph is not None else None

    def get_output_links(self) -> list[Link]:
        """Resolvable links leaving any output, in ascending link-ID order."""
        graph = self.graph
        if graph is None:
            return []
        link_ids = sorted(link_id for out in self.outputs for link_id in out.links)
        return [link for link in (graph.get_link_by_id(i) for i in link_ids) if link is not None]

    def apply_to_graph(self, diagnostics: Diagnostics | None = None) -> None:
        """Push front-end-only state into the real nodes this node feeds.

        A primitive writes its value into the property bound to every input
        slot its output is linked to. Values a target rejects are recorded in
        ``diagnostics`` when given, otherwise the error propagates.
        """
        if self.type != PRIMITIVE_NODE_TYPE:
            return
        value_prop = self.properties.get("value")
        graph = self.graph
        if value_prop is None or graph is None:
            return
        value = value_prop.get_value()
        for link in self.get_output_links():
            target = graph.get_node_by_id(link.target_id)
            if target is None or link.target_slot >= len(target.inputs):
                continue
            prop = target.inputs[link.target_slot].property
            # incompatible targets were reported when the primitive was resolved
            if prop is None or prop.type_tag != value_prop.type_tag:
                continue
            try:
                prop.set_value(value)
            except PropertyValueError as e:
                if diagnostics is None:
                    raise
                diagnostics.add(DiagnosticCode.INVALID_PROPERTY_VALUE, str(e), node_id=target.id)

    def widget_values_for_document(self) -> list[Any] | dict[str, Any]:
        """Authored widget values refreshed from the current property values."""
        values = copy.deepcopy(self.widget_values)
        for prop in self.properties.values():
            if not prop.serializable or prop.node_id != self.id or prop.widget_index is None:
                continue
            if isinstance(values, dict):
                values[prop.name] = prop.get_value()
            elif prop.widget_index < len(values):
                values[prop.widget_index] = prop.get_value()
        return values

    def __repr__(self) -> str:
        return f"GraphNode(id={self.id}, type={self.type!r}, title={self.title!r})"


class Graph:
    def __init__(self) -> None:
        self.nodes: list[GraphNode] = []
        self.links: list[Link] = []
        self.groups: list[Group] = []
        self.last_node_id = 0
        self.last_link_id = 0
        self.version: float = 0.0
        self.nodes_by_id: dict[int, GraphNode] = {}
        self.links_by_id: dict[int, Link] = {}
        self.nodes_in_execution_order: list[GraphNode] = []
        self.diagnostics = Diagnostics()
        self._document: SerialisableGraph | dict[str, Any] = {}

    @classmethod
    def from_document(cls, document: SerialisableGraph, raw: dict[str, Any] | None = None) -> "Graph":
        """Build a graph from a validated document. ``raw`` is kept for round-tripping."""
        graph = cls()
        state = document.get("state") or {}
        graph.last_node_id = document.get("last_node_id", state.get("lastNodeId", 0))
        graph.last_link_id = document.get("last_link_id", state.get("lastLinkId", 0))
        graph.version = float(document.get("version", 0.0))
        graph.groups = [Group.from_serialised(g) for g in document.get("groups") or []]
        graph._document = copy.deepcopy(raw if raw is not None else document)
        graph.set_contents(
            [GraphNode.from_serialised(n) for n in document.get("nodes") or []],
            [Link.from_serialised(link) for link in document.get("links") or []],
        )
        return graph

    def set_contents(self, nodes: list[GraphNode], links: list[Link]) -> None:
        """Replace nodes and links and rebuild every derived index."""
        self.nodes = nodes
        self.links = links
        self.nodes_by_id = {}
        self.links_by_id = {}
        for node in self.nodes:
            self.nodes_by_id[node.id] = node
            node.graph = self
        for link in self.links:
            self.links_by_id[link.id] = link
        # sorted() is stable: equal ordinals keep document order
        self.nodes_in_execution_order = sorted(self.nodes, key=lambda n: n.order)

    @property
    def has_errors(self) -> bool:
        return self.diagnostics.has_errors

    def get_node_by_id(self, node_id: int) -> GraphNode | None:
        return self.nodes_by_id.get(node_id)

    def get_link_by_id(self, link_id: int) -> Link | None:
        return self.links_by_id.get(link_id)

    def get_group_with_title(self, title: str) -> Group | None:
        """Returns the first group with the given title."""
        for group in self.groups:
            if group.title == title:
                return group
        return None

    def get_nodes_in_group(self, group: Group) -> list[GraphNode]:
        return [n for n in self.nodes if group.intersects_or_contains(n)]

    def get_nodes_with_title(self, title: str) -> list[GraphNode]:
        """Nodes whose title matches, falling back to the display name when untitled."""
        return [n for n in self.nodes if n.title == title or (not n.title and n.display_name == title)]

    def get_first_node_with_title(self, title: str) -> GraphNode | None:
        nodes = self.get_nodes_with_title(title)
        return nodes[0] if nodes else None

    def get_nodes_with_type(self, node_type: str) -> list[GraphNode]:
        return [n for n in self.nodes if n.type == node_type]

    def to_dict(self) -> dict[str, Any]:
        """The authored document with widget values reflecting current property values."""
        document = copy.deepcopy(dict(self._document))
        for node_data in document.get("nodes") or []:
            node = self.get_node_by_id(node_data.get("id"))
            if node is not None and "widgets_values" in node_data:
                node_data["widgets_values"] = node.widget_values_for_document()
        return document
