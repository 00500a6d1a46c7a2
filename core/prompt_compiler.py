import copy
import logging
from dataclasses import dataclass, field
from typing import Any

from core.diagnostics import DiagnosticCode, Diagnostics
from core.graph import Graph, GraphNode, Link
from core.types_registry import PromptLinkRef, SerialisedPrompt, SerialisedPromptNode

logger = logging.getLogger(__name__)


@dataclass
class PromptNode:
    class_type: str
    inputs: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> SerialisedPromptNode:
        return {"class_type": self.class_type, "inputs": copy.deepcopy(self.inputs)}


@dataclass
class Prompt:
    """Flat execution request for the remote engine."""

    client_id: str
    nodes: dict[int, PromptNode] = field(default_factory=dict)
    extra_data: dict[str, Any] = field(default_factory=dict)
    diagnostics: Diagnostics = field(default_factory=Diagnostics)

    @property
    def workflow(self) -> dict[str, Any] | None:
        return self.extra_data.get("extra_pnginfo", {}).get("workflow")

    def to_dict(self) -> SerialisedPrompt:
        return {
            "client_id": self.client_id,
            "prompt": {str(node_id): node.to_dict() for node_id, node in self.nodes.items()},
            "extra_data": copy.deepcopy(self.extra_data),
        }


def _resolve_origin(node: GraphNode, link: Link, diagnostics: Diagnostics) -> Link | None:
    """Walk back through virtual nodes to the link leaving a real node."""
    graph = node.graph
    if graph is None:
        return None
    parent = graph.get_node_by_id(link.origin_id)
    visited: set[int] = set()
    while parent is not None and parent.is_virtual:
        if parent.id in visited:
            diagnostics.add(
                DiagnosticCode.BROKEN_VIRTUAL_CHAIN,
                f"Virtual nodes loop back to node {parent.id}",
                node_id=node.id,
            )
            return None
        visited.add(parent.id)
        upstream = parent.get_input_link(link.origin_slot)
        if upstream is None:
            # primitives have no inputs: their value was already applied as a literal
            if parent.inputs:
                diagnostics.add(
                    DiagnosticCode.BROKEN_VIRTUAL_CHAIN,
                    f"{parent.type} {parent.id} has no input link at slot {link.origin_slot}",
                    node_id=node.id,
                )
            return None
        link = upstream
        parent = graph.get_node_by_id(link.origin_id)
    if parent is None:
        diagnostics.add(
            DiagnosticCode.UNRESOLVED_LINK,
            f"Link {link.id} comes from missing node {link.origin_id}",
            node_id=node.id,
        )
        return None
    if parent.is_muted:
        diagnostics.add(
            DiagnosticCode.MUTED_INPUT_ORIGIN,
            f"Input fed by muted node {parent.id}",
            node_id=node.id,
        )
    return link


def _compile_node(node: GraphNode, diagnostics: Diagnostics) -> PromptNode:
    prompt_node = PromptNode(class_type=node.type)

    for name, prop in node.properties.items():
        if prop.serializable:
            prompt_node.inputs[name] = prop.get_value()

    # Links override widget values for inputs converted to slots
    for index, slot in enumerate(node.inputs):
        link = node.get_input_link(index)
        if link is None:
            continue
        origin = _resolve_origin(node, link, diagnostics)
        if origin is None:
            continue
        link_ref: PromptLinkRef = [str(origin.origin_id), origin.origin_slot]
        prompt_node.inputs[slot.name] = link_ref
    return prompt_node


def compile_prompt(graph: Graph, client_id: str) -> Prompt:
    """Compile a loaded graph into the engine's execution request.

    Virtual nodes apply their side effects (primitive values) first, then
    every node that is neither virtual nor muted is emitted in execution
    order. The authored workflow is attached for round-tripping.
    """
    prompt = Prompt(client_id=client_id)

    for node in graph.nodes_in_execution_order:
        if node.is_virtual:
            node.apply_to_graph(prompt.diagnostics)

    for node in graph.nodes_in_execution_order:
        if node.is_virtual or node.is_muted:
            continue
        prompt.nodes[node.id] = _compile_node(node, prompt.diagnostics)

    prompt.extra_data = {"extra_pnginfo": {"workflow": graph.to_dict()}}
    logger.debug(f"Compiled prompt with {len(prompt.nodes)} nodes for client {client_id}")
    return prompt
