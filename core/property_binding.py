import logging

from core.diagnostics import DiagnosticCode, Diagnostics, Severity
from core.graph import Graph, GraphNode
from core.node_registry import NodeObject, NodeObjects
from core.properties import ComboProperty, FileUploadProperty, duplicate_property
from core.types_registry import NOTE_NODE_TYPES, PRIMITIVE_NODE_TYPE, REROUTE_NODE_TYPE

logger = logging.getLogger(__name__)

UPLOAD_PROPERTY_NAME = "choose file to upload"


def bind_node_properties(graph: Graph, node_objects: NodeObjects, diagnostics: Diagnostics) -> list[GraphNode]:
    """Create every node's properties from its catalog definition.

    Returns the primitive nodes, which only get a type once the nodes they
    feed have been bound.
    """
    primitives: list[GraphNode] = []
    for node in graph.nodes:
        node.properties = {}
        node_object = node_objects.get_node_object_by_name(node.type)

        if node_object is None:
            if node.type == PRIMITIVE_NODE_TYPE:
                primitives.append(node)
            elif node.type == REROUTE_NODE_TYPE or node.type in NOTE_NODE_TYPES:
                # no properties to bind
                continue
            else:
                diagnostics.add(
                    DiagnosticCode.MISSING_DEFINITION,
                    f"Could not get node object for {node.type}",
                    node_id=node.id,
                    severity=Severity.ERROR,
                )
            continue

        _bind_from_node_object(node, node_object, diagnostics)
        logger.debug(f"Bound {len(node.properties)} properties on node {node.id} ({node.type})")
    return primitives


def _bind_from_node_object(node: GraphNode, node_object: NodeObject, diagnostics: Diagnostics) -> None:
    node.display_name = node_object.display_name
    node.description = node_object.description

    for prototype in node_object.get_settable_properties():
        prop = duplicate_property(prototype)
        if prop is None:
            diagnostics.add(
                DiagnosticCode.UNDUPLICABLE_PROPERTY,
                f"Cannot copy {prototype.name} of {node.type}",
                node_id=node.id,
            )
            continue
        prop.bind(node.id, prototype.widget_index, node.widget_values)
        node.properties[prop.name] = prop
        node.affix_property_to_input_slot(prop.name, prop)

    expected = node_object.widget_count
    if len(node.widget_values) == expected:
        return

    # Upload widgets ("choose file to upload") are added by the front end and
    # occupy the position after the declared widgets.
    if node_object.accepts_upload:
        target = node.get_property_with_name(node_object.upload_target or "")
        if isinstance(target, ComboProperty):
            node.properties[UPLOAD_PROPERTY_NAME] = FileUploadProperty(UPLOAD_PROPERTY_NAME, target, expected)
        else:
            diagnostics.add(
                DiagnosticCode.MISSING_UPLOAD_TARGET,
                f"Cannot find {node_object.upload_target!r} property for upload widget",
                node_id=node.id,
            )
        return

    diagnostics.add(
        DiagnosticCode.WIDGET_COUNT_MISMATCH,
        f"size mismatch for {node.type}: {len(node.widget_values)} widget values, {expected} expected",
        node_id=node.id,
    )
