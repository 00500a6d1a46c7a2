import logging

from core.diagnostics import DiagnosticCode, Diagnostics
from core.graph import Graph, GraphNode
from core.properties import Property, duplicate_property
from core.types_registry import PropertyValueError

logger = logging.getLogger(__name__)

PRIMITIVE_VALUE_PROPERTY = "value"
PRIMITIVE_VALUE_WIDGET_INDEX = 0


def resolve_primitives(graph: Graph, primitives: list[GraphNode], diagnostics: Diagnostics) -> None:
    """Give each primitive node the type of the first input it feeds.

    The first resolvable target fixes the type of the primitive's "value"
    property; every further target is attached to it as a secondary property
    so writes to the primitive are mirrored. A primitive without any
    resolvable target stays without a value property.
    """
    for primitive in primitives:
        _resolve_primitive(graph, primitive, diagnostics)


def _resolve_primitive(graph: Graph, primitive: GraphNode, diagnostics: Diagnostics) -> None:
    value_prop: Property | None = None
    for link in _output_links_in_id_order(graph, primitive, diagnostics):
        target_node = graph.get_node_by_id(link.target_id)
        if target_node is None:
            diagnostics.add(
                DiagnosticCode.UNRESOLVED_LINK,
                f"Link {link.id} targets missing node {link.target_id}",
                node_id=primitive.id,
            )
            continue
        if link.target_slot < 0 or link.target_slot >= len(target_node.inputs):
            diagnostics.add(
                DiagnosticCode.UNRESOLVED_LINK,
                f"Link {link.id} targets missing input slot {link.target_slot} of node {target_node.id}",
                node_id=primitive.id,
            )
            continue

        slot = target_node.inputs[link.target_slot]
        target_prop = slot.property

        if value_prop is None:
            if target_prop is None:
                diagnostics.add(
                    DiagnosticCode.UNBOUND_SLOT_PROPERTY,
                    f"Could not get primitive target slot property {slot.name} for node {target_node.display_title}",
                    node_id=primitive.id,
                )
                continue
            value_prop = _new_value_property(primitive, target_prop, diagnostics)
            if value_prop is not None:
                primitive.properties[PRIMITIVE_VALUE_PROPERTY] = value_prop
            continue

        if target_prop is not None:
            _attach_secondary(primitive, value_prop, target_prop, target_node, diagnostics)


def _output_links_in_id_order(graph: Graph, primitive: GraphNode, diagnostics: Diagnostics):
    link_ids = sorted(link_id for output in primitive.outputs for link_id in output.links)
    for link_id in link_ids:
        link = graph.get_link_by_id(link_id)
        if link is None:
            diagnostics.add(
                DiagnosticCode.UNRESOLVED_LINK,
                f"Output link {link_id} does not exist",
                node_id=primitive.id,
            )
            continue
        yield link


def _new_value_property(primitive: GraphNode, target_prop: Property, diagnostics: Diagnostics) -> Property | None:
    value_prop = duplicate_property(target_prop)
    if value_prop is None:
        diagnostics.add(
            DiagnosticCode.UNDUPLICABLE_PROPERTY,
            f"Cannot copy {target_prop.name} ({target_prop.type_tag}) into primitive",
            node_id=primitive.id,
        )
        return None
    # The primitive's own widget holds the authored value, when it has one
    value_prop.bind(primitive.id, PRIMITIVE_VALUE_WIDGET_INDEX, _value_widget(primitive))
    logger.debug(f"Primitive {primitive.id} resolved as {value_prop.type_tag} from {target_prop.name}")
    return value_prop


def _value_widget(primitive: GraphNode) -> list:
    # primitives author [value, control]; dict-shaped values do not apply here
    return primitive.widget_values if isinstance(primitive.widget_values, list) else []


def _attach_secondary(
    primitive: GraphNode,
    value_prop: Property,
    target_prop: Property,
    target_node: GraphNode,
    diagnostics: Diagnostics,
) -> None:
    if target_prop.type_tag != value_prop.type_tag:
        diagnostics.add(
            DiagnosticCode.INCOMPATIBLE_PRIMITIVE_TARGET,
            f"{target_node.display_title}.{target_prop.name} is {target_prop.type_tag}, "
            f"primitive is {value_prop.type_tag}",
            node_id=primitive.id,
        )
        return
    secondary = duplicate_property(target_prop)
    if secondary is None:
        diagnostics.add(
            DiagnosticCode.UNDUPLICABLE_PROPERTY,
            f"Cannot copy {target_prop.name} ({target_prop.type_tag}) into primitive",
            node_id=primitive.id,
        )
        return
    try:
        secondary.set_value(value_prop.get_value())
    except PropertyValueError as e:
        diagnostics.add(DiagnosticCode.INVALID_PROPERTY_VALUE, str(e), node_id=target_node.id)
        return
    value_prop.attach_secondary_property(secondary)
