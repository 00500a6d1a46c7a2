from dataclasses import dataclass, field

from core.graph import Graph, GraphNode
from core.properties import Property

DEFAULT_API_GROUP = "API"


@dataclass
class SimpleAPI:
    """Nodes placed inside a named group, keyed by title.

    ``properties`` exposes the first property of each node so callers can
    inject values before compiling, e.g.::

        api = get_simple_api(graph)
        api.properties["Seed"].set_value(2290222)
    """

    nodes: dict[str, GraphNode] = field(default_factory=dict)
    properties: dict[str, Property] = field(default_factory=dict)

    def set_value(self, title: str, value: object) -> None:
        prop = self.properties.get(title)
        if prop is None:
            raise KeyError(f"No API property titled {title!r}")
        prop.set_value(value)


def get_simple_api(graph: Graph, group_title: str = DEFAULT_API_GROUP) -> SimpleAPI:
    api = SimpleAPI()
    group = graph.get_group_with_title(group_title)
    if group is None:
        return api
    for node in graph.get_nodes_in_group(group):
        title = node.display_title
        if not title or title in api.nodes:
            continue
        api.nodes[title] = node
        prop = node.get_first_property()
        if prop is not None:
            api.properties[title] = prop
    return api
