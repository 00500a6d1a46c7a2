import json
import logging
import os
from typing import IO, Any

from pydantic import TypeAdapter, ValidationError

from core.diagnostics import Diagnostics
from core.graph import Graph
from core.node_registry import NodeObjects
from core.primitive_resolution import resolve_primitives
from core.property_binding import bind_node_properties
from core.types_registry import GraphLoadError, SerialisableGraph

logger = logging.getLogger(__name__)

_DOCUMENT_ADAPTER: TypeAdapter[SerialisableGraph] = TypeAdapter(SerialisableGraph)

GraphSource = str | bytes | bytearray | IO[str] | IO[bytes]


def _read_text(source: GraphSource) -> str:
    if isinstance(source, (bytes, bytearray)):
        return bytes(source).decode("utf-8")
    if isinstance(source, str):
        return source
    content = source.read()
    if isinstance(content, bytes):
        return content.decode("utf-8")
    return content


def decode_document(source: GraphSource) -> tuple[SerialisableGraph, dict[str, Any]]:
    """Parse and structurally validate a workflow document.

    Returns the validated document and the raw decoded JSON object.
    """
    try:
        raw = json.loads(_read_text(source))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise GraphLoadError(f"Cannot read workflow document: {e}", original_exc=e) from e
    if not isinstance(raw, dict):
        raise GraphLoadError("Workflow document must be a JSON object")
    try:
        document = _DOCUMENT_ADAPTER.validate_python(raw)
    except ValidationError as ve:
        raise GraphLoadError(f"Invalid workflow document: {ve}", original_exc=ve) from ve
    return document, raw


def load_graph(source: GraphSource, node_objects: NodeObjects) -> Graph:
    """Decode a workflow, index it and resolve its node properties.

    Schema drift (unknown node types, widget count mismatches, unresolvable
    primitive links) is reported in ``graph.diagnostics``; only an unreadable
    or malformed document raises ``GraphLoadError``.
    """
    document, raw = decode_document(source)
    try:
        graph = Graph.from_document(document, raw)
    except (KeyError, TypeError, ValueError) as e:
        raise GraphLoadError(f"Invalid workflow document: {e}", original_exc=e) from e

    diagnostics = Diagnostics()
    primitives = bind_node_properties(graph, node_objects, diagnostics)
    resolve_primitives(graph, primitives, diagnostics)
    graph.diagnostics = diagnostics

    logger.debug(
        f"Loaded graph with {len(graph.nodes)} nodes, {len(graph.links)} links, "
        f"{len(diagnostics)} diagnostics"
    )
    return graph


def load_graph_file(path: str | os.PathLike[str], node_objects: NodeObjects) -> Graph:
    try:
        with open(path, "rb") as f:
            return load_graph(f, node_objects)
    except OSError as e:
        raise GraphLoadError(f"Cannot open workflow {path}: {e}", original_exc=e) from e
