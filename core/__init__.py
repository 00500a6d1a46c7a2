"""Core package for workflow ingestion, resolution and prompt compilation.

Modules:
- types_registry: Serialised document shapes, node modes and exceptions
- properties: Typed property cells bound to node widgets
- node_registry: Catalog of node-type definitions
- graph: Graph document model
- property_binding / primitive_resolution: Resolution passes run on load
- graph_loader: Decode and resolve a workflow document
- prompt_compiler: Compile a graph into an execution request
- simple_api: Group-based selection of nodes for value injection
"""

# No explicit imports to avoid circular dependencies
# Import these modules directly (e.g., from core.graph_loader import load_graph)
# instead of from core import graph_loader

__all__ = []
