# core/node_registry.py
# This module adapts the engine's node-type definitions (/object_info) into a lookup catalog.

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any

from core.properties import ComboProperty, Property, property_from_input_spec
from core.types_registry import CatalogLoadError, ObjectInfo

logger = logging.getLogger(__name__)


@dataclass
class NodeObject:
    """Definition of one node class as reported by the engine."""

    name: str
    display_name: str = ""
    description: str = ""
    category: str = ""
    output_node: bool = False
    input_types: dict[str, str] = field(default_factory=dict)
    output_types: list[str] = field(default_factory=list)
    output_names: list[str] = field(default_factory=list)
    settable_properties: list[Property] = field(default_factory=list)
    upload_target: str | None = None

    @property
    def accepts_upload(self) -> bool:
        return self.upload_target is not None

    @property
    def widget_count(self) -> int:
        """Widget positions a node of this type authors, companion widgets included."""
        return sum(p.widget_count for p in self.settable_properties)

    def get_settable_properties(self) -> list[Property]:
        return self.settable_properties

    def get_property_with_name(self, name: str) -> Property | None:
        for prop in self.settable_properties:
            if prop.name == name:
                return prop
        return None


def _ordered_inputs(definition: dict[str, Any], section: str) -> list[tuple[str, list[Any]]]:
    declared: dict[str, Any] = (definition.get("input") or {}).get(section) or {}
    order: list[str] = (definition.get("input_order") or {}).get(section) or list(declared.keys())
    ordered = [(name, declared[name]) for name in order if name in declared]
    # Inputs missing from input_order keep their declaration order at the end
    ordered.extend((name, spec) for name, spec in declared.items() if name not in order)
    return ordered


def _type_name(spec: Any) -> str:
    if isinstance(spec, list) and spec:
        return "COMBO" if isinstance(spec[0], list) else str(spec[0])
    return "UNKNOWN"


def parse_node_object(name: str, definition: dict[str, Any]) -> NodeObject:
    if not isinstance(definition, dict):
        raise CatalogLoadError(f"Definition for {name} must be an object")

    node_object = NodeObject(
        name=definition.get("name") or name,
        display_name=definition.get("display_name") or name,
        description=definition.get("description") or "",
        category=definition.get("category") or "",
        output_node=bool(definition.get("output_node", False)),
        output_types=[_type_name([t]) for t in definition.get("output") or []],
        output_names=list(definition.get("output_name") or []),
    )

    widget_index = 0
    for section in ("required", "optional"):
        for input_name, spec in _ordered_inputs(definition, section):
            if not isinstance(spec, list):
                raise CatalogLoadError(f"Input {input_name} of {name} must be a list")
            node_object.input_types[input_name] = _type_name(spec)
            prop = property_from_input_spec(input_name, spec, optional=section == "optional")
            if prop is None:
                continue
            prop.widget_index = widget_index
            widget_index += prop.widget_count
            node_object.settable_properties.append(prop)
            if isinstance(prop, ComboProperty) and prop.upload_flag and node_object.upload_target is None:
                node_object.upload_target = prop.name
    return node_object


class NodeObjects:
    """Catalog of node-type definitions keyed by class name."""

    def __init__(self, objects: dict[str, NodeObject] | None = None):
        self._objects: dict[str, NodeObject] = dict(objects or {})

    @classmethod
    def from_object_info(cls, data: ObjectInfo) -> "NodeObjects":
        if not isinstance(data, dict):
            raise CatalogLoadError("Node definitions must be a JSON object keyed by class name")
        objects = {name: parse_node_object(name, definition) for name, definition in data.items()}
        logger.debug(f"Loaded {len(objects)} node definitions")
        return cls(objects)

    def get_node_object_by_name(self, name: str) -> NodeObject | None:
        return self._objects.get(name)

    def names(self) -> list[str]:
        return list(self._objects.keys())

    def __contains__(self, name: object) -> bool:
        return name in self._objects

    def __len__(self) -> int:
        return len(self._objects)


def load_node_objects(data: ObjectInfo | str | bytes) -> NodeObjects:
    """Build a catalog from decoded /object_info data or its JSON text."""
    if isinstance(data, (str, bytes)):
        try:
            data = json.loads(data)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise CatalogLoadError(f"Invalid node definitions JSON: {e}") from e
    return NodeObjects.from_object_info(data)


def load_node_objects_from_file(path: str | os.PathLike[str]) -> NodeObjects:
    try:
        with open(path, "rb") as f:
            return load_node_objects(f.read())
    except OSError as e:
        raise CatalogLoadError(f"Cannot read node definitions from {path}: {e}") from e
