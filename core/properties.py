"""Typed value cells bound to node widgets.

A property is instantiated once per catalog definition and duplicated for
every node that uses it, so each node owns independent mutable state. The
set of variants is closed: see ``PropertyKind`` and ``duplicate_property``.
"""

import copy
import logging
from collections.abc import Callable
from enum import Enum
from typing import Any

from core.types_registry import InputSpec, PropertyValueError

logger = logging.getLogger(__name__)

_UNSET: Any = object()

_TRUE_STRINGS = frozenset({"true", "1", "yes", "on"})
_FALSE_STRINGS = frozenset({"false", "0", "no", "off"})

# Upload flags the front end attaches to a COMBO input
UPLOAD_FLAGS = ("image_upload", "video_upload", "audio_upload", "upload")

# INT widgets with these names get a "control_after_generate" companion widget
SEED_WIDGET_NAMES = frozenset({"seed", "noise_seed"})


class PropertyKind(str, Enum):
    STRING = "STRING"
    FLOAT = "FLOAT"
    INT = "INT"
    BOOLEAN = "BOOLEAN"
    COMBO = "COMBO"
    FILE_UPLOAD = "FILE_UPLOAD"
    UNKNOWN = "UNKNOWN"


def _lookup_widget_value(widget_values: list[Any] | dict[str, Any] | None, index: int | None, name: str) -> Any:
    if widget_values is None:
        return _UNSET
    if isinstance(widget_values, dict):
        return widget_values.get(name, _UNSET)
    if index is None or index < 0 or index >= len(widget_values):
        return _UNSET
    return widget_values[index]


class Property:
    kind: PropertyKind = PropertyKind.UNKNOWN
    serializable: bool = True

    def __init__(
        self,
        name: str,
        default: Any = None,
        config: dict[str, Any] | None = None,
        optional: bool = False,
    ):
        self.name = name
        self.default = default
        self.config: dict[str, Any] = dict(config or {})
        self.optional = optional
        self.node_id: int | None = None
        self.widget_index: int | None = None
        self.secondaries: list[Property] = []
        self._value: Any = _UNSET

    @property
    def type_tag(self) -> str:
        return self.kind.value

    @property
    def widget_count(self) -> int:
        """Number of widget positions this property occupies on its node."""
        return 1

    def bind(
        self,
        node_id: int,
        widget_index: int | None,
        widget_values: list[Any] | dict[str, Any] | None = None,
    ) -> None:
        """Attach to a node's widget and load the authored value, if any."""
        self.node_id = node_id
        self.widget_index = widget_index
        raw = _lookup_widget_value(widget_values, widget_index, self.name)
        if raw is not _UNSET:
            self._value = raw

    @property
    def is_set(self) -> bool:
        return self._value is not _UNSET

    def get_value(self) -> Any:
        if self._value is _UNSET:
            return self.default
        return self._value

    def set_value(self, value: Any) -> None:
        coerced = self._coerce(value)
        self._value = coerced
        for secondary in self.secondaries:
            secondary.set_value(coerced)

    def attach_secondary_property(self, prop: "Property") -> None:
        self.secondaries.append(prop)

    def _coerce(self, value: Any) -> Any:
        return value

    def _check_range(self, value: float) -> None:
        minimum = self.config.get("min")
        maximum = self.config.get("max")
        if minimum is not None and value < minimum:
            raise PropertyValueError(self.name, f"{value} is below minimum {minimum}")
        if maximum is not None and value > maximum:
            raise PropertyValueError(self.name, f"{value} is above maximum {maximum}")

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(name={self.name!r}, value={self.get_value()!r}, "
            f"node_id={self.node_id}, widget_index={self.widget_index})"
        )


class StringProperty(Property):
    kind = PropertyKind.STRING

    def __init__(self, name: str, config: dict[str, Any] | None = None, optional: bool = False):
        config = config or {}
        super().__init__(name, str(config.get("default", "")), config, optional)

    @property
    def multiline(self) -> bool:
        return bool(self.config.get("multiline", False))

    def _coerce(self, value: Any) -> str:
        if value is None:
            raise PropertyValueError(self.name, "value cannot be None")
        return str(value)


class IntProperty(Property):
    kind = PropertyKind.INT

    def __init__(self, name: str, config: dict[str, Any] | None = None, optional: bool = False):
        config = config or {}
        super().__init__(name, int(config.get("default", 0)), config, optional)

    @property
    def control_after_generate(self) -> bool:
        return name_has_control_widget(self.name, self.config)

    @property
    def widget_count(self) -> int:
        return 2 if self.control_after_generate else 1

    def _coerce(self, value: Any) -> int:
        if isinstance(value, bool):
            result = int(value)
        elif isinstance(value, int):
            result = value
        elif isinstance(value, float):
            if not value.is_integer():
                raise PropertyValueError(self.name, f"{value} is not an integer")
            result = int(value)
        elif isinstance(value, str):
            try:
                result = int(value.strip())
            except ValueError as e:
                raise PropertyValueError(self.name, f"cannot convert {value!r} to INT") from e
        else:
            raise PropertyValueError(self.name, f"cannot convert {type(value).__name__} to INT")
        self._check_range(result)
        return result


class FloatProperty(Property):
    kind = PropertyKind.FLOAT

    def __init__(self, name: str, config: dict[str, Any] | None = None, optional: bool = False):
        config = config or {}
        super().__init__(name, float(config.get("default", 0.0)), config, optional)

    def _coerce(self, value: Any) -> float:
        if isinstance(value, bool) or value is None:
            raise PropertyValueError(self.name, f"cannot convert {value!r} to FLOAT")
        try:
            result = float(value.strip() if isinstance(value, str) else value)
        except (TypeError, ValueError) as e:
            raise PropertyValueError(self.name, f"cannot convert {value!r} to FLOAT") from e
        self._check_range(result)
        return result


class BoolProperty(Property):
    kind = PropertyKind.BOOLEAN

    def __init__(self, name: str, config: dict[str, Any] | None = None, optional: bool = False):
        config = config or {}
        super().__init__(name, bool(config.get("default", False)), config, optional)

    def _coerce(self, value: Any) -> bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, int) and value in (0, 1):
            return bool(value)
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in _TRUE_STRINGS:
                return True
            if lowered in _FALSE_STRINGS:
                return False
        raise PropertyValueError(self.name, f"cannot convert {value!r} to BOOLEAN")


class ComboProperty(Property):
    kind = PropertyKind.COMBO

    def __init__(
        self,
        name: str,
        choices: list[Any] | None = None,
        config: dict[str, Any] | None = None,
        optional: bool = False,
    ):
        config = config or {}
        self.choices: list[Any] = list(choices or [])
        default = config.get("default", self.choices[0] if self.choices else None)
        super().__init__(name, default, config, optional)

    @property
    def upload_flag(self) -> str | None:
        for flag in UPLOAD_FLAGS:
            if self.config.get(flag):
                return flag
        return None

    def add_choice(self, choice: Any) -> None:
        if choice not in self.choices:
            self.choices.append(choice)

    def _coerce(self, value: Any) -> Any:
        if not self.choices or value in self.choices:
            return value
        # Values coming from text sources still match string choices
        if str(value) in self.choices:
            return str(value)
        raise PropertyValueError(self.name, f"{value!r} is not one of {self.choices}")


class FileUploadProperty(Property):
    """Front-end "choose file to upload" widget pointing at a COMBO property."""

    kind = PropertyKind.FILE_UPLOAD
    serializable = False

    def __init__(self, name: str, target: ComboProperty, widget_index: int | None = None):
        super().__init__(name)
        self.target = target
        self.widget_index = widget_index
        self.node_id = target.node_id

    def get_value(self) -> Any:
        return self.target.get_value()

    def set_value(self, value: Any) -> None:
        filename = str(value)
        self.target.add_choice(filename)
        self.target.set_value(filename)


class UnknownProperty(Property):
    """Widget of a type this client does not model. Stores values verbatim."""

    kind = PropertyKind.UNKNOWN

    def __init__(self, name: str, type_name: str, config: dict[str, Any] | None = None, optional: bool = False):
        config = config or {}
        super().__init__(name, config.get("default"), config, optional)
        self.type_name = type_name

    @property
    def type_tag(self) -> str:
        return self.type_name


def name_has_control_widget(name: str, config: dict[str, Any]) -> bool:
    if "control_after_generate" in config:
        return bool(config["control_after_generate"])
    return name in SEED_WIDGET_NAMES


def property_from_input_spec(name: str, spec: InputSpec, optional: bool = False) -> Property | None:
    """Build the prototype property for one catalog input, or None for link-only inputs."""
    if not spec:
        return None
    type_spec = spec[0]
    config: dict[str, Any] = spec[1] if len(spec) > 1 and isinstance(spec[1], dict) else {}
    if config.get("forceInput"):
        return None

    if isinstance(type_spec, list):
        return ComboProperty(name, type_spec, config, optional)
    if type_spec == "COMBO":
        return ComboProperty(name, config.get("options", []), config, optional)
    if type_spec == "INT":
        return IntProperty(name, config, optional)
    if type_spec == "FLOAT":
        return FloatProperty(name, config, optional)
    if type_spec == "STRING":
        return StringProperty(name, config, optional)
    if type_spec == "BOOLEAN":
        return BoolProperty(name, config, optional)
    if isinstance(type_spec, str) and "default" in config:
        logger.debug(f"UNKNOWN property type {type_spec} in settable field {name}")
        return UnknownProperty(name, type_spec, config, optional)
    return None


def _duplicate_value_property(prop: Property) -> Property:
    np = copy.copy(prop)
    np.config = copy.deepcopy(prop.config)
    np.secondaries = []
    np._value = copy.deepcopy(prop._value)
    if isinstance(prop, ComboProperty):
        np.choices = list(prop.choices)
    return np


def _skip_file_upload(prop: Property) -> None:
    # a chooser only points at its combo, which carries the value
    logger.debug(f"Not duplicating file upload property {prop.name}")
    return None


_DUPLICATORS: dict[PropertyKind, Callable[[Property], Property | None]] = {
    PropertyKind.STRING: _duplicate_value_property,
    PropertyKind.FLOAT: _duplicate_value_property,
    PropertyKind.INT: _duplicate_value_property,
    PropertyKind.BOOLEAN: _duplicate_value_property,
    PropertyKind.COMBO: _duplicate_value_property,
    PropertyKind.UNKNOWN: _duplicate_value_property,
    PropertyKind.FILE_UPLOAD: _skip_file_upload,
}


def duplicate_property(prop: Property) -> Property | None:
    """Independent copy of a value property with an empty secondary list.

    Returns None for file upload choosers, which only point at another
    property. Any other unmapped kind is logged as an error.
    """
    duplicator = _DUPLICATORS.get(prop.kind)
    if duplicator is None:
        logger.error(f"Cannot duplicate property {prop.name} of kind {prop.kind.value}")
        return None
    return duplicator(prop)


__all__ = [
    "PropertyKind",
    "Property",
    "StringProperty",
    "IntProperty",
    "FloatProperty",
    "BoolProperty",
    "ComboProperty",
    "FileUploadProperty",
    "UnknownProperty",
    "property_from_input_spec",
    "duplicate_property",
    "name_has_control_widget",
]
