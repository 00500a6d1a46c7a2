import logging
from collections.abc import Iterator
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)


class Severity(str, Enum):
    WARNING = "warning"
    ERROR = "error"


class DiagnosticCode(str, Enum):
    MISSING_DEFINITION = "missing_definition"
    WIDGET_COUNT_MISMATCH = "widget_count_mismatch"
    MISSING_UPLOAD_TARGET = "missing_upload_target"
    UNRESOLVED_LINK = "unresolved_link"
    UNBOUND_SLOT_PROPERTY = "unbound_slot_property"
    INCOMPATIBLE_PRIMITIVE_TARGET = "incompatible_primitive_target"
    UNDUPLICABLE_PROPERTY = "unduplicable_property"
    INVALID_PROPERTY_VALUE = "invalid_property_value"
    BROKEN_VIRTUAL_CHAIN = "broken_virtual_chain"
    MUTED_INPUT_ORIGIN = "muted_input_origin"


@dataclass(frozen=True)
class Diagnostic:
    code: DiagnosticCode
    message: str
    node_id: int | None = None
    severity: Severity = Severity.WARNING

    def __str__(self) -> str:
        where = f"node {self.node_id}: " if self.node_id is not None else ""
        return f"[{self.severity.value}] {self.code.value}: {where}{self.message}"


class Diagnostics:
    """Non-fatal findings accumulated during a single load or compile call."""

    def __init__(self) -> None:
        self._entries: list[Diagnostic] = []

    def add(
        self,
        code: DiagnosticCode,
        message: str,
        node_id: int | None = None,
        severity: Severity = Severity.WARNING,
    ) -> Diagnostic:
        entry = Diagnostic(code, message, node_id, severity)
        self._entries.append(entry)
        logger.debug(str(entry))
        return entry

    def extend(self, other: "Diagnostics") -> None:
        self._entries.extend(other)

    def with_code(self, code: DiagnosticCode) -> list[Diagnostic]:
        return [d for d in self._entries if d.code == code]

    def for_node(self, node_id: int) -> list[Diagnostic]:
        return [d for d in self._entries if d.node_id == node_id]

    @property
    def has_errors(self) -> bool:
        return any(d.severity == Severity.ERROR for d in self._entries)

    def __iter__(self) -> Iterator[Diagnostic]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __bool__(self) -> bool:
        return bool(self._entries)

    def __repr__(self) -> str:
        return f"Diagnostics({self._entries!r})"
