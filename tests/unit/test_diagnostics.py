import logging

from core.diagnostics import Diagnostic, DiagnosticCode, Diagnostics, Severity


def test_add_and_filter():
    diagnostics = Diagnostics()
    diagnostics.add(DiagnosticCode.MISSING_DEFINITION, "no definition", node_id=3, severity=Severity.ERROR)
    diagnostics.add(DiagnosticCode.UNRESOLVED_LINK, "link 4 missing", node_id=5)

    assert len(diagnostics) == 2
    assert bool(diagnostics)
    assert [d.node_id for d in diagnostics.with_code(DiagnosticCode.UNRESOLVED_LINK)] == [5]
    assert [d.code for d in diagnostics.for_node(3)] == [DiagnosticCode.MISSING_DEFINITION]
    assert diagnostics.has_errors


def test_empty():
    diagnostics = Diagnostics()

    assert not diagnostics
    assert not diagnostics.has_errors
    assert list(diagnostics) == []


def test_warnings_are_not_errors():
    diagnostics = Diagnostics()
    diagnostics.add(DiagnosticCode.WIDGET_COUNT_MISMATCH, "size mismatch")

    assert not diagnostics.has_errors


def test_extend_keeps_order():
    first = Diagnostics()
    first.add(DiagnosticCode.UNRESOLVED_LINK, "a")
    second = Diagnostics()
    second.add(DiagnosticCode.BROKEN_VIRTUAL_CHAIN, "b")

    first.extend(second)

    assert [d.message for d in first] == ["a", "b"]


def test_str():
    entry = Diagnostic(DiagnosticCode.MUTED_INPUT_ORIGIN, "fed by muted node 2", node_id=7)

    assert str(entry) == "[warning] muted_input_origin: node 7: fed by muted node 2"
    assert str(Diagnostic(DiagnosticCode.UNRESOLVED_LINK, "x", severity=Severity.ERROR)) == "[error] unresolved_link: x"


def test_entries_are_logged_at_debug(caplog):
    caplog.set_level(logging.DEBUG, logger="core.diagnostics")

    Diagnostics().add(DiagnosticCode.UNRESOLVED_LINK, "link 9 missing", node_id=1)

    assert "link 9 missing" in caplog.text
    assert caplog.records[-1].levelno == logging.DEBUG
