import pytest

from core.diagnostics import DiagnosticCode, Diagnostics, Severity
from core.graph import Graph
from core.properties import FileUploadProperty
from core.property_binding import UPLOAD_PROPERTY_NAME, bind_node_properties


def _bind(nodes, node_objects, links=()):
    graph = Graph.from_document({"nodes": nodes, "links": list(links)})
    diagnostics = Diagnostics()
    primitives = bind_node_properties(graph, node_objects, diagnostics)
    return graph, primitives, diagnostics


@pytest.fixture
def load_image_node():
    return {
        "id": 1,
        "type": "LoadImage",
        "outputs": [{"name": "IMAGE", "type": "IMAGE", "links": []}],
        "widgets_values": ["cat.png", "image"],
    }


class TestBindNodeProperties:
    """Tests for binding catalog properties onto loaded nodes."""

    def test_workflow_binds_cleanly(self, workflow_graph):
        assert len(workflow_graph.diagnostics) == 0
        sampler = workflow_graph.get_node_by_id(3)

        assert sampler.display_name == "KSampler"
        assert sampler.description == "Denoises a latent image."
        assert sampler.get_property_with_name("seed").get_value() == 156680208700286
        assert sampler.get_property_with_name("steps").get_value() == 20
        assert sampler.get_property_with_name("scheduler").get_value() == "normal"
        assert sampler.get_property_with_name("denoise").widget_index == 6

    def test_properties_are_owned_by_node(self, workflow_graph, node_objects):
        positive = workflow_graph.get_node_by_id(6).get_property_with_name("text")
        negative = workflow_graph.get_node_by_id(7).get_property_with_name("text")
        prototype = node_objects.get_node_object_by_name("CLIPTextEncode").get_property_with_name("text")

        assert positive is not negative
        assert positive is not prototype
        assert positive.node_id == 6
        assert negative.get_value() == "text, watermark"
        assert not prototype.is_set

    def test_widget_inputs_get_slot_property(self, workflow_graph):
        sampler = workflow_graph.get_node_by_id(3)

        seed_slot = sampler.get_input_with_name("seed")
        assert seed_slot.property is sampler.get_property_with_name("seed")
        assert sampler.get_input_with_name("model").property is None

    def test_returns_primitives(self, node_objects):
        _, primitives, diagnostics = _bind(
            [
                {"id": 1, "type": "PrimitiveNode", "widgets_values": [1, "fixed"]},
                {"id": 2, "type": "Reroute"},
                {"id": 3, "type": "Note", "widgets_values": ["hello"]},
                {"id": 4, "type": "MarkdownNote", "widgets_values": ["# hi"]},
            ],
            node_objects,
        )

        assert [p.id for p in primitives] == [1]
        assert len(diagnostics) == 0

    def test_missing_definition_is_an_error(self, node_objects):
        graph, _, diagnostics = _bind(
            [{"id": 1, "type": "SomeCustomNode", "widgets_values": [3]}],
            node_objects,
        )

        (entry,) = diagnostics.with_code(DiagnosticCode.MISSING_DEFINITION)
        assert entry.node_id == 1
        assert entry.severity == Severity.ERROR
        assert graph.get_node_by_id(1).properties == {}

    def test_widget_count_mismatch(self, node_objects):
        graph, _, diagnostics = _bind(
            [{"id": 1, "type": "EmptyLatentImage", "widgets_values": [640, 480]}],
            node_objects,
        )

        (entry,) = diagnostics.with_code(DiagnosticCode.WIDGET_COUNT_MISMATCH)
        assert "2 widget values, 3 expected" in entry.message
        node = graph.get_node_by_id(1)
        assert node.get_property_with_name("width").get_value() == 640
        assert node.get_property_with_name("batch_size").get_value() == 1

    def test_dict_widget_values(self, node_objects):
        graph, _, diagnostics = _bind(
            [{"id": 1, "type": "EmptyLatentImage", "widgets_values": {"width": 640, "height": 480, "batch_size": 2}}],
            node_objects,
        )

        node = graph.get_node_by_id(1)
        assert node.get_property_with_name("height").get_value() == 480
        assert node.get_property_with_name("batch_size").get_value() == 2
        assert len(diagnostics) == 0

    def test_upload_widget_is_created(self, node_objects, load_image_node):
        graph, _, diagnostics = _bind([load_image_node], node_objects)

        node = graph.get_node_by_id(1)
        upload = node.get_property_with_name(UPLOAD_PROPERTY_NAME)
        assert isinstance(upload, FileUploadProperty)
        assert upload.widget_index == 1
        assert upload.target is node.get_property_with_name("image")
        assert len(diagnostics) == 0

    def test_upload_widget_sets_image(self, node_objects, load_image_node):
        graph, _, _ = _bind([load_image_node], node_objects)
        node = graph.get_node_by_id(1)

        node.get_property_with_name(UPLOAD_PROPERTY_NAME).set_value("uploaded.png")

        assert node.get_property_with_name("image").get_value() == "uploaded.png"

    def test_upload_target_missing(self, node_objects, load_image_node):
        node_objects.get_node_object_by_name("LoadImage").upload_target = "nope"

        _, _, diagnostics = _bind([load_image_node], node_objects)

        assert len(diagnostics.with_code(DiagnosticCode.MISSING_UPLOAD_TARGET)) == 1

    def test_rebinding_resets_properties(self, workflow_graph, node_objects):
        sampler = workflow_graph.get_node_by_id(3)
        sampler.get_property_with_name("steps").set_value(50)

        bind_node_properties(workflow_graph, node_objects, Diagnostics())

        assert sampler.get_property_with_name("steps").get_value() == 20
