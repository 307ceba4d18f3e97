import pytest

from data_models import ToolDescriptor
from tool_registry import ToolRegistry, build_registry


def test_full_catalog_order_and_names():
    registry = build_registry(enable_applescript=True, enable_keyboard=True, enable_mouse=True)

    assert registry.names() == [
        "get_current_state",
        "run_applescript",
        "open_application",
        "get_system_info",
        "type_text",
        "key_press",
        "select_text",
        "mouse_click",
        "mouse_move",
    ]


@pytest.mark.parametrize(
    "flags, present, absent",
    [
        ((False, True, True), {"type_text", "mouse_click"}, {"run_applescript", "open_application"}),
        ((True, False, True), {"open_application", "mouse_move"}, {"type_text", "key_press", "select_text"}),
        ((True, True, False), {"key_press"}, {"mouse_click", "mouse_move"}),
        ((False, False, False), {"get_current_state"}, {"run_applescript", "type_text", "mouse_click"}),
    ],
)
def test_feature_flags_select_tool_groups(flags, present, absent):
    registry = build_registry(*flags)

    assert present <= set(registry.names())
    assert not (absent & set(registry.names()))


def test_descriptor_wire_shape_matches_protocol():
    registry = build_registry(True, True, True)

    wire = registry.get("mouse_click").to_wire()

    assert wire["parameters"]["type"] == "object"
    assert wire["parameters"]["required"] == ["x", "y"]
    assert wire["parameters"]["properties"]["button"] == {
        "type": "string",
        "description": "Mouse button to click",
        "enum": ["left", "right", "middle"],
        "default": "left",
    }
    # Optional schema keys are omitted rather than sent as null.
    assert "enum" not in wire["parameters"]["properties"]["x"]


def test_key_press_modifier_enum():
    spec = build_registry(True, True, True).get("key_press").parameters.properties["modifier"]

    assert spec.enum == ["", "command", "control", "shift", "alt"]
    assert spec.default == ""


def test_registry_lookup_and_membership():
    registry = build_registry(True, True, True)

    assert "type_text" in registry
    assert "delete_everything" not in registry
    assert registry.get("delete_everything") is None
    assert len(registry) == len(list(registry))


def test_duplicate_names_are_rejected():
    tool = ToolDescriptor(name="dup", description="first")

    with pytest.raises(ValueError):
        ToolRegistry((tool, ToolDescriptor(name="dup", description="second")))


def test_descriptors_are_immutable():
    tool = build_registry(True, True, True).get("type_text")

    with pytest.raises(Exception):
        tool.name = "something_else"
