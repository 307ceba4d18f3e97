"""
Declares the fixed catalog of automation tools.

The catalog is assembled once from the feature flags and is read-only
afterwards. The backend uses it to decide what it may run; the catalog is
also what the backend announces to the orchestrator in its server_info.
"""
from typing import Iterator, Optional

from config import ENABLE_APPLESCRIPT, ENABLE_KEYBOARD_CONTROL, ENABLE_MOUSE_CONTROL
from data_models import ParameterSpec, ToolDescriptor, ToolParameters


def _tool(name: str, description: str, required: tuple[str, ...] = (), **properties: ParameterSpec) -> ToolDescriptor:
    return ToolDescriptor(
        name=name,
        description=description,
        parameters=ToolParameters(properties=properties, required=list(required)),
    )


STATE_TOOLS = (
    _tool("get_current_state", "Get the active application, cursor position, last operation and window positions"),
)

APPLESCRIPT_TOOLS = (
    _tool(
        "run_applescript",
        "Execute an AppleScript command",
        ("script",),
        script=ParameterSpec(type="string", description="The AppleScript code to execute"),
    ),
    _tool(
        "open_application",
        "Open a macOS application and wait until it is running and frontmost",
        ("app_name",),
        app_name=ParameterSpec(type="string", description="Name of the application to open"),
    ),
    _tool("get_system_info", "Get macOS system information"),
)

KEYBOARD_TOOLS = (
    _tool(
        "type_text",
        "Type text via keyboard into the focused window",
        ("text",),
        text=ParameterSpec(type="string", description="Text to type"),
    ),
    _tool(
        "key_press",
        "Press a keyboard key",
        ("key",),
        key=ParameterSpec(type="string", description='Key to press (e.g., "enter", "escape", "f1")'),
        modifier=ParameterSpec(
            type="string",
            description='Modifier key (e.g., "command", "control", "shift", "alt")',
            enum=["", "command", "control", "shift", "alt"],
            default="",
        ),
    ),
    _tool(
        "select_text",
        "Select text in the active application by word, paragraph or everything",
        ("mode",),
        mode=ParameterSpec(type="string", description="What to select", enum=["word", "paragraph", "all"], default="word"),
        x=ParameterSpec(type="number", description="Optional X coordinate of the text to select"),
        y=ParameterSpec(type="number", description="Optional Y coordinate of the text to select"),
    ),
)

MOUSE_TOOLS = (
    _tool(
        "mouse_click",
        "Perform a mouse click",
        ("x", "y"),
        x=ParameterSpec(type="number", description="X coordinate"),
        y=ParameterSpec(type="number", description="Y coordinate"),
        button=ParameterSpec(
            type="string", description="Mouse button to click", enum=["left", "right", "middle"], default="left"
        ),
    ),
    _tool(
        "mouse_move",
        "Move the mouse to a position",
        ("x", "y"),
        x=ParameterSpec(type="number", description="X coordinate"),
        y=ParameterSpec(type="number", description="Y coordinate"),
    ),
)


class ToolRegistry:
    """An ordered, immutable collection of tool descriptors keyed by name."""

    def __init__(self, tools: tuple[ToolDescriptor, ...]):
        names = [t.name for t in tools]
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate tool names in registry: {names}")
        self._tools = tuple(tools)
        self._by_name = {t.name: t for t in self._tools}

    def list_tools(self) -> tuple[ToolDescriptor, ...]:
        return self._tools

    def names(self) -> list[str]:
        return [t.name for t in self._tools]

    def get(self, name: str) -> Optional[ToolDescriptor]:
        return self._by_name.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def __iter__(self) -> Iterator[ToolDescriptor]:
        return iter(self._tools)

    def __len__(self) -> int:
        return len(self._tools)


def build_registry(
    enable_applescript: bool = ENABLE_APPLESCRIPT,
    enable_keyboard: bool = ENABLE_KEYBOARD_CONTROL,
    enable_mouse: bool = ENABLE_MOUSE_CONTROL,
) -> ToolRegistry:
    """Builds the catalog for the given feature flags. State inspection is always available."""
    tools = list(STATE_TOOLS)
    if enable_applescript:
        tools.extend(APPLESCRIPT_TOOLS)
    if enable_keyboard:
        tools.extend(KEYBOARD_TOOLS)
    if enable_mouse:
        tools.extend(MOUSE_TOOLS)
    return ToolRegistry(tuple(tools))
