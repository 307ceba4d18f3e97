"""
Defines the core data structures for the application using Pydantic.

These models are shared by the automation backend, the command channel, the
planner and the orchestrator. Models that travel over the command channel keep
the camelCase keys of the wire protocol as aliases, while Python code uses the
snake_case attribute names.
"""
import math
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator


class ParameterSpec(BaseModel):
    """Describes a single tool parameter, in the JSON-schema-like form the model sees."""

    model_config = ConfigDict(frozen=True)

    type: str = Field(..., description="The JSON type of the parameter, e.g. 'string' or 'number'.")
    description: str = Field(default="", description="Human-readable meaning of the parameter.")
    enum: Optional[list[Any]] = Field(default=None, description="Allowed values, if restricted.")
    default: Any = Field(default=None, description="Value used when the parameter is omitted.")


class ToolParameters(BaseModel):
    """The parameter schema of a tool: an object with named properties."""

    model_config = ConfigDict(frozen=True)

    type: Literal["object"] = "object"
    properties: dict[str, ParameterSpec] = Field(default_factory=dict)
    required: list[str] = Field(default_factory=list)


class ToolDescriptor(BaseModel):
    """
    A named, schema-described automation capability.

    Descriptors are built once when the backend starts and never change
    afterwards, so the model is frozen.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Unique tool name the planner must use.")
    description: str = Field(..., description="What the tool does.")
    parameters: ToolParameters = Field(default_factory=ToolParameters)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class CursorPosition(BaseModel):
    x: float = 0
    y: float = 0


class WindowGeometry(BaseModel):
    """The last observed frame of an application's front window."""

    x: float
    y: float
    width: float
    height: float

    def contains(self, px: float, py: float) -> bool:
        return self.x <= px <= self.x + self.width and self.y <= py <= self.y + self.height


class UIElement(BaseModel):
    """An accessibility element reported by the OS with its on-screen frame."""

    role: str
    x: float
    y: float
    width: float
    height: float

    @property
    def center(self) -> tuple[float, float]:
        return self.x + self.width / 2, self.y + self.height / 2

    def distance_to(self, px: float, py: float) -> float:
        """Distance from a point to the element's frame; zero when the point is inside."""
        dx = max(self.x - px, 0.0, px - (self.x + self.width))
        dy = max(self.y - py, 0.0, py - (self.y + self.height))
        return math.hypot(dx, dy)


class OSStateSnapshot(BaseModel):
    """
    The cached view of the desktop the planner uses to ground its prompt.

    Only the automation backend mutates it, either on an explicit refresh or
    as a side effect of running a tool.
    """

    model_config = ConfigDict(populate_by_name=True)

    active_application: Optional[str] = Field(default=None, alias="activeApplication")
    mouse_position: CursorPosition = Field(default_factory=CursorPosition, alias="mousePosition")
    last_operation: Optional[str] = Field(default=None, alias="lastOperation")
    window_positions: dict[str, WindowGeometry] = Field(default_factory=dict, alias="windowPositions")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)

    def active_window(self) -> Optional[WindowGeometry]:
        if not self.active_application:
            return None
        return self.window_positions.get(self.active_application)

    def describe(self) -> str:
        """Renders the snapshot as the plain text block embedded in the system prompt."""
        lines = [
            f"Active application: {self.active_application or 'Unknown'}",
            f"Cursor position: x={self.mouse_position.x:g}, y={self.mouse_position.y:g}",
            f"Last operation: {self.last_operation or 'No previous operation'}",
        ]
        if self.window_positions:
            lines.append("Window positions:")
            for app_name, pos in self.window_positions.items():
                lines.append(f"{app_name}: position ({pos.x:g}, {pos.y:g}), size ({pos.width:g}x{pos.height:g})")
        return "\n".join(lines)


class PlanDecision(BaseModel):
    """
    The planner's parsed choice of tool, parameters and continuation intent.
    """

    model_config = ConfigDict(populate_by_name=True)

    # The tool to run. Absent when the model answered with an error object.
    tool: Optional[str] = None
    params: dict[str, Any] = Field(default_factory=dict)
    explanation: Optional[str] = None
    is_completed: bool = Field(default=False, alias="isCompleted")
    next_step: Optional[str] = Field(default=None, alias="nextStep")
    # The model's own "cannot process this request" message, if it sent one.
    error: Optional[str] = None
    # True when the decision was recovered by regex salvage of a broken reply.
    salvaged: bool = False

    @field_validator("params", mode="before")
    @classmethod
    def _none_params_to_empty(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("is_completed", mode="before")
    @classmethod
    def _only_literal_true(cls, value: Any) -> bool:
        # Only an explicit true ends the chain; anything else means more steps.
        return value is True

    @field_validator("tool", "explanation", "next_step", "error", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        if value is None or isinstance(value, str):
            return value
        return str(value)


class StepRecord(BaseModel):
    """
    One link in the chain of steps taken for a single user instruction.

    A record either describes an executed tool (tool, params, result) or a
    reported termination (failure). The following step, if any, hangs off
    'next', which makes the chain straightforward to flatten into a trace.
    """

    action: Optional[str] = None
    tool: Optional[str] = None
    params: dict[str, Any] = Field(default_factory=dict)
    result: Any = None
    is_completed: bool = False
    failure: Optional[str] = None
    next: Optional["StepRecord"] = None


class ModelConfig(BaseModel):
    """
    Selects the model backend the planner talks to.

    Instances are immutable; switching provider or model means building a new
    config and handing it to the planner in one assignment.
    """

    model_config = ConfigDict(frozen=True)

    provider: str
    model: str
    api_key: SecretStr = Field(default=SecretStr(""))
    base_url: Optional[str] = None

    def public_view(self) -> dict[str, Any]:
        return {"provider": self.provider, "model": self.model}


StepRecord.model_rebuild()
