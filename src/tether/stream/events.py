"""Pydantic v2 models for normalized lifecycle events.

The parser turns the generator's raw stream-json feed into these value
objects; the sink and orchestrator only ever see this closed union.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag

TaskStatus = Literal["in_progress", "complete", "error"]


class _EventBase(BaseModel):
    """Common configuration shared by every lifecycle event."""

    model_config = ConfigDict(frozen=True, extra="forbid")


class Source(BaseModel):
    """A URL reference attached to a tool task card."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["url"] = "url"
    url: str = Field(description="Referenced URL")
    text: str = Field(description="Display text (hostname or link title)")


class TurnMetrics(BaseModel):
    """Aggregate metrics carried by the generator's final result event."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    success: bool = Field(description="False when the generator flagged an error")
    cost_usd: float = Field(default=0.0, description="Total cost in USD")
    duration_ms: int = Field(default=0, description="Generator-reported duration")
    num_turns: int = Field(default=0, description="Model turns within this run")
    model: str | None = Field(default=None, description="Model identifier")
    input_tokens: int = Field(default=0, description="Prompt tokens")
    output_tokens: int = Field(default=0, description="Completion tokens")
    session_id: str | None = Field(default=None, description="Session token echoed")
    subtype: str | None = Field(default=None, description="Result subtype")
    result: str | None = Field(default=None, description="Final result text")


class SessionIdentified(_EventBase):
    """The generator reported its authoritative session token."""

    type: Literal["session_identified"] = "session_identified"
    token: str = Field(description="Resumable session token")


class ThinkingResolved(_EventBase):
    """Generation actually started; the initial thinking indicator clears."""

    type: Literal["thinking_resolved"] = "thinking_resolved"


class StatusChanged(_EventBase):
    """User-facing status phrase changed (e.g. ``is reading files...``)."""

    type: Literal["status_changed"] = "status_changed"
    status: str = Field(description="Status phrase")


class PlanModeEntered(_EventBase):
    """The generator entered plan mode; rendering switches to plan display."""

    type: Literal["plan_mode_entered"] = "plan_mode_entered"
    title: str = Field(description="Initial plan title")


class PlanUpdated(_EventBase):
    """The plan title changed."""

    type: Literal["plan_updated"] = "plan_updated"
    title: str = Field(description="New plan title")


class TextDelta(_EventBase):
    """Visible text appended to the answer."""

    type: Literal["text_delta"] = "text_delta"
    text: str = Field(description="Text fragment")


class ToolStarted(_EventBase):
    """A tool invocation block opened."""

    type: Literal["tool_started"] = "tool_started"
    index: int = Field(description="Stream-assigned content block index")
    task_id: str = Field(description="Internally assigned task id")
    name: str = Field(description="Declared tool name")
    tool_use_id: str = Field(default="", description="External correlation id")
    hidden: bool = Field(default=False, description="Internal/meta tool")
    status_phrase: str = Field(description="User-facing status phrase")


class ToolInputFragment(_EventBase):
    """A fragment of a tool's partial JSON input (assembled, not rendered)."""

    type: Literal["tool_input_fragment"] = "tool_input_fragment"
    index: int = Field(description="Content block index")
    fragment: str = Field(description="Raw partial JSON")


class ToolFinished(_EventBase):
    """A tool invocation completed, or its later result updated the task.

    ``index`` is ``None`` when the event comes from a result correlated by
    tool-use id rather than from the block's own stop event.
    """

    type: Literal["tool_finished"] = "tool_finished"
    index: int | None = Field(default=None, description="Content block index")
    task_id: str = Field(description="Task id assigned at start")
    name: str = Field(description="Tool name")
    title: str = Field(description="Human-readable title")
    status: Literal["complete", "error"] = Field(default="complete")
    input: dict[str, Any] = Field(default_factory=dict, description="Parsed input")
    output: str | None = Field(default=None, description="Short output summary")
    sources: tuple[Source, ...] = Field(default=(), description="URL sources")
    hidden: bool = Field(default=False, description="Internal/meta tool")


class QuestionAsked(_EventBase):
    """An interactive question the generator wanted to ask, as markdown."""

    type: Literal["question_asked"] = "question_asked"
    markdown: str = Field(description="Rendered question and options")


class SubTaskStarted(_EventBase):
    """A delegated sub-task was registered."""

    type: Literal["sub_task_started"] = "sub_task_started"
    parent_id: str = Field(description="Tool-use id of the delegating call")
    task_id: str = Field(description="Task id shared with the delegating call")
    description: str = Field(description="Human-readable description")


class SubTaskProgress(_EventBase):
    """A delegated sub-task reported what it is doing."""

    type: Literal["sub_task_progress"] = "sub_task_progress"
    parent_id: str = Field(description="Tool-use id of the delegating call")
    task_id: str = Field(description="Task id of the sub-task")
    description: str = Field(description="Human-readable description")
    detail: str = Field(description="Progress detail")


class SubTaskFinished(_EventBase):
    """A delegated sub-task completed."""

    type: Literal["sub_task_finished"] = "sub_task_finished"
    parent_id: str = Field(description="Tool-use id of the delegating call")
    task_id: str = Field(description="Task id of the sub-task")
    description: str = Field(description="Human-readable description")
    output: str | None = Field(default=None, description="Short output summary")


class TurnResult(_EventBase):
    """The generator's final result event for the turn."""

    type: Literal["turn_result"] = "turn_result"
    metrics: TurnMetrics = Field(description="Aggregate metrics")


class UnknownEvent(_EventBase):
    """A well-formed line whose top-level type is not recognized."""

    type: Literal["unknown"] = "unknown"
    raw_type: str = Field(description="The unrecognized ``type`` value")


def _event_discriminator(v: Any) -> str:
    """Extract the discriminator value from raw data or a model instance."""
    if isinstance(v, dict):
        return str(v.get("type", ""))
    return str(getattr(v, "type", ""))


LifecycleEvent = Annotated[
    Annotated[SessionIdentified, Tag("session_identified")]
    | Annotated[ThinkingResolved, Tag("thinking_resolved")]
    | Annotated[StatusChanged, Tag("status_changed")]
    | Annotated[PlanModeEntered, Tag("plan_mode_entered")]
    | Annotated[PlanUpdated, Tag("plan_updated")]
    | Annotated[TextDelta, Tag("text_delta")]
    | Annotated[ToolStarted, Tag("tool_started")]
    | Annotated[ToolInputFragment, Tag("tool_input_fragment")]
    | Annotated[ToolFinished, Tag("tool_finished")]
    | Annotated[QuestionAsked, Tag("question_asked")]
    | Annotated[SubTaskStarted, Tag("sub_task_started")]
    | Annotated[SubTaskProgress, Tag("sub_task_progress")]
    | Annotated[SubTaskFinished, Tag("sub_task_finished")]
    | Annotated[TurnResult, Tag("turn_result")]
    | Annotated[UnknownEvent, Tag("unknown")],
    Discriminator(_event_discriminator),
]
"""Discriminated union of all normalized lifecycle events."""
