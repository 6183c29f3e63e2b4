"""Per-tool display helpers: titles, status phrases, and output summaries."""

from __future__ import annotations

import json
import re
from typing import Any
from urllib.parse import urlparse

from tether.stream.events import Source

#: Tool representing delegation of a whole sub-task.
DELEGATION_TOOL = "Task"

#: Tool that asks the user an interactive question.
QUESTION_TOOL = "AskUserQuestion"

#: Tools that switch rendering into plan mode and back.
PLAN_ENTER_TOOL = "EnterPlanMode"
PLAN_EXIT_TOOL = "ExitPlanMode"

#: Internal/meta tools tracked but never shown as task cards.
HIDDEN_TOOLS = frozenset({PLAN_ENTER_TOOL, PLAN_EXIT_TOOL})

TOOL_STATUS_MAP: dict[str, str] = {
    "Read": "is reading files...",
    "Write": "is writing code...",
    "Edit": "is editing code...",
    "Bash": "is running commands...",
    "Glob": "is searching files...",
    "Grep": "is searching code...",
    "WebFetch": "is fetching web content...",
    "WebSearch": "is searching the web...",
    "Task": "is running a sub-agent...",
    "EnterPlanMode": "is planning...",
    "ExitPlanMode": "is finalizing the plan...",
    "TaskCreate": "is creating tasks...",
    "TaskUpdate": "is updating tasks...",
    "TodoWrite": "is updating tasks...",
    "NotebookEdit": "is editing a notebook...",
}

#: Max characters of a Bash command shown in a task title.
_TITLE_COMMAND_LEN = 60

#: Max characters of a Bash command shown in a sub-task detail.
_DETAIL_COMMAND_LEN = 40

#: Default max characters of tool output shown on a task card.
MAX_OUTPUT_LEN = 120

#: Max URL sources extracted from a web search result.
_MAX_SEARCH_SOURCES = 4

_MARKDOWN_LINK_RE = re.compile(r"\[([^\]]+)\]\((https?://[^\s)]+)\)")

_ERROR_PREFIX = "Error: "


def status_phrase(tool_name: str) -> str:
    """Return the status-bar phrase for *tool_name*."""
    return TOOL_STATUS_MAP.get(tool_name, f"is using {tool_name}...")


def progress_phrase(tool_name: str) -> str:
    """Return the phrase shown on a sub-task card while it uses *tool_name*."""
    return TOOL_STATUS_MAP.get(tool_name, f"Using {tool_name}...")


def _shorten(text: str, limit: int) -> str:
    if len(text) > limit:
        return text[: limit - 3] + "..."
    return text


def _first_question(tool_input: dict[str, Any]) -> str | None:
    questions = tool_input.get("questions")
    if isinstance(questions, list) and questions:
        first = questions[0]
        if isinstance(first, dict):
            question = first.get("question")
            if isinstance(question, str) and question:
                return question
    return None


def tool_title(tool_name: str, tool_input: dict[str, Any]) -> str:
    """Derive a human-readable task title from a tool's name and input.

    Unknown tools fall back to the raw name.
    """
    try:
        match tool_name:
            case "Read" | "Write" | "Edit":
                return f"{tool_name} {tool_input.get('file_path') or 'file'}"
            case "Bash":
                command = str(tool_input.get("command") or "")
                return f"Run: {_shorten(command, _TITLE_COMMAND_LEN)}"
            case "Glob":
                return f"Search: {tool_input.get('pattern') or 'files'}"
            case "Grep":
                return f"Search: {tool_input.get('pattern') or 'code'}"
            case "Task":
                return f"Sub-agent: {delegation_description(tool_input)}"
            case "AskUserQuestion":
                question = _first_question(tool_input)
                return f"Question: {question}" if question else "Asking a question..."
            case "EnterPlanMode":
                return "Entering plan mode"
            case "ExitPlanMode":
                return "Plan ready"
            case "TaskCreate" | "TodoWrite":
                subject = tool_input.get("subject") or tool_input.get("description")
                return f"Create task: {subject or 'task'}"
            case "TaskUpdate":
                subject = tool_input.get("subject") or tool_input.get("status")
                return f"Update task: {subject or 'task'}"
            case _:
                return tool_name
    except (AttributeError, TypeError):
        return tool_name


def delegation_description(tool_input: dict[str, Any]) -> str:
    """Describe a delegated sub-task from the delegation tool's input."""
    return str(
        tool_input.get("description") or tool_input.get("subagent_type") or "task"
    )


def sub_task_detail(tool_name: str, tool_input: Any) -> str:
    """Describe what a sub-task is doing from its latest tool call."""
    detail = progress_phrase(tool_name)
    if not isinstance(tool_input, dict):
        return detail
    if tool_name == "Read" and tool_input.get("file_path"):
        return f"Reading {str(tool_input['file_path']).split('/')[-1]}"
    if tool_name == "Grep" and tool_input.get("pattern"):
        return f"Searching: {tool_input['pattern']}"
    if tool_name == "Glob" and tool_input.get("pattern"):
        return f"Finding: {tool_input['pattern']}"
    if tool_name == "Bash" and tool_input.get("command"):
        return f"Running: {_shorten(str(tool_input['command']), _DETAIL_COMMAND_LEN)}"
    return detail


def render_question(tool_input: dict[str, Any]) -> str:
    """Render an interactive question and its options as quoted markdown.

    Returns an empty string when there is nothing to show.
    """
    questions = tool_input.get("questions")
    if not isinstance(questions, list):
        return ""
    parts: list[str] = []
    for question in questions:
        if not isinstance(question, dict):
            continue
        if question.get("question"):
            parts.append(f"> *{question['question']}*")
        options = question.get("options")
        if not isinstance(options, list):
            continue
        for option in options:
            if not isinstance(option, dict):
                continue
            desc = f" — {option['description']}" if option.get("description") else ""
            parts.append(f">  • {option.get('label', '')}{desc}")
    if not parts:
        return ""
    return "\n" + "\n".join(parts) + "\n\n"


def extract_tool_output(
    result_summary: Any,
    content_block: Any,
    max_len: int = MAX_OUTPUT_LEN,
) -> str | None:
    """Extract a brief output summary from a tool result.

    Prefers the top-level result summary; falls back to the result
    block's content. Returns ``None`` when there is nothing to show.
    """
    text: str | None = None
    if isinstance(result_summary, str) and result_summary:
        text = result_summary
    elif isinstance(result_summary, dict):
        message = result_summary.get("message")
        if isinstance(message, str) and message:
            text = message

    if not text and isinstance(content_block, dict) and content_block.get("content"):
        content = content_block["content"]
        raw = content if isinstance(content, str) else json.dumps(content)
        lines = raw.split("\n")
        if len(lines) > 3:
            text = f"{len(lines)} lines"
        elif 0 < len(raw) <= max_len:
            text = raw

    if not text:
        return None
    if text.startswith(_ERROR_PREFIX):
        text = text[len(_ERROR_PREFIX):]
    return _shorten(text, max_len)


def fetch_sources(tool_input: dict[str, Any]) -> tuple[Source, ...]:
    """Source for a web fetch: the fetched URL labelled by its hostname."""
    url = tool_input.get("url")
    if not isinstance(url, str) or not url:
        return ()
    hostname = urlparse(url).hostname
    return (Source(url=url, text=hostname or url),)


def search_sources(content_block: Any) -> tuple[Source, ...]:
    """Sources for a web search: markdown links found in the result text."""
    if not isinstance(content_block, dict):
        return ()
    raw = content_block.get("content")
    if not isinstance(raw, str):
        return ()
    sources: list[Source] = []
    for match in _MARKDOWN_LINK_RE.finditer(raw):
        sources.append(Source(url=match.group(2), text=match.group(1)))
        if len(sources) >= _MAX_SEARCH_SOURCES:
            break
    return tuple(sources)
