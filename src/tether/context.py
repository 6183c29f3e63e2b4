"""Thread context: the messages a mention missed since the bot last replied."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)

#: Maximum gap messages injected into a prompt.
MAX_GAP_MESSAGES = 50

CONTEXT_HEADER = "[Thread context — messages since my last reply]"


class ThreadMessage(BaseModel):
    """One message of a conversation thread, as the chat surface reports it."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    ts: str
    user: str | None = None
    text: str | None = None
    bot_id: str | None = None


def extract_gap_messages(
    messages: Sequence[ThreadMessage],
    current_ts: str,
    bot_user_id: str | None,
    limit: int = MAX_GAP_MESSAGES,
) -> list[ThreadMessage]:
    """Walk back from the newest message to the bot's last reply.

    The current message is excluded. Returns at most *limit* messages,
    oldest first.
    """
    gap: list[ThreadMessage] = []
    for message in reversed([m for m in messages if m.ts != current_ts]):
        if message.bot_id or (bot_user_id and message.user == bot_user_id):
            break
        gap.append(message)
        if len(gap) >= limit:
            break
    gap.reverse()
    return gap


def format_gap_messages(gap: Sequence[ThreadMessage]) -> str:
    if not gap:
        return ""
    lines = "\n".join(f"<@{m.user or 'unknown'}>: {m.text or ''}" for m in gap)
    return f"{CONTEXT_HEADER}\n{lines}\n\n---\n"


def build_prompt(text: str, gap: Sequence[ThreadMessage] = ()) -> str:
    """Prefix the user's text with any missed thread context."""
    context = format_gap_messages(gap)
    if context:
        logger.debug("thread context injected (%d chars)", len(context))
    return f"{context}{text}"
