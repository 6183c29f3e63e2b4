"""Session registry: single-flight admission and session tokens per thread."""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from tether.constants import PENDING_TOKEN
from tether.store import SessionStore

if TYPE_CHECKING:
    from tether.stream.parser import OpenSubTask, OpenTool, StreamParser
    from tether.supervisor import GenerationProcess

logger = logging.getLogger(__name__)


@dataclass
class GenerationHandle:
    """The one in-flight generation of a thread.

    Created at admission, before the process exists; the process and
    parser are attached once spawned.
    """

    thread_key: str
    started_at: float = field(default_factory=time.monotonic)
    process: GenerationProcess | None = None
    parser: StreamParser | None = None
    cancel_requested: bool = False

    @property
    def accumulated_text(self) -> str:
        return self.parser.accumulated_text if self.parser is not None else ""

    @property
    def open_tools(self) -> Mapping[int, OpenTool]:
        return self.parser.open_tools if self.parser is not None else {}

    @property
    def open_sub_tasks(self) -> Mapping[str, OpenSubTask]:
        return self.parser.open_sub_tasks if self.parser is not None else {}

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started_at

    def attach(self, process: GenerationProcess) -> None:
        """Bind the spawned process; a cancel requested earlier fires now."""
        self.process = process
        if self.cancel_requested:
            process.cancel()

    def cancel(self) -> None:
        """Request termination. The slot stays held until the process exits."""
        self.cancel_requested = True
        if self.process is not None:
            self.process.cancel()


@dataclass(frozen=True)
class AdmissionResult:
    accepted: bool
    handle: GenerationHandle


@dataclass(frozen=True)
class TokenResolution:
    token: str
    is_resume: bool


class SessionRegistry:
    """Per-thread single-flight gate plus persistent token and directory state.

    Every method is synchronous, so a check-then-insert can never be
    interleaved with another coroutine on the event loop.
    """

    def __init__(self, store: SessionStore) -> None:
        self._store = store
        self._active: dict[str, GenerationHandle] = {}

    @property
    def store(self) -> SessionStore:
        return self._store

    # ------------------------------------------------------------------ #
    # Single-flight admission
    # ------------------------------------------------------------------ #

    def admit(self, thread_key: str) -> AdmissionResult:
        """Reserve the thread's slot, or report the generation holding it."""
        existing = self._active.get(thread_key)
        if existing is not None:
            logger.info("%s: rejected, generation already active", thread_key)
            return AdmissionResult(accepted=False, handle=existing)
        handle = GenerationHandle(thread_key=thread_key)
        self._active[thread_key] = handle
        return AdmissionResult(accepted=True, handle=handle)

    def release(self, thread_key: str, handle: GenerationHandle | None = None) -> None:
        """Free the slot. Safe to call more than once.

        With *handle*, only that generation's slot is freed, never a newer
        one admitted after it.
        """
        current = self._active.get(thread_key)
        if current is None or (handle is not None and current is not handle):
            return
        del self._active[thread_key]
        logger.debug("%s: slot released", thread_key)

    def get_handle(self, thread_key: str) -> GenerationHandle | None:
        return self._active.get(thread_key)

    def is_active(self, thread_key: str) -> bool:
        return thread_key in self._active

    def active_keys(self) -> list[str]:
        return list(self._active)

    def cancel(self, thread_key: str) -> bool:
        """Request cancellation of the thread's generation, if any."""
        handle = self._active.get(thread_key)
        if handle is None:
            return False
        logger.info("%s: cancel requested", thread_key)
        handle.cancel()
        return True

    # ------------------------------------------------------------------ #
    # Session tokens
    # ------------------------------------------------------------------ #

    def get_or_create_token(self, thread_key: str) -> TokenResolution:
        """Resume the stored token, or mint a fresh one for a new session.

        A minted token only labels the spawn; the stored token stays
        pending until the process reports its own.
        """
        session = self._store.get_session(thread_key)
        if session is not None and session.token != PENDING_TOKEN:
            return TokenResolution(token=session.token, is_resume=True)
        if session is None:
            self._store.ensure_session(thread_key)
        return TokenResolution(token=str(uuid.uuid4()), is_resume=False)

    def set_token(self, thread_key: str, token: str) -> None:
        self._store.set_token(thread_key, token)

    def reset_token(self, thread_key: str) -> None:
        self._store.set_token(thread_key, PENDING_TOKEN)
        logger.info("%s: session token reset", thread_key)

    # ------------------------------------------------------------------ #
    # Working directories
    # ------------------------------------------------------------------ #

    def set_directory(self, thread_key: str, directory: str) -> None:
        """Point the thread at *directory*; the next turn starts fresh."""
        self._store.set_directory(thread_key, directory)
        self.reset_token(thread_key)
        if self._store.get_workspace(thread_key) is not None:
            self._store.mark_workspace_cleaned(thread_key)
        logger.info("%s: directory set to %s (session reset)", thread_key, directory)

    def set_scope_default(
        self, scope_key: str, directory: str, set_by: str | None = None
    ) -> None:
        self._store.set_scope_default(scope_key, directory, set_by)
        logger.info("scope %s: default directory set to %s", scope_key, directory)

    def resolve_directory(self, thread_key: str, scope_key: str | None) -> str | None:
        """Thread directory, else the scope default (inherited), else ``None``."""
        session = self._store.get_session(thread_key)
        if session is not None and session.directory:
            return session.directory
        if scope_key is None:
            return None
        default = self._store.get_scope_default(scope_key)
        if default is None:
            return None
        self._store.set_directory(thread_key, default)
        logger.info("%s: inherited directory %s from scope %s", thread_key, default, scope_key)
        return default
