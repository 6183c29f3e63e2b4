"""Pydantic v2 models for tether.yaml configuration."""

from __future__ import annotations

import re

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_ENV_NAME_RE = re.compile(r"^[A-Z_][A-Z0-9_]*$")


class GeneratorConfig(BaseModel):
    """How the generation subprocess is invoked."""

    model_config = ConfigDict(extra="forbid")

    binary: str = Field(
        default="claude",
        description="Generator executable name or absolute path",
    )
    additional_args: list[str] = Field(
        default_factory=list,
        description="Extra arguments appended after the built-in flags",
    )
    nested_session_markers: list[str] = Field(
        default_factory=lambda: ["CLAUDECODE"],
        description="Env vars marking 'already inside a session'; never passed on",
    )
    stripped_env: list[str] = Field(
        default_factory=list,
        description="Additional env vars removed from the subprocess environment",
    )
    env_prefix: str = Field(
        default="ENV_",
        description="Host vars with this prefix are re-exported without it",
    )
    context_prefix: str = Field(
        default="TETHER_",
        description="Prefix for injected caller context (thread, scope, user)",
    )

    @field_validator("env_prefix", "context_prefix")
    @classmethod
    def _validate_prefix(cls, value: str) -> str:
        if not _ENV_NAME_RE.match(value):
            msg = f"Invalid env prefix '{value}' — use uppercase letters, digits, '_'"
            raise ValueError(msg)
        return value


class StreamConfig(BaseModel):
    """Rendering settings for the output multiplexer."""

    model_config = ConfigDict(extra="forbid")

    update_interval: float = Field(
        default=0.75,
        gt=0,
        description="Minimum seconds between fallback full-text updates",
    )
    max_output_len: int = Field(
        default=120,
        ge=10,
        description="Max characters of tool output shown on a task card",
    )


class WorkspaceConfig(BaseModel):
    """Per-thread git worktree isolation."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = Field(
        default=True,
        description="Create an isolated worktree when the root is a git repo",
    )
    trees_dir: str = Field(
        default="trees",
        description="Directory (relative to the repo root) holding worktrees",
    )
    branch_prefix: str = Field(
        default="tether",
        description="Branch namespace for per-thread branches",
    )
    idle_minutes: int = Field(
        default=1440,
        ge=1,
        description="Idle time after which a worktree may be reclaimed",
    )
    sweep_interval: int = Field(
        default=3600,
        ge=0,
        description="Seconds between idle-worktree sweeps (0 to disable)",
    )
    env_files: list[str] = Field(
        default_factory=lambda: [".env", ".env.local", ".env.development"],
        description="Untracked env files copied into new worktrees",
    )

    @field_validator("trees_dir")
    @classmethod
    def _validate_trees_dir(cls, value: str) -> str:
        if value.startswith("/") or ".." in value.split("/"):
            msg = f"trees_dir must be a relative path inside the repo, got '{value}'"
            raise ValueError(msg)
        return value


class StoreConfig(BaseModel):
    """Location of the persistent session store."""

    model_config = ConfigDict(extra="forbid")

    path: str = Field(
        default=".tether/tether.db",
        description="SQLite database path (':memory:' for ephemeral)",
    )


class UsageConfig(BaseModel):
    """Location of the append-only usage log."""

    model_config = ConfigDict(extra="forbid")

    dir: str = Field(
        default=".tether/usage",
        description="Directory for daily usage JSONL files",
    )


class TetherConfig(BaseModel):
    """Top-level tether.yaml configuration."""

    model_config = ConfigDict(extra="forbid")

    version: str = Field(default="1", description="Config schema version")
    generator: GeneratorConfig = Field(default_factory=GeneratorConfig)
    stream: StreamConfig = Field(default_factory=StreamConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    usage: UsageConfig = Field(default_factory=UsageConfig)
    conventions: list[str] = Field(
        default_factory=list,
        description="Team conventions appended to the generator's system prompt",
    )

    @model_validator(mode="after")
    def _validate_version(self) -> TetherConfig:
        if self.version != "1":
            msg = f"Unsupported config version '{self.version}' — expected '1'"
            raise ValueError(msg)
        return self
