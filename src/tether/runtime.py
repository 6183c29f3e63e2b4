"""Wiring shared by the CLI commands: logging, config, and components."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import click

from tether.config.models import TetherConfig
from tether.config.parser import ConfigError, load_config
from tether.orchestrator import Orchestrator
from tether.registry import SessionRegistry
from tether.store import SessionStore
from tether.supervisor import ProcessSupervisor
from tether.usage import UsageRecorder
from tether.workspace import WorkspaceManager

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(verbose: bool) -> None:
    """Log to stderr: INFO and above with ``-v``, warnings otherwise."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format=_LOG_FORMAT,
    )


def load_or_exit(config_file: str | None) -> TetherConfig:
    try:
        return load_config(Path(config_file) if config_file else None)
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1) from exc


@dataclass
class Runtime:
    """All long-lived components for one process."""

    config: TetherConfig
    store: SessionStore
    registry: SessionRegistry
    workspaces: WorkspaceManager
    supervisor: ProcessSupervisor
    recorder: UsageRecorder
    orchestrator: Orchestrator

    def close(self) -> None:
        self.recorder.close()
        self.store.close()


def build_runtime(config: TetherConfig) -> Runtime:
    store = SessionStore(Path(config.store.path))
    registry = SessionRegistry(store)
    workspaces = WorkspaceManager(store, config.workspace)
    supervisor = ProcessSupervisor(config.generator)
    recorder = UsageRecorder(Path(config.usage.dir))
    orchestrator = Orchestrator(config, store, registry, workspaces, supervisor, recorder)
    return Runtime(
        config=config,
        store=store,
        registry=registry,
        workspaces=workspaces,
        supervisor=supervisor,
        recorder=recorder,
        orchestrator=orchestrator,
    )
