"""tether — per-thread session stream orchestrator for generation CLIs."""

__version__ = "0.1.0"
