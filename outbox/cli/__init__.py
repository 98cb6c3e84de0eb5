"""Runtime helpers shared by CLI entrypoints."""

from outbox.cli.runtime import configure_runtime

__all__ = ["configure_runtime"]
