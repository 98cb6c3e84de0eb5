"""CLI entry points for outbox utilities."""

from ._bootstrap import ensure_project_root

ensure_project_root()

# Re-export commonly used helpers for tests and tooling.
from . import enqueue_message as _enqueue_message

enqueue_message = _enqueue_message

__all__ = ["enqueue_message"]
