"""Worker implementations for the send pipeline."""

from outbox.workers.processing import build_job_manager, main, parse_args, run

__all__ = [
    "build_job_manager",
    "main",
    "parse_args",
    "run",
]
