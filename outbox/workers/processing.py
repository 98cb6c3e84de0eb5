"""Long-running worker that executes queued send-pipeline jobs."""
from __future__ import annotations

import argparse
import logging
import time

from outbox.cli import configure_runtime
from outbox.config import AppConfig
from outbox.jobs.job import JobManager
from outbox.messages.models import Address
from outbox.messages.store import SQLiteMessageStore
from outbox.sending.context import SendContext
from outbox.sending.expiration import ExpiringMessageManager
from outbox.sending.notifications import LoggingNotifier, Notifier
from outbox.sending.push_media_send import register_jobs
from outbox.sending.transport import HttpTransport, Transport

logger = logging.getLogger(__name__)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--database",
        default=None,
        help="Path to the SQLite database (fallback: OUTBOX_DATABASE or data/outbox.db)",
    )
    parser.add_argument(
        "--task-types",
        nargs="*",
        default=None,
        help="Subset of task types to process (default: all registered jobs)",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=5.0,
        help="Seconds to wait when no tasks are available (default: 5)",
    )
    parser.add_argument(
        "--run-once",
        action="store_true",
        help="Process at most one task and exit",
    )
    parser.add_argument(
        "--transport-url",
        default=None,
        help="Relay base URL (fallback: OUTBOX_TRANSPORT_URL)",
    )
    parser.add_argument(
        "--local-address",
        default=None,
        help="Address of the local account (fallback: OUTBOX_LOCAL_ADDRESS)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Optional log level override (e.g. INFO, DEBUG)",
    )
    return parser.parse_args()


def build_job_manager(
    config: AppConfig,
    *,
    transport: Transport | None = None,
    notifier: Notifier | None = None,
) -> JobManager:
    """Wire the store, transport and scheduler described by ``config``."""
    if not config.local_address:
        raise SystemExit("A local account address is required (OUTBOX_LOCAL_ADDRESS)")
    local_address = Address.from_serialized(config.local_address)
    store = SQLiteMessageStore(config.database_path, local_address=config.local_address)
    manager = JobManager(config.queue_target)
    manager.context = SendContext(
        store=store,
        transport=transport
        or HttpTransport(
            config.transport_url,
            local_address,
            timeout=config.transport_timeout,
            unidentified_delivery_enabled=config.unidentified_delivery_enabled,
        ),
        notifier=notifier or LoggingNotifier(),
        expiration=ExpiringMessageManager(manager),
        local_address=local_address,
        unidentified_delivery_enabled=config.unidentified_delivery_enabled,
    )
    register_jobs(manager)
    return manager


def run(args: argparse.Namespace) -> None:
    config = configure_runtime(args.database, args.log_level)
    if args.transport_url:
        config.transport_url = args.transport_url.rstrip("/")
    if args.local_address:
        config.local_address = args.local_address
    manager = build_job_manager(config)
    logger.info("Worker started on %s", config.queue_target)

    while True:
        try:
            task = manager.run_next(task_types=args.task_types)
        except Exception as exc:  # pragma: no cover - worker runtime
            logger.exception("Worker iteration failed: %s", exc)
            task = None
        if not task:
            if args.run_once:
                break
            time.sleep(args.poll_interval)
            continue
        if args.run_once:
            break


def main() -> None:
    args = parse_args()
    run(args)
