"""Enqueue a stored outgoing message for delivery."""
from __future__ import annotations

import argparse
import logging
from typing import List, Sequence

try:  # pragma: no cover
    from cli._bootstrap import ensure_project_root
except ModuleNotFoundError:  # pragma: no cover
    from _bootstrap import ensure_project_root

ensure_project_root()

from outbox.cli import configure_runtime
from outbox.messages.models import Address
from outbox.sending import push_media_send
from outbox.sending.exceptions import NoSuchMessageError
from outbox.sending.push_media_send import PushMediaSendJob
from outbox.workers.processing import build_job_manager

logger = logging.getLogger(__name__)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "message_id",
        type=int,
        help="Id of the stored message whose content is sent",
    )
    parser.add_argument(
        "--send",
        action="append",
        default=[],
        metavar="ADDRESS=MESSAGE_ID",
        help=(
            "Additional destination and the per-recipient message row it updates "
            "(repeatable; use -1 for a sync-only send)"
        ),
    )
    parser.add_argument(
        "--database",
        default=None,
        help="Path to the SQLite database (fallback: OUTBOX_DATABASE or data/outbox.db)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Optional log level override (e.g. INFO, DEBUG)",
    )
    return parser.parse_args(argv)


def parse_fan_out(template_message_id: int, entries: Sequence[str]) -> List[PushMediaSendJob]:
    jobs: List[PushMediaSendJob] = []
    for entry in entries:
        address, sep, message_id = entry.rpartition("=")
        if not sep or not address:
            raise SystemExit(f"Expected ADDRESS=MESSAGE_ID, got {entry!r}")
        try:
            per_recipient_id = int(message_id)
        except ValueError:
            raise SystemExit(f"Invalid message id in {entry!r}") from None
        jobs.append(
            PushMediaSendJob(template_message_id, per_recipient_id, Address.from_serialized(address))
        )
    return jobs


def main(argv: Sequence[str] | None = None) -> None:
    args = parse_args(argv)
    config = configure_runtime(args.database, args.log_level)
    manager = build_job_manager(config)
    context = manager.context
    try:
        message = context.store.get_outgoing_message(args.message_id)
    except NoSuchMessageError as exc:
        logger.error("Message %s cannot be enqueued: %s", args.message_id, exc)
        return

    jobs = [PushMediaSendJob(args.message_id, args.message_id, message.recipient)]
    jobs.extend(parse_fan_out(args.message_id, args.send))
    task_ids = push_media_send.enqueue_jobs(context, manager, jobs)
    if not task_ids:
        logger.warning("Message %s could not be enqueued", args.message_id)
        return
    logger.info("Enqueued %s task(s) for message %s", len(task_ids), args.message_id)


if __name__ == "__main__":
    main()
