"""SQLite-backed store for outgoing messages, attachments and recipients."""
from __future__ import annotations

import json
import logging
import sqlite3
import time
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol

from outbox.messages.models import (
    Address,
    Attachment,
    AttachmentKind,
    AttachmentPointer,
    LinkPreview,
    MessageStatus,
    OutgoingMessage,
    Quote,
    Recipient,
    SharedContact,
    Sticker,
    SyncMessageId,
    TransferState,
    UnidentifiedAccessMode,
)
from outbox.sending.exceptions import AttachmentStoreError, NoSuchMessageError

logger = logging.getLogger(__name__)


class MessageStore(Protocol):
    def get_outgoing_message(self, message_id: int) -> OutgoingMessage:
        ...

    def is_sent(self, message_id: int) -> bool:
        ...

    def mark_as_sending(self, message_id: int) -> None:
        ...

    def mark_as_sent(self, message_id: int, secure: bool = True) -> None:
        ...

    def mark_as_sent_failed(self, message_id: int) -> bool:
        ...

    def mark_as_pending_insecure_fallback(self, message_id: int) -> bool:
        ...

    def get_recipient(self, address: Address) -> Recipient:
        ...


def _now_ms() -> int:
    return int(time.time() * 1000)


class SQLiteMessageStore:
    """SQLite-backed outgoing message store."""

    def __init__(
        self,
        database_path: Path | str,
        local_address: str | None = None,
        connection_timeout: float = 30.0,
    ) -> None:
        self.database_path = Path(database_path)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        self.local_address = Address.from_serialized(local_address) if local_address else None
        self.connection_timeout = connection_timeout
        with self._connect() as conn:
            self._ensure_schema(conn)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.database_path,
            timeout=self.connection_timeout,
        )
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS outgoing_messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                recipient TEXT NOT NULL,
                body TEXT,
                quote TEXT,
                sticker TEXT,
                shared_contacts TEXT,
                link_previews TEXT,
                expires_in INTEGER NOT NULL DEFAULT 0,
                expiration_update INTEGER NOT NULL DEFAULT 0,
                sent_timestamp INTEGER NOT NULL DEFAULT 0,
                status TEXT NOT NULL DEFAULT 'pending',
                secure INTEGER NOT NULL DEFAULT 0,
                unidentified INTEGER NOT NULL DEFAULT 0,
                expire_started INTEGER NOT NULL DEFAULT 0,
                delivery_receipt_count INTEGER NOT NULL DEFAULT 0,
                read_receipt_count INTEGER NOT NULL DEFAULT 0,
                last_receipt_at INTEGER,
                mismatched_identities TEXT,
                error_message TEXT
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS attachments (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                message_id INTEGER NOT NULL,
                kind TEXT NOT NULL,
                content_type TEXT,
                file_name TEXT,
                size INTEGER,
                data_path TEXT,
                caption TEXT,
                transfer_state TEXT NOT NULL DEFAULT 'pending',
                remote_pointer TEXT,
                FOREIGN KEY (message_id) REFERENCES outgoing_messages(id) ON DELETE CASCADE
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS recipients (
                address TEXT PRIMARY KEY,
                profile_key BLOB,
                unidentified_access_mode TEXT NOT NULL DEFAULT 'unknown'
            )
            """
        )

    # -- composition --------------------------------------------------------

    def save_outgoing_message(self, message: OutgoingMessage) -> int:
        """Persist a composed message and its attachments, assigning ids."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO outgoing_messages (
                    id, recipient, body, expires_in, expiration_update,
                    sent_timestamp, status
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    message.message_id,
                    message.recipient.serialize(),
                    message.body,
                    message.expires_in_ms,
                    int(message.expiration_update),
                    message.sent_timestamp_ms or _now_ms(),
                    message.status.value,
                ),
            )
            message_id = cursor.lastrowid if message.message_id is None else message.message_id
            message.message_id = message_id
            saved: set = set()
            for attachment in self._composed_attachments(message):
                if attachment.attachment_id is not None and attachment.attachment_id in saved:
                    continue
                self._save_attachment(conn, message_id, attachment)
                saved.add(attachment.attachment_id)
            conn.execute(
                """
                UPDATE outgoing_messages
                SET quote = ?, sticker = ?, shared_contacts = ?, link_previews = ?
                WHERE id = ?
                """,
                (
                    json.dumps(_quote_to_dict(message.quote)) if message.quote else None,
                    json.dumps(_sticker_to_dict(message.sticker)) if message.sticker else None,
                    json.dumps([_contact_to_dict(contact) for contact in message.shared_contacts]),
                    json.dumps([_preview_to_dict(preview) for preview in message.link_previews]),
                    message_id,
                ),
            )
        logger.debug("[store] Saved outgoing message %s for %s", message_id, message.recipient)
        return message_id

    @staticmethod
    def _composed_attachments(message: OutgoingMessage) -> List[Attachment]:
        # One attachment may back a body slot, a thumbnail and an avatar at once.
        attachments = list(message.attachments)
        attachments.extend(p.thumbnail for p in message.link_previews if p.thumbnail is not None)
        attachments.extend(c.avatar for c in message.shared_contacts if c.avatar is not None)
        if message.sticker is not None and message.sticker.attachment.attachment_id is None:
            attachments.append(message.sticker.attachment)
        return attachments

    @staticmethod
    def _save_attachment(conn: sqlite3.Connection, message_id: int, attachment: Attachment) -> None:
        cursor = conn.execute(
            """
            INSERT INTO attachments (
                id, message_id, kind, content_type, file_name, size,
                data_path, caption, transfer_state, remote_pointer
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                attachment.attachment_id,
                message_id,
                attachment.kind.value,
                attachment.content_type,
                attachment.file_name,
                attachment.size,
                attachment.data_path,
                attachment.caption,
                attachment.transfer_state.value,
                json.dumps(attachment.remote_pointer.to_dict()) if attachment.remote_pointer else None,
            ),
        )
        if attachment.attachment_id is None:
            attachment.attachment_id = cursor.lastrowid

    def save_recipient(self, recipient: Recipient) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO recipients (address, profile_key, unidentified_access_mode)
                VALUES (?, ?, ?)
                ON CONFLICT(address) DO UPDATE SET
                    profile_key = excluded.profile_key,
                    unidentified_access_mode = excluded.unidentified_access_mode
                """,
                (
                    recipient.address.serialize(),
                    recipient.profile_key,
                    recipient.unidentified_access_mode.value,
                ),
            )

    # -- reads --------------------------------------------------------------

    def get_outgoing_message(self, message_id: int) -> OutgoingMessage:
        with self._connect() as conn:
            conn.row_factory = sqlite3.Row
            row = conn.execute(
                "SELECT * FROM outgoing_messages WHERE id = ?",
                (message_id,),
            ).fetchone()
            if row is None:
                raise NoSuchMessageError(message_id)
            attachment_rows = conn.execute(
                "SELECT * FROM attachments WHERE message_id = ? ORDER BY id ASC",
                (message_id,),
            ).fetchall()
        attachments = {item["id"]: _attachment_from_row(item) for item in attachment_rows}
        try:
            return OutgoingMessage(
                message_id=row["id"],
                recipient=Address.from_serialized(row["recipient"]),
                body=row["body"],
                attachments=[
                    attachment
                    for attachment in attachments.values()
                    if attachment.kind in (AttachmentKind.BODY, AttachmentKind.STICKER)
                ],
                quote=_quote_from_dict(json.loads(row["quote"])) if row["quote"] else None,
                sticker=_sticker_from_dict(json.loads(row["sticker"]), attachments) if row["sticker"] else None,
                shared_contacts=[
                    _contact_from_dict(item, attachments)
                    for item in json.loads(row["shared_contacts"] or "[]")
                ],
                link_previews=[
                    _preview_from_dict(item, attachments)
                    for item in json.loads(row["link_previews"] or "[]")
                ],
                expires_in_ms=row["expires_in"],
                expiration_update=bool(row["expiration_update"]),
                sent_timestamp_ms=row["sent_timestamp"],
                status=MessageStatus(row["status"]),
            )
        except (KeyError, ValueError) as exc:
            raise AttachmentStoreError(f"Corrupt attachment data for message {message_id}: {exc}") from exc

    def get_message_row(self, message_id: int) -> Dict[str, object]:
        """Raw bookkeeping columns, mostly useful for diagnostics."""
        with self._connect() as conn:
            conn.row_factory = sqlite3.Row
            row = conn.execute(
                "SELECT * FROM outgoing_messages WHERE id = ?",
                (message_id,),
            ).fetchone()
        if row is None:
            raise NoSuchMessageError(message_id)
        return dict(row)

    def get_status(self, message_id: int) -> MessageStatus:
        return MessageStatus(self.get_message_row(message_id)["status"])

    def is_sent(self, message_id: int) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT status FROM outgoing_messages WHERE id = ?",
                (message_id,),
            ).fetchone()
        return bool(row) and row[0] == MessageStatus.SENT.value

    def get_attachment(self, attachment_id: int) -> Attachment:
        with self._connect() as conn:
            conn.row_factory = sqlite3.Row
            row = conn.execute(
                "SELECT * FROM attachments WHERE id = ?",
                (attachment_id,),
            ).fetchone()
        if row is None:
            raise AttachmentStoreError(f"No such attachment: {attachment_id}")
        return _attachment_from_row(row)

    def get_recipient(self, address: Address) -> Recipient:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT profile_key, unidentified_access_mode FROM recipients WHERE address = ?",
                (address.serialize(),),
            ).fetchone()
        is_local = self.local_address is not None and address == self.local_address
        if row is None:
            return Recipient(address=address, is_local_number=is_local)
        return Recipient(
            address=address,
            profile_key=row[0],
            unidentified_access_mode=UnidentifiedAccessMode(row[1]),
            is_local_number=is_local,
        )

    # -- status writes ------------------------------------------------------

    def _set_status(
        self,
        message_id: int,
        status: MessageStatus,
        *,
        extra_sql: str = "",
        params: tuple = (),
        unless_sent: bool = False,
    ) -> bool:
        guard = " AND status != ?" if unless_sent else ""
        guard_params = (MessageStatus.SENT.value,) if unless_sent else ()
        with self._connect() as conn:
            changed = conn.execute(
                f"UPDATE outgoing_messages SET status = ?{extra_sql} WHERE id = ?{guard}",
                (status.value, *params, message_id, *guard_params),
            ).rowcount
        return changed > 0

    def mark_as_sending(self, message_id: int) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE outgoing_messages SET status = ? WHERE id = ? AND status != ?",
                (MessageStatus.SENDING.value, message_id, MessageStatus.SENT.value),
            )

    def mark_as_sent(self, message_id: int, secure: bool = True) -> None:
        self._set_status(message_id, MessageStatus.SENT, extra_sql=", secure = ?", params=(int(secure),))

    def mark_as_sent_failed(self, message_id: int) -> bool:
        """Returns False when the row is missing or already sent."""
        return self._set_status(message_id, MessageStatus.SENT_FAILED, unless_sent=True)

    def mark_as_pending_insecure_fallback(self, message_id: int) -> bool:
        return self._set_status(message_id, MessageStatus.PENDING_INSECURE_FALLBACK, unless_sent=True)

    def mark_unidentified(self, message_id: int, unidentified: bool) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE outgoing_messages SET unidentified = ? WHERE id = ?",
                (int(unidentified), message_id),
            )

    def mark_expire_started(self, message_id: int, started_ms: int | None = None) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE outgoing_messages SET expire_started = ? WHERE id = ? AND expire_started = 0",
                (started_ms or _now_ms(), message_id),
            )

    def add_mismatched_identity(self, message_id: int, address: Address, identity_key: str | None) -> None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT mismatched_identities FROM outgoing_messages WHERE id = ?",
                (message_id,),
            ).fetchone()
            if row is None:
                raise NoSuchMessageError(message_id)
            mismatches: List[dict] = json.loads(row[0] or "[]")
            entry = {"address": address.serialize(), "identity_key": identity_key}
            if entry not in mismatches:
                mismatches.append(entry)
            conn.execute(
                "UPDATE outgoing_messages SET mismatched_identities = ? WHERE id = ?",
                (json.dumps(mismatches, sort_keys=True), message_id),
            )

    def get_mismatched_identities(self, message_id: int) -> List[dict]:
        return json.loads(self.get_message_row(message_id)["mismatched_identities"] or "[]")

    def set_error_message(self, message_id: int, description: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE outgoing_messages SET error_message = ? WHERE id = ?",
                (description, message_id),
            )

    def delete_message(self, message_id: int) -> bool:
        with self._connect() as conn:
            conn.execute("DELETE FROM attachments WHERE message_id = ?", (message_id,))
            deleted = conn.execute(
                "DELETE FROM outgoing_messages WHERE id = ?",
                (message_id,),
            ).rowcount
        return deleted > 0

    # -- attachments --------------------------------------------------------

    def set_attachment_pointer(self, attachment_id: int, pointer: AttachmentPointer) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE attachments
                SET remote_pointer = ?, transfer_state = ?
                WHERE id = ?
                """,
                (json.dumps(pointer.to_dict(), sort_keys=True), TransferState.DONE.value, attachment_id),
            )

    def set_transfer_state(self, attachment_id: int, state: TransferState) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE attachments SET transfer_state = ? WHERE id = ?",
                (state.value, attachment_id),
            )

    def mark_attachments_uploaded(self, message_id: int, attachments: Iterable[Attachment]) -> None:
        ids = [attachment.attachment_id for attachment in attachments if attachment.attachment_id is not None]
        if not ids:
            return
        placeholder = ",".join("?" for _ in ids)
        with self._connect() as conn:
            conn.execute(
                f"""
                UPDATE attachments SET transfer_state = ?
                WHERE message_id = ? AND id IN ({placeholder})
                """,
                (TransferState.DONE.value, message_id, *ids),
            )

    # -- receipts -----------------------------------------------------------

    def increment_delivery_receipt_count(self, sync_id: SyncMessageId, timestamp_ms: int) -> int:
        return self._increment_receipt(sync_id, timestamp_ms, "delivery_receipt_count")

    def increment_read_receipt_count(self, sync_id: SyncMessageId, timestamp_ms: int) -> int:
        return self._increment_receipt(sync_id, timestamp_ms, "read_receipt_count")

    def _increment_receipt(self, sync_id: SyncMessageId, timestamp_ms: int, column: str) -> int:
        with self._connect() as conn:
            return conn.execute(
                f"""
                UPDATE outgoing_messages
                SET {column} = {column} + 1, last_receipt_at = ?
                WHERE recipient = ? AND sent_timestamp = ?
                """,
                (timestamp_ms, sync_id.address.serialize(), sync_id.timestamp_ms),
            ).rowcount

    def get_receipt_counts(self, message_id: int) -> tuple[int, int]:
        row = self.get_message_row(message_id)
        return int(row["delivery_receipt_count"]), int(row["read_receipt_count"])

    # -- recipients ---------------------------------------------------------

    def set_unidentified_access_mode(
        self,
        address: Address,
        mode: UnidentifiedAccessMode,
        *,
        expected: UnidentifiedAccessMode | None = None,
    ) -> bool:
        """Store ``mode`` for ``address``.

        With ``expected`` set this is a compare-and-set: the write only lands
        when the stored mode still equals ``expected``. Returns whether a row
        changed.
        """
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT unidentified_access_mode FROM recipients WHERE address = ?",
                (address.serialize(),),
            ).fetchone()
            current = UnidentifiedAccessMode(row[0]) if row else UnidentifiedAccessMode.UNKNOWN
            if expected is not None and current != expected:
                conn.execute("COMMIT")
                logger.debug(
                    "[store] Access mode for %s is %s, expected %s; skipping write",
                    address,
                    current.value,
                    expected.value,
                )
                return False
            if row is None:
                conn.execute(
                    "INSERT INTO recipients (address, unidentified_access_mode) VALUES (?, ?)",
                    (address.serialize(), mode.value),
                )
            else:
                conn.execute(
                    "UPDATE recipients SET unidentified_access_mode = ? WHERE address = ?",
                    (mode.value, address.serialize()),
                )
            conn.execute("COMMIT")
        return True


def _attachment_from_row(row: sqlite3.Row) -> Attachment:
    pointer = json.loads(row["remote_pointer"]) if row["remote_pointer"] else None
    return Attachment(
        attachment_id=row["id"],
        kind=AttachmentKind(row["kind"]),
        content_type=row["content_type"] or "application/octet-stream",
        file_name=row["file_name"],
        size=row["size"],
        data_path=row["data_path"],
        caption=row["caption"],
        transfer_state=TransferState(row["transfer_state"]),
        remote_pointer=AttachmentPointer.from_dict(pointer) if pointer else None,
    )


def _quote_to_dict(quote: Quote) -> dict:
    return {
        "id": quote.quote_id,
        "author": quote.author.serialize(),
        "text": quote.text,
        "attachments": [
            {"content_type": item.content_type, "file_name": item.file_name}
            for item in quote.attachments
        ],
    }


def _quote_from_dict(data: dict) -> Quote:
    return Quote(
        quote_id=data["id"],
        author=Address.from_serialized(data["author"]),
        text=data.get("text"),
        attachments=[
            Attachment(content_type=item.get("content_type") or "application/octet-stream", file_name=item.get("file_name"))
            for item in data.get("attachments", [])
        ],
    )


def _sticker_to_dict(sticker: Sticker) -> dict:
    return {
        "pack_id": sticker.pack_id,
        "pack_key": sticker.pack_key,
        "sticker_id": sticker.sticker_id,
        "attachment_id": sticker.attachment.attachment_id,
    }


def _sticker_from_dict(data: dict, attachments: Dict[int, Attachment]) -> Sticker:
    return Sticker(
        pack_id=data["pack_id"],
        pack_key=data["pack_key"],
        sticker_id=data["sticker_id"],
        attachment=attachments[data["attachment_id"]],
    )


def _contact_to_dict(contact: SharedContact) -> dict:
    return {
        "name": contact.name,
        "phone_numbers": list(contact.phone_numbers),
        "emails": list(contact.emails),
        "organization": contact.organization,
        "avatar_attachment_id": contact.avatar.attachment_id if contact.avatar else None,
    }


def _contact_from_dict(data: dict, attachments: Dict[int, Attachment]) -> SharedContact:
    avatar_id = data.get("avatar_attachment_id")
    return SharedContact(
        name=data["name"],
        phone_numbers=list(data.get("phone_numbers", [])),
        emails=list(data.get("emails", [])),
        organization=data.get("organization"),
        avatar=attachments[avatar_id] if avatar_id is not None else None,
    )


def _preview_to_dict(preview: LinkPreview) -> dict:
    return {
        "url": preview.url,
        "title": preview.title,
        "thumbnail_attachment_id": preview.thumbnail.attachment_id if preview.thumbnail else None,
    }


def _preview_from_dict(data: dict, attachments: Dict[int, Attachment]) -> LinkPreview:
    thumbnail_id = data.get("thumbnail_attachment_id")
    return LinkPreview(
        url=data["url"],
        title=data.get("title"),
        thumbnail=attachments[thumbnail_id] if thumbnail_id is not None else None,
    )
