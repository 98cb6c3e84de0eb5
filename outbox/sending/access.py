"""Unidentified (sealed sender) access credentials."""
from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
from dataclasses import dataclass
from typing import Optional

from outbox.messages.models import Recipient, UnidentifiedAccessMode

ACCESS_KEY_LENGTH = 16


@dataclass(frozen=True)
class UnidentifiedAccess:
    access_key: bytes
    sender_certificate: str

    @property
    def header_value(self) -> str:
        return base64.b64encode(self.access_key).decode("ascii")


def derive_access_key(profile_key: bytes) -> bytes:
    return hmac.new(profile_key, b"\x00" * ACCESS_KEY_LENGTH, hashlib.sha256).digest()[:ACCESS_KEY_LENGTH]


def target_access_key(recipient: Recipient) -> Optional[bytes]:
    """Access key to present when sending to ``recipient``, if any."""
    mode = recipient.unidentified_access_mode
    if mode is UnidentifiedAccessMode.DISABLED:
        return None
    if mode is UnidentifiedAccessMode.UNRESTRICTED:
        return secrets.token_bytes(ACCESS_KEY_LENGTH)
    if recipient.profile_key is None:
        # Unknown mode without a profile key: try a random key.
        return secrets.token_bytes(ACCESS_KEY_LENGTH) if mode is UnidentifiedAccessMode.UNKNOWN else None
    return derive_access_key(recipient.profile_key)


def access_for(
    recipient: Recipient,
    sender_certificate: Optional[str],
    *,
    enabled: bool = True,
) -> Optional[UnidentifiedAccess]:
    if not enabled or not sender_certificate:
        return None
    key = target_access_key(recipient)
    if key is None:
        return None
    return UnidentifiedAccess(access_key=key, sender_certificate=sender_certificate)
