"""Transport collaborator: relay client used to upload and send."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

import requests

from outbox.messages.models import Address, Attachment, AttachmentPointer, Recipient
from outbox.sending.access import UnidentifiedAccess, access_for
from outbox.sending.envelope import Envelope, SyncMessage
from outbox.sending.exceptions import (
    TransportIOError,
    UnregisteredUserError,
    UntrustedIdentityError,
)

logger = logging.getLogger(__name__)

ACCESS_HEADER = "Unidentified-Access-Key"
CERTIFICATE_HEADER = "Unidentified-Sender-Certificate"


@dataclass(frozen=True)
class DeliveryTarget:
    address: Address
    transport_address: str


@dataclass
class SendMessageResult:
    address: Address
    unidentified: bool = False
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None


class Transport(Protocol):
    def resolve_address(self, address: Address) -> DeliveryTarget:
        ...

    def get_access_for(self, recipient: Recipient) -> Optional[UnidentifiedAccess]:
        ...

    def get_access_for_sync(self, local_recipient: Recipient) -> Optional[UnidentifiedAccess]:
        ...

    def send_message(
        self,
        message_id: int,
        target: DeliveryTarget,
        access: Optional[UnidentifiedAccess],
        envelope: Envelope,
    ) -> SendMessageResult:
        ...

    def send_sync_message(
        self,
        sync_message: SyncMessage,
        access: Optional[UnidentifiedAccess],
    ) -> SendMessageResult:
        ...

    def upload_attachment(self, attachment: Attachment, destination: Address) -> AttachmentPointer:
        ...


class HttpTransport:
    """JSON-over-HTTP relay client."""

    def __init__(
        self,
        base_url: str,
        local_address: Address,
        *,
        timeout: float = 30.0,
        unidentified_delivery_enabled: bool = True,
        auth_token: Optional[str] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.local_address = local_address
        self.timeout = timeout
        self.unidentified_delivery_enabled = unidentified_delivery_enabled
        self.auth_token = auth_token
        self._sender_certificate: Optional[str] = None

    def resolve_address(self, address: Address) -> DeliveryTarget:
        return DeliveryTarget(address=address, transport_address=address.serialize().lower())

    def get_access_for(self, recipient: Recipient) -> Optional[UnidentifiedAccess]:
        return access_for(
            recipient,
            self._certificate(),
            enabled=self.unidentified_delivery_enabled,
        )

    def get_access_for_sync(self, local_recipient: Recipient) -> Optional[UnidentifiedAccess]:
        return access_for(
            local_recipient,
            self._certificate(),
            enabled=self.unidentified_delivery_enabled,
        )

    def send_message(
        self,
        message_id: int,
        target: DeliveryTarget,
        access: Optional[UnidentifiedAccess],
        envelope: Envelope,
    ) -> SendMessageResult:
        payload = {"message_id": message_id, "envelope": envelope.to_dict()}
        return self._deliver(target.address, target.transport_address, payload, access)

    def send_sync_message(
        self,
        sync_message: SyncMessage,
        access: Optional[UnidentifiedAccess],
    ) -> SendMessageResult:
        payload = {"sync": sync_message.to_dict()}
        return self._deliver(
            self.local_address,
            self.resolve_address(self.local_address).transport_address,
            payload,
            access,
        )

    def upload_attachment(self, attachment: Attachment, destination: Address) -> AttachmentPointer:
        if not attachment.data_path:
            raise FileNotFoundError(f"Attachment {attachment.attachment_id} has no local payload")
        path = Path(attachment.data_path)
        with path.open("rb") as fh:
            response = self._request(
                "POST",
                "/v1/attachments",
                data=fh,
                headers={"Content-Type": attachment.content_type},
            )
        if response.status_code >= 400:
            raise TransportIOError(
                f"Attachment upload failed with HTTP {response.status_code}: {response.text[:200]}"
            )
        body = response.json()
        logger.debug("[transport] Uploaded attachment %s as %s", attachment.attachment_id, body.get("id"))
        return AttachmentPointer(
            remote_id=str(body["id"]),
            content_type=attachment.content_type,
            key=body.get("key"),
            size=attachment.size if attachment.size is not None else path.stat().st_size,
            digest=body.get("digest"),
            file_name=attachment.file_name,
            caption=attachment.caption,
        )

    def _deliver(
        self,
        address: Address,
        transport_address: str,
        payload: Dict[str, Any],
        access: Optional[UnidentifiedAccess],
    ) -> SendMessageResult:
        path = f"/v1/messages/{transport_address}"
        if access is not None:
            response = self._request("PUT", path, json=payload, headers=self._access_headers(access))
            if response.status_code != 401:
                return self._result(address, response, unidentified=True)
            logger.info("[transport] Sealed delivery to %s rejected; retrying identified", address)
        response = self._request("PUT", path, json=payload)
        return self._result(address, response, unidentified=False)

    @staticmethod
    def _access_headers(access: UnidentifiedAccess) -> Dict[str, str]:
        return {
            ACCESS_HEADER: access.header_value,
            CERTIFICATE_HEADER: access.sender_certificate,
        }

    def _result(self, address: Address, response: requests.Response, *, unidentified: bool) -> SendMessageResult:
        status = response.status_code
        if status < 300:
            return SendMessageResult(address=address, unidentified=unidentified)
        if status == 404:
            raise UnregisteredUserError(address.serialize())
        body = _json_or_empty(response)
        if status == 409 and body.get("identity_key"):
            raise UntrustedIdentityError(address.serialize(), body["identity_key"])
        if status >= 500 or status == 429:
            raise TransportIOError(f"Relay returned HTTP {status} for {address}")
        description = body.get("error") or response.text or f"HTTP {status}"
        return SendMessageResult(address=address, unidentified=unidentified, error=str(description))

    def _certificate(self) -> Optional[str]:
        if not self.unidentified_delivery_enabled:
            return None
        if self._sender_certificate is None:
            response = self._request("GET", "/v1/certificate/delivery")
            if response.status_code >= 400:
                logger.warning("[transport] No sender certificate (HTTP %s)", response.status_code)
                return None
            self._sender_certificate = _json_or_empty(response).get("certificate")
        return self._sender_certificate

    def _request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        if self.auth_token:
            headers.setdefault("Authorization", f"Bearer {self.auth_token}")
        try:
            return requests.request(
                method,
                f"{self.base_url}{path}",
                headers=headers,
                timeout=self.timeout,
                **kwargs,
            )
        except requests.RequestException as exc:
            raise TransportIOError(f"{method} {path} failed: {exc}") from exc


def _json_or_empty(response: requests.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}
