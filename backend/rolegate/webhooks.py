"""
Signature verification and parsing for identity-provider lifecycle events.

Why: The webhook endpoint is public. An event is only trusted once its
signature checks out; verification happens before any parsing or dispatch so
a forged payload can never reach the account store.

Deliveries are signed by Svix (Standard Webhooks headers `webhook-id`,
`webhook-timestamp`, `webhook-signature`, or their `svix-` variants). The
`svix` SDK does the HMAC check and enforces its five minute replay window;
this module maps its failures onto stable error codes and turns the payload
into an `IdentityEvent`.

Security: Never log the secret or signatures.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional
import binascii
import json

from svix.webhooks import Webhook
from svix.webhooks import WebhookVerificationError as SvixVerificationError

from .errors import WebhookVerificationError

EVENT_CREATED = "created"
EVENT_UPDATED = "updated"
EVENT_DELETED = "deleted"

_TYPE_MAP = {
    "user.created": EVENT_CREATED,
    "user.updated": EVENT_UPDATED,
    "user.deleted": EVENT_DELETED,
}


@dataclass(frozen=True)
class IdentityEvent:
    """A verified lifecycle event. `kind` is created/updated/deleted or the
    raw type string for event types this system does not handle."""

    kind: str
    account_id: str
    email: str = ""
    first_name: str = ""
    last_name: str = ""
    image_url: str = ""
    role: Optional[str] = None
    event_id: str = ""

    @property
    def is_known(self) -> bool:
        return self.kind in (EVENT_CREATED, EVENT_UPDATED, EVENT_DELETED)


def _header(headers: Mapping[str, str], name: str) -> str:
    lowered = {str(k).lower(): v for k, v in headers.items()}
    return str(lowered.get(f"svix-{name}") or lowered.get(f"webhook-{name}") or "")


class WebhookVerifier:
    def __init__(self, secret: str) -> None:
        if not secret:
            raise ValueError("webhook secret is required")
        try:
            self._webhook = Webhook(secret)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("invalid_webhook_secret") from exc

    def verify(self, raw_body: bytes, headers: Mapping[str, str]) -> IdentityEvent:
        """Verify the signature, then parse the event.

        Raises
        ------
        WebhookVerificationError:
            `missing_headers`, `invalid_timestamp`, `timestamp_out_of_tolerance`,
            `signature_mismatch` or `invalid_payload`.
        """
        msg_id = _header(headers, "id")
        ts_raw = _header(headers, "timestamp")
        if not msg_id or not ts_raw or not _header(headers, "signature"):
            raise WebhookVerificationError("missing_headers")
        try:
            float(ts_raw)
        except ValueError as exc:
            raise WebhookVerificationError("invalid_timestamp") from exc

        try:
            body = self._webhook.verify(raw_body, dict(headers))
        except SvixVerificationError as exc:
            if "timestamp" in str(exc).lower():
                raise WebhookVerificationError("timestamp_out_of_tolerance") from exc
            raise WebhookVerificationError("signature_mismatch") from exc
        except json.JSONDecodeError as exc:
            # Signature matched; the signed content just is not JSON.
            raise WebhookVerificationError("invalid_payload") from exc
        except (UnicodeDecodeError, ValueError) as exc:
            # Malformed signature entries (no comma, bad base64).
            raise WebhookVerificationError("signature_mismatch") from exc
        if not isinstance(body, dict):
            raise WebhookVerificationError("invalid_payload")
        return parse_event(body, event_id=msg_id)


def parse_event(body: Mapping[str, object], *, event_id: str = "") -> IdentityEvent:
    raw_type = body.get("type")
    data = body.get("data")
    if not isinstance(raw_type, str) or not isinstance(data, dict):
        raise WebhookVerificationError("invalid_payload")
    account_id = str(data.get("id") or "").strip()
    kind = _TYPE_MAP.get(raw_type, raw_type)
    if kind not in _TYPE_MAP.values():
        # Other event types pass through untouched; the reconciler ignores them.
        return IdentityEvent(kind=kind, account_id=account_id, event_id=event_id)
    if not account_id:
        raise WebhookVerificationError("invalid_payload")
    role = data.get("role")
    return IdentityEvent(
        kind=kind,
        account_id=account_id,
        email=str(data.get("email") or "").strip(),
        first_name=str(data.get("first_name") or "").strip(),
        last_name=str(data.get("last_name") or "").strip(),
        image_url=str(data.get("image_url") or ""),
        role=role if isinstance(role, str) and role else None,
        event_id=event_id,
    )
