"""
Signature Verifier - אימות webhooks של מעבד התשלומים (סכמת Stripe-Signature).

ה-header בפורמט: t=<unix timestamp>,v1=<hex>[,v1=<hex>...]
החתימה הצפויה היא HMAC-SHA256(secret, f"{t}." + raw_body).
חובה לעבוד על ה-body הגולמי - כל serialization מחדש שובר את ההתאמה.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import time
from typing import Any, Callable

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from payhook.core.exceptions import InvalidSignatureError
from payhook.core.logging import get_logger

logger = get_logger(__name__)

_SIGNATURE_SCHEME = "v1"


class PaymentEvent(BaseModel):
    """אירוע מאומת מהמעבד. שדות נוספים נשמרים כפי שהגיעו."""

    model_config = ConfigDict(extra="allow")

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    created: int | None = None
    livemode: bool = False
    data: dict[str, Any] = Field(default_factory=dict)

    @property
    def data_object(self) -> dict[str, Any]:
        return self.data.get("object") or {}

    def to_payload(self) -> dict[str, Any]:
        """גוף האירוע המלא לשמירה ב-Event Store"""
        return self.model_dump(mode="json")


def compute_signature(payload: bytes, secret: str, timestamp: int) -> str:
    signed_payload = f"{timestamp}.".encode() + payload
    return hmac.new(secret.encode(), signed_payload, hashlib.sha256).hexdigest()


def compute_signature_header(payload: bytes, secret: str, timestamp: int | None = None) -> str:
    """בניית header חתום - לבדיקות ולסקריפט ה-smoke"""
    ts = int(time.time()) if timestamp is None else timestamp
    return f"t={ts},{_SIGNATURE_SCHEME}={compute_signature(payload, secret, ts)}"


def _parse_signature_header(header: str) -> tuple[int, list[str]]:
    timestamp: int | None = None
    signatures: list[str] = []
    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise InvalidSignatureError("malformed timestamp") from None
        elif key == _SIGNATURE_SCHEME and value:
            signatures.append(value)

    if timestamp is None:
        raise InvalidSignatureError("missing timestamp")
    if not signatures:
        raise InvalidSignatureError(f"no {_SIGNATURE_SCHEME} signature")
    return timestamp, signatures


class SignatureVerifier:
    """Validates that a payload was produced by the payment processor."""

    def __init__(
        self,
        secret: str,
        *,
        tolerance_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._secret = secret
        self._tolerance_seconds = tolerance_seconds
        self._clock = clock

    def verify(self, raw_body: bytes, signature_header: str | None) -> PaymentEvent:
        """
        מחזיר PaymentEvent מאומת או זורק InvalidSignatureError.

        ללא side effects - לא נוגע ב-DB ולא בתור.
        """
        if not self._secret:
            # בלי secret אי אפשר לאמת - דוחים הכל במקום לקבל בלי אימות
            logger.error("STRIPE_WEBHOOK_SECRET not configured, rejecting webhook")
            raise InvalidSignatureError("signing secret not configured")

        if not signature_header:
            raise InvalidSignatureError("missing signature header")

        timestamp, signatures = _parse_signature_header(signature_header)

        if abs(self._clock() - timestamp) > self._tolerance_seconds:
            raise InvalidSignatureError("timestamp outside tolerance")

        expected = compute_signature(raw_body, self._secret, timestamp)
        if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
            raise InvalidSignatureError("signature mismatch")

        try:
            body = json.loads(raw_body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise InvalidSignatureError("payload is not valid JSON") from None

        if not isinstance(body, dict):
            raise InvalidSignatureError("payload is not an event object")

        try:
            return PaymentEvent.model_validate(body)
        except ValidationError:
            raise InvalidSignatureError("payload missing event id or type") from None
