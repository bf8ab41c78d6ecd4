"""
Smoke test for a running payhook instance.

Signs a sample payment event with STRIPE_WEBHOOK_SECRET and posts it twice
to /api/billing/webhook:
- first delivery must be accepted as new
- second delivery must be acknowledged as a duplicate

Also checks that an unsigned delivery is rejected with 401.
"""

from __future__ import annotations

import json
import os
import sys
import time
import uuid
from pathlib import Path

import httpx

# לאפשר הרצה מכל תיקיה (למשל `python scripts/send_test_webhook.py`)
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from payhook.core.config import settings  # noqa: E402
from payhook.core.logging import get_logger, setup_logging  # noqa: E402
from payhook.domain.services.signature_service import compute_signature_header  # noqa: E402


logger = get_logger(__name__)

_WEBHOOK_PATH = "/api/billing/webhook"


def _base_url() -> str:
    port = os.environ.get("PORT", "8000")
    return os.environ.get("BASE_URL", f"http://127.0.0.1:{port}").rstrip("/")


def _timeout_seconds() -> float:
    return float(os.environ.get("SMOKE_TIMEOUT_SECONDS", "10"))


def _sample_event() -> dict:
    return {
        "id": f"evt_smoke_{uuid.uuid4().hex[:16]}",
        "object": "event",
        "type": os.environ.get("SMOKE_EVENT_TYPE", "invoice.paid"),
        "created": int(time.time()),
        "livemode": False,
        "data": {"object": {"id": "in_smoke", "object": "invoice", "amount_paid": 1000}},
    }


def _check(resp: httpx.Response, expected_status: int) -> dict:
    if resp.status_code != expected_status:
        raise RuntimeError(
            f"Unexpected status {resp.status_code} for {resp.request.method} {resp.request.url}. "
            f"Body: {(resp.text or '')[:500]}"
        )
    return resp.json()


def main() -> int:
    setup_logging(level="INFO", json_format=False, app_name="payhook-smoke")

    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.error("STRIPE_WEBHOOK_SECRET is not set, cannot sign the test event")
        return 2

    base_url = _base_url()
    event = _sample_event()
    body = json.dumps(event).encode()
    headers = {
        "Content-Type": "application/json",
        "Stripe-Signature": compute_signature_header(body, settings.STRIPE_WEBHOOK_SECRET),
    }

    try:
        with httpx.Client(base_url=base_url, timeout=_timeout_seconds()) as client:
            first = _check(client.post(_WEBHOOK_PATH, content=body, headers=headers), 200)
            if first.get("duplicate"):
                raise RuntimeError(f"first delivery reported as duplicate: {first}")

            second = _check(client.post(_WEBHOOK_PATH, content=body, headers=headers), 200)
            if not second.get("duplicate"):
                raise RuntimeError(f"second delivery not reported as duplicate: {second}")

            _check(
                client.post(
                    _WEBHOOK_PATH, content=body, headers={"Content-Type": "application/json"}
                ),
                401,
            )
    except (httpx.HTTPError, RuntimeError) as e:
        logger.error("Webhook smoke test failed", extra_data={"base_url": base_url, "error": str(e)})
        return 1

    logger.info(
        "Webhook smoke test passed",
        extra_data={"base_url": base_url, "event_id": event["id"], "event_type": event["type"]},
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
