"""Re-deliver a stored provider event with a fresh provider-style signature.

Sending the same event id twice must produce one PAID transition and one
ledger row; use `--times` for idempotency drills.
"""

import argparse
import hashlib
import hmac
import json
import time
from pathlib import Path

import httpx


def provider_signature(secret: str, payload: bytes, timestamp: int) -> str:
    """Header value in the provider format `t=<ts>,v1=<hex>`."""

    signed = f"{timestamp}.".encode("utf-8") + payload
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def main() -> None:
    """Parse CLI args and POST the event body `--times` times."""

    parser = argparse.ArgumentParser(description="Replay a payment provider event to the webhook.")
    parser.add_argument("--url", default="http://localhost:8000/payments/webhook")
    parser.add_argument("--secret", required=True, help="Webhook signing secret")
    parser.add_argument("--file", required=True, help="Path to the raw event JSON")
    parser.add_argument("--times", type=int, default=2)
    args = parser.parse_args()

    payload = Path(args.file).read_bytes()
    event = json.loads(payload)
    print(f"Replaying event_id={event.get('id')} type={event.get('type')} times={args.times}")
    with httpx.Client(timeout=10.0) as client:
        for attempt in range(1, args.times + 1):
            headers = {
                "Content-Type": "application/json",
                "Stripe-Signature": provider_signature(args.secret, payload, int(time.time())),
            }
            resp = client.post(args.url, content=payload, headers=headers)
            print(f"attempt={attempt} status_code={resp.status_code} body={resp.text}")


if __name__ == "__main__":
    main()
