"""POST a signed generation callback to a running API.

Useful for exercising the inbound callback channel by hand (valid delivery,
replayed nonce, stale timestamp).
"""

import argparse
import hashlib
import hmac
import json
import time
from pathlib import Path
from uuid import uuid4

import httpx


def sign(secret: str, timestamp: str, nonce: str, body: bytes) -> str:
    """`sha256=` + hex HMAC over `timestamp.nonce.body`."""

    signed = f"{timestamp}.{nonce}.".encode("utf-8") + body
    return "sha256=" + hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def main() -> None:
    """Parse CLI args, sign one callback body and print the API response."""

    parser = argparse.ArgumentParser(description="Send a signed generation callback.")
    parser.add_argument("--url", default="http://localhost:8000/webhooks/generation-callback")
    parser.add_argument("--secret", required=True)
    parser.add_argument("--order-id", required=True)
    parser.add_argument("--order-number", required=True)
    parser.add_argument("--status", choices=["ready", "failed"], default="ready")
    parser.add_argument("--content-file", default=None, help="JSON file with the content object")
    parser.add_argument("--nonce", default=None, help="Reuse a nonce to test replay rejection")
    parser.add_argument("--skew-seconds", type=int, default=0, help="Shift the timestamp to test the window")
    args = parser.parse_args()

    content = json.loads(Path(args.content_file).read_text()) if args.content_file else {
        "archetype": "Le Guide",
        "reading": "Manual test reading.",
    }
    body = json.dumps(
        {
            "orderId": args.order_id,
            "orderNumber": args.order_number,
            "status": args.status,
            "content": content,
        }
    ).encode("utf-8")
    timestamp = str(int(time.time()) + args.skew_seconds)
    nonce = args.nonce or uuid4().hex
    headers = {
        "Content-Type": "application/json",
        "x-webhook-signature": sign(args.secret, timestamp, nonce, body),
        "x-webhook-timestamp": timestamp,
        "x-webhook-nonce": nonce,
    }
    resp = httpx.post(args.url, content=body, headers=headers, timeout=10.0)
    print(f"nonce={nonce} status_code={resp.status_code}")
    print(resp.text)


if __name__ == "__main__":
    main()
