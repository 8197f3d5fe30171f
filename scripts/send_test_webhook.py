"""Send a signed payment webhook to a local instance for sandbox testing."""

import argparse
import hashlib
import hmac
import json
import os

import httpx


def build_signature(secret: str, body: bytes, mode: str) -> str:
    if mode == "hmac":
        return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return secret


def main() -> None:
    parser = argparse.ArgumentParser(description="POST a provider webhook with a valid signature.")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--payment-id", required=True)
    parser.add_argument("--status", default="RECEIVED")
    parser.add_argument("--event", default="PAYMENT_RECEIVED")
    parser.add_argument("--secret", default=os.getenv("WEBHOOK_SECRET", ""))
    parser.add_argument("--mode", choices=["token", "hmac"], default=os.getenv("WEBHOOK_SIGNATURE_MODE", "token"))
    parser.add_argument("--header", default=os.getenv("WEBHOOK_SIGNATURE_HEADER", "asaas-access-token"))
    args = parser.parse_args()

    body = json.dumps(
        {"event": args.event, "payment": {"id": args.payment_id, "status": args.status}}
    ).encode("utf-8")
    resp = httpx.post(
        f"{args.base_url}/webhooks/payments",
        content=body,
        headers={"Content-Type": "application/json", args.header: build_signature(args.secret, body, args.mode)},
        timeout=10.0,
    )
    print(resp.status_code, resp.text)


if __name__ == "__main__":
    main()
