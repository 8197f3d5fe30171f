"""Trigger one payment status sweep and print the result JSON."""

import argparse
import json
import os

import httpx


def main() -> None:
    """CLI entrypoint for external schedulers (cron, k8s CronJob)."""

    parser = argparse.ArgumentParser(description="Run the payment status sweep through the API.")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--api-key", default=os.getenv("API_KEY", "dev-key"))
    parser.add_argument("--timeout-seconds", type=float, default=300.0)
    args = parser.parse_args()

    resp = httpx.post(
        f"{args.base_url}/internal/cron/payment-check",
        headers={"x-api-key": args.api_key},
        timeout=args.timeout_seconds,
    )
    resp.raise_for_status()
    result = resp.json()
    print(json.dumps(result, indent=2))
    if result.get("errors"):
        raise SystemExit(1)


if __name__ == "__main__":
    main()
