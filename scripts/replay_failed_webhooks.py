"""Move envelopes parked in `webhook:failed` back onto the webhook queue.

Typical use: a webhook arrived before its order had a provider payment id.
Once the order exists, replaying lets the queue consumer apply it.
"""

import argparse

import redis

from docpay.services.webhook.queue import FAILED_KEY, WebhookQueue


def main() -> None:
    parser = argparse.ArgumentParser(description="Requeue failed webhook envelopes.")
    parser.add_argument("--redis-url", default="redis://localhost:6379/0")
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    queue = WebhookQueue(redis.Redis.from_url(args.redis_url, decode_responses=True))
    keys = queue.requeue_failed(dry_run=args.dry_run)
    for key in keys:
        print(f"{'would requeue' if args.dry_run else 'requeued'} {key}")
    print(f"{len(keys)} envelope(s) from {FAILED_KEY}; queue depth now {queue.depth()}")


if __name__ == "__main__":
    main()
