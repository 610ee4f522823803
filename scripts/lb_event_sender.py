"""
LB Collector Event Sender
=========================

Purpose
 - Publish load balancer log entries to the loadbalancer-logs topic
 - Validate the collector end to end (Pub/Sub -> collector -> StatsD)

Usage
 - Replay entries from a file:
     python scripts/lb_event_sender.py replay demo_lb_logs.json --project my-project --rate 50

 - Synthesize entries:
     python scripts/lb_event_sender.py synth --project my-project --count 100 \
       --url http://example.com/path --status 200 --status 503

 - Dry run (print but don't publish):
     python scripts/lb_event_sender.py synth --project my-project --count 3 --dry-run

Input File Schema
 - JSON array of log entry objects, e.g.
     [{"insertId": "abc", "httpRequest": {"requestUrl": "http://example.com/", "status": 200}}]
   Entries are published as-is, so malformed entries can be used to exercise
   the collector's decode-failure path.

Notes
 - Credentials come from Application Default Credentials.
 - Use --rate to control throughput (messages per second).
"""

import argparse
import itertools
import json
import time
import uuid
from typing import Any, Dict, Iterable, List

from google.cloud import pubsub_v1

DEFAULT_TOPIC = "loadbalancer-logs"


def get_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description=(
            "LB Collector Event Sender: publish load balancer log entries to Pub/Sub.\n"
            "Use 'replay' to send entries from a JSON file, 'synth' to generate them."
        )
    )
    parser.add_argument("mode", choices=["replay", "synth"], help="Mode: replay a file or synthesize entries")
    parser.add_argument("file", nargs="?", help="Path to JSON file containing log entries (replay mode)")
    parser.add_argument("--project", required=True, help="Google Cloud project ID")
    parser.add_argument("--topic", default=DEFAULT_TOPIC, help=f"Topic name (default: {DEFAULT_TOPIC})")
    parser.add_argument("--rate", type=float, default=10.0, help="Messages per second (default: 10)")
    parser.add_argument("--count", type=int, default=10, help="Entries to synthesize (default: 10)")
    parser.add_argument("--url", action="append", help="Request URL(s) to cycle through in synth mode")
    parser.add_argument("--status", action="append", type=int, help="Status code(s) to cycle through in synth mode")
    parser.add_argument("--dry-run", action="store_true", help="Print messages instead of publishing")
    args = parser.parse_args(argv)
    if args.mode == "replay" and not args.file:
        parser.error("replay mode requires a file")
    return args


def build_log_entry(request_url: str, status: int, method: str = "GET") -> Dict[str, Any]:
    """Build a log entry shaped like the load balancer logging sink output."""
    return {
        "insertId": uuid.uuid4().hex[:12],
        "log": "requests",
        "metadata": {"severity": "INFO"},
        "structPayload": None,
        "httpRequest": {
            "requestMethod": method,
            "requestUrl": request_url,
            "requestSize": "0",
            "status": status,
            "responseSize": "0",
            "remoteIp": "203.0.113.10",
            "serverIp": "10.0.0.2",
        },
    }


def synthesize_entries(count: int, urls: List[str], statuses: List[int]) -> List[Dict[str, Any]]:
    pairs = zip(itertools.cycle(urls), itertools.cycle(statuses))
    return [build_log_entry(url, status) for url, status in itertools.islice(pairs, count)]


def publish_entries(
    entries: Iterable[Any],
    project: str,
    topic: str,
    rate: float = 10.0,
    dry_run: bool = False,
    publisher=None,
) -> int:
    """Publish entries one by one, paced at ``rate`` per second. Returns the count sent."""
    topic_path = f"projects/{project}/topics/{topic}"
    if not dry_run and publisher is None:
        publisher = pubsub_v1.PublisherClient()

    interval = 1.0 / max(float(rate), 0.1)
    next_send = time.perf_counter()

    count = 0
    for entry in entries:
        data = json.dumps(entry).encode("utf-8")
        if dry_run:
            print(f"[DRY-RUN] {topic_path} <- {data.decode('utf-8')}")
        else:
            try:
                publisher.publish(topic_path, data).result()
            except Exception as e:
                print(f"Publish failed: {e}")
                continue
        count += 1

        # Simple pacing without accumulating drift significantly
        next_send += interval
        sleep_for = next_send - time.perf_counter()
        if sleep_for > 0:
            time.sleep(sleep_for)

    return count


def main(argv=None):
    """Main function."""
    args = get_args(argv)

    if args.mode == "replay":
        try:
            with open(args.file, "r", encoding="utf-8") as f:
                entries = json.load(f)
        except FileNotFoundError:
            print(f"Error: File not found: {args.file}")
            return 1
        except json.JSONDecodeError:
            print(f"Error: Could not decode JSON from file: {args.file}")
            return 1
        if not isinstance(entries, list):
            print("Error: JSON file must contain an array of log entries")
            return 1
    else:
        entries = synthesize_entries(
            args.count,
            args.url or ["http://example.com/"],
            args.status or [200],
        )

    print(f"Publishing {len(entries)} entries to {args.topic} in {args.project} at ~{args.rate}/sec")
    sent = publish_entries(entries, args.project, args.topic, rate=args.rate, dry_run=args.dry_run)
    print(f"Done. Sent {sent} entries.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
