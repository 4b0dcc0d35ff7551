"""Print the queue and idempotency snapshots from a data directory."""

import argparse
import json
from pathlib import Path


def load(path: Path):
    if not path.exists():
        return None
    raw = path.read_text(encoding="utf-8")
    return json.loads(raw) if raw.strip() else None


def main() -> None:
    parser = argparse.ArgumentParser(description="Show queued events and sent-to-contact state.")
    parser.add_argument("--data-dir", default="data")
    parser.add_argument("--queue-file", default="webhook_queue.json")
    parser.add_argument("--state-file", default="sent_to_contact_state.json")
    args = parser.parse_args()

    data_dir = Path(args.data_dir)
    queue = load(data_dir / args.queue_file) or []
    state = load(data_dir / args.state_file) or {}

    print(f"queue depth={len(queue)}")
    for index, event in enumerate(queue):
        print(
            f"  [{index}] {event.get('eventCategory')} {event.get('eventType')} "
            f"resource={event.get('resourceId')} at={event.get('eventDateUtc')}"
        )
    print(f"tracked invoices={len(state)}")
    for invoice_id, entry in sorted(state.items(), key=lambda item: item[1].get("lastUpdated", "")):
        print(f"  {invoice_id} sent={entry.get('sentToContact')} updated={entry.get('lastUpdated')}")


if __name__ == "__main__":
    main()
