from __future__ import annotations

import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def main() -> int:
    """Import the worker entrypoint and confirm every beat entry points at a registered task."""
    try:
        from celery_app import celery
    except Exception as exc:
        print(f"error: failed to import celery_app:celery -> {exc}", file=sys.stderr)
        return 1

    celery.loader.import_default_modules()
    schedule = celery.conf.beat_schedule or {}
    missing = sorted(entry["task"] for entry in schedule.values() if entry["task"] not in celery.tasks)
    if missing:
        print(f"error: beat tasks not registered -> {', '.join(missing)}", file=sys.stderr)
        return 1
    for name, entry in sorted(schedule.items()):
        print(f"beat {name}: {entry['task']} every {int(entry['schedule'])}s")
    print(f"ok: celery_app:celery broker={celery.conf.broker_url or 'unset'} beat_entries={len(schedule)}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
