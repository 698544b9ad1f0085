from __future__ import annotations

import argparse
import json
import os
import sys


def _bootstrap_app():
    from sameday import create_app

    app = create_app()
    app.app_context().push()
    return app


def main():
    parser = argparse.ArgumentParser(description="Scan orders for escrow/delivery/stock drift and report violations.")
    parser.add_argument("--limit", type=int, default=0, help="Only scan the first N orders (0 = all).")
    parser.add_argument("--persist", action="store_true", help="Persist report row in reconciliation_reports.")
    args = parser.parse_args()

    _bootstrap_app()
    from sameday.services.reconciliation_service import audit_lifecycle_invariants, persist_report

    summary = audit_lifecycle_invariants(limit=(args.limit or None))
    if args.persist:
        row = persist_report(summary, created_by=None)
        summary["report_id"] = int(row.id)

    print(json.dumps(summary, indent=2, default=str))
    return 0 if int(summary.get("violation_count") or 0) == 0 else 2


if __name__ == "__main__":
    os.environ.setdefault("FLASK_APP", "main.py")
    sys.exit(main())
