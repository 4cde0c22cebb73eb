#!/usr/bin/env python
"""
Document control maintenance (run from cron).

- Archives published documents past their expiry date (system transition)
- Sends expiry warnings (EXPIRY_WARNING_DAYS before expiry)
- Prunes access records older than DOWNLOAD_RETENTION_DAYS

Usage:
    python scripts/run_maintenance.py --all
    python scripts/run_maintenance.py --archive-expired
    python scripts/run_maintenance.py --expiry-warnings --prune-access

Environment:
    DATABASE_URL, STORAGE_BACKEND/STORAGE_ROOT (same as the web app)
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.doccontrol import create_app
from app.doccontrol.db import session_scope
from app.doccontrol.modules.document_control.jobs import (
    archive_expired_documents,
    notify_expiring_documents,
    prune_access_records,
)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Document control maintenance jobs")
    parser.add_argument("--archive-expired", action="store_true", help="Archive published documents past expiry")
    parser.add_argument("--expiry-warnings", action="store_true", help="Notify owners of documents about to expire")
    parser.add_argument("--prune-access", action="store_true", help="Delete old access records")
    parser.add_argument("--all", action="store_true", help="Run every job")
    args = parser.parse_args(argv)

    if not (args.archive_expired or args.expiry_warnings or args.prune_access or args.all):
        parser.print_help()
        return 1

    # Side effects run inline so the process does not exit before they finish.
    app = create_app({"SIDE_EFFECT_MODE": "inline"})
    storage = app.extensions["doccontrol_storage"]
    dispatcher = app.extensions["doccontrol_dispatcher"]

    if args.archive_expired or args.all:
        with session_scope(app) as s:
            archived = archive_expired_documents(s, storage=storage, dispatcher=dispatcher)
        print(f"Archived {len(archived)} expired document(s).")
        for number in archived:
            print(f"  {number}")

    if args.expiry_warnings or args.all:
        with session_scope(app) as s:
            n = notify_expiring_documents(s, dispatcher=dispatcher, warning_days=app.config["EXPIRY_WARNING_DAYS"])
        print(f"Sent expiry warnings for {n} document(s).")

    if args.prune_access or args.all:
        with session_scope(app) as s:
            n = prune_access_records(s, retention_days=app.config["DOWNLOAD_RETENTION_DAYS"])
        print(f"Pruned {n} access record(s).")

    dispatcher.shutdown()
    return 0


if __name__ == "__main__":
    sys.exit(main())
