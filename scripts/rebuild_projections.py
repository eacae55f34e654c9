#!/usr/bin/env python3
"""
Rebuild campaign projections by replaying every event stream (idempotent).

The event log is the source of truth; campaign_projections is derived from it.

Usage:
    python scripts/rebuild_projections.py --dry-run   # Report drifted campaigns
    python scripts/rebuild_projections.py --execute   # Overwrite every projection row

Safe to run multiple times.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from scripts._db_utils import script_session  # noqa: E402


def main() -> None:
    import argparse
    parser = argparse.ArgumentParser(description="Rebuild campaign projections from the event log")
    parser.add_argument("--dry-run", action="store_true", help="Report drift without writing")
    parser.add_argument("--execute", action="store_true", help="Rebuild all projections")
    parser.add_argument("--database-url", default=None, help="Defaults to DATABASE_URL")
    args = parser.parse_args()

    if not args.dry_run and not args.execute:
        print("ERROR: Specify --dry-run or --execute")
        print(__doc__)
        sys.exit(1)

    db_url = (args.database_url or os.environ.get("DATABASE_URL") or "sqlite:///replay.db").strip()

    from app.replay.modules.campaigns.projections import find_drifted_projections, rebuild_all_projections

    with script_session(db_url) as s:
        drifted = find_drifted_projections(s)
        print(f"Campaigns with drifted projections: {len(drifted)}")
        for campaign_id in drifted[:50]:
            print(f"  {campaign_id}")
        if args.dry_run:
            s.rollback()
            print("Dry run; nothing written.")
            return
        count = rebuild_all_projections(s)
        print(f"Rebuilt {count} campaign projections.")


if __name__ == "__main__":
    main()
