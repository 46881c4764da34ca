import logging
import os
import sys

# Ensure repository root is on sys.path when executed as a script from tools/
REPO_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

from campaign_data.aggregator import compute_aggregates
from campaign_data.config import Config
from campaign_data.db import Database


def main():
    cfg = Config.from_env()
    logging.basicConfig(level=cfg.log_level, format="[%(levelname)s] %(message)s")
    db_path = sys.argv[1] if len(sys.argv) > 1 else cfg.db_path
    # optional CPM; without it spend comes from the events' own spend column
    cpm = float(sys.argv[2]) if len(sys.argv) > 2 else None

    db = Database(db_path)
    result = compute_aggregates(db, cpm=cpm, page_size=cfg.db_page_size, max_rows=cfg.max_rows)

    for row in db.select("daily_overall_metrics", order_by="event_date"):
        print(
            row["organization_id"], row["event_date"], row["total_events"],
            row["total_impressions"], round(row["total_spend"], 2), round(row["avg_ecpm"], 2),
        )
    for row in db.select("campaign_summary_metrics", order_by="total_impressions", descending=True):
        print(
            row["organization_id"], row["campaign_id"], row["total_impressions"],
            round(row["ctr"], 2), round(row["completion_rate"], 2), row["last_event_date"],
        )
    db.close()
    sys.exit(0 if result.ok else 1)


if __name__ == "__main__":
    main()
