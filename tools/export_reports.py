import csv
import os
import sqlite3
import sys

DB_DEFAULT = "data.db"


def export_daily_metrics(con: sqlite3.Connection, path: str) -> int:
    rows = con.execute(
        """
        SELECT organization_id, event_date, total_events, total_impressions, total_completed_views,
               total_spend, avg_ecpm, avg_cpcv
        FROM daily_overall_metrics
        ORDER BY organization_id ASC, event_date ASC;
        """
    ).fetchall()
    with open(path, "w", newline="", encoding="utf-8") as f:
        w = csv.writer(f)
        w.writerow([
            "organization_id", "event_date", "total_events", "total_impressions",
            "total_completed_views", "total_spend", "avg_ecpm", "avg_cpcv",
        ])
        w.writerows(rows)
    return len(rows)


def export_campaign_metrics(con: sqlite3.Connection, path: str, limit: int = 500) -> int:
    rows = con.execute(
        """
        SELECT organization_id, campaign_id, campaign_name, total_impressions, total_clicks,
               total_completed_views, total_spend, ctr, completion_rate, last_event_date
        FROM campaign_summary_metrics
        ORDER BY total_impressions DESC, campaign_id ASC
        LIMIT ?;
        """,
        (limit,),
    ).fetchall()
    with open(path, "w", newline="", encoding="utf-8") as f:
        w = csv.writer(f)
        w.writerow([
            "organization_id", "campaign_id", "campaign_name", "total_impressions", "total_clicks",
            "total_completed_views", "total_spend", "ctr", "completion_rate", "last_event_date",
        ])
        w.writerows(rows)
    return len(rows)


def export_geo_breakdown(con: sqlite3.Connection, path: str) -> int:
    rows = con.execute(
        """
        SELECT e.geo,
               SUM(CASE WHEN e.event_type = 'impression' THEN 1 ELSE 0 END) AS impressions,
               SUM(CASE WHEN e.event_type = 'videocomplete' THEN 1 ELSE 0 END) AS completions,
               g.latitude, g.longitude
        FROM campaign_events e
        LEFT JOIN geo_lookup g ON g.postcode_district = UPPER(TRIM(e.geo))
        WHERE e.geo IS NOT NULL AND e.geo != ''
        GROUP BY e.geo
        ORDER BY impressions DESC, e.geo ASC;
        """
    ).fetchall()
    with open(path, "w", newline="", encoding="utf-8") as f:
        w = csv.writer(f)
        w.writerow(["geo", "impressions", "completions", "latitude", "longitude"])
        w.writerows(rows)
    return len(rows)


def main() -> None:
    db_path = sys.argv[1] if len(sys.argv) > 1 else os.getenv("DB_PATH", DB_DEFAULT)
    out_dir = sys.argv[2] if len(sys.argv) > 2 else os.getcwd()

    con = sqlite3.connect(db_path)
    existing = {name for (name,) in con.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()}
    if "daily_overall_metrics" not in existing:
        print(f"No summary tables in {db_path}; run the aggregate command first")
        sys.exit(1)

    os.makedirs(out_dir, exist_ok=True)
    written = [
        (os.path.join(out_dir, "daily_metrics.csv"), export_daily_metrics),
        (os.path.join(out_dir, "campaign_metrics.csv"), export_campaign_metrics),
    ]
    if "geo_lookup" in existing:
        written.append((os.path.join(out_dir, "geo_breakdown.csv"), export_geo_breakdown))

    for path, export in written:
        n = export(con, path)
        print(f"Wrote: {path} ({n} rows)")
    con.close()


if __name__ == "__main__":
    main()
