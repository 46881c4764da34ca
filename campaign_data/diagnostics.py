from __future__ import annotations

from typing import Any, Dict, List

from .db import NOT_EMPTY, Database
from .postcodes import normalize_postcode, sector_to_district


""" Read-only data-quality reports over the event, summary, lookup and spot
    tables. Each returns a plain dict so the CLI can print it as JSON.
"""


def event_type_distribution(db: Database) -> Dict[str, Any]:
    cur = db.conn.execute(
        """
        SELECT COALESCE(event_type, 'unknown') AS event_type, COUNT(*) AS n
        FROM campaign_events
        GROUP BY COALESCE(event_type, 'unknown')
        ORDER BY n DESC, event_type ASC;
        """
    )
    rows = cur.fetchall()
    total = sum(r["n"] for r in rows)
    return {
        "total": total,
        "types": [
            {
                "event_type": r["event_type"],
                "count": int(r["n"]),
                "percentage": round(r["n"] / total * 100, 2) if total else 0.0,
            }
            for r in rows
        ],
    }


def summary_consistency(db: Database) -> Dict[str, Any]:
    """Compare raw impression counts with what the summary tables claim."""
    daily_total = int(db.conn.execute("SELECT COALESCE(SUM(total_impressions),0) FROM daily_overall_metrics;").fetchone()[0])
    campaigns = [
        {"campaign_id": r["campaign_id"], "campaign_name": r["campaign_name"], "total_impressions": int(r["total_impressions"] or 0)}
        for r in db.conn.execute(
            """
            SELECT campaign_id, campaign_name, total_impressions
            FROM campaign_summary_metrics
            ORDER BY total_impressions DESC, campaign_id ASC;
            """
        ).fetchall()
    ]
    campaign_total = sum(c["total_impressions"] for c in campaigns)
    raw_by_campaign = {
        r[0]: int(r[1])
        for r in db.conn.execute(
            """
            SELECT COALESCE(campaign_id, 'unknown'), COUNT(*)
            FROM campaign_events
            WHERE event_type = 'impression'
            GROUP BY COALESCE(campaign_id, 'unknown');
            """
        ).fetchall()
    }
    raw_total = sum(raw_by_campaign.values())
    return {
        "daily_total_impressions": daily_total,
        "campaign_total_impressions": campaign_total,
        "raw_total_impressions": raw_total,
        "raw_impressions_by_campaign": raw_by_campaign,
        "daily_matches_raw": daily_total == raw_total,
        "campaigns_match_raw": campaign_total == raw_total,
        "campaigns_exceeding_daily_total": [c for c in campaigns if c["total_impressions"] > daily_total],
    }


def _cpm(spend: float, impressions: int) -> float:
    return round(spend / impressions * 1000, 2) if impressions else 0.0


def cpm_report(db: Database) -> Dict[str, Any]:
    daily = [
        {
            "organization_id": r["organization_id"],
            "event_date": r["event_date"],
            "impressions": int(r["total_impressions"] or 0),
            "spend": float(r["total_spend"] or 0),
            "stored_cpm": float(r["avg_ecpm"] or 0),
            "computed_cpm": _cpm(float(r["total_spend"] or 0), int(r["total_impressions"] or 0)),
        }
        for r in db.conn.execute(
            """
            SELECT organization_id, event_date, total_impressions, total_spend, avg_ecpm
            FROM daily_overall_metrics
            ORDER BY organization_id, event_date;
            """
        ).fetchall()
    ]
    campaigns = [
        {
            "campaign_id": r["campaign_id"],
            "impressions": int(r["total_impressions"] or 0),
            "spend": float(r["total_spend"] or 0),
            "computed_cpm": _cpm(float(r["total_spend"] or 0), int(r["total_impressions"] or 0)),
        }
        for r in db.conn.execute(
            "SELECT campaign_id, total_impressions, total_spend FROM campaign_summary_metrics ORDER BY campaign_id;"
        ).fetchall()
    ]
    total_impressions = sum(d["impressions"] for d in daily)
    total_spend = sum(d["spend"] for d in daily)
    return {
        "daily": daily,
        "campaigns": campaigns,
        "overall_cpm": _cpm(total_spend, total_impressions),
        "mismatched_days": [d["event_date"] for d in daily if abs(d["stored_cpm"] - d["computed_cpm"]) > 0.01],
    }


def postcode_coverage(db: Database) -> Dict[str, Any]:
    event_geos = {
        normalize_postcode(r["geo"])
        for r in db.select_all("campaign_events", ["geo"], {"geo": NOT_EMPTY})
    }
    event_geos.discard("")
    districts = {normalize_postcode(r["postcode_district"]) for r in db.select("geo_lookup", ["postcode_district"])}
    matched = sorted(event_geos & districts)

    sectors = [r["postcode_sector"] for r in db.select("experian_data", ["postcode_sector"])]
    resolved = [s for s in sectors if sector_to_district(s) in districts]
    return {
        "event_geo_codes": len(event_geos),
        "lookup_districts": len(districts),
        "matched": len(matched),
        "matched_sample": matched[:10],
        "unmatched_sample": sorted(event_geos - districts)[:10],
        "experian_sectors": len(sectors),
        "experian_sectors_resolved": len(resolved),
    }


def table_overview(db: Database) -> Dict[str, Dict[str, Any]]:
    return {t: {"rows": db.count(t), "columns": db.columns(t)} for t in db.tables()}


SPOT_KEY = ("commercial_number", "transmission_datetime", "channel_id", "audience_code")


def spot_duplicates(db: Database) -> Dict[str, Any]:
    rows = db.select_all("barb_spots", ["id", *SPOT_KEY])
    seen = set()
    duplicates: List[Dict[str, Any]] = []
    for r in rows:
        key = tuple(r[c] for c in SPOT_KEY)
        if key in seen:
            duplicates.append(r)
        else:
            seen.add(key)
    return {
        "total": len(rows),
        "unique": len(seen),
        "duplicates": len(duplicates),
        "sample": [d["id"] for d in duplicates[:3]],
    }
