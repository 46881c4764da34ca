from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .db import Database


""" Groups campaign_events rows per (organization, day) and per (organization,
    campaign), sums the counters and stores the results in daily_overall_metrics
    and campaign_summary_metrics.
"""

logger = logging.getLogger(__name__)

DAILY_TABLE = "daily_overall_metrics"
CAMPAIGN_TABLE = "campaign_summary_metrics"
SUMMARY_TABLES = (DAILY_TABLE, CAMPAIGN_TABLE)

EVENT_COUNTERS = {
    "impression": "total_impressions",
    "click": "total_clicks",
    "conversion": "total_conversions",
    "videocomplete": "total_completed_views",
}

EVENT_COLUMNS = ("organization_id", "campaign_id", "event_date", "event_type", "spend", "revenue")


@dataclass
class AggregationResult:
    events_read: int = 0
    daily_rows: int = 0
    campaign_rows: int = 0
    failed_batches: int = 0
    truncated: bool = False
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failed_batches == 0 and not self.truncated


def _to_float(value: Any) -> float:
    if value is None or value == "":
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _ratio(num: float, den: float, scale: float = 1.0) -> float:
    return (num / den) * scale if den else 0.0


def _new_totals() -> Dict[str, Any]:
    return {
        "total_events": 0,
        "total_impressions": 0,
        "total_clicks": 0,
        "total_conversions": 0,
        "total_completed_views": 0,
        "total_spend": 0.0,
        "total_revenue": 0.0,
    }


def _accumulate(totals: Dict[str, Any], event: Mapping[str, Any]) -> None:
    totals["total_events"] += 1
    counter = EVENT_COUNTERS.get(event.get("event_type") or "")
    if counter:
        totals[counter] += 1
    totals["total_spend"] += _to_float(event.get("spend"))
    totals["total_revenue"] += _to_float(event.get("revenue"))


def aggregate_events(
    events: Iterable[Mapping[str, Any]], cpm: Optional[float] = None
) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    """Build daily and per-campaign summary rows from raw event rows.

    With ``cpm`` set, spend is derived from impressions at that price per
    thousand instead of summed from the events' ``spend`` values. Rows with
    no date are grouped under ``unknown`` so every event is counted once per
    summary.
    """
    daily: Dict[Tuple[str, str], Dict[str, Any]] = {}
    campaigns: Dict[Tuple[str, str], Dict[str, Any]] = {}

    for ev in events:
        org = ev.get("organization_id") or "default"
        date = ev.get("event_date") or "unknown"
        campaign_id = ev.get("campaign_id") or "unknown"

        day = daily.get((org, date))
        if day is None:
            day = {"organization_id": org, "event_date": date, **_new_totals()}
            daily[(org, date)] = day
        _accumulate(day, ev)

        camp = campaigns.get((org, campaign_id))
        if camp is None:
            camp = {
                "organization_id": org,
                "campaign_id": campaign_id,
                "campaign_name": campaign_id,
                **_new_totals(),
                "last_event_date": None,
            }
            campaigns[(org, campaign_id)] = camp
        _accumulate(camp, ev)
        if ev.get("event_date") and (camp["last_event_date"] is None or ev["event_date"] > camp["last_event_date"]):
            camp["last_event_date"] = ev["event_date"]

    if cpm is not None:
        for row in list(daily.values()) + list(campaigns.values()):
            row["total_spend"] = row["total_impressions"] * cpm / 1000

    for day in daily.values():
        day["avg_ecpm"] = _ratio(day["total_spend"], day["total_impressions"], 1000)
        day["avg_cpcv"] = _ratio(day["total_spend"], day["total_completed_views"])

    for camp in campaigns.values():
        camp["ctr"] = _ratio(camp["total_clicks"], camp["total_impressions"], 100)
        camp["roas"] = _ratio(camp["total_revenue"], camp["total_spend"])
        camp["completion_rate"] = _ratio(camp["total_completed_views"], camp["total_impressions"], 100)

    return (
        [daily[k] for k in sorted(daily)],
        [campaigns[k] for k in sorted(campaigns)],
    )


def aggregate_by_geo(events: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    by_geo: Dict[str, Dict[str, Any]] = {}
    for ev in events:
        geo = (ev.get("geo") or "").strip()
        if not geo:
            continue
        entry = by_geo.setdefault(geo, {"geo": geo, "impressions": 0, "completions": 0})
        if ev.get("event_type") == "impression":
            entry["impressions"] += 1
        elif ev.get("event_type") == "videocomplete":
            entry["completions"] += 1
    return sorted(by_geo.values(), key=lambda e: (-e["impressions"], e["geo"]))


def compute_aggregates(
    db: Database,
    cpm: Optional[float] = None,
    clear: bool = False,
    organization_id: Optional[str] = None,
    page_size: int = 1000,
    max_rows: Optional[int] = None,
    batch_size: int = 500,
) -> AggregationResult:
    filters = {"organization_id": organization_id} if organization_id else None
    events = db.select_all("campaign_events", EVENT_COLUMNS, filters, page_size=page_size, max_rows=max_rows)
    logger.info("Read %d campaign events", len(events))
    result = AggregationResult(events_read=len(events))

    # partial totals must never overwrite stored summaries
    if max_rows is not None and len(events) >= max_rows:
        available = db.count("campaign_events", filters)
        if available > len(events):
            result.truncated = True
            result.errors.append(f"campaign_events read stopped at {len(events)} of {available} rows")
            logger.error("Row limit hit (%d of %d events), summaries left unchanged", len(events), available)
            return result

    if clear:
        for table in SUMMARY_TABLES:
            if organization_id:
                removed = db.delete_rows(table, filters)
                logger.info("Cleared %d %s rows for %s", removed, table, organization_id)
            else:
                db.clear_table(table)

    daily, campaigns = aggregate_events(events, cpm=cpm)
    now = datetime.now(timezone.utc).isoformat()
    for row in daily + campaigns:
        row["updated_at"] = now

    result.daily_rows, errors = db.upsert_in_batches(DAILY_TABLE, daily, ("organization_id", "event_date"), batch_size)
    result.errors.extend(errors)
    result.campaign_rows, errors = db.upsert_in_batches(CAMPAIGN_TABLE, campaigns, ("organization_id", "campaign_id"), batch_size)
    result.errors.extend(errors)
    result.failed_batches = len(result.errors)
    logger.info(
        "Wrote %d daily rows and %d campaign rows (%d failed batches)",
        result.daily_rows, result.campaign_rows, result.failed_batches,
    )
    return result
