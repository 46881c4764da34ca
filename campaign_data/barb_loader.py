from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .barb_client import BarbClient
from .db import BARB_TABLES, Database

logger = logging.getLogger(__name__)


def _str_or_none(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def transform_spot(spot: Mapping[str, Any], fallback_date: Optional[str] = None) -> List[Dict[str, Any]]:
    """Flatten one advertising spot into barb_spots rows, one per audience view."""
    dt = (spot.get("spot_start_datetime") or {}).get("standard_datetime")
    date_part, _, time_part = (dt or "").partition(" ")
    station = spot.get("station") or {}
    cc = spot.get("clearcast_information") or {}
    spot_key = _str_or_none(spot.get("broadcaster_spot_number")) or _str_or_none(spot.get("commercial_number"))
    if spot_key is None:
        logger.warning("Skipping spot without broadcaster_spot_number or commercial_number")
        return []

    base = {
        "commercial_number": _str_or_none(spot.get("commercial_number")),
        "transmission_datetime": dt or None,
        "date": date_part or fallback_date,
        "time": time_part or None,
        "channel_id": _str_or_none(station.get("station_code")),
        "channel_name": station.get("station_name") or None,
        "programme_title": spot.get("preceding_programme_name") or None,
        "advertiser_id": _str_or_none(cc.get("advertiser_code")),
        "advertiser_name": cc.get("advertiser_name") or None,
        "brand_id": _str_or_none(cc.get("product_code")),
        "brand_name": cc.get("product_name") or None,
        "campaign_id": _str_or_none(spot.get("campaign_approval_id")),
        "campaign_name": None,
        "buyer_id": _str_or_none(cc.get("buyer_code")),
        "buyer_name": cc.get("buyer_name") or None,
        "duration": spot.get("spot_duration") or 0,
    }

    views = spot.get("audience_views")
    if not isinstance(views, list) or not views:
        return [{"id": spot_key, **base, "impacts": 0, "audience_segment": None, "audience_code": None}]

    rows = []
    for view in views:
        code = _str_or_none(view.get("audience_code"))
        rows.append(
            {
                "id": f"{spot_key}_{code}",
                **base,
                "impacts": view.get("audience_size_hundreds") or 0,
                "audience_segment": view.get("description") or None,
                "audience_code": code,
            }
        )
    return rows


def dedupe_rows(rows: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    seen: Dict[Any, Dict[str, Any]] = {}
    for r in rows:
        if r.get("id") is None:
            continue
        seen.setdefault(r["id"], dict(r))
    return list(seen.values())


def extract_reference_entities(rows: Iterable[Mapping[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    advertisers: Dict[str, Dict[str, Any]] = {}
    brands: Dict[str, Dict[str, Any]] = {}
    campaigns: Dict[str, Dict[str, Any]] = {}
    buyers: Dict[str, Dict[str, Any]] = {}
    stations: Dict[str, Dict[str, Any]] = {}

    for r in rows:
        has_advertiser = bool(r.get("advertiser_id") and r.get("advertiser_name"))
        has_brand = bool(r.get("brand_id") and r.get("brand_name"))
        if has_advertiser:
            advertisers[r["advertiser_id"]] = {"id": r["advertiser_id"], "name": r["advertiser_name"]}
        if has_advertiser and has_brand:
            brands[r["brand_id"]] = {
                "id": r["brand_id"],
                "name": r["brand_name"],
                "advertiser_id": r["advertiser_id"],
                "advertiser_name": r["advertiser_name"],
            }
        if has_advertiser and has_brand and r.get("campaign_id") and r.get("campaign_name"):
            campaigns[r["campaign_id"]] = {
                "id": r["campaign_id"],
                "name": r["campaign_name"],
                "advertiser_id": r["advertiser_id"],
                "advertiser_name": r["advertiser_name"],
                "brand_id": r["brand_id"],
                "brand_name": r["brand_name"],
            }
        if r.get("buyer_id") and r.get("buyer_name"):
            buyers[r["buyer_id"]] = {"id": r["buyer_id"], "name": r["buyer_name"]}
        if r.get("channel_id") and r.get("channel_name"):
            stations[r["channel_id"]] = {"id": r["channel_id"], "name": r["channel_name"]}

    return {
        "barb_advertisers": list(advertisers.values()),
        "barb_brands": list(brands.values()),
        "barb_campaigns": list(campaigns.values()),
        "barb_buyers": list(buyers.values()),
        "barb_stations": list(stations.values()),
    }


def filter_spots(
    spots: Iterable[Mapping[str, Any]],
    advertiser: str = "",
    brand: str = "",
    agency: str = "",
) -> List[Mapping[str, Any]]:
    advertiser, brand, agency = advertiser.lower(), brand.lower(), agency.lower()
    out = []
    for s in spots:
        cc = s.get("clearcast_information") or {}
        if advertiser and advertiser not in (cc.get("advertiser_name") or "").lower():
            continue
        if brand and brand not in (cc.get("product_name") or "").lower():
            continue
        if agency and agency not in (cc.get("buyer_name") or "").lower():
            continue
        out.append(s)
    return out


def stations_for_filters(
    spots: List[Mapping[str, Any]],
    advertiser: str = "",
    brand: str = "",
    agency: str = "",
) -> Dict[str, Any]:
    filtered = filter_spots(spots, advertiser, brand, agency)
    names = {(s.get("station") or {}).get("station_name") for s in filtered}
    return {
        "advertiser": advertiser,
        "brand": brand,
        "agency": agency,
        "total_spots": len(spots),
        "filtered_spots": len(filtered),
        "stations": sorted(n for n in names if n),
    }


def spot_matrix(spots: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """Station x audience description -> number of views and summed audience (hundreds)."""
    matrix: Dict[tuple, Dict[str, Any]] = {}
    for s in spots:
        station = (s.get("station") or {}).get("station_name") or "Unknown"
        for view in s.get("audience_views") or []:
            key = (station, view.get("description") or "Unknown")
            cell = matrix.setdefault(key, {"station": key[0], "audience": key[1], "count": 0, "sum_audience_hundreds": 0})
            cell["count"] += 1
            cell["sum_audience_hundreds"] += view.get("audience_size_hundreds") or 0
    return sorted(matrix.values(), key=lambda c: (c["station"], -c["sum_audience_hundreds"]))


def _reference_rows(items: Iterable[Mapping[str, Any]], extra: tuple = ()) -> List[Dict[str, Any]]:
    rows = []
    for it in items:
        if not it or not it.get("id") or not it.get("name"):
            continue
        row = {"id": str(it["id"]), "name": it["name"]}
        for key in extra:
            row[key] = it.get(key)
        rows.append(row)
    return rows


async def populate_barb(db: Database, client: BarbClient, date: str, batch_size: int = 100) -> Dict[str, Any]:
    summary: Dict[str, Any] = {"date": date, "errors": []}

    reference = {
        "barb_advertisers": _reference_rows(await client.list_advertisers()),
        "barb_buyers": _reference_rows(await client.list_buyers()),
        "barb_stations": _reference_rows(await client.list_stations(), extra=("region",)),
    }
    for table, rows in reference.items():
        written, errors = db.upsert_in_batches(table, rows, ("id",), batch_size)
        summary[table] = written
        summary["errors"].extend(errors)

    spots = await client.list_advertising_spots(date)
    logger.info("Fetched %d spots for %s", len(spots), date)
    rows = dedupe_rows(r for s in spots for r in transform_spot(s, date))
    summary["spots_fetched"] = len(spots)
    written, errors = db.upsert_in_batches("barb_spots", rows, ("id",), batch_size)
    summary["barb_spots"] = written
    summary["errors"].extend(errors)

    for table, entity_rows in extract_reference_entities(rows).items():
        written, errors = db.upsert_in_batches(table, entity_rows, ("id",), batch_size)
        summary[table] = summary.get(table, 0) + written
        summary["errors"].extend(errors)

    logger.info("Stored %d spot audience rows for %s", summary["barb_spots"], date)
    return summary


def clear_barb_tables(db: Database) -> Dict[str, int]:
    return {table: db.clear_table(table) for table in BARB_TABLES}
