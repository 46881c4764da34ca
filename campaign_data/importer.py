from __future__ import annotations

import csv
import json
import logging
import re
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional

from .db import Database

logger = logging.getLogger(__name__)

EVENT_COLUMNS = [
    "organization_id",
    "campaign_id",
    "event_date",
    "event_time",
    "event_type",
    "bundle_id",
    "pub_name",
    "brand",
    "channel_name",
    "content_genre",
    "content_title",
    "content_series",
    "geo",
    "ip_parsed",
]

# columns copied as-is from a pixel export row
_PASSTHROUGH = (
    "event_type",
    "bundle_id",
    "pub_name",
    "brand",
    "channel_name",
    "content_genre",
    "content_title",
    "content_series",
    "geo",
)


@dataclass
class ImportResult:
    read: int = 0
    inserted: int = 0
    failed_batches: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failed_batches == 0


def object_id_to_uuid(object_id: Optional[str]) -> str:
    """Reshape a 24 hex digit ObjectId into 8-4-4-4-4 groups, or '' if it isn't one."""
    if not object_id:
        return ""
    hex_only = re.sub(r"[^0-9a-fA-F]", "", object_id)
    if len(hex_only) != 24:
        return ""
    return f"{hex_only[:8]}-{hex_only[8:12]}-{hex_only[12:16]}-{hex_only[16:20]}-{hex_only[20:24]}"


def decimal_day_to_time(value: Any) -> str:
    """Spreadsheet day fraction (0.5 == noon) to HH:MM:SS."""
    if value is None or value == "":
        return ""
    try:
        fraction = float(value)
    except (TypeError, ValueError):
        return ""
    total = round(fraction * 24 * 60 * 60)
    return f"{total // 3600:02d}:{(total % 3600) // 60:02d}:{total % 60:02d}"


def _unwrap(value: Any, key: str) -> Any:
    if isinstance(value, dict):
        return value.get(key)
    return value


def _date_part(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    return str(value).split("T")[0]


def map_pixel_record(row: Mapping[str, Any], organization_id: str, convert_ids: bool = False) -> Dict[str, Any]:
    campaign_id = _unwrap(row.get("campaign_id"), "$oid") or None
    if campaign_id and convert_ids:
        campaign_id = object_id_to_uuid(campaign_id) or None
    event: Dict[str, Any] = {
        "organization_id": organization_id,
        "campaign_id": campaign_id,
        "event_date": _date_part(_unwrap(row.get("date"), "$date")),
        "event_time": row.get("time") or None,
    }
    for key in _PASSTHROUGH:
        event[key] = row.get(key) or None
    event["ip_parsed"] = row.get("ip-parsed") or row.get("ip_parsed") or None
    return event


def map_csv_record(row: Mapping[str, Any], organization_id: str) -> Dict[str, Any]:
    raw_time = row.get("event_time") or row.get("time") or ""
    if raw_time and ":" not in str(raw_time):
        raw_time = decimal_day_to_time(raw_time)
    event: Dict[str, Any] = {
        "organization_id": organization_id,
        "campaign_id": row.get("campaign_id") or None,
        "event_date": _date_part(row.get("event_date") or row.get("date")),
        "event_time": raw_time or None,
    }
    for key in _PASSTHROUGH:
        event[key] = row.get(key) or None
    event["ip_parsed"] = row.get("ip_parsed") or row.get("ip-parsed") or None
    return event


def iter_json_records(path: str) -> Iterator[Dict[str, Any]]:
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a JSON array of records")
    for row in data:
        if isinstance(row, dict):
            yield row


def iter_csv_records(path: str) -> Iterator[Dict[str, Any]]:
    with open(path, "r", newline="", encoding="utf-8") as f:
        yield from csv.DictReader(f)


def sample_json(src: str, dest: str, limit: int = 1000) -> int:
    sample: List[Dict[str, Any]] = []
    for row in iter_json_records(src):
        if len(sample) >= limit:
            break
        sample.append(row)
    with open(dest, "w", encoding="utf-8") as f:
        json.dump(sample, f, indent=2)
    logger.info("Wrote %d sample rows to %s", len(sample), dest)
    return len(sample)


def write_events_csv(events: Iterable[Mapping[str, Any]], path: str, progress_every: int = 10000) -> int:
    count = 0
    with open(path, "w", newline="", encoding="utf-8") as f:
        w = csv.writer(f)
        w.writerow(EVENT_COLUMNS)
        for ev in events:
            w.writerow(["" if ev.get(c) is None else ev.get(c) for c in EVENT_COLUMNS])
            count += 1
            if count % progress_every == 0:
                logger.info("Processed %d rows...", count)
    logger.info("Wrote %d rows to %s", count, path)
    return count


def import_events(db: Database, events: Iterable[Mapping[str, Any]], batch_size: int = 500) -> ImportResult:
    """Insert events in batches; a failing batch is logged and skipped."""
    result = ImportResult()
    batch: List[Mapping[str, Any]] = []

    def flush() -> None:
        n = (result.read - 1) // batch_size + 1
        try:
            result.inserted += db.insert_rows("campaign_events", batch)
        except sqlite3.Error as exc:
            logger.error("Batch %d failed: %s", n, exc)
            result.failed_batches += 1
            result.errors.append(f"batch {n}: {exc}")
        else:
            logger.info("Inserted %d rows...", result.inserted)
        batch.clear()

    for ev in events:
        result.read += 1
        batch.append(ev)
        if len(batch) >= batch_size:
            flush()
    if batch:
        flush()
    logger.info("Import complete: %d read, %d inserted, %d failed batches", result.read, result.inserted, result.failed_batches)
    return result
