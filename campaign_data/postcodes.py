from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .db import Database

logger = logging.getLogger(__name__)

# Spreadsheet-style headings used by the postcode district exports.
_GEO_ALIASES = {
    "postcode_district": ("postcode_district", "Postcode District"),
    "latitude": ("latitude", "Latitude"),
    "longitude": ("longitude", "Longitude"),
    "town": ("town", "Town/Area"),
    "region": ("region", "Region"),
}


def normalize_postcode(value: Optional[str]) -> str:
    if not value:
        return ""
    return " ".join(str(value).upper().split())


def sector_to_district(sector: Optional[str]) -> str:
    """'BD10 1' -> 'BD10'."""
    normalized = normalize_postcode(sector)
    return normalized.split(" ")[0] if normalized else ""


def _pick(row: Mapping[str, Any], names: tuple) -> Any:
    for n in names:
        if row.get(n) not in (None, ""):
            return row[n]
    return None


def geo_lookup_row(row: Mapping[str, Any]) -> Dict[str, Any]:
    out = {col: _pick(row, names) for col, names in _GEO_ALIASES.items()}
    out["postcode_district"] = normalize_postcode(out["postcode_district"])
    for col in ("latitude", "longitude"):
        if out[col] is not None:
            out[col] = float(out[col])
    return out


def load_geo_lookup(db: Database, rows: Iterable[Mapping[str, Any]]) -> int:
    prepared: List[Dict[str, Any]] = []
    for r in rows:
        row = geo_lookup_row(r)
        if not row["postcode_district"]:
            logger.warning("Skipping geo row without a district: %s", dict(r))
            continue
        prepared.append(row)
    written = db.upsert_rows("geo_lookup", prepared, ("postcode_district",))
    logger.info("Stored %d postcode districts", written)
    return written
