from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sqlite3
import sys
from datetime import date, timedelta
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from .aggregator import compute_aggregates
from .barb_client import BarbClient, BarbError
from .barb_loader import clear_barb_tables, filter_spots, populate_barb, spot_matrix, stations_for_filters
from .config import Config
from .db import Database
from . import diagnostics
from .importer import (
    import_events,
    iter_csv_records,
    iter_json_records,
    map_csv_record,
    map_pixel_record,
    sample_json,
    write_events_csv,
)
from .postcodes import load_geo_lookup

logger = logging.getLogger("campaign_data")

REPORTS = {
    "events": diagnostics.event_type_distribution,
    "consistency": diagnostics.summary_consistency,
    "cpm": diagnostics.cpm_report,
    "postcodes": diagnostics.postcode_coverage,
    "tables": diagnostics.table_overview,
    "spots": diagnostics.spot_duplicates,
}


def _yesterday() -> str:
    return (date.today() - timedelta(days=1)).isoformat()


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Campaign event and BARB spot tooling")
    p.add_argument("--db", help="SQLite database path (or set DB_PATH)")
    p.add_argument("--env-file", help="dotenv file to load before reading the environment")
    p.add_argument("--verbose", action="store_true", help="Enable debug logging")
    sub = p.add_subparsers(dest="command", required=True)

    agg = sub.add_parser("aggregate", help="Rebuild daily and campaign summary tables from campaign_events")
    agg.add_argument("--cpm", type=float, help="Derive spend from impressions at this CPM")
    agg.add_argument("--derive-spend", action="store_true", help="Derive spend using the configured CPM (or set CPM)")
    agg.add_argument("--clear", action="store_true", help="Clear both summary tables before writing")
    agg.add_argument("--org", help="Only aggregate this organization_id")
    agg.add_argument("--max-rows", type=int, help="Stop reading events after this many rows (or set MAX_ROWS)")

    for name, help_text in (
        ("import-events", "Insert a JSON or CSV event dump into campaign_events"),
        ("convert-events", "Convert a JSON or CSV event dump into an import-ready CSV"),
    ):
        sp = sub.add_parser(name, help=help_text)
        sp.add_argument("input", help="Path to the .json or .csv dump")
        if name == "convert-events":
            sp.add_argument("output", help="Destination CSV path")
        sp.add_argument("--format", choices=("json", "csv"), help="Input format (default: from extension)")
        sp.add_argument("--org", help="organization_id stamped on every event (or set ORGANIZATION_ID)")
        sp.add_argument("--convert-ids", action="store_true", help="Reshape Mongo ObjectIds into UUID-style ids")
        sp.add_argument("--batch-size", type=int, default=500, help="Rows per insert batch (default: 500)")

    sj = sub.add_parser("sample-json", help="Copy the first N records of a JSON dump")
    sj.add_argument("input")
    sj.add_argument("output")
    sj.add_argument("--limit", type=int, default=1000)

    pull = sub.add_parser("barb-pull", help="Fetch BARB reference data and spots for one day")
    pull.add_argument("--date", default=None, help="Transmission date YYYY-MM-DD (default: yesterday)")

    for name, help_text in (
        ("barb-stations", "List stations carrying spots that match the filters"),
        ("barb-matrix", "Station x audience matrix of spot views"),
    ):
        sp = sub.add_parser(name, help=help_text)
        sp.add_argument("--date-from", default=None)
        sp.add_argument("--date-to", default=None)
        sp.add_argument("--advertiser", default="")
        sp.add_argument("--brand", default="")
        sp.add_argument("--agency", default="")

    sub.add_parser("barb-clear", help="Delete all rows from the BARB tables")

    geo = sub.add_parser("load-geo", help="Load postcode district coordinates from a CSV")
    geo.add_argument("input")

    diag = sub.add_parser("diagnose", help="Print a read-only data-quality report")
    diag.add_argument("report", choices=sorted(REPORTS))
    return p


def parse_args(argv: Optional[Sequence[str]] = None) -> Tuple[Config, argparse.Namespace]:
    args = build_parser().parse_args(argv)
    cfg = Config.from_env(args.env_file)
    if args.db:
        cfg.db_path = args.db
    if args.verbose:
        cfg.log_level = "DEBUG"
    return cfg, args


def _client(cfg: Config) -> BarbClient:
    return BarbClient(
        email=cfg.barb_email,
        password=cfg.barb_password,
        base_url=cfg.barb_base_url,
        page_size=cfg.page_size,
        max_pages=cfg.max_pages,
        max_retries=cfg.max_retries,
        timeout=cfg.http_timeout,
    )


def _read_events(cfg: Config, args: argparse.Namespace) -> Iterator[Dict[str, Any]]:
    fmt = args.format or ("csv" if args.input.lower().endswith(".csv") else "json")
    org = args.org or cfg.organization_id
    if fmt == "csv":
        return (map_csv_record(r, org) for r in iter_csv_records(args.input))
    return (map_pixel_record(r, org, convert_ids=args.convert_ids) for r in iter_json_records(args.input))


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


async def fetch_and_store(cfg: Config, target_date: str) -> Dict[str, Any]:
    db = Database(cfg.db_path)
    try:
        async with _client(cfg) as barb:
            await barb.authenticate()
            return await populate_barb(db, barb, target_date)
    finally:
        db.close()


async def fetch_spots(cfg: Config, date_from: str, date_to: str) -> List[Dict[str, Any]]:
    async with _client(cfg) as barb:
        return await barb.list_advertising_spots(date_from, date_to)


def run(cfg: Config, args: argparse.Namespace) -> int:
    cmd = args.command

    if cmd == "aggregate":
        cpm = args.cpm if args.cpm is not None else (cfg.cpm if args.derive_spend else None)
        db = Database(cfg.db_path)
        try:
            result = compute_aggregates(
                db,
                cpm=cpm,
                clear=args.clear,
                organization_id=args.org,
                page_size=cfg.db_page_size,
                max_rows=args.max_rows or cfg.max_rows,
            )
        finally:
            db.close()
        print(f"events={result.events_read} daily_rows={result.daily_rows} campaign_rows={result.campaign_rows} failed_batches={result.failed_batches} truncated={result.truncated}")
        return 0 if result.ok else 1

    if cmd == "import-events":
        db = Database(cfg.db_path)
        try:
            result = import_events(db, _read_events(cfg, args), batch_size=args.batch_size)
        finally:
            db.close()
        print(f"read={result.read} inserted={result.inserted} failed_batches={result.failed_batches}")
        return 0 if result.ok else 1

    if cmd == "convert-events":
        count = write_events_csv(_read_events(cfg, args), args.output)
        print(f"Wrote {count} rows to {args.output}")
        return 0

    if cmd == "sample-json":
        sample_json(args.input, args.output, args.limit)
        return 0

    if cmd == "barb-pull":
        summary = asyncio.run(fetch_and_store(cfg, args.date or _yesterday()))
        _print_json(summary)
        return 1 if summary["errors"] else 0

    if cmd in ("barb-stations", "barb-matrix"):
        date_from = args.date_from or date.today().isoformat()
        date_to = args.date_to or date_from
        spots = asyncio.run(fetch_spots(cfg, date_from, date_to))
        if cmd == "barb-stations":
            report = stations_for_filters(spots, args.advertiser, args.brand, args.agency)
        else:
            filtered = filter_spots(spots, args.advertiser, args.brand, args.agency)
            report = {"total_spots": len(spots), "filtered_spots": len(filtered), "rows": spot_matrix(filtered)}
        report.update({"date_from": date_from, "date_to": date_to})
        _print_json(report)
        return 0

    db = Database(cfg.db_path)
    try:
        if cmd == "barb-clear":
            _print_json(clear_barb_tables(db))
        elif cmd == "load-geo":
            written = load_geo_lookup(db, iter_csv_records(args.input))
            print(f"Stored {written} postcode districts")
        elif cmd == "diagnose":
            _print_json(REPORTS[args.report](db))
    finally:
        db.close()
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    cfg, args = parse_args(argv)
    logging.basicConfig(level=cfg.log_level, format="[%(levelname)s] %(name)s: %(message)s")
    try:
        return run(cfg, args)
    except (BarbError, ValueError, OSError, sqlite3.Error) as exc:
        logger.error("%s failed: %s", args.command, exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
