from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)


class _Sentinel:
    def __init__(self, name: str) -> None:
        self.name = name

    def __repr__(self) -> str:
        return self.name


NOT_NULL = _Sentinel("NOT_NULL")
NOT_EMPTY = _Sentinel("NOT_EMPTY")

# Clearing order respects references between the BARB tables.
BARB_TABLES = (
    "barb_spots",
    "barb_brands",
    "barb_campaigns",
    "barb_advertisers",
    "barb_buyers",
    "barb_stations",
)

SCHEMA = """
CREATE TABLE IF NOT EXISTS campaign_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id TEXT,
    campaign_id TEXT,
    event_date TEXT,
    event_time TEXT,
    event_type TEXT,
    bundle_id TEXT,
    pub_name TEXT,
    brand TEXT,
    channel_name TEXT,
    content_genre TEXT,
    content_title TEXT,
    content_series TEXT,
    geo TEXT,
    ip_parsed TEXT,
    spend REAL,
    revenue REAL
);

CREATE INDEX IF NOT EXISTS idx_campaign_events_org_date ON campaign_events(organization_id, event_date);
CREATE INDEX IF NOT EXISTS idx_campaign_events_type ON campaign_events(event_type);

CREATE TABLE IF NOT EXISTS daily_overall_metrics (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id TEXT NOT NULL,
    event_date TEXT NOT NULL,
    total_events INTEGER DEFAULT 0,
    total_impressions INTEGER DEFAULT 0,
    total_clicks INTEGER DEFAULT 0,
    total_conversions INTEGER DEFAULT 0,
    total_completed_views INTEGER DEFAULT 0,
    total_spend REAL DEFAULT 0,
    total_revenue REAL DEFAULT 0,
    avg_ecpm REAL DEFAULT 0,
    avg_cpcv REAL DEFAULT 0,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT,
    UNIQUE (organization_id, event_date)
);

CREATE TABLE IF NOT EXISTS campaign_summary_metrics (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id TEXT NOT NULL,
    campaign_id TEXT NOT NULL,
    campaign_name TEXT,
    total_events INTEGER DEFAULT 0,
    total_impressions INTEGER DEFAULT 0,
    total_clicks INTEGER DEFAULT 0,
    total_conversions INTEGER DEFAULT 0,
    total_completed_views INTEGER DEFAULT 0,
    total_spend REAL DEFAULT 0,
    total_revenue REAL DEFAULT 0,
    ctr REAL DEFAULT 0,
    roas REAL DEFAULT 0,
    completion_rate REAL DEFAULT 0,
    last_event_date TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT,
    UNIQUE (organization_id, campaign_id)
);

CREATE TABLE IF NOT EXISTS barb_spots (
    id TEXT PRIMARY KEY,
    commercial_number TEXT,
    transmission_datetime TEXT,
    date TEXT,
    time TEXT,
    channel_id TEXT,
    channel_name TEXT,
    programme_title TEXT,
    advertiser_id TEXT,
    advertiser_name TEXT,
    brand_id TEXT,
    brand_name TEXT,
    campaign_id TEXT,
    campaign_name TEXT,
    buyer_id TEXT,
    buyer_name TEXT,
    duration INTEGER,
    impacts REAL,
    audience_segment TEXT,
    audience_code TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_barb_spots_date ON barb_spots(date);

CREATE TABLE IF NOT EXISTS barb_advertisers (
    id TEXT PRIMARY KEY,
    name TEXT
);

CREATE TABLE IF NOT EXISTS barb_brands (
    id TEXT PRIMARY KEY,
    name TEXT,
    advertiser_id TEXT,
    advertiser_name TEXT
);

CREATE TABLE IF NOT EXISTS barb_campaigns (
    id TEXT PRIMARY KEY,
    name TEXT,
    advertiser_id TEXT,
    advertiser_name TEXT,
    brand_id TEXT,
    brand_name TEXT
);

CREATE TABLE IF NOT EXISTS barb_buyers (
    id TEXT PRIMARY KEY,
    name TEXT
);

CREATE TABLE IF NOT EXISTS barb_stations (
    id TEXT PRIMARY KEY,
    name TEXT,
    region TEXT
);

CREATE TABLE IF NOT EXISTS geo_lookup (
    postcode_district TEXT PRIMARY KEY,
    latitude REAL,
    longitude REAL,
    town TEXT,
    region TEXT
);

CREATE TABLE IF NOT EXISTS experian_data (
    postcode_sector TEXT PRIMARY KEY,
    segments_json TEXT
);
"""


class Database:
    """Small table API over SQLite: filtered select/insert/upsert/update/delete."""

    def __init__(self, path: str) -> None:
        self.path = path
        self.conn = sqlite3.connect(self.path)
        self.conn.row_factory = sqlite3.Row
        self._columns: Dict[str, List[str]] = {}
        self._configure()
        self.init_schema()

    def _configure(self) -> None:
        cur = self.conn.cursor()
        cur.execute("PRAGMA journal_mode=WAL;")
        cur.execute("PRAGMA synchronous=NORMAL;")
        self.conn.commit()

    def close(self) -> None:
        self.conn.close()

    @contextmanager
    def transaction(self):
        try:
            yield
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise

    def init_schema(self) -> None:
        self.conn.executescript(SCHEMA)
        self.conn.commit()
        cur = self.conn.execute("SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'")
        self._columns = {}
        for (name,) in cur.fetchall():
            info = self.conn.execute(f"PRAGMA table_info({name})").fetchall()
            self._columns[name] = [r["name"] for r in info]

    def tables(self) -> List[str]:
        return sorted(self._columns)

    def columns(self, table: str) -> List[str]:
        self._check_table(table)
        return list(self._columns[table])

    def _check_table(self, table: str) -> None:
        if table not in self._columns:
            raise ValueError(f"Unknown table: {table}")

    def _check_columns(self, table: str, cols: Iterable[str]) -> None:
        known = set(self._columns[table]) | {"rowid"}
        unknown = [c for c in cols if c not in known]
        if unknown:
            raise ValueError(f"Unknown column(s) for {table}: {', '.join(unknown)}")

    def _where(self, table: str, filters: Optional[Mapping[str, Any]]) -> Tuple[str, List[Any]]:
        if not filters:
            return "", []
        self._check_columns(table, filters)
        clauses: List[str] = []
        params: List[Any] = []
        for col, value in filters.items():
            if value is None:
                clauses.append(f"{col} IS NULL")
            elif value is NOT_NULL:
                clauses.append(f"{col} IS NOT NULL")
            elif value is NOT_EMPTY:
                clauses.append(f"{col} IS NOT NULL AND {col} != ''")
            else:
                clauses.append(f"{col} = ?")
                params.append(value)
        return " WHERE " + " AND ".join(clauses), params

    def select(
        self,
        table: str,
        columns: Optional[Sequence[str]] = None,
        filters: Optional[Mapping[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        self._check_table(table)
        if columns:
            self._check_columns(table, columns)
        col_sql = ", ".join(columns) if columns else "*"
        where, params = self._where(table, filters)
        sql = f"SELECT {col_sql} FROM {table}{where}"
        if order_by:
            self._check_columns(table, [order_by])
            sql += f" ORDER BY {order_by} {'DESC' if descending else 'ASC'}"
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params.extend([int(limit), int(offset)])
        return [dict(r) for r in self.conn.execute(sql, params).fetchall()]

    def select_all(
        self,
        table: str,
        columns: Optional[Sequence[str]] = None,
        filters: Optional[Mapping[str, Any]] = None,
        page_size: int = 1000,
        max_rows: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Read a whole table in offset ranges.

        Stops on an empty page, on a page shorter than ``page_size``, or once
        ``max_rows`` rows have been collected.
        """
        rows: List[Dict[str, Any]] = []
        offset = 0
        while True:
            page = self.select(table, columns, filters, order_by="rowid", limit=page_size, offset=offset)
            rows.extend(page)
            offset += page_size
            if max_rows is not None and len(rows) >= max_rows:
                if len(rows) > max_rows or len(page) == page_size:
                    logger.warning("Reached row limit (%d) reading %s, stopping", max_rows, table)
                return rows[:max_rows]
            if len(page) < page_size:
                break
            logger.debug("Read %d rows from %s so far", len(rows), table)
        return rows

    def count(self, table: str, filters: Optional[Mapping[str, Any]] = None) -> int:
        self._check_table(table)
        where, params = self._where(table, filters)
        return int(self.conn.execute(f"SELECT COUNT(*) FROM {table}{where}", params).fetchone()[0])

    def _row_columns(self, table: str, rows: Sequence[Mapping[str, Any]]) -> List[str]:
        cols: List[str] = []
        for r in rows:
            for k in r:
                if k not in cols:
                    cols.append(k)
        self._check_columns(table, cols)
        return cols

    def insert_rows(self, table: str, rows: Iterable[Mapping[str, Any]]) -> int:
        self._check_table(table)
        rows = list(rows)
        if not rows:
            return 0
        cols = self._row_columns(table, rows)
        placeholders = ",".join("?" for _ in cols)
        values = [tuple(r.get(c) for c in cols) for r in rows]
        with self.transaction():
            self.conn.executemany(
                f"INSERT INTO {table} ({','.join(cols)}) VALUES ({placeholders});",
                values,
            )
        return len(values)

    def upsert_rows(self, table: str, rows: Iterable[Mapping[str, Any]], on_conflict: Sequence[str]) -> int:
        self._check_table(table)
        rows = list(rows)
        if not rows:
            return 0
        self._check_columns(table, on_conflict)
        cols = self._row_columns(table, rows)
        placeholders = ",".join("?" for _ in cols)
        updates = [c for c in cols if c not in on_conflict]
        if updates:
            action = "DO UPDATE SET " + ", ".join(f"{c}=excluded.{c}" for c in updates)
        else:
            action = "DO NOTHING"
        values = [tuple(r.get(c) for c in cols) for r in rows]
        with self.transaction():
            self.conn.executemany(
                f"""
                INSERT INTO {table} ({','.join(cols)}) VALUES ({placeholders})
                ON CONFLICT({','.join(on_conflict)}) {action};
                """,
                values,
            )
        return len(values)

    def update_rows(self, table: str, values: Mapping[str, Any], filters: Optional[Mapping[str, Any]] = None) -> int:
        self._check_table(table)
        if not values:
            return 0
        self._check_columns(table, values)
        assignments = ", ".join(f"{c} = ?" for c in values)
        where, params = self._where(table, filters)
        with self.transaction():
            cur = self.conn.execute(f"UPDATE {table} SET {assignments}{where};", [*values.values(), *params])
        return cur.rowcount

    def delete_rows(self, table: str, filters: Optional[Mapping[str, Any]] = None) -> int:
        self._check_table(table)
        where, params = self._where(table, filters)
        with self.transaction():
            cur = self.conn.execute(f"DELETE FROM {table}{where};", params)
        return cur.rowcount

    def clear_table(self, table: str) -> int:
        removed = self.delete_rows(table)
        logger.info("Cleared %s (%d rows)", table, removed)
        return removed

    def upsert_in_batches(
        self,
        table: str,
        rows: Sequence[Mapping[str, Any]],
        on_conflict: Sequence[str],
        batch_size: int = 500,
    ) -> Tuple[int, List[str]]:
        """Upsert rows batch by batch. A failing batch is logged and skipped."""
        written = 0
        errors: List[str] = []
        total = (len(rows) + batch_size - 1) // batch_size
        for i in range(0, len(rows), batch_size):
            batch = rows[i : i + batch_size]
            n = i // batch_size + 1
            try:
                written += self.upsert_rows(table, batch, on_conflict)
            except sqlite3.Error as exc:
                logger.error("Batch %d/%d into %s failed: %s", n, total, table, exc)
                errors.append(f"{table} batch {n}: {exc}")
                continue
            logger.info("Batch %d/%d into %s: %d rows", n, total, table, len(batch))
        return written, errors
