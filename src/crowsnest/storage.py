from __future__ import annotations

import json
import sqlite3
import uuid
from contextlib import AbstractContextManager
from datetime import datetime, timezone
from pathlib import Path

from crowsnest.models import PageType, ScrapedOffer
from crowsnest.schemas import Schema


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.replace(microsecond=0).isoformat()


def _from_iso(raw: str | None) -> datetime | None:
    if not raw:
        return None
    return datetime.fromisoformat(raw)


class StateStore(AbstractContextManager["StateStore"]):
    """sqlite-backed offer and schema repository."""

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path)
        self.conn.row_factory = sqlite3.Row
        self._init_schema()

    def _init_schema(self) -> None:
        with self.conn:
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS offers (
                    id TEXT PRIMARY KEY,
                    url TEXT NOT NULL UNIQUE,
                    title TEXT NOT NULL,
                    company TEXT NOT NULL,
                    location TEXT NOT NULL,
                    description TEXT NOT NULL,
                    posted_at TEXT,
                    scraped_at TEXT NOT NULL
                )
                """
            )
            self.conn.execute(
                """
                CREATE INDEX IF NOT EXISTS offers_title_company
                ON offers (title, company)
                """
            )
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS page_schemas (
                    domain TEXT NOT NULL,
                    page_type TEXT NOT NULL,
                    selectors TEXT NOT NULL,
                    static_values TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (domain, page_type)
                )
                """
            )
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS run_logs (
                    run_at TEXT PRIMARY KEY,
                    seed_count INTEGER NOT NULL,
                    saved_count INTEGER NOT NULL,
                    error_count INTEGER NOT NULL
                )
                """
            )

    # offers

    def save_offer(self, offer: ScrapedOffer) -> str:
        offer_id = offer.id or str(uuid.uuid4())
        scraped_at = _to_iso(offer.scraped_at) or _utc_now_iso()
        with self.conn:
            cursor = self.conn.execute(
                """
                INSERT OR IGNORE INTO offers
                    (id, url, title, company, location, description, posted_at, scraped_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    offer_id,
                    offer.url,
                    offer.title,
                    offer.company,
                    offer.location,
                    offer.description,
                    _to_iso(offer.posted_at),
                    scraped_at,
                ),
            )
        if cursor.rowcount == 1:
            return offer_id

        row = self.conn.execute("SELECT id FROM offers WHERE url = ?", (offer.url,)).fetchone()
        return str(row["id"])

    def exists_by_url(self, url: str) -> bool:
        row = self.conn.execute("SELECT 1 FROM offers WHERE url = ? LIMIT 1", (url,)).fetchone()
        return row is not None

    def find_by_title_and_company(self, title: str, company: str) -> ScrapedOffer | None:
        row = self.conn.execute(
            """
            SELECT * FROM offers
            WHERE title = ? AND company = ?
            ORDER BY scraped_at DESC
            LIMIT 1
            """,
            (title, company),
        ).fetchone()
        if row is None:
            return None
        return ScrapedOffer(
            id=str(row["id"]),
            url=str(row["url"]),
            title=str(row["title"]),
            company=str(row["company"]),
            location=str(row["location"]),
            description=str(row["description"]),
            posted_at=_from_iso(row["posted_at"]),
            scraped_at=_from_iso(row["scraped_at"]),
        )

    def count_offers(self) -> int:
        row = self.conn.execute("SELECT COUNT(*) AS c FROM offers").fetchone()
        return int(row["c"]) if row else 0

    # schemas

    @staticmethod
    def _row_to_schema(row: sqlite3.Row) -> Schema:
        return Schema(
            domain=str(row["domain"]),
            page_type=PageType(row["page_type"]),
            selectors=json.loads(row["selectors"]),
            static_values=json.loads(row["static_values"]),
        )

    def find_schema(self, domain: str, page_type: PageType) -> Schema | None:
        row = self.conn.execute(
            "SELECT * FROM page_schemas WHERE domain = ? AND page_type = ?",
            (domain, page_type.value),
        ).fetchone()
        if row is None:
            return None
        return self._row_to_schema(row)

    def find_schemas(self, domain: str) -> dict[PageType, Schema]:
        rows = self.conn.execute("SELECT * FROM page_schemas WHERE domain = ?", (domain,)).fetchall()
        schemas = [self._row_to_schema(row) for row in rows]
        return {schema.page_type: schema for schema in schemas}

    def save_schema(self, schema: Schema) -> None:
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO page_schemas (domain, page_type, selectors, static_values, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(domain, page_type) DO UPDATE SET
                    selectors = excluded.selectors,
                    static_values = excluded.static_values,
                    updated_at = excluded.updated_at
                """,
                (
                    schema.domain,
                    schema.page_type.value,
                    json.dumps(schema.selectors, sort_keys=True),
                    json.dumps(schema.static_values, sort_keys=True),
                    _utc_now_iso(),
                ),
            )

    # runs

    def log_run(self, run_at_utc: str, seed_count: int, saved_count: int, error_count: int) -> None:
        with self.conn:
            self.conn.execute(
                """
                INSERT OR REPLACE INTO run_logs (run_at, seed_count, saved_count, error_count)
                VALUES (?, ?, ?, ?)
                """,
                (run_at_utc, seed_count, saved_count, error_count),
            )

    def count_runs(self) -> int:
        row = self.conn.execute("SELECT COUNT(*) AS c FROM run_logs").fetchone()
        return int(row["c"]) if row else 0

    def close(self) -> None:
        self.conn.close()

    def __exit__(self, exc_type, exc, exc_tb) -> None:
        self.close()
