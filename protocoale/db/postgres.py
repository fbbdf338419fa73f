"""
Postgres persistence for Protocoale.

Uses psycopg3 with connection pooling. Each protocol write unit runs in one
database transaction holding a transaction-scoped advisory lock on the
protocol code, so concurrent writers of the same code serialize even across
processes.
"""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator, Iterator, Optional

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from protocoale.config import config
from protocoale.db.base import ProtocolStore, StoreTransaction
from protocoale.errors import StoreUnavailable
from protocoale.models import (
    ImageRow,
    ProtocolDetail,
    ProtocolRow,
    RunStatus,
    ScraperRun,
    SectionRow,
    StoreStats,
    VersionRow,
)

logger = logging.getLogger(__name__)

# Global connection pool
_pool: Optional[ConnectionPool] = None

SCHEMA_DIR = Path(__file__).resolve().parents[2] / "schema" / "postgres"

APP_TABLES = (
    "protocols",
    "protocol_sections",
    "protocol_images",
    "protocol_versions",
    "scraper_runs",
)


def get_pg_pool(min_size: int = 1, max_size: int = 10) -> ConnectionPool:
    """
    Get or create the global connection pool.

    Args:
        min_size: Minimum number of connections to maintain
        max_size: Maximum number of connections allowed

    Returns:
        ConnectionPool instance
    """
    global _pool

    if _pool is None:
        logger.info(f"Creating Postgres connection pool (min={min_size}, max={max_size})")
        _pool = ConnectionPool(
            config.POSTGRES_DSN,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row},
        )

    return _pool


@contextmanager
def get_pg_connection() -> Generator[psycopg.Connection, None, None]:
    """
    Get a connection from the pool.

    Usage:
        with get_pg_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT code, title FROM protocols LIMIT 10")
                results = cur.fetchall()
    """
    pool = get_pg_pool()
    with pool.connection() as conn:
        yield conn


def close_pool() -> None:
    """Close the connection pool."""
    global _pool
    if _pool is not None:
        _pool.close()
        _pool = None
        logger.info("Postgres connection pool closed")


def apply_schema(schema_dir: Path = SCHEMA_DIR) -> list[str]:
    """
    Execute every *.sql file of the schema directory in name order.

    Returns:
        Names of the applied files
    """
    applied = []
    with get_pg_connection() as conn:
        with conn.cursor() as cur:
            for path in sorted(Path(schema_dir).glob("*.sql")):
                logger.info(f"Applying {path.name}")
                cur.execute(path.read_text(encoding="utf-8"))
                applied.append(path.name)
        conn.commit()
    return applied


# =============================================================================
# Row conversion
# =============================================================================


def _protocol_from_row(row: dict) -> ProtocolRow:
    return ProtocolRow(
        code=row["code"],
        title=row["title"],
        raw_text=row["raw_text"] or "",
        dci=row.get("dci"),
        specialty_code=row.get("specialty_code"),
        official_pdf_url=row.get("official_pdf_url"),
        stored_pdf_url=row.get("stored_pdf_url"),
        categories=list(row.get("categories") or []),
        extraction_quality=float(row.get("extraction_quality") or 0.0),
        last_update_date=row.get("last_update_date"),
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
    )


def _version_from_row(row: dict) -> VersionRow:
    return VersionRow(
        version_number=row["version_number"],
        title=row["title"],
        raw_text=row["raw_text"] or "",
        fingerprint=row["fingerprint"],
        recorded_at=row["recorded_at"],
        official_pdf_url=row.get("official_pdf_url"),
    )


def _run_from_row(row: dict) -> ScraperRun:
    return ScraperRun(
        id=row["id"],
        started_at=row.get("started_at"),
        completed_at=row.get("completed_at"),
        status=RunStatus(row["status"]),
        protocols_found=row.get("protocols_found") or 0,
        protocols_added=row.get("protocols_added") or 0,
        protocols_updated=row.get("protocols_updated") or 0,
        protocols_failed=row.get("protocols_failed") or 0,
        error_log=row.get("error_log"),
        summary=row.get("summary") or {},
    )


# =============================================================================
# Store
# =============================================================================


class PostgresTransaction(StoreTransaction):
    """Write unit bound to one cursor inside an open database transaction."""

    def __init__(self, cur: psycopg.Cursor, code: str):
        self.cur = cur
        self.code = code
        self._protocol_id: Optional[int] = None

    def _require_protocol_id(self) -> int:
        if self._protocol_id is None:
            self.cur.execute("SELECT id FROM protocols WHERE code = %s", (self.code,))
            row = self.cur.fetchone()
            if not row:
                raise ValueError(f"Protocol {self.code} does not exist")
            self._protocol_id = row["id"]
        return self._protocol_id

    def latest_version(self) -> Optional[VersionRow]:
        self.cur.execute(
            """
            SELECT v.version_number, v.title, v.raw_text, v.fingerprint,
                   v.recorded_at, v.official_pdf_url
            FROM protocol_versions v
            JOIN protocols p ON p.id = v.protocol_id
            WHERE p.code = %s
            ORDER BY v.version_number DESC
            LIMIT 1
            """,
            (self.code,),
        )
        row = self.cur.fetchone()
        return _version_from_row(row) if row else None

    def insert_protocol(self, row: ProtocolRow) -> None:
        self.cur.execute(
            """
            INSERT INTO protocols (
                code, title, dci, raw_text, specialty_code, official_pdf_url,
                stored_pdf_url, categories, extraction_quality, last_update_date
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING id
            """,
            (
                row.code, row.title, row.dci, row.raw_text, row.specialty_code,
                row.official_pdf_url, row.stored_pdf_url, list(row.categories),
                row.extraction_quality, row.last_update_date,
            ),
        )
        self._protocol_id = self.cur.fetchone()["id"]

    def update_protocol(self, row: ProtocolRow) -> None:
        self.cur.execute(
            """
            UPDATE protocols SET
                title = %s, dci = %s, raw_text = %s, specialty_code = %s,
                official_pdf_url = %s, stored_pdf_url = %s, categories = %s,
                extraction_quality = %s, last_update_date = %s, updated_at = now()
            WHERE code = %s
            RETURNING id
            """,
            (
                row.title, row.dci, row.raw_text, row.specialty_code,
                row.official_pdf_url, row.stored_pdf_url, list(row.categories),
                row.extraction_quality, row.last_update_date, self.code,
            ),
        )
        result = self.cur.fetchone()
        if not result:
            raise ValueError(f"Protocol {self.code} does not exist")
        self._protocol_id = result["id"]

    def replace_sections(self, sections: list[SectionRow]) -> None:
        protocol_id = self._require_protocol_id()
        self.cur.execute("DELETE FROM protocol_sections WHERE protocol_id = %s", (protocol_id,))
        if sections:
            self.cur.executemany(
                """
                INSERT INTO protocol_sections (protocol_id, section_order, heading, body, kind)
                VALUES (%s, %s, %s, %s, %s)
                """,
                [(protocol_id, s.order, s.heading, s.body, s.kind) for s in sections],
            )

    def replace_images(self, images: list[ImageRow]) -> None:
        protocol_id = self._require_protocol_id()
        self.cur.execute("DELETE FROM protocol_images WHERE protocol_id = %s", (protocol_id,))
        if images:
            self.cur.executemany(
                """
                INSERT INTO protocol_images
                    (protocol_id, position, image_url, page_number, width, height)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                [
                    (protocol_id, i.position, i.image_url, i.page_number, i.width, i.height)
                    for i in images
                ],
            )

    def append_version(self, version: VersionRow) -> None:
        protocol_id = self._require_protocol_id()
        self.cur.execute(
            """
            INSERT INTO protocol_versions (
                protocol_id, version_number, title, raw_text, fingerprint,
                official_pdf_url, recorded_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            """,
            (
                protocol_id, version.version_number, version.title, version.raw_text,
                version.fingerprint, version.official_pdf_url, version.recorded_at,
            ),
        )


class PostgresStore(ProtocolStore):
    """
    ProtocolStore backed by Postgres.

    Usage:
        store = PostgresStore()            # global pool from config.POSTGRES_DSN
        detail = store.get_protocol("N030C")
    """

    def __init__(self, pool: Optional[ConnectionPool] = None):
        self._pool = pool

    @property
    def pool(self) -> ConnectionPool:
        if self._pool is None:
            self._pool = get_pg_pool()
        return self._pool

    @contextmanager
    def transaction(self, code: str) -> Iterator[PostgresTransaction]:
        with self.pool.connection() as conn:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (code,))
                    yield PostgresTransaction(cur, code)

    # =========================================================================
    # Runs
    # =========================================================================

    def insert_run(self, run: ScraperRun) -> None:
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO scraper_runs (
                        id, started_at, completed_at, status, protocols_found,
                        protocols_added, protocols_updated, protocols_failed,
                        error_log, summary
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        run.id, run.started_at, run.completed_at, run.status.value,
                        run.protocols_found, run.protocols_added, run.protocols_updated,
                        run.protocols_failed, run.error_log, Jsonb(run.summary),
                    ),
                )
            conn.commit()

    def update_run(self, run: ScraperRun) -> None:
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE scraper_runs SET
                        completed_at = %s, status = %s, protocols_found = %s,
                        protocols_added = %s, protocols_updated = %s,
                        protocols_failed = %s, error_log = %s, summary = %s
                    WHERE id = %s
                    """,
                    (
                        run.completed_at, run.status.value, run.protocols_found,
                        run.protocols_added, run.protocols_updated, run.protocols_failed,
                        run.error_log, Jsonb(run.summary), run.id,
                    ),
                )
            conn.commit()

    # =========================================================================
    # Reads
    # =========================================================================

    def get_protocol(self, code: str, versions: Optional[int] = None) -> Optional[ProtocolDetail]:
        limit = config.RECENT_VERSIONS if versions is None else versions

        try:
            with self.pool.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT * FROM protocols WHERE code = %s", (code,))
                    row = cur.fetchone()
                    if not row:
                        return None
                    protocol_id = row["id"]

                    cur.execute(
                        """
                        SELECT section_order, heading, body, kind
                        FROM protocol_sections
                        WHERE protocol_id = %s
                        ORDER BY section_order
                        """,
                        (protocol_id,),
                    )
                    sections = [
                        SectionRow(order=r["section_order"], heading=r["heading"], body=r["body"], kind=r["kind"])
                        for r in cur.fetchall()
                    ]

                    cur.execute(
                        """
                        SELECT position, image_url, page_number, width, height
                        FROM protocol_images
                        WHERE protocol_id = %s
                        ORDER BY position
                        """,
                        (protocol_id,),
                    )
                    images = [ImageRow(**r) for r in cur.fetchall()]

                    cur.execute(
                        """
                        SELECT version_number, title, raw_text, fingerprint,
                               recorded_at, official_pdf_url
                        FROM protocol_versions
                        WHERE protocol_id = %s
                        ORDER BY version_number DESC
                        LIMIT %s
                        """,
                        (protocol_id, limit),
                    )
                    version_rows = [_version_from_row(r) for r in cur.fetchall()]

        except psycopg.Error as e:
            raise StoreUnavailable(f"Failed to read protocol {code}: {e}") from e

        return ProtocolDetail(
            protocol=_protocol_from_row(row),
            sections=sections,
            images=images,
            versions=version_rows,
        )

    def get_stats(self, recent_runs: Optional[int] = None) -> StoreStats:
        limit = config.RECENT_RUNS if recent_runs is None else recent_runs

        try:
            with self.pool.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        "SELECT COUNT(*) AS count, MAX(last_update_date) AS last_update FROM protocols"
                    )
                    totals = cur.fetchone()

                    cur.execute(
                        """
                        SELECT category, COUNT(*) AS count
                        FROM protocols, unnest(categories) AS category
                        GROUP BY category
                        ORDER BY count DESC, category
                        """
                    )
                    category_counts = {r["category"]: r["count"] for r in cur.fetchall()}

                    cur.execute(
                        """
                        SELECT * FROM scraper_runs
                        ORDER BY started_at DESC NULLS LAST
                        LIMIT %s
                        """,
                        (limit,),
                    )
                    runs = [_run_from_row(r) for r in cur.fetchall()]

        except psycopg.Error as e:
            raise StoreUnavailable(f"Failed to read stats: {e}") from e

        last_update = totals["last_update"] if totals else None
        if last_update is None and runs:
            last_update = runs[0].completed_at or runs[0].started_at

        return StoreStats(
            total_protocols=totals["count"] if totals else 0,
            last_update=last_update,
            category_counts=category_counts,
            recent_runs=runs,
        )

    def check_health(self) -> dict[str, Any]:
        """Check database health and return status."""
        result = {
            "status": "unknown",
            "backend": "postgres",
            "connection": False,
            "tables": [],
        }

        try:
            with self.pool.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1 AS ok")
                    result["connection"] = bool(cur.fetchone())

                    cur.execute(
                        """
                        SELECT tablename FROM pg_tables
                        WHERE schemaname = 'public' AND tablename = ANY(%s)
                        """,
                        (list(APP_TABLES),),
                    )
                    result["tables"] = sorted(row["tablename"] for row in cur.fetchall())

            result["status"] = "healthy" if len(result["tables"]) == len(APP_TABLES) else "degraded"

        except psycopg.Error as e:
            result["status"] = "unhealthy"
            result["error"] = str(e)

        return result

    def close(self) -> None:
        if self._pool is not None and self._pool is _pool:
            close_pool()
        elif self._pool is not None:
            self._pool.close()
        self._pool = None
