import logging
from datetime import datetime, timezone
from typing import Dict, Optional

import duckdb
import pandas as pd

SESSION_ARRAY_COLUMNS = [
    "session_start",
    "session_id",
    "ad_id",
    "all_events",
    "distinct_events",
    "event_count",
]

# Same grouping the cache maintains, computed from scratch over click_stream
RECOMPUTE_SESSION_ARRAYS_SQL = """
    SELECT
        session_start,
        session_id,
        ad_id,
        list(event_type ORDER BY event_seq)          AS all_events,
        list_sort(list_distinct(list(event_type)))   AS distinct_events,
        COUNT(*)                                     AS event_count
    FROM click_stream
    GROUP BY session_start, session_id, ad_id
"""


def as_utc_naive(ts) -> datetime:
    """Timestamps are stored as naive UTC; convert aware values, pass naive ones through."""
    ts = pd.Timestamp(ts)
    if ts.tzinfo is not None:
        ts = ts.tz_convert(timezone.utc).tz_localize(None)
    return ts.to_pydatetime()


def _fetch_records(con, sql: str, params=None) -> pd.DataFrame:
    # fetchall keeps LIST columns as plain Python lists
    cur = con.execute(sql, params or [])
    columns = [d[0] for d in cur.description]
    return pd.DataFrame(cur.fetchall(), columns=columns)


def run_silver_transforms(
    con: duckdb.DuckDBPyConnection,
    logger: logging.Logger,
    partition_id: int,
    batch_id: int,
    loaded_at: Optional[datetime] = None,
) -> int:
    """
    Move one staged partition into click_stream and keep the derived tables in step:
      - reconcile session_start for every session_id present in staging
      - append enriched rows to click_stream
      - extend click_session_bounds and click_session_arrays from the appended rows only
    Must run inside the caller's transaction; nothing here commits.
    Returns the number of rows appended.
    """
    session_starts = reconcile_session_starts(con, partition_id, logger)
    if not session_starts:
        logger.info("No staged sessions for this partition. Nothing to merge.")
        return 0

    appended = merge_click_stream(con, partition_id, batch_id, logger, loaded_at)
    update_session_bounds(con, logger)
    update_session_arrays(con, logger)
    return appended


# --- Session start reconciliation ----------------------------------------------------


def reconcile_session_starts(
    con: duckdb.DuckDBPyConnection, partition_id: int, logger: logging.Logger = None
) -> Dict[str, datetime]:
    """
    Resolve session_start for each session_id in the staged partition:
    the earlier of the staged minimum and the committed minimum (all
    session_start groups). Sessions absent from staging are not looked at.

    Leaves the result in temp table batch_session_starts for the merge.
    """
    logger = logger or logging.getLogger("silver")
    con.execute(
        f"""
        CREATE OR REPLACE TEMP TABLE batch_session_starts AS
        WITH staged AS (
            SELECT session_id, MIN(event_time) AS staged_min
            FROM stage_click_stream
            WHERE partition_id = {int(partition_id)}
            GROUP BY session_id
        )
        SELECT
            s.session_id,
            CASE
                WHEN b.min_event_time IS NOT NULL AND b.min_event_time < s.staged_min
                THEN b.min_event_time
                ELSE s.staged_min
            END AS session_start,
            b.min_event_time IS NOT NULL AS seen_before
        FROM staged s
        LEFT JOIN click_session_bounds b ON b.session_id = s.session_id;
        """
    )
    rows = con.execute(
        "SELECT session_id, session_start, seen_before FROM batch_session_starts"
    ).fetchall()
    continued = sum(1 for r in rows if r[2])
    logger.info(
        f"Reconciled session starts: sessions={len(rows)}, continued_from_history={continued}"
    )
    return {session_id: start for session_id, start, _ in rows}


# --- Event store -----------------------------------------------------------------------


def merge_click_stream(
    con: duckdb.DuckDBPyConnection,
    partition_id: int,
    batch_id: int,
    logger: logging.Logger = None,
    loaded_at: Optional[datetime] = None,
) -> int:
    """
    Append the staged partition to click_stream with session_start from
    batch_session_starts and enrichment from the reference tables (a miss
    leaves the field NULL). Rows from files already in loaded_files are
    skipped. The appended rows stay available as temp table batch_click_stream.
    """
    logger = logger or logging.getLogger("silver")
    loaded_at = as_utc_naive(loaded_at or datetime.now(timezone.utc))

    con.execute(
        f"""
        CREATE OR REPLACE TEMP TABLE batch_click_stream AS
        SELECT
            (SELECT COALESCE(MAX(event_seq), 0) FROM click_stream)
                + ROW_NUMBER() OVER (
                    ORDER BY sc.event_time, sc.source_file_name, sc.source_row_number
                )                              AS event_seq,
            ss.session_start,
            sc.event_time,
            sc.ad_id,
            a.campaign_id,
            c.advertiser_id,
            sc.session_id,
            sc.viewer_id,
            sc.channel_id,
            ch.content_distributor_id,
            sc.event_type,
            sc.source_file_name,
            sc.source_file_timestamp,
            CAST({int(batch_id)} AS BIGINT)   AS batch_id,
            CAST('{loaded_at.isoformat(sep=" ")}' AS TIMESTAMP) AS loaded_at
        FROM stage_click_stream sc
        JOIN batch_session_starts ss ON ss.session_id = sc.session_id
        LEFT JOIN dim_ads a ON a.ad_id = sc.ad_id
        LEFT JOIN dim_campaigns c ON c.campaign_id = a.campaign_id
        LEFT JOIN dim_channels ch ON ch.channel_id = sc.channel_id
        WHERE sc.partition_id = {int(partition_id)}
          AND sc.source_file_name NOT IN (SELECT source_file_name FROM loaded_files);
        """
    )
    con.execute(
        """
        INSERT INTO click_stream (
            event_seq, session_start, event_time, ad_id, campaign_id, advertiser_id,
            session_id, viewer_id, channel_id, content_distributor_id, event_type,
            source_file_name, source_file_timestamp, batch_id, loaded_at
        )
        SELECT
            event_seq, session_start, event_time, ad_id, campaign_id, advertiser_id,
            session_id, viewer_id, channel_id, content_distributor_id, event_type,
            source_file_name, source_file_timestamp, batch_id, loaded_at
        FROM batch_click_stream
        ORDER BY event_seq;
        """
    )
    appended, unenriched = con.execute(
        """
        SELECT
            COUNT(*),
            COUNT(*) FILTER (WHERE campaign_id IS NULL OR content_distributor_id IS NULL)
        FROM batch_click_stream
        """
    ).fetchone()
    logger.info(
        f"Appended to click_stream: batch_id={batch_id}, rows={appended}, "
        f"rows_with_enrichment_miss={unenriched}"
    )
    return appended


def update_session_bounds(con: duckdb.DuckDBPyConnection, logger: logging.Logger = None):
    """Fold the batch's per-session minimum event_time into click_session_bounds."""
    logger = logger or logging.getLogger("silver")
    con.execute(
        """
        INSERT INTO click_session_bounds (session_id, min_event_time)
        SELECT session_id, MIN(event_time)
        FROM batch_click_stream
        GROUP BY session_id
        ON CONFLICT (session_id) DO UPDATE SET
            min_event_time = LEAST(click_session_bounds.min_event_time, EXCLUDED.min_event_time);
        """
    )
    logger.info("Successfully upserted click_session_bounds.")


def scan_click_stream(
    con: duckdb.DuckDBPyConnection, start, end=None
) -> pd.DataFrame:
    """Rows with start <= session_start (< end when given), ordered by session_start, ad_id."""
    sql = "SELECT * FROM click_stream WHERE session_start >= ?"
    params = [as_utc_naive(start)]
    if end is not None:
        sql += " AND session_start < ?"
        params.append(as_utc_naive(end))
    sql += " ORDER BY session_start, ad_id NULLS FIRST, event_seq"
    return con.execute(sql, params).df()


# --- Session arrays (aggregate cache) --------------------------------------------------


def update_session_arrays(con: duckdb.DuckDBPyConnection, logger: logging.Logger = None) -> int:
    """
    Extend click_session_arrays with the rows in batch_click_stream.

    Only keys touched by the batch are rewritten: their cached arrays are
    concatenated with the batch's arrays (batch event_seq values are all
    higher, so append order is preserved), distinct sets are merged and
    counts added. Returns the number of keys touched.
    """
    logger = logger or logging.getLogger("silver")
    con.execute(
        """
        CREATE OR REPLACE TEMP TABLE batch_session_arrays AS
        SELECT
            session_start,
            session_id,
            ad_id,
            list(event_type ORDER BY event_seq)          AS all_events,
            list_sort(list_distinct(list(event_type)))   AS distinct_events,
            COUNT(*)                                     AS event_count
        FROM batch_click_stream
        GROUP BY session_start, session_id, ad_id;

        CREATE OR REPLACE TEMP TABLE merged_session_arrays AS
        SELECT
            b.session_start,
            b.session_id,
            b.ad_id,
            CASE
                WHEN a.session_id IS NULL THEN b.all_events
                ELSE list_concat(a.all_events, b.all_events)
            END AS all_events,
            CASE
                WHEN a.session_id IS NULL THEN b.distinct_events
                ELSE list_sort(list_distinct(list_concat(a.distinct_events, b.distinct_events)))
            END AS distinct_events,
            COALESCE(a.event_count, 0) + b.event_count AS event_count
        FROM batch_session_arrays b
        LEFT JOIN click_session_arrays a
               ON a.session_start = b.session_start
              AND a.session_id    = b.session_id
              AND a.ad_id IS NOT DISTINCT FROM b.ad_id;

        DELETE FROM click_session_arrays a
        USING batch_session_arrays b
        WHERE a.session_start = b.session_start
          AND a.session_id    = b.session_id
          AND a.ad_id IS NOT DISTINCT FROM b.ad_id;

        INSERT INTO click_session_arrays (
            session_start, session_id, ad_id, all_events, distinct_events, event_count
        )
        SELECT session_start, session_id, ad_id, all_events, distinct_events, event_count
        FROM merged_session_arrays;
        """
    )
    touched = con.execute("SELECT COUNT(*) FROM merged_session_arrays").fetchone()[0]
    logger.info(f"Successfully updated click_session_arrays: keys_touched={touched}")
    return touched


def get_session_arrays(con: duckdb.DuckDBPyConnection, since=None) -> pd.DataFrame:
    """Cached session arrays, optionally limited to session_start >= since."""
    sql = f"SELECT {', '.join(SESSION_ARRAY_COLUMNS)} FROM click_session_arrays"
    params = []
    if since is not None:
        sql += " WHERE session_start >= ?"
        params.append(as_utc_naive(since))
    sql += " ORDER BY session_start, session_id, ad_id NULLS FIRST"
    return _fetch_records(con, sql, params)


def lookup_session_array(
    con: duckdb.DuckDBPyConnection, session_start, session_id: str, ad_id=None
) -> Optional[dict]:
    row = con.execute(
        f"""
        SELECT {', '.join(SESSION_ARRAY_COLUMNS)}
        FROM click_session_arrays
        WHERE session_start = ?
          AND session_id = ?
          AND ad_id IS NOT DISTINCT FROM CAST(? AS INTEGER)
        """,
        [as_utc_naive(session_start), session_id, ad_id],
    ).fetchone()
    if row is None:
        return None
    return dict(zip(SESSION_ARRAY_COLUMNS, row))


def recompute_session_arrays(con: duckdb.DuckDBPyConnection) -> pd.DataFrame:
    """Session arrays aggregated directly from click_stream (no cache)."""
    return _fetch_records(
        con,
        RECOMPUTE_SESSION_ARRAYS_SQL
        + " ORDER BY session_start, session_id, ad_id NULLS FIRST",
    )


def find_session_array_drift(con: duckdb.DuckDBPyConnection) -> pd.DataFrame:
    """
    Keys where click_session_arrays disagrees with a full recomputation,
    including keys missing on either side and duplicated cache keys.
    Empty when the cache is consistent.
    """
    return _fetch_records(
        con,
        f"""
        WITH fresh AS ({RECOMPUTE_SESSION_ARRAYS_SQL}),
        mismatched AS (
            SELECT
                COALESCE(c.session_start, f.session_start) AS session_start,
                COALESCE(c.session_id, f.session_id)       AS session_id,
                COALESCE(c.ad_id, f.ad_id)                 AS ad_id,
                CASE
                    WHEN c.session_id IS NULL THEN 'missing_in_cache'
                    WHEN f.session_id IS NULL THEN 'missing_in_click_stream'
                    ELSE 'value_mismatch'
                END AS drift,
                c.event_count AS cached_count,
                f.event_count AS expected_count
            FROM click_session_arrays c
            FULL OUTER JOIN fresh f
                ON c.session_start = f.session_start
               AND c.session_id    = f.session_id
               AND c.ad_id IS NOT DISTINCT FROM f.ad_id
            WHERE c.all_events      IS DISTINCT FROM f.all_events
               OR c.distinct_events IS DISTINCT FROM f.distinct_events
               OR c.event_count     IS DISTINCT FROM f.event_count
        ),
        duplicated AS (
            SELECT
                session_start, session_id, ad_id,
                'duplicate_cache_key' AS drift,
                SUM(event_count) AS cached_count,
                NULL::BIGINT AS expected_count
            FROM click_session_arrays
            GROUP BY session_start, session_id, ad_id
            HAVING COUNT(*) > 1
        )
        SELECT * FROM mismatched
        UNION ALL
        SELECT * FROM duplicated
        ORDER BY session_start, session_id, ad_id NULLS FIRST
        """,
    )


def rebuild_session_arrays(con: duckdb.DuckDBPyConnection, logger: logging.Logger = None) -> int:
    """
    Replace click_session_arrays and click_session_bounds with a full
    recomputation from click_stream, in one transaction. Returns cache rows written.
    """
    logger = logger or logging.getLogger("silver")
    con.begin()
    try:
        con.execute("DELETE FROM click_session_arrays;")
        con.execute(
            f"""
            INSERT INTO click_session_arrays (
                session_start, session_id, ad_id, all_events, distinct_events, event_count
            )
            {RECOMPUTE_SESSION_ARRAYS_SQL};
            """
        )
        con.execute(
            """
            INSERT INTO click_session_bounds (session_id, min_event_time)
            SELECT session_id, MIN(event_time)
            FROM click_stream
            GROUP BY session_id
            ON CONFLICT (session_id) DO UPDATE SET
                min_event_time = EXCLUDED.min_event_time;
            """
        )
        rows = con.execute("SELECT COUNT(*) FROM click_session_arrays").fetchone()[0]
        con.commit()
    except Exception:
        con.rollback()
        logger.error("Rebuild of click_session_arrays failed. Rolled back.", exc_info=True)
        raise
    logger.info(f"Rebuilt click_session_arrays: rows={rows}")
    return rows
