import logging
import os
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, Iterator, List, Optional

import duckdb
import pandas as pd

from enrichment import EnrichmentResolver
from silver_transforms import as_utc_naive

CLICK_EVENT = 2
COMPLETION_EVENT = 9
DEFAULT_WINDOW = timedelta(days=1)

FLAGGED_SESSIONS_SQL = """
    SELECT session_start, session_id, ad_id, all_events, distinct_events, event_count
    FROM click_session_arrays
    WHERE session_start >= ?
      AND list_contains(distinct_events, CAST(? AS INTEGER))
      AND NOT list_contains(distinct_events, CAST(? AS INTEGER))
    ORDER BY session_start, session_id, ad_id NULLS FIRST
"""


@dataclass(frozen=True)
class FraudFlag:
    session_start: datetime
    session_id: str
    ad_id: Optional[int]
    fraudulent_click_count: int
    count: int
    all_events: List[int]
    distinct_events: List[int]


def detect_click_fraud(
    con: duckdb.DuckDBPyConnection,
    now: Optional[datetime] = None,
    window: timedelta = DEFAULT_WINDOW,
    click_code: int = CLICK_EVENT,
    terminal_code: int = COMPLETION_EVENT,
    timeout_seconds: Optional[float] = None,
    fetch_size: int = 1000,
) -> Iterator[FraudFlag]:
    """
    Flag (session_start, session_id, ad_id) groups with session_start in
    [now - window, ...) whose events include click_code but never terminal_code.

    fraudulent_click_count is every occurrence of click_code in the group.
    Returns a lazy single-pass iterator over a separate cursor, so only
    committed batches are visible; call again for a fresh scan. With
    timeout_seconds the scan is interrupted and TimeoutError raised.
    """
    if window < timedelta(0):
        raise ValueError(f"window must not be negative, got {window}")
    if click_code == terminal_code:
        raise ValueError(f"click_code and terminal_code must differ, both are {click_code}")
    if fetch_size <= 0:
        raise ValueError(f"fetch_size must be positive, got {fetch_size}")

    now = as_utc_naive(now if now is not None else datetime.now(timezone.utc))
    return _iter_flags(con, now - window, click_code, terminal_code, timeout_seconds, fetch_size)


def _iter_flags(con, cutoff, click_code, terminal_code, timeout_seconds, fetch_size):
    cur = con.cursor()
    timer = None
    if timeout_seconds:
        timer = threading.Timer(timeout_seconds, cur.interrupt)
        timer.daemon = True
        timer.start()
    try:
        cur.execute(FLAGGED_SESSIONS_SQL, [cutoff, click_code, terminal_code])
        while True:
            rows = cur.fetchmany(fetch_size)
            if not rows:
                break
            for session_start, session_id, ad_id, all_events, distinct_events, count in rows:
                yield FraudFlag(
                    session_start=session_start,
                    session_id=session_id,
                    ad_id=ad_id,
                    fraudulent_click_count=all_events.count(click_code),
                    count=count,
                    all_events=list(all_events),
                    distinct_events=list(distinct_events),
                )
    except duckdb.InterruptException as e:
        raise TimeoutError(
            f"Click fraud scan exceeded {timeout_seconds}s and was interrupted"
        ) from e
    finally:
        if timer is not None:
            timer.cancel()
        cur.close()


def summarize_fraud_by_advertiser(
    con: duckdb.DuckDBPyConnection, flags: Iterable[FraudFlag]
) -> pd.DataFrame:
    """Roll flagged groups up to the advertiser behind each ad (null when unresolved)."""
    columns = ["advertiser_id", "flagged_groups", "fraudulent_clicks"]
    flags = list(flags)
    if not flags:
        return pd.DataFrame(columns=columns)

    resolver = EnrichmentResolver(con)
    advertisers = {}
    for flag in flags:
        if flag.ad_id not in advertisers:
            campaign = resolver.lookup_campaign(flag.ad_id)
            advertisers[flag.ad_id] = campaign["advertiser_id"] if campaign else None

    flags_df = pd.DataFrame([asdict(f) for f in flags])
    flags_df["advertiser_id"] = pd.array(
        [advertisers[f.ad_id] for f in flags], dtype="Int64"
    )

    summary = (
        flags_df.groupby("advertiser_id", dropna=False)
        .agg(
            flagged_groups=("session_id", "size"),
            fraudulent_clicks=("fraudulent_click_count", "sum"),
        )
        .reset_index()
        .sort_values(["fraudulent_clicks", "flagged_groups"], ascending=False)
        .reset_index(drop=True)
    )
    summary["advertiser_id"] = summary["advertiser_id"].astype("Int64")
    return summary[columns]


def write_fraud_report(flags: List[FraudFlag], report_path: str) -> int:
    report_dir = os.path.dirname(report_path)
    if report_dir:
        os.makedirs(report_dir, exist_ok=True)
    pd.DataFrame(
        [asdict(f) for f in flags], columns=list(FraudFlag.__dataclass_fields__)
    ).to_csv(report_path, index=False)
    return len(flags)


def run_gold_transforms(
    con: duckdb.DuckDBPyConnection,
    logger: logging.Logger,
    now: Optional[datetime] = None,
    window: timedelta = DEFAULT_WINDOW,
    click_code: int = CLICK_EVENT,
    terminal_code: int = COMPLETION_EVENT,
    timeout_seconds: Optional[float] = None,
    fetch_size: int = 1000,
) -> List[FraudFlag]:
    """Run the click fraud evaluation and log a per-advertiser summary."""
    logger.info("--- Starting click fraud evaluation ---")
    try:
        flags = list(
            detect_click_fraud(
                con,
                now=now,
                window=window,
                click_code=click_code,
                terminal_code=terminal_code,
                timeout_seconds=timeout_seconds,
                fetch_size=fetch_size,
            )
        )
    except Exception as e:
        logger.error(f"Click fraud evaluation failed: {e}", exc_info=True)
        raise

    total_clicks = sum(f.fraudulent_click_count for f in flags)
    logger.info(f"Flagged groups={len(flags)}, fraudulent_clicks={total_clicks}")
    for row in summarize_fraud_by_advertiser(con, flags).itertuples(index=False):
        logger.info(
            f"  - advertiser {row.advertiser_id}: groups={row.flagged_groups}, "
            f"clicks={row.fraudulent_clicks}"
        )
    return flags
