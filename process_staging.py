import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

import duckdb
import pandas as pd

from logging_utils import attach_file_handler, detach_file_handler
from silver_transforms import run_silver_transforms
from source_connector import SourceFile

STAGE_COLUMNS = [
    "event_time",
    "ad_id",
    "session_id",
    "viewer_id",
    "event_type",
    "channel_id",
    "source_file_name",
    "source_file_timestamp",
    "source_row_number",
]
REQUIRED_COLUMNS = [
    "event_time",
    "session_id",
    "viewer_id",
    "event_type",
    "channel_id",
    "source_file_name",
    "source_file_timestamp",
]
TIMESTAMP_COLUMNS = ["event_time", "source_file_timestamp"]
INTEGER_COLUMNS = ["ad_id", "event_type", "channel_id", "source_row_number"]
STRING_COLUMNS = ["session_id", "viewer_id", "source_file_name"]


@dataclass(frozen=True)
class BatchResult:
    batch_id: Optional[int]
    files_listed: int
    files_loaded: int
    rows_read: int
    rows_rejected: int
    rows_appended: int


# --- Validation & dead letters ------------------------------------------------------


def validate_and_coerce(df: pd.DataFrame, logger) -> Tuple[pd.DataFrame, List[Dict]]:
    """
    Return (good_df, bad_records). Timestamps become naive UTC, integer
    columns nullable Int64. bad_records contain
    {'stage':'validate','error':...,'source_file_name':...,'flat_record':...}.
    """
    df = df.reindex(columns=STAGE_COLUMNS)
    if df.empty:
        return df, []

    coerced = df.copy()
    problems = []

    def flag(mask: pd.Series, label: str):
        mask = mask.fillna(False).astype(bool)
        problems.append(mask.map({True: label, False: ""}))

    for col in TIMESTAMP_COLUMNS:
        missing = df[col].isna()
        parsed = pd.to_datetime(df[col], errors="coerce", utc=True).dt.tz_localize(None)
        flag(parsed.isna() & ~missing, f"invalid:{col}")
        coerced[col] = parsed

    for col in INTEGER_COLUMNS:
        missing = df[col].isna()
        numeric = pd.to_numeric(df[col], errors="coerce")
        bad_number = (numeric.isna() | (numeric % 1 != 0)) & ~missing
        flag(bad_number, f"invalid:{col}")
        coerced[col] = numeric.where(~bad_number).astype("Int64")

    for col in STRING_COLUMNS:
        blank = df[col].isna() | (df[col].astype(str).str.strip() == "")
        coerced[col] = df[col].astype(str).where(~blank, None)

    for col in REQUIRED_COLUMNS:
        # blank strings count as missing; unparseable values were flagged above
        missing = coerced[col].isna() if col in STRING_COLUMNS else df[col].isna()
        flag(missing, f"missing_required:{col}")

    errors = pd.concat(problems, axis=1).apply(
        lambda r: ",".join(dict.fromkeys(x for x in r if x)), axis=1
    )
    is_bad = errors != ""

    bad = [
        {
            "stage": "validate",
            "error": errors[idx],
            "source_file_name": df.at[idx, "source_file_name"],
            "flat_record": df.loc[idx].to_dict(),
        }
        for idx in df.index[is_bad]
    ]
    good_df = coerced.loc[~is_bad, STAGE_COLUMNS].reset_index(drop=True)
    logger.info(f"Validation result: good_rows={len(good_df)}, bad_rows={len(bad)}")
    return good_df, bad


def append_dead_letters(records: List[Dict], dlq_path: str):
    if not records or not dlq_path:
        return
    dlq_dir = os.path.dirname(dlq_path)
    if dlq_dir:
        os.makedirs(dlq_dir, exist_ok=True)
    with open(dlq_path, "a") as dlq:
        for rec in records:
            dlq.write(json.dumps(rec, default=str) + "\n")


# --- File ledger ----------------------------------------------------------------------


def is_new_file(con: duckdb.DuckDBPyConnection, file_name: str) -> bool:
    """True when file_name has not been committed to click_stream yet."""
    row = con.execute(
        "SELECT 1 FROM loaded_files WHERE source_file_name = ?", [file_name]
    ).fetchone()
    return row is None


def filter_new_files(
    con: duckdb.DuckDBPyConnection, files: List[SourceFile], logger
) -> List[SourceFile]:
    if not files:
        return []
    listed = pd.DataFrame({"source_file_name": [f.name for f in files]})
    con.register("_listed_files", listed)
    try:
        loaded = {
            r[0]
            for r in con.execute(
                """
                SELECT l.source_file_name
                FROM _listed_files l
                JOIN loaded_files f USING (source_file_name)
                """
            ).fetchall()
        }
    finally:
        con.unregister("_listed_files")

    new_files = [f for f in files if f.name not in loaded]
    logger.info(
        f"File ledger: listed={len(files)}, already_loaded={len(files) - len(new_files)}, "
        f"new={len(new_files)}"
    )
    return new_files


def record_loaded_files(
    con: duckdb.DuckDBPyConnection,
    files: List[SourceFile],
    raw_df: pd.DataFrame,
    batch_id: int,
    loaded_at: datetime,
) -> int:
    """
    Insert the batch's files into loaded_files. A name that is already
    present raises duckdb.ConstraintException, failing the cycle.
    """
    row_counts = raw_df.groupby("source_file_name").size().to_dict() if len(raw_df) else {}
    ledger = pd.DataFrame(
        {
            "source_file_name": [f.name for f in files],
            "source_file_timestamp": [pd.Timestamp(f.timestamp) for f in files],
            "batch_id": batch_id,
            "row_count": [int(row_counts.get(f.name, 0)) for f in files],
            "loaded_at": pd.Timestamp(loaded_at),
        }
    )
    con.register("_ledger_df", ledger)
    try:
        con.execute(
            """
            INSERT INTO loaded_files (
                source_file_name, source_file_timestamp, batch_id, row_count, loaded_at
            )
            SELECT
                source_file_name,
                CAST(source_file_timestamp AS TIMESTAMP),
                CAST(batch_id AS BIGINT),
                CAST(row_count AS BIGINT),
                CAST(loaded_at AS TIMESTAMP)
            FROM _ledger_df
            """
        )
    finally:
        con.unregister("_ledger_df")
    return len(ledger)


# --- Staging buffer -------------------------------------------------------------------


def stage_rows(con: duckdb.DuckDBPyConnection, df: pd.DataFrame, partition_id: int) -> int:
    """Append validated raw rows to stage_click_stream under partition_id."""
    if df.empty:
        return 0
    df_to_stage = df[STAGE_COLUMNS].copy()
    df_to_stage.insert(0, "partition_id", int(partition_id))

    con.register("df_to_stage", df_to_stage)
    try:
        con.execute(
            """
            INSERT INTO stage_click_stream (
                partition_id, event_time, ad_id, session_id, viewer_id, event_type,
                channel_id, source_file_name, source_file_timestamp, source_row_number
            )
            SELECT
                CAST(partition_id AS INTEGER),
                CAST(event_time AS TIMESTAMP),
                CAST(ad_id AS INTEGER),
                session_id,
                viewer_id,
                CAST(event_type AS INTEGER),
                CAST(channel_id AS INTEGER),
                source_file_name,
                CAST(source_file_timestamp AS TIMESTAMP),
                CAST(source_row_number AS BIGINT)
            FROM df_to_stage
            """
        )
    finally:
        con.unregister("df_to_stage")
    return len(df_to_stage)


def reset_staging(con: duckdb.DuckDBPyConnection, partition_id: int) -> int:
    """Discard every staged row of partition_id. Safe on an empty partition."""
    staged = con.execute(
        "SELECT COUNT(*) FROM stage_click_stream WHERE partition_id = ?", [partition_id]
    ).fetchone()[0]
    if staged:
        con.execute("DELETE FROM stage_click_stream WHERE partition_id = ?", [partition_id])
    return staged


def next_batch_id(con: duckdb.DuckDBPyConnection) -> int:
    return con.execute("SELECT nextval('load_batch_seq')").fetchone()[0]


# --- Batch cycle ----------------------------------------------------------------------


def run_batch_cycle(
    con: duckdb.DuckDBPyConnection,
    source,
    logger: logging.Logger,
    partition_id: int = 1,
    dlq_path: Optional[str] = None,
    batch_log_path: Optional[str] = None,
    fmt=None,
) -> BatchResult:
    """
    One stage -> reconcile -> merge -> reset cycle.

    Staging, the click_stream append, the aggregate updates, the file ledger
    and the staging reset are one DuckDB transaction: any failure rolls all
    of them back and re-raises, so the cycle can simply be retried. Source
    errors surface before anything is written. Re-running against files
    that are already loaded appends nothing.
    """
    batch_fh = attach_file_handler(logger, batch_log_path, fmt) if batch_log_path else None
    started = datetime.now(timezone.utc).replace(tzinfo=None)
    try:
        logger.info(f"--- Starting batch cycle (partition_id={partition_id}) ---")
        listed = source.list_files()
        new_files = filter_new_files(con, listed, logger)
        if not new_files:
            logger.info("No new source files. Nothing to load.")
            return BatchResult(None, len(listed), 0, 0, 0, 0)

        raw = source.read(new_files)
        good, bad = validate_and_coerce(raw, logger)
        for rec in bad:
            logger.warning(
                f"Rejected row from {rec['source_file_name']}: {rec['error']}"
            )

        batch_id = next_batch_id(con)
        con.begin()
        try:
            leftover = reset_staging(con, partition_id)
            if leftover:
                logger.warning(
                    f"Discarded {leftover} leftover staged rows in partition {partition_id}"
                )
            staged = stage_rows(con, good, partition_id)
            logger.info(f"Staged rows={staged} for batch_id={batch_id}")

            appended = run_silver_transforms(
                con, logger, partition_id, batch_id, loaded_at=started
            )
            record_loaded_files(con, new_files, raw, batch_id, started)
            reset_staging(con, partition_id)

            con.execute(
                """
                INSERT INTO load_batches (
                    batch_id, partition_id, started_at, finished_at,
                    files_loaded, rows_appended, rows_rejected
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    batch_id,
                    partition_id,
                    started,
                    datetime.now(timezone.utc).replace(tzinfo=None),
                    len(new_files),
                    appended,
                    len(bad),
                ],
            )
            con.commit()
        except Exception as e:
            try:
                con.rollback()
                logger.error(
                    f"Batch {batch_id} failed: {e}. Rolled back.", exc_info=True
                )
            except Exception as rollback_err:
                logger.error(f"Rollback also failed: {rollback_err}", exc_info=True)
            raise

        append_dead_letters(bad, dlq_path)
        took = (datetime.now(timezone.utc).replace(tzinfo=None) - started).total_seconds()
        logger.info(
            f"Batch {batch_id} committed: files={len(new_files)} rows_read={len(raw)} "
            f"rejected={len(bad)} appended={appended} duration_s={took:.2f}"
        )
        return BatchResult(batch_id, len(listed), len(new_files), len(raw), len(bad), appended)
    finally:
        if batch_fh is not None:
            detach_file_handler(logger, batch_fh)
