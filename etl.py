import argparse
import logging
import os
import sys
import time
from datetime import datetime, timedelta

import duckdb
import pandas as pd
from diskcache import Cache
from dotenv import load_dotenv

from config_loader import load_config
from enrichment import EnrichmentResolver
from gold_transforms import run_gold_transforms, write_fraud_report
from logging_utils import configure_logging
from process_staging import run_batch_cycle
from setup_database import create_schema
from source_connector import ParquetSource, get_s3_client, sync_s3_landing


def connect_with_retry(db_file: str, logger: logging.Logger, attempts: int = 3):
    """DuckDB connect, retrying only on file lock / permission I/O errors."""
    last_err = None
    for attempt in range(attempts):
        try:
            return duckdb.connect(database=db_file, read_only=False)
        except (IOError, OSError, duckdb.IOException) as e:
            error_msg = str(e).lower()
            if "lock" in error_msg or "permission" in error_msg:
                last_err = e
                logger.warning(
                    f"DuckDB connect failed (attempt {attempt + 1}/{attempts}): {e}"
                )
                if attempt < attempts - 1:
                    time.sleep(0.5 * (2**attempt))
            else:
                logger.error(f"DuckDB connect failed with non-retryable IO error: {e}")
                return None
        except Exception as e:
            logger.error(
                f"DuckDB connect failed with non-retryable error: {type(e).__name__}: {e}"
            )
            return None

    logger.error(f"Failed to connect to DuckDB after retries: {last_err}")
    return None


def sync_landing_from_s3(cfg, landing_dir: str, logger: logging.Logger):
    bucket = cfg.get_env_value("source.s3.bucket_env", required=True)
    cache = Cache(str(cfg.get_path("paths.cache_dir", create=True)))
    try:
        return sync_s3_landing(
            get_s3_client(),
            bucket,
            landing_dir,
            cache,
            prefix=cfg.get("source.s3.prefix", ""),
            pattern=cfg.get("source.object_pattern", "clickstream*.parquet"),
            ttl_seconds=cfg.get("source.s3.object_cache_ttl_seconds", 1209600),
        )
    finally:
        cache.close()


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Load new click-stream files and evaluate click fraud"
    )
    parser.add_argument(
        "--skip-detect", action="store_true", help="Only run the batch cycle"
    )
    parser.add_argument(
        "--skip-s3", action="store_true", help="Do not sync the landing dir from S3"
    )
    parser.add_argument(
        "--now",
        type=str,
        default=None,
        help="Evaluation time (ISO timestamp, UTC). Defaults to the current time.",
    )
    parser.add_argument(
        "--window-days",
        type=float,
        default=None,
        help="Trailing fraud window in days (default from config fraud.window_days)",
    )
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    load_dotenv()
    cfg = load_config()

    run_ts = datetime.now().strftime(cfg.get("run_ts_format", "%Y%m%d_%H%M%S"))
    logs_dir = cfg.get("paths.logs_dir", "logs")
    logger, fmt = configure_logging(f"{logs_dir}/etl_{run_ts}.log", logger_name="etl")
    logger.info("--- Starting ETL Process ---")

    landing_dir = str(cfg.get_path("paths.landing_dir", create=True))
    if cfg.get("source.s3.enabled", False) and not args.skip_s3:
        try:
            sync_landing_from_s3(cfg, landing_dir, logger)
        except Exception as e:
            logger.error(f"S3 sync failed, nothing loaded: {e}", exc_info=True)
            return 1

    con = connect_with_retry(cfg.get("database_path"), logger)
    if con is None:
        return 1

    try:
        create_schema(con)

        reference_dir = cfg.get("paths.reference_dir")
        if reference_dir and os.path.isdir(reference_dir):
            EnrichmentResolver(con).load_reference_dir(reference_dir)

        source = ParquetSource(
            landing_dir, cfg.get("source.object_pattern", "clickstream*.parquet")
        )
        dead_letter_dir = cfg.get("paths.dead_letter_dir", "dead_letter")
        try:
            result = run_batch_cycle(
                con,
                source,
                logger,
                partition_id=cfg.get("staging.partition_id", 1),
                dlq_path=f"{dead_letter_dir}/staging_rejects_{run_ts}.jsonl",
                batch_log_path=f"{logs_dir}/batch_{run_ts}.log",
                fmt=fmt,
            )
        except Exception as e:
            logger.error(f"Batch cycle failed, no partial state committed: {e}")
            return 1
        logger.info(f"Batch result: {result}")

        if not args.skip_detect:
            window_days = args.window_days
            if window_days is None:
                window_days = cfg.get("fraud.window_days", 1)
            now = pd.Timestamp(args.now).to_pydatetime() if args.now else None
            try:
                flags = run_gold_transforms(
                    con,
                    logger,
                    now=now,
                    window=timedelta(days=window_days),
                    click_code=cfg.get("fraud.click_event_type", 2),
                    terminal_code=cfg.get("fraud.terminal_event_type", 9),
                    timeout_seconds=cfg.get("fraud.query_timeout_seconds"),
                    fetch_size=cfg.get("fraud.fetch_size", 1000),
                )
            except Exception:
                # Loaded data is already committed; only the report is missing
                return 1
            reports_dir = cfg.get("paths.reports_dir", "reports")
            report_path = f"{reports_dir}/click_fraud_{run_ts}.csv"
            write_fraud_report(flags, report_path)
            logger.info(f"Wrote {len(flags)} flags to {report_path}")
    finally:
        con.close()

    logger.info("--- ETL Process Finished ---")
    return 0


if __name__ == "__main__":
    sys.exit(main())
