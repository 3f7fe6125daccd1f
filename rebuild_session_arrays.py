"""
Verify (and optionally rebuild) the click_session_arrays cache.

The cache is maintained incrementally on every merge and should always equal
a GROUP BY (session_start, session_id, ad_id) over click_stream. This script
compares the two and reports every key that drifted.

USAGE:
------
# Dry run (report drift only, no changes to database):
python rebuild_session_arrays.py

# Live mode (replace the cache and session bounds with a full recomputation):
python rebuild_session_arrays.py --live

NOTES:
------
- Dry run is the default and only reads.
- Live mode runs in one transaction; readers see the old or the new cache, never a mix.
- session_start values on click_stream rows are not touched. Rows committed
  before an earlier event of their session arrived keep their original
  session_start; this tool only re-derives the aggregates from what is stored.
"""

import logging
import sys

import duckdb

from silver_transforms import find_session_array_drift, rebuild_session_arrays

DB_FILE = "clickstream.db"

logger = logging.getLogger("rebuild_session_arrays")


def check_and_rebuild(db_file: str = None, dry_run: bool = True, max_report: int = 20) -> int:
    """Return the number of drifted keys found before any rebuild."""
    db_file = db_file or DB_FILE
    con = duckdb.connect(db_file, read_only=dry_run)
    try:
        drift = find_session_array_drift(con)
        logger.info(f"Drifted keys: {len(drift)}")
        for row in drift.head(max_report).itertuples(index=False):
            logger.info(
                f"  - ({row.session_start}, {row.session_id}, {row.ad_id}): {row.drift} "
                f"cached_count={row.cached_count} expected_count={row.expected_count}"
            )
        if len(drift) > max_report:
            logger.info(f"  ... {len(drift) - max_report} more")

        if dry_run:
            if len(drift):
                logger.info("[DRY RUN] Run with --live to rebuild the cache.")
        else:
            rows = rebuild_session_arrays(con, logger)
            logger.info(f"Cache rebuilt with {rows} keys.")
        return len(drift)
    finally:
        con.close()


if __name__ == "__main__":
    import argparse

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    parser = argparse.ArgumentParser(
        description="Compare click_session_arrays with a full recomputation from click_stream",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Report drift only
  python rebuild_session_arrays.py

  # Rebuild against a specific database file
  python rebuild_session_arrays.py --live --db clickstream.db
        """,
    )
    parser.add_argument(
        "--live", action="store_true", help="Rebuild the cache (default is dry run)"
    )
    parser.add_argument("--db", type=str, default=DB_FILE, help="DuckDB database file")
    parser.add_argument(
        "--max-report",
        type=int,
        default=20,
        help="Maximum number of drifted keys to log (default: 20)",
    )
    args = parser.parse_args()

    if not args.live:
        logger.info("Running in DRY RUN mode. Use --live to rebuild.")
    else:
        logger.warning("LIVE MODE: click_session_arrays will be replaced.")

    try:
        check_and_rebuild(args.db, dry_run=not args.live, max_report=args.max_report)
    except Exception as e:
        logger.error(f"Fatal error during rebuild: {e}", exc_info=True)
        sys.exit(1)
