import logging

import duckdb

# --- Configuration ---
DB_FILE = "clickstream.db"

logger = logging.getLogger("setup_database")


def create_schema(con: duckdb.DuckDBPyConnection):
    """
    Create every table the batch cycle and the fraud queries rely on.
    All statements are IF NOT EXISTS so this is safe to call on every run.
    """
    # Staging table - transient, one logical partition per batch cycle.
    # Rows are discarded with DELETE ... WHERE partition_id = ? once merged.
    con.execute(
        """
    CREATE TABLE IF NOT EXISTS stage_click_stream (
        partition_id INTEGER NOT NULL,
        event_time TIMESTAMP NOT NULL,
        ad_id INTEGER,                          -- ad requests have no ad assigned yet
        session_id VARCHAR NOT NULL,
        viewer_id VARCHAR NOT NULL,
        event_type INTEGER NOT NULL,            -- 1=request, 2=click, 9=completion, ...
        channel_id INTEGER NOT NULL,
        source_file_name VARCHAR NOT NULL,
        source_file_timestamp TIMESTAMP NOT NULL,
        source_row_number BIGINT NOT NULL       -- ordinal inside the source file
    );
    """
    )
    logger.info("Table 'stage_click_stream' is set up.")

    # Reference data for enrichment (ad -> campaign -> advertiser, channel -> distributor)
    con.execute(
        """
    CREATE TABLE IF NOT EXISTS dim_ads (
        ad_id INTEGER PRIMARY KEY,
        campaign_id INTEGER
    );

    CREATE TABLE IF NOT EXISTS dim_campaigns (
        campaign_id INTEGER PRIMARY KEY,
        advertiser_id INTEGER
    );

    CREATE TABLE IF NOT EXISTS dim_channels (
        channel_id INTEGER PRIMARY KEY,
        content_distributor_id INTEGER      -- who brought us the viewer
    );
    """
    )
    logger.info("Reference tables are set up.")

    # Fact table - append-only, never updated or deleted
    con.execute(
        """
    CREATE TABLE IF NOT EXISTS click_stream (
        event_seq BIGINT NOT NULL,              -- monotonic append order
        session_start TIMESTAMP NOT NULL,       -- resolved at append time, never rewritten
        event_time TIMESTAMP NOT NULL,
        ad_id INTEGER,
        campaign_id INTEGER,                    -- enrichment, NULL on lookup miss
        advertiser_id INTEGER,
        session_id VARCHAR NOT NULL,
        viewer_id VARCHAR NOT NULL,
        channel_id INTEGER NOT NULL,
        content_distributor_id INTEGER,
        event_type INTEGER NOT NULL,
        source_file_name VARCHAR NOT NULL,
        source_file_timestamp TIMESTAMP NOT NULL,

        -- Audit
        batch_id BIGINT NOT NULL,
        loaded_at TIMESTAMP NOT NULL
    );
    """
    )

    # Queries are by time first, then ad
    con.execute(
        """
    CREATE INDEX IF NOT EXISTS idx_click_stream_start_ad
    ON click_stream (session_start, ad_id);
    """
    )
    con.execute(
        """
    CREATE INDEX IF NOT EXISTS idx_click_stream_session
    ON click_stream (session_id);
    """
    )
    logger.info("Fact table 'click_stream' is set up.")

    # Earliest committed event per session, across every session_start group.
    # Maintained in the merge transaction so reconciliation never rescans click_stream.
    con.execute(
        """
    CREATE TABLE IF NOT EXISTS click_session_bounds (
        session_id VARCHAR PRIMARY KEY,
        min_event_time TIMESTAMP NOT NULL
    );
    """
    )

    # Per-(session_start, session_id, ad_id) event arrays. ad_id is nullable,
    # so the key is enforced by the maintenance SQL rather than a constraint.
    con.execute(
        """
    CREATE TABLE IF NOT EXISTS click_session_arrays (
        session_start TIMESTAMP NOT NULL,
        session_id VARCHAR NOT NULL,
        ad_id INTEGER,
        all_events INTEGER[] NOT NULL,          -- append order, duplicates kept
        distinct_events INTEGER[] NOT NULL,     -- sorted, deduplicated
        event_count BIGINT NOT NULL
    );
    """
    )
    logger.info("Aggregate tables are set up.")

    # File ledger. The primary key is the guard against a file being committed twice.
    con.execute(
        """
    CREATE SEQUENCE IF NOT EXISTS load_batch_seq START 1;

    CREATE TABLE IF NOT EXISTS loaded_files (
        source_file_name VARCHAR PRIMARY KEY,
        source_file_timestamp TIMESTAMP,
        batch_id BIGINT NOT NULL,
        row_count BIGINT NOT NULL,
        loaded_at TIMESTAMP NOT NULL
    );

    CREATE TABLE IF NOT EXISTS load_batches (
        batch_id BIGINT NOT NULL,
        partition_id INTEGER NOT NULL,
        started_at TIMESTAMP NOT NULL,
        finished_at TIMESTAMP NOT NULL,
        files_loaded INTEGER NOT NULL,
        rows_appended BIGINT NOT NULL,
        rows_rejected BIGINT NOT NULL
    );
    """
    )
    logger.info("Ledger tables are set up.")


def setup_database(db_file: str = None):
    """
    Connects to the DuckDB database and creates the necessary tables
    if they don't exist.
    """
    db_file = db_file or DB_FILE
    con = duckdb.connect(db_file)
    logger.info(f"Successfully connected to DuckDB database: {db_file}")
    try:
        create_schema(con)
    finally:
        con.close()
    logger.info("Database setup complete. Connection closed.")


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )
    logger.info("--- Starting Database Setup ---")
    setup_database()
    logger.info("--- Database Setup Finished ---")
