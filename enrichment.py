"""
Reference data used to enrich click-stream events at load time.

The merge joins these tables directly; EnrichmentResolver is the point
lookup and loading surface for the same data. Lookups are best-effort: a
missing or unknown key returns None, never raises.
"""
import logging
import os
from typing import Optional

import duckdb
import pandas as pd

logger = logging.getLogger("enrichment")

REFERENCE_TABLES = {
    "ads": ("dim_ads", ["ad_id", "campaign_id"]),
    "campaigns": ("dim_campaigns", ["campaign_id", "advertiser_id"]),
    "channels": ("dim_channels", ["channel_id", "content_distributor_id"]),
}


def _is_missing(value) -> bool:
    # None, float NaN and pd.NA from nullable Int64 columns
    return value is None or (pd.api.types.is_scalar(value) and pd.isna(value))


class EnrichmentResolver:
    def __init__(self, con: duckdb.DuckDBPyConnection):
        self.con = con

    def lookup_campaign(self, ad_id) -> Optional[dict]:
        """Return {campaign_id, advertiser_id} for an ad, or None on a miss."""
        if _is_missing(ad_id):
            return None
        row = self.con.execute(
            """
            SELECT a.campaign_id, c.advertiser_id
            FROM dim_ads a
            LEFT JOIN dim_campaigns c ON c.campaign_id = a.campaign_id
            WHERE a.ad_id = ?
            """,
            [int(ad_id)],
        ).fetchone()
        if row is None:
            return None
        return {"campaign_id": row[0], "advertiser_id": row[1]}

    def lookup_distributor(self, channel_id) -> Optional[dict]:
        """Return {content_distributor_id} for a channel, or None on a miss."""
        if _is_missing(channel_id):
            return None
        row = self.con.execute(
            "SELECT content_distributor_id FROM dim_channels WHERE channel_id = ?",
            [int(channel_id)],
        ).fetchone()
        if row is None:
            return None
        return {"content_distributor_id": row[0]}

    def _upsert(self, kind: str, df: pd.DataFrame) -> int:
        table, columns = REFERENCE_TABLES[kind]
        missing = [c for c in columns if c not in df.columns]
        if missing:
            raise ValueError(f"{kind} reference data is missing columns: {missing}")
        if df.empty:
            return 0

        key = columns[0]
        df = df[columns].dropna(subset=[key]).drop_duplicates(subset=[key], keep="last")
        df = df.astype({c: "Int64" for c in columns})

        self.con.register("_ref_df", df)
        try:
            self.con.execute(
                f"""
                INSERT OR REPLACE INTO {table} ({", ".join(columns)})
                SELECT {", ".join(f"CAST({c} AS INTEGER)" for c in columns)}
                FROM _ref_df
                """
            )
        finally:
            self.con.unregister("_ref_df")
        logger.info(f"Upserted {len(df)} rows into {table}")
        return len(df)

    def load_ads(self, df: pd.DataFrame) -> int:
        return self._upsert("ads", df)

    def load_campaigns(self, df: pd.DataFrame) -> int:
        return self._upsert("campaigns", df)

    def load_channels(self, df: pd.DataFrame) -> int:
        return self._upsert("channels", df)

    def load_reference_dir(self, reference_dir: str) -> dict:
        """
        Load ads.csv, campaigns.csv and channels.csv from reference_dir.
        Files that are absent are skipped; returns rows loaded per kind.
        """
        loaded = {}
        for kind in REFERENCE_TABLES:
            path = os.path.join(reference_dir, f"{kind}.csv")
            if not os.path.exists(path):
                logger.info(f"No {kind} reference file at {path}. Skipping.")
                continue
            loaded[kind] = self._upsert(kind, pd.read_csv(path))
        return loaded
